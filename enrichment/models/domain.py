"""DTOs for enrichment inputs and LLM outputs.

Pydantic v2 schemas normalize what goes into and comes out of the model calls.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field, field_validator

# The model answers with this marker when the page does not match the title.
CONTENT_MISMATCH_MARKER = "ERROR: CONTENT_MISMATCH"
MIN_SUMMARY_CHARS = 20


class SentimentLabel(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"


class EnrichmentInput(BaseModel):
    """Item text handed to the sentiment and summary prompts."""

    title: str = Field(..., max_length=512)
    content: str = Field(...)
    max_chars: int = Field(6000, ge=500, le=100_000, description="Upper bound on article text sent to the model")

    @field_validator("title", "content")
    @classmethod
    def _strip(cls, v: str) -> str:
        s = v.strip()
        if not s:
            raise ValueError("must not be blank")
        return s


class LLMUsage(BaseModel):
    llm_model: str
    llm_tokens_prompt: int = Field(0, ge=0)
    llm_tokens_completion: int = Field(0, ge=0)
    llm_cost: float = Field(0.0, ge=0.0)


class SentimentResult(LLMUsage):
    label: SentimentLabel

    @field_validator("label", mode="before")
    @classmethod
    def _normalize_label(cls, v):  # noqa: ANN001
        if isinstance(v, str):
            return v.strip().lower()
        return v


class SummaryResult(LLMUsage):
    """Summary text, or a mismatch verdict when the page is not the article."""

    summary_text: str | None = Field(default=None, max_length=4000)
    content_mismatch: bool = False

    @field_validator("summary_text")
    @classmethod
    def _summary_trim(cls, v: str | None) -> str | None:
        if v is None:
            return None
        s = v.strip()
        return s or None
