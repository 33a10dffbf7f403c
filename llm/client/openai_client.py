"""OpenAI LLM client wrapper.

Features
- JSON-object output, parsed and validated into pydantic results
- retries, a wall-clock timeout and a per-request cost cap
- provider injection so tests never touch the network
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from enrichment.models.domain import (
    CONTENT_MISMATCH_MARKER,
    MIN_SUMMARY_CHARS,
    EnrichmentInput,
    SentimentLabel,
    SentimentResult,
    SummaryResult,
)
from enrichment.prompts.templates import build_sentiment_messages, build_summary_messages
from llm.settings import LLMSettings, get_llm_settings


class LLMError(Exception):
    """Base error for LLM calls."""


class TransientLLMError(LLMError):
    """Temporary failure (retryable)."""


class PermanentLLMError(LLMError):
    """Permanent failure (not retryable)."""


ProviderFn = Callable[[Dict[str, Any]], Dict[str, Any]]


_PRICE_PER_1K_TOKENS_USD: Dict[str, Dict[str, float]] = {
    "gpt-4o-mini": {"prompt": 0.00015, "completion": 0.0006},
    "gpt-4o": {"prompt": 0.0025, "completion": 0.0100},
}


def _estimate_cost_usd(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    price = _PRICE_PER_1K_TOKENS_USD.get(model, _PRICE_PER_1K_TOKENS_USD["gpt-4o-mini"])
    return (
        (prompt_tokens / 1000.0) * price["prompt"]
        + (completion_tokens / 1000.0) * price["completion"]
    )


def _load_structured_content(content: str, attempts_left: int) -> Dict[str, Any]:
    try:
        data = json.loads(content)
    except json.JSONDecodeError as exc:
        if attempts_left > 0:
            raise TransientLLMError("could not parse LLM JSON response") from exc
        raise PermanentLLMError("could not parse LLM JSON response") from exc
    if not isinstance(data, dict):
        raise PermanentLLMError("LLM response is not a JSON object")
    return data


def _strip_summary_marker(text: str) -> str:
    idx = text.upper().find("SUMMARY:")
    if idx != -1:
        return text[idx + len("SUMMARY:"):].strip()
    return text.strip()


@dataclass(frozen=True)
class OpenAIClient:
    settings: LLMSettings
    provider: Optional[ProviderFn] = None

    @classmethod
    def from_env(cls, provider: Optional[ProviderFn] = None) -> "OpenAIClient":
        return cls(get_llm_settings(), provider=provider)

    def _get_provider(self) -> ProviderFn:
        if self.provider is not None:
            return self.provider
        try:
            import openai
        except ImportError as exc:  # pragma: no cover - tests inject a provider
            raise PermanentLLMError("openai library is not installed.") from exc

        client = openai.OpenAI(
            api_key=self.settings.openai_api_key,
            timeout=float(self.settings.llm_request_timeout_seconds),
            max_retries=0,
        )

        def _call(payload: Dict[str, Any]) -> Dict[str, Any]:  # pragma: no cover - network
            try:
                resp = client.chat.completions.create(**payload)
            except (openai.APITimeoutError, openai.APIConnectionError, openai.RateLimitError) as exc:
                raise TransientLLMError(f"{exc.__class__.__name__}: {exc}") from exc
            except openai.InternalServerError as exc:
                raise TransientLLMError(f"server error: {exc}") from exc
            except openai.APIError as exc:
                raise PermanentLLMError(f"{exc.__class__.__name__}: {exc}") from exc
            return {
                "choices": [
                    {
                        "message": {"content": resp.choices[0].message.content},
                    }
                ],
                "usage": {
                    "prompt_tokens": getattr(resp.usage, "prompt_tokens", 0),
                    "completion_tokens": getattr(resp.usage, "completion_tokens", 0),
                },
                "model": resp.model,
            }

        return _call

    def _build_payload(self, messages: List[dict], max_tokens: int) -> Dict[str, Any]:
        return {
            "model": self.settings.llm_model,
            "messages": messages,
            "temperature": float(self.settings.llm_temperature),
            "max_tokens": int(max_tokens),
            "response_format": {"type": "json_object"},
        }

    def _input(self, title: str, text: str) -> EnrichmentInput:
        return EnrichmentInput(title=title, content=text, max_chars=int(self.settings.prompt_max_chars))

    def _complete(
        self,
        messages: List[dict],
        max_tokens: int,
        parse: Callable[[Dict[str, Any], int], Any],
    ) -> Tuple[Any, Dict[str, Any]]:
        """Run one completion with retries; ``parse`` turns the JSON object into a result."""
        payload = self._build_payload(messages, max_tokens)
        provider = self._get_provider()
        max_attempts = int(self.settings.llm_retry_max_attempts)

        attempts = 0
        last_exc: Optional[Exception] = None
        start = time.monotonic()
        while attempts <= max_attempts:
            attempts += 1
            try:
                resp = provider(payload)
                model = resp.get("model") or self.settings.llm_model
                usage = resp.get("usage") or {}
                prompt_tokens = int(usage.get("prompt_tokens", 0))
                completion_tokens = int(usage.get("completion_tokens", 0))
                cost = _estimate_cost_usd(model, prompt_tokens, completion_tokens)
                if cost > float(self.settings.llm_cost_limit_usd):
                    raise PermanentLLMError("LLM cost limit exceeded")

                content = resp.get("choices", [{}])[0].get("message", {}).get("content") or ""
                data = _load_structured_content(content, max_attempts + 1 - attempts)
                meta = {
                    "llm_model": model,
                    "llm_tokens_prompt": prompt_tokens,
                    "llm_tokens_completion": completion_tokens,
                    "llm_cost": cost,
                }
                return parse(data, max_attempts + 1 - attempts), meta
            except TransientLLMError as exc:
                last_exc = exc
                continue
            finally:
                elapsed = time.monotonic() - start
                if elapsed > float(self.settings.llm_request_timeout_seconds):
                    # a timed-out call ends the attempt instead of retrying
                    raise TransientLLMError("LLM request timeout exceeded")

        assert last_exc is not None
        raise TransientLLMError(f"LLM retry limit exceeded: {last_exc}")

    def classify_sentiment(self, title: str, text: str) -> SentimentResult:
        messages = build_sentiment_messages(self._input(title, text))

        def _parse(data: Dict[str, Any], attempts_left: int) -> SentimentLabel:
            raw = str(data.get("sentiment") or "").strip().lower()
            try:
                return SentimentLabel(raw)
            except ValueError as exc:
                if attempts_left > 0:
                    raise TransientLLMError(f"unexpected sentiment label {raw!r}") from exc
                raise PermanentLLMError(f"unexpected sentiment label {raw!r}") from exc

        label, meta = self._complete(messages, int(self.settings.sentiment_max_tokens), _parse)
        return SentimentResult(label=label, **meta)

    def summarize(self, title: str, text: str) -> SummaryResult:
        messages = build_summary_messages(self._input(title, text), max_words=int(self.settings.summary_max_words))

        def _parse(data: Dict[str, Any], attempts_left: int) -> Optional[str]:  # noqa: ARG001
            error = str(data.get("error") or "")
            summary = _strip_summary_marker(str(data.get("summary") or ""))
            if CONTENT_MISMATCH_MARKER in error.upper() or CONTENT_MISMATCH_MARKER in summary.upper():
                return None
            # anything this short is a refusal or an echo, not a summary
            if len(summary) <= MIN_SUMMARY_CHARS:
                return None
            return summary

        summary, meta = self._complete(messages, int(self.settings.summary_max_tokens), _parse)
        return SummaryResult(summary_text=summary, content_mismatch=summary is None, **meta)
