"""Prompt templates and builders.

Both capabilities ask the model for a JSON object. Article text is trimmed
so the prompt never exceeds ``max_chars``.
"""

from __future__ import annotations

from typing import List

from enrichment.models.domain import CONTENT_MISMATCH_MARKER, EnrichmentInput, SentimentLabel

SENTIMENT_SCHEMA_SNIPPET = '{"sentiment": "positive" | "negative" | "neutral"}'
SUMMARY_SCHEMA_SNIPPET = '{"summary": string} or {"error": "' + CONTENT_MISMATCH_MARKER + '"}'


def _trim_content(inp: EnrichmentInput) -> str:
    header = f"Article Title: {inp.title}\n\nWebpage Content: "
    budget = max(inp.max_chars - len(header), 0)
    return header + inp.content[:budget]


def build_sentiment_messages(inp: EnrichmentInput) -> List[dict]:
    labels = ", ".join(label.value for label in SentimentLabel)
    system = (
        "You are a financial news sentiment classifier.\n"
        f"Classify the overall tone of the article for markets as one of: {labels}.\n"
        "Judge only from the provided text; if it is mixed or purely factual, answer neutral.\n"
        f"Output: JSON ONLY, schema {SENTIMENT_SCHEMA_SNIPPET}."
    )
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": _trim_content(inp)},
    ]


def build_summary_messages(inp: EnrichmentInput, *, max_words: int = 300) -> List[dict]:
    """Ask for a validated summary.

    The model first checks that the page discusses the title's topic and
    answers with the mismatch marker when it does not (wrong article,
    paywall, error page, unrelated content).
    """
    system = (
        "You are a news summarization assistant.\n"
        "Step 1: verify that the webpage content matches the article title.\n"
        "If it does NOT (wrong article, paywall, error page or unrelated content), "
        f'respond with {{"error": "{CONTENT_MISMATCH_MARKER}"}}.\n'
        f"Step 2: otherwise summarize the key facts and their implications in at most {max_words} words.\n"
        "Do not invent figures or facts absent from the content.\n"
        f"Output: JSON ONLY, schema {SUMMARY_SCHEMA_SNIPPET}."
    )
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": _trim_content(inp)},
    ]
