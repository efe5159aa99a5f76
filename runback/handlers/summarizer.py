"""Checkpoint summarizer: condenses assembled context into one paragraph.

The input already starts with the previous checkpoint's summary when one
exists, so summaries fold into each other.
"""

from __future__ import annotations

import logging

from runback.config import Settings
from runback.engine.schemas import ContextEntry
from runback.errors import ConfigurationError, ProviderError, SummarizationError
from runback.providers.openrouter import OpenRouterClient

logger = logging.getLogger(__name__)

_SUMMARY_PROMPT = (
    "Summarize the following conversation history into a concise context paragraph. "
    "This summary will be used to provide context for an LLM in future turns. "
    "Capture key decisions, user preferences, and the current state of the discussion. "
    "Be concise. Only return the summary."
)


def format_transcript(turns: list[ContextEntry]) -> str:
    return "\n\n".join(f"{entry.role.upper()}: {entry.content}" for entry in turns)


class LLMSummarizer:
    """Summarizer backed by a small OpenRouter model."""

    def __init__(self, settings: Settings, client: OpenRouterClient) -> None:
        self._settings = settings
        self._client = client

    async def summarize(self, turns: list[ContextEntry]) -> str:
        if not turns:
            raise SummarizationError("Nothing to summarize")

        messages = [
            {"role": "system", "content": _SUMMARY_PROMPT},
            {"role": "user", "content": format_transcript(turns)},
        ]
        try:
            result = await self._client.complete(self._settings.helper_model, messages)
        except (ProviderError, ConfigurationError) as e:
            raise SummarizationError(f"Summary generation failed: {e}") from e

        summary = result.content.strip()
        if not summary:
            raise SummarizationError("Summarizer returned an empty summary")
        logger.debug("Summarized %d turns into %d chars", len(turns), len(summary))
        return summary
