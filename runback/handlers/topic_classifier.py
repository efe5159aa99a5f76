"""Topic change classifier.

Asks a small model whether the new input continues the recent
conversation. Expects ``{"topic_changed": true|false}``; tolerates
surrounding text. Raises ClassificationError when the reply cannot be
read. The checkpoint policy treats that as "no change".
"""

from __future__ import annotations

import json
import logging
import re

from runback.config import Settings
from runback.engine.compaction import TopicClassification
from runback.engine.schemas import ContextEntry
from runback.errors import ClassificationError, ConfigurationError, ProviderError
from runback.providers.openrouter import OpenRouterClient

logger = logging.getLogger(__name__)

_CLASSIFIER_PROMPT = """You are a classifier. Your task is to determine if the new user input continues the previous topic or represents a topic change.

Instructions:
- Analyze the conversation history and the new input.
- If the new input is a continuation (e.g., "tell me more", "what about X aspect", follow-up questions), set topic_changed to false.
- If the new input is a clear topic change (e.g., "actually, let's talk about X instead", "switching topics", new unrelated question), set topic_changed to true.
- Output ONLY valid JSON in this exact format: { "topic_changed": true } or { "topic_changed": false }
- Do not include any other text, explanations, or formatting."""

_JSON_RE = re.compile(r"\{[^{}]*[\"']topic_changed[\"']\s*:\s*(true|false)[^{}]*\}", re.IGNORECASE)
_FLAG_RE = re.compile(r"[\"']topic_changed[\"']\s*:\s*(true|false)", re.IGNORECASE)


def parse_classification(text: str) -> TopicClassification:
    """Read the classifier reply. Raises ClassificationError if unreadable."""
    text = text.strip()
    match = _JSON_RE.search(text)
    if match:
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict) and isinstance(data.get("topic_changed"), bool):
            reasoning = data.get("reasoning")
            return TopicClassification(
                changed=data["topic_changed"],
                reasoning=reasoning if isinstance(reasoning, str) else None,
            )

    flag = _FLAG_RE.search(text)
    if flag:
        return TopicClassification(changed=flag.group(1).lower() == "true")
    raise ClassificationError(f"Could not parse classifier response: {text[:100]!r}")


class LLMTopicClassifier:
    """Topic classifier backed by a small OpenRouter model."""

    def __init__(self, settings: Settings, client: OpenRouterClient) -> None:
        self._settings = settings
        self._client = client

    async def classify(
        self, new_input: str, recent_turns: list[ContextEntry]
    ) -> TopicClassification:
        if not recent_turns:
            return TopicClassification(changed=False)

        context = "\n".join(
            f"{entry.role.upper()}: {entry.content}" for entry in recent_turns if entry.content
        )
        messages = [
            {"role": "system", "content": _CLASSIFIER_PROMPT},
            {"role": "user", "content": f"Previous conversation:\n{context}\n\nNew input: {new_input}"},
        ]
        try:
            result = await self._client.complete(self._settings.classifier_model, messages)
        except (ProviderError, ConfigurationError) as e:
            raise ClassificationError(f"Topic classification failed: {e}") from e

        classification = parse_classification(result.content)
        logger.debug("Topic changed=%s for input %.40r", classification.changed, new_input)
        return classification
