"""Checkpoint policy: decides when history gets compacted into a summary.

Three triggers, evaluated once per outgoing turn before the turn is
appended (first match wins):
  1. Manual: the input is the checkpoint command
  2. Topic change: the classifier says the new input starts a new topic
  3. Token limit: assembled context + input exceeds the window threshold

Creating a checkpoint summarizes the currently assembled context, which
already starts with the previous checkpoint's summary when one exists,
so compaction is recursive.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Protocol

from runback.config import Settings
from runback.engine.context import ContextAssembler
from runback.engine.schemas import Checkpoint, CheckpointReason, ContextEntry, Session
from runback.errors import ConfigurationError, SummarizationError

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------
# Collaborator protocols
# ------------------------------------------------------------------


@dataclass
class TopicClassification:
    changed: bool
    reasoning: str | None = None


class TopicClassifier(Protocol):
    async def classify(
        self, new_input: str, recent_turns: list[ContextEntry]
    ) -> TopicClassification: ...


class Summarizer(Protocol):
    async def summarize(self, turns: list[ContextEntry]) -> str: ...


# ------------------------------------------------------------------
# Token Estimator
# ------------------------------------------------------------------


class TokenEstimator:
    """Deterministic chars/4 token estimate, rounded up."""

    CHARS_PER_TOKEN = 4

    def estimate(self, text: str | Any) -> int:
        """Estimate token count for text content."""
        if not isinstance(text, str):
            text = str(text)
        return math.ceil(len(text) / self.CHARS_PER_TOKEN)

    def estimate_chars(self, chars: int) -> int:
        return math.ceil(chars / self.CHARS_PER_TOKEN)


# ------------------------------------------------------------------
# Checkpoint Policy
# ------------------------------------------------------------------


@dataclass
class CheckpointDecision:
    """Outcome of one maybe_checkpoint() call.

    ``reason`` is set when a trigger fired; ``checkpoint`` is only set when
    the summary was actually produced.
    """

    reason: CheckpointReason | None = None
    checkpoint: Checkpoint | None = None
    topic_reasoning: str | None = None

    @property
    def topic_changed(self) -> bool:
        return self.reason == CheckpointReason.TOPIC_CHANGE


class CheckpointPolicy:
    """Decides on and creates checkpoints for outgoing turns.

    Classifier and summarizer are optional; without a classifier topic
    detection is skipped, without a summarizer checkpoints cannot be made
    (create_checkpoint raises ConfigurationError).
    """

    def __init__(
        self,
        settings: Settings,
        assembler: ContextAssembler,
        classifier: TopicClassifier | None = None,
        summarizer: Summarizer | None = None,
        estimator: TokenEstimator | None = None,
    ) -> None:
        self._settings = settings
        self._assembler = assembler
        self._classifier = classifier
        self._summarizer = summarizer
        self.estimator = estimator or TokenEstimator()

    def is_checkpoint_command(self, text: str) -> bool:
        return text.strip().lower() == self._settings.checkpoint_command.lower()

    def context_window(self, session: Session) -> int:
        return session.context_length or self._settings.default_context_length

    def estimate_turn_tokens(self, session: Session, pending_input: str) -> int:
        """Tokens of the assembled context plus the pending input."""
        entries = self._assembler.build_context(session)
        chars = self._assembler.total_chars(entries) + len(pending_input)
        return self.estimator.estimate_chars(chars)

    def exceeds_token_limit(self, session: Session, pending_input: str) -> bool:
        tokens = self.estimate_turn_tokens(session, pending_input)
        limit = self._settings.checkpoint_threshold * self.context_window(session)
        return tokens > limit

    async def detect_topic_change(
        self, session: Session, pending_input: str
    ) -> TopicClassification:
        """Ask the classifier about the pending input. Fails open."""
        if self._classifier is None or not session.messages:
            return TopicClassification(changed=False)
        recent = self._assembler.recent_turns(session, self._settings.topic_window)
        try:
            return await self._classifier.classify(pending_input, recent)
        except Exception as e:
            logger.warning("Topic classification failed, assuming no change: %s", e)
            return TopicClassification(changed=False)

    async def decide(
        self,
        session: Session,
        pending_input: str,
        *,
        supports_history: bool = True,
    ) -> CheckpointDecision:
        """Pick the checkpoint reason for this turn, if any. No side effects."""
        if self.is_checkpoint_command(pending_input):
            return CheckpointDecision(reason=CheckpointReason.MANUAL)

        if self._settings.topic_detection_enabled and supports_history:
            topic = await self.detect_topic_change(session, pending_input)
            if topic.changed:
                return CheckpointDecision(
                    reason=CheckpointReason.TOPIC_CHANGE,
                    topic_reasoning=topic.reasoning,
                )

        if self.exceeds_token_limit(session, pending_input):
            return CheckpointDecision(reason=CheckpointReason.TOKEN_LIMIT)

        return CheckpointDecision()

    async def maybe_checkpoint(
        self,
        session: Session,
        pending_input: str,
        *,
        supports_history: bool = True,
    ) -> CheckpointDecision:
        """Decide, then create the checkpoint when a trigger fired.

        Summarizer failures are logged and the turn proceeds without a
        checkpoint.
        """
        decision = await self.decide(
            session, pending_input, supports_history=supports_history
        )
        if decision.reason is None:
            return decision
        try:
            decision.checkpoint = await self.create_checkpoint(session, decision.reason)
        except (SummarizationError, ConfigurationError) as e:
            logger.warning(
                "Checkpoint (%s) for session %s skipped: %s",
                decision.reason,
                session.id,
                e,
            )
        return decision

    async def create_checkpoint(
        self, session: Session, reason: CheckpointReason
    ) -> Checkpoint | None:
        """Summarize the assembled context into a new Checkpoint.

        Returns None for an empty session. The checkpoint is anchored on the
        last message present now, before the pending turn is appended.
        """
        if not session.messages:
            logger.debug("Session %s has no messages, nothing to checkpoint", session.id)
            return None
        if self._summarizer is None:
            raise ConfigurationError("A summarizer is required for checkpoints")

        turns = self._assembler.build_context(session)
        start_time = time.monotonic()
        try:
            summary = await self._summarizer.summarize(turns)
        except SummarizationError:
            raise
        except Exception as e:
            raise SummarizationError(str(e)) from e
        if not summary.strip():
            raise SummarizationError("Summarizer returned an empty summary")

        checkpoint = Checkpoint(
            summary=summary.strip(),
            last_message_id=session.messages[-1].id,
            reason=reason,
        )
        duration_ms = int((time.monotonic() - start_time) * 1000)
        logger.info(
            "Checkpoint %s for session %s (%s): %d entries -> %d chars, %d ms",
            checkpoint.id,
            session.id,
            reason,
            len(turns),
            len(checkpoint.summary),
            duration_ms,
        )
        return checkpoint
