"""Prompt context assembly: bounded history from messages + checkpoints.

build_context() is a pure function of (session, target). It never
creates checkpoints; the caller runs CheckpointPolicy first.
"""

from __future__ import annotations

import logging

from runback.engine.schemas import Checkpoint, ContextEntry, JobStatus, Message, Session

logger = logging.getLogger(__name__)

SUMMARY_PREFIX = "[Previous Conversation Summary]: "


class ContextAssembler:
    """Reconstructs the role/content sequence sent to a provider for a turn."""

    @staticmethod
    def flatten(message: Message) -> list[ContextEntry]:
        """Expand a user turn into its user entry plus the selected branch.

        The assistant entry only appears once the turn has a branch; it
        carries the branch content when completed and "" otherwise.
        """
        entries = [ContextEntry("user", message.content)]
        response = message.current_response
        if response is not None:
            content = response.content if response.status == JobStatus.COMPLETED else ""
            entries.append(ContextEntry("assistant", content))
        return entries

    def flatten_all(self, messages: tuple[Message, ...] | list[Message]) -> list[ContextEntry]:
        entries: list[ContextEntry] = []
        for message in messages:
            entries.extend(self.flatten(message))
        return entries

    def build_context(
        self,
        session: Session,
        target_message_id: str | None = None,
    ) -> list[ContextEntry]:
        """Build the prompt context preceding ``target_message_id``.

        Without a target the whole history is covered. An unknown target
        yields an empty list.
        """
        if target_message_id is None:
            end = len(session.messages)
        else:
            found = session.message_index(target_message_id)
            if found is None:
                logger.debug(
                    "Target message %s not in session %s", target_message_id, session.id
                )
                return []
            end = found

        selected = self.select_checkpoint(
            session, None if target_message_id is None else end
        )
        if selected is None:
            return self.flatten_all(session.messages[:end])

        checkpoint, position = selected
        entries = [ContextEntry("system", SUMMARY_PREFIX + checkpoint.summary)]
        entries.extend(self.flatten_all(session.messages[position + 1:end]))
        return entries

    @staticmethod
    def select_checkpoint(
        session: Session,
        target_position: int | None = None,
    ) -> tuple[Checkpoint, int] | None:
        """Latest-created resolvable checkpoint strictly before the target.

        Returns (checkpoint, resolved message position) or None.
        """
        for checkpoint in reversed(session.checkpoints):
            position = session.message_index(checkpoint.last_message_id)
            if position is None:
                logger.debug(
                    "Skipping unresolvable checkpoint %s (message %s gone)",
                    checkpoint.id,
                    checkpoint.last_message_id,
                )
                continue
            if target_position is None or position < target_position:
                return checkpoint, position
        return None

    def recent_turns(self, session: Session, count: int) -> list[ContextEntry]:
        """Flattened last ``count`` messages, for the topic classifier."""
        if count <= 0:
            return []
        return self.flatten_all(session.messages[-count:])

    @staticmethod
    def total_chars(entries: list[ContextEntry]) -> int:
        return sum(len(entry.content) for entry in entries)
