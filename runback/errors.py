"""Error taxonomy for the session engine.

Collaborator failures (classification, summarization) are always recovered
where they happen. Provider and polling failures end up either in the
session-level error slot or in the failed Response itself.
"""

from __future__ import annotations


class RunbackError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(RunbackError):
    """A provider is not configured (missing credentials). Never retried."""


class ProviderError(RunbackError):
    """Network, HTTP or SDK failure reported by a provider client."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ClassificationError(RunbackError):
    """The topic classifier failed or returned something unparseable."""


class SummarizationError(RunbackError):
    """The summarizer failed to produce a checkpoint summary."""


class PollingError(RunbackError):
    """Status or result fetch failed for a queued job."""


class TimerExistsError(RunbackError):
    """A poll loop is already registered for this response id."""


class InvalidTransitionError(RunbackError):
    """A job state change would move backwards or leave a terminal state."""


class SessionNotFoundError(RunbackError):
    """No session with the given id is loaded."""


class StarredSessionError(RunbackError):
    """Starred sessions cannot be deleted."""


class MessageNotFoundError(RunbackError):
    """No message with the given id exists in the session."""
