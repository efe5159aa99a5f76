"""Pydantic models for sessions, turns, response branches and checkpoints.

Every model is frozen. Mutations go through ``model_copy(update=...)`` so
each SessionStore operation produces a fresh Session value.

Job state is a tagged union keyed on ``status``; content, logs and media
only exist on the variants that carry them.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated, Any, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

from runback import __version__
from runback.errors import InvalidTransitionError


def _new_id() -> str:
    return str(uuid4())


def _now() -> datetime:
    return datetime.now(UTC)


class ExecutionMode(StrEnum):
    SYNCHRONOUS = "synchronous"
    QUEUED = "queued"


class JobStatus(StrEnum):
    PENDING = "pending"
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class CheckpointReason(StrEnum):
    MANUAL = "manual"
    TOKEN_LIMIT = "token_limit"
    TOPIC_CHANGE = "topic_change"


# Forward-only ordering; completed and failed share the terminal rank.
_STATUS_RANK: dict[JobStatus, int] = {
    JobStatus.PENDING: 0,
    JobStatus.QUEUED: 1,
    JobStatus.IN_PROGRESS: 2,
    JobStatus.COMPLETED: 3,
    JobStatus.FAILED: 3,
}

TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class MediaAsset(_Frozen):
    """An image, video or audio file produced by a queued generation."""

    url: str
    content_type: str | None = None
    file_name: str | None = None


class Attachment(_Frozen):
    """A file sent along with a user message (images only for now)."""

    type: str = "image"
    content: str  # data URL or remote URL
    name: str | None = None


# ------------------------------------------------------------------
# Job state variants
# ------------------------------------------------------------------


class Pending(_Frozen):
    status: Literal["pending"] = "pending"


class Queued(_Frozen):
    status: Literal["queued"] = "queued"
    logs: tuple[str, ...] = ()


class InProgress(_Frozen):
    status: Literal["in_progress"] = "in_progress"
    logs: tuple[str, ...] = ()


class Completed(_Frozen):
    status: Literal["completed"] = "completed"
    content: str = ""
    media: tuple[MediaAsset, ...] = ()
    logs: tuple[str, ...] = ()


class Failed(_Frozen):
    status: Literal["failed"] = "failed"
    error: str
    logs: tuple[str, ...] = ()


JobState = Annotated[
    Union[Pending, Queued, InProgress, Completed, Failed],
    Field(discriminator="status"),
]


def transition(current: JobState, new: JobState) -> JobState:
    """Validate a state change. Raises InvalidTransitionError on regression."""
    if current.status in TERMINAL_STATUSES:
        raise InvalidTransitionError(
            f"Cannot move from terminal state {current.status} to {new.status}"
        )
    if _STATUS_RANK[new.status] < _STATUS_RANK[current.status]:
        raise InvalidTransitionError(
            f"Cannot move backwards from {current.status} to {new.status}"
        )
    return new


def progress(current: JobState, reported: JobStatus, logs: tuple[str, ...]) -> JobState:
    """Fold a non-terminal poll report into the current state.

    A report that lags behind the current status keeps the current status.
    Non-empty logs replace the previous list; empty logs keep it.
    """
    logs = logs or getattr(current, "logs", ())
    status = reported
    if _STATUS_RANK[reported] < _STATUS_RANK[current.status]:
        status = current.status
    if status == JobStatus.PENDING:
        return current
    if status == JobStatus.QUEUED:
        return transition(current, Queued(logs=logs))
    return transition(current, InProgress(logs=logs))


# ------------------------------------------------------------------
# Session value objects
# ------------------------------------------------------------------


class ResponseMetadata(_Frozen):
    token_count: int | None = None
    latency_ms: int | None = None


class Response(_Frozen):
    """One generation attempt (a branch) for a user turn."""

    id: str = Field(default_factory=_new_id)
    provider: str
    model: str
    generation_number: int = 0  # assigned by SessionStore on attach
    state: JobState = Field(default_factory=Pending)
    request_id: str | None = None
    metadata: ResponseMetadata = Field(default_factory=ResponseMetadata)
    note: str | None = None
    created_at: datetime = Field(default_factory=_now)

    @property
    def status(self) -> JobStatus:
        return JobStatus(self.state.status)

    @property
    def is_terminal(self) -> bool:
        return self.state.status in TERMINAL_STATUSES

    @property
    def content(self) -> str:
        if isinstance(self.state, Completed):
            return self.state.content
        if isinstance(self.state, Failed):
            return self.state.error
        return ""

    @property
    def logs(self) -> tuple[str, ...]:
        return getattr(self.state, "logs", ())

    @property
    def media_assets(self) -> tuple[MediaAsset, ...]:
        if isinstance(self.state, Completed):
            return self.state.media
        return ()


class Message(_Frozen):
    """A user turn with its response branches."""

    id: str = Field(default_factory=_new_id)
    role: Literal["user"] = "user"
    content: str
    attachments: tuple[Attachment, ...] = ()
    responses: tuple[Response, ...] = ()
    current_response_index: int = 0
    topic_changed: bool = False
    topic_change_reasoning: str | None = None
    created_at: datetime = Field(default_factory=_now)

    @model_validator(mode="after")
    def _check_index(self) -> "Message":
        if self.responses and not 0 <= self.current_response_index < len(self.responses):
            raise ValueError(
                f"current_response_index {self.current_response_index} out of range "
                f"for {len(self.responses)} responses"
            )
        return self

    @property
    def current_response(self) -> Response | None:
        if not self.responses:
            return None
        return self.responses[self.current_response_index]

    def find_response(self, response_id: str) -> Response | None:
        return next((r for r in self.responses if r.id == response_id), None)


class Checkpoint(_Frozen):
    """Immutable summary snapshot taken after ``last_message_id``."""

    id: str = Field(default_factory=_new_id)
    summary: str
    last_message_id: str
    reason: CheckpointReason
    created_at: datetime = Field(default_factory=_now)


class Session(_Frozen):
    """One conversation thread. Only SessionStore produces new values."""

    id: str = Field(default_factory=_new_id)
    title: str | None = None
    provider: str
    model: str
    context_length: int | None = None
    system_prompt: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    messages: tuple[Message, ...] = ()
    checkpoints: tuple[Checkpoint, ...] = ()
    is_starred: bool = False
    is_closed: bool = False
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    def message_index(self, message_id: str) -> int | None:
        for i, message in enumerate(self.messages):
            if message.id == message_id:
                return i
        return None

    def find_message(self, message_id: str) -> Message | None:
        index = self.message_index(message_id)
        return None if index is None else self.messages[index]

    def touch(self, **update: Any) -> "Session":
        """Copy with ``update`` applied and ``updated_at`` refreshed."""
        return self.model_copy(update={**update, "updated_at": _now()})

    def with_settings(self, **changes: Any) -> "Session":
        """Like ``touch`` but validates ``changes``; raises ValidationError."""
        fields = {name: getattr(self, name) for name in type(self).model_fields}
        return Session.model_validate({**fields, **changes, "updated_at": _now()})

    def with_message(self, message: Message) -> "Session":
        return self.touch(messages=self.messages + (message,))

    def replace_message(self, message: Message) -> "Session":
        return self.touch(
            messages=tuple(message if m.id == message.id else m for m in self.messages)
        )

    def without_message(self, message_id: str) -> "Session":
        # Checkpoints are never touched here; one may become unresolvable.
        return self.touch(messages=tuple(m for m in self.messages if m.id != message_id))

    def with_checkpoint(self, checkpoint: Checkpoint) -> "Session":
        return self.touch(checkpoints=self.checkpoints + (checkpoint,))


ARCHIVE_VERSION = 1


class SessionArchive(_Frozen):
    """Portable backup of sessions. Never carries provider credentials."""

    version: int = Field(default=ARCHIVE_VERSION, ge=1, le=ARCHIVE_VERSION)
    app_version: str = __version__
    exported_at: datetime = Field(default_factory=_now)
    sessions: tuple[Session, ...] = ()


# ------------------------------------------------------------------
# Prompt context + generation requests
# ------------------------------------------------------------------


@dataclass(frozen=True)
class ContextEntry:
    """A single role/content pair sent to a provider."""

    role: str  # "system", "user" or "assistant"
    content: str

    def as_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


class GenerationRequest(_Frozen):
    """Everything a provider client needs for one generation attempt.

    ``job_id`` becomes the id of the resulting Response, so callers can
    cancel a job before its Response exists.
    """

    job_id: str = Field(default_factory=_new_id)
    session_id: str
    message_id: str
    provider: str
    model: str
    prompt: str
    history: tuple[ContextEntry, ...] = ()
    system_prompt: str | None = None
    attachments: tuple[Attachment, ...] = ()
    parameters: dict[str, Any] = Field(default_factory=dict)
