"""Session store: the orchestrator that owns all session state.

Every operation replaces the held Session with a new frozen value
(copy-on-write) and queues a background write to the durable store.
Writes never block the caller; failures are logged, not raised.

Turn flow:
  CheckpointPolicy (decide + summarize) -> append checkpoint
  -> append user message -> ContextAssembler -> GenerationJobScheduler
  -> attach/update Response via the ResponseSink methods below.

Concurrent poll loops update the same Session with last-writer-wins.
Each mutation re-reads the latest value and replaces it without awaiting
in between.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal, Protocol

from runback.config import Settings
from runback.engine.compaction import CheckpointPolicy
from runback.engine.context import ContextAssembler
from runback.engine.scheduler import GenerationJobScheduler
from runback.engine.schemas import (
    Attachment,
    Checkpoint,
    CheckpointReason,
    GenerationRequest,
    Message,
    Response,
    Session,
    SessionArchive,
)
from runback.errors import (
    ConfigurationError,
    MessageNotFoundError,
    ProviderError,
    SessionNotFoundError,
    StarredSessionError,
    SummarizationError,
)
from runback.events import Event, EventBus

logger = logging.getLogger(__name__)

TITLE_MAX_CHARS = 40


def generate_session_title(first_message: str | None = None) -> str:
    """Title from the first user message, or a timestamped default."""
    if not first_message:
        return f"Chat {datetime.now().strftime('%b %d, %I:%M %p')}"
    truncated = first_message[:TITLE_MAX_CHARS]
    return f"{truncated}..." if len(first_message) > TITLE_MAX_CHARS else truncated


class SessionRepository(Protocol):
    """Durable store used for best-effort persistence."""

    async def save(self, session: Session) -> None: ...

    async def load_all(self, *, include_closed: bool = True) -> list[Session]: ...

    async def delete(self, session_id: str) -> bool: ...

    async def delete_unstarred(self) -> int: ...


@dataclass
class TurnResult:
    """What a send_turn()/regenerate() call produced."""

    session_id: str
    job_id: str | None = None
    message: Message | None = None
    response: Response | None = None
    checkpoint: Checkpoint | None = None
    error: str | None = None
    cancelled: bool = False


@dataclass
class _TurnHandle:
    session_id: str
    message_id: str
    created_message: bool  # True for a fresh turn, False for a regenerate


class SessionStore:
    """Owns sessions and drives checkpointing, context assembly and jobs."""

    def __init__(
        self,
        settings: Settings,
        scheduler: GenerationJobScheduler,
        policy: CheckpointPolicy,
        assembler: ContextAssembler,
        repository: SessionRepository | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self._settings = settings
        self._scheduler = scheduler
        self._policy = policy
        self._assembler = assembler
        self._repository = repository
        self._bus = bus
        self._sessions: dict[str, Session] = {}
        self._errors: dict[str, str] = {}
        self._turns: dict[str, _TurnHandle] = {}
        self._dirty: dict[str, Session] = {}
        self._writers: dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def sessions(self) -> list[Session]:
        """All loaded sessions, most recently updated first."""
        return sorted(self._sessions.values(), key=lambda s: s.updated_at, reverse=True)

    def open_sessions(self) -> list[Session]:
        return [s for s in self.sessions if not s.is_closed]

    def get(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        return session

    def _message(self, session_id: str, message_id: str) -> tuple[Session, Message]:
        session = self.get(session_id)
        message = session.find_message(message_id)
        if message is None:
            raise MessageNotFoundError(f"Message {message_id} not in session {session_id}")
        return session, message

    def turn_jobs(self, session_id: str) -> list[str]:
        """Job ids of turns still in flight for a session."""
        return [job_id for job_id, h in self._turns.items() if h.session_id == session_id]

    # ------------------------------------------------------------------
    # Error slot
    # ------------------------------------------------------------------

    def error(self, session_id: str) -> str | None:
        return self._errors.get(session_id)

    def clear_error(self, session_id: str) -> None:
        self._errors.pop(session_id, None)

    def _set_error(self, session_id: str, message: str) -> None:
        logger.warning("Session %s error: %s", session_id, message)
        self._errors[session_id] = message
        self._emit("session_error", session_id, {"error": message})

    # ------------------------------------------------------------------
    # Commit + persistence
    # ------------------------------------------------------------------

    def _commit(self, session: Session) -> Session:
        self._sessions[session.id] = session
        self._persist(session)
        return session

    def _persist(self, session: Session) -> None:
        """Queue a fire-and-forget save. One writer task per session."""
        if self._repository is None:
            return
        self._dirty[session.id] = session
        if session.id in self._writers:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop, session %s not persisted", session.id)
            return
        self._writers[session.id] = loop.create_task(
            self._write_loop(session.id), name=f"save-{session.id}"
        )

    async def _write_loop(self, session_id: str) -> None:
        """Save the latest dirty value until nothing newer is queued."""
        try:
            while True:
                session = self._dirty.pop(session_id, None)
                if session is None:
                    return
                try:
                    await self._repository.save(session)
                except Exception:
                    logger.exception("Failed to save session %s", session_id)
        finally:
            self._writers.pop(session_id, None)

    async def flush(self) -> None:
        """Wait for all queued writes to land."""
        while self._writers:
            await asyncio.gather(*list(self._writers.values()), return_exceptions=True)

    def _emit(self, event_type: str, session_id: str, data: dict[str, Any]) -> None:
        if self._bus is not None:
            self._bus.publish(Event(type=event_type, session_id=session_id, data=data))

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def load_sessions(self, *, include_closed: bool = False) -> list[Session]:
        """Load sessions from the durable store and resume in-flight jobs.

        Keeps at most ``max_open_sessions`` open; older extras are closed.
        """
        if self._repository is None:
            return self.open_sessions() if not include_closed else self.sessions
        loaded = await self._repository.load_all(include_closed=include_closed)
        for session in loaded:
            self._sessions[session.id] = session

        self._close_extra_open_sessions()

        for session in loaded:
            self._resume_jobs(session)
        logger.info("Loaded %d sessions", len(loaded))
        return [self._sessions[s.id] for s in loaded]

    def _close_extra_open_sessions(self) -> None:
        for extra in self.open_sessions()[self._settings.max_open_sessions:]:
            self.close_session(extra.id)

    def _resume_jobs(self, session: Session) -> None:
        for message in session.messages:
            for response in message.responses:
                if response.is_terminal or not response.request_id:
                    continue
                try:
                    if self._scheduler.resume(session.id, message.id, response, self):
                        self._turns[response.id] = _TurnHandle(session.id, message.id, False)
                except ConfigurationError as e:
                    logger.warning("Cannot resume response %s: %s", response.id, e)

    def create_session(
        self,
        provider: str,
        model: str,
        *,
        context_length: int | None = None,
        system_prompt: str | None = None,
        parameters: dict[str, Any] | None = None,
    ) -> Session:
        """Create and open a session, closing the oldest if too many are open."""
        open_sessions = self.open_sessions()
        while len(open_sessions) >= self._settings.max_open_sessions:
            oldest = open_sessions.pop()
            self.close_session(oldest.id)

        session = Session(
            provider=provider,
            model=model,
            context_length=context_length,
            system_prompt=system_prompt,
            parameters=parameters or {},
        )
        logger.info("Created session %s (%s/%s)", session.id, provider, model)
        return self._commit(session)

    def close_session(self, session_id: str) -> Session:
        return self._commit(self.get(session_id).touch(is_closed=True))

    def reopen_session(self, session_id: str) -> Session:
        session = self.get(session_id)
        others = [s for s in self.open_sessions() if s.id != session_id]
        while len(others) >= self._settings.max_open_sessions:
            self.close_session(others.pop().id)
        return self._commit(session.touch(is_closed=False))

    def toggle_star(self, session_id: str) -> bool:
        session = self.get(session_id)
        return self._commit(session.touch(is_starred=not session.is_starred)).is_starred

    def rename_session(self, session_id: str, title: str) -> Session:
        return self._commit(self.get(session_id).touch(title=title))

    def update_session_settings(self, session_id: str, **changes: Any) -> Session:
        """Change provider, model, context_length, system_prompt or parameters."""
        allowed = {"provider", "model", "context_length", "system_prompt", "parameters"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Unknown session settings: {sorted(unknown)}")
        return self._commit(self.get(session_id).with_settings(**changes))

    async def delete_session(self, session_id: str) -> None:
        """Delete a session and its history. Starred sessions are protected."""
        session = self.get(session_id)
        if session.is_starred:
            raise StarredSessionError("Cannot delete starred session. Unstar it first.")
        await self._forget_session(session_id)
        if self._repository is not None:
            await self._repository.delete(session_id)
        logger.info("Deleted session %s", session_id)

    async def delete_unstarred(self) -> int:
        """Delete every non-starred session. Returns how many were deleted."""
        doomed = [s.id for s in self._sessions.values() if not s.is_starred]
        for session_id in doomed:
            await self._forget_session(session_id)
        if self._repository is None:
            return len(doomed)
        return await self._repository.delete_unstarred()

    def export_sessions(self) -> SessionArchive:
        return SessionArchive(sessions=tuple(self.sessions))

    async def import_sessions(
        self, archive: SessionArchive, mode: Literal["merge", "replace"] = "merge"
    ) -> int:
        """Bring archived sessions in. Returns how many were added.

        ``merge`` skips sessions whose id is already loaded. ``replace``
        first deletes every current session, starred ones included.
        """
        if mode not in ("merge", "replace"):
            raise ValueError(f"Unknown import mode: {mode}")
        if mode == "replace":
            for session_id in list(self._sessions):
                await self._forget_session(session_id)
                if self._repository is not None:
                    await self._repository.delete(session_id)

        imported = [s for s in archive.sessions if s.id not in self._sessions]
        for session in imported:
            self._commit(session)
        self._close_extra_open_sessions()
        for session in imported:
            self._resume_jobs(self._sessions[session.id])
        logger.info(
            "Imported %d of %d archived sessions (%s)", len(imported), len(archive.sessions), mode
        )
        return len(imported)

    async def _forget_session(self, session_id: str) -> None:
        self.cancel_session_jobs(session_id)
        self._sessions.pop(session_id, None)
        self._errors.pop(session_id, None)
        self._dirty.pop(session_id, None)
        writer = self._writers.get(session_id)
        if writer is not None:
            await asyncio.wait({writer})

    # ------------------------------------------------------------------
    # Messages and branches
    # ------------------------------------------------------------------

    def add_user_message(
        self,
        session_id: str,
        content: str,
        attachments: tuple[Attachment, ...] | list[Attachment] = (),
        *,
        topic_changed: bool = False,
        topic_change_reasoning: str | None = None,
    ) -> Message:
        session = self.get(session_id)
        message = Message(
            content=content,
            attachments=tuple(attachments),
            topic_changed=topic_changed,
            topic_change_reasoning=topic_change_reasoning,
        )
        self._commit(
            session.touch(
                messages=session.messages + (message,),
                title=session.title or generate_session_title(content),
            )
        )
        self._emit("message_added", session_id, {"message_id": message.id})
        return message

    def remove_message(self, session_id: str, message_id: str) -> bool:
        """Drop a message (cancellation rollback). Checkpoints are kept."""
        session = self.get(session_id)
        if session.find_message(message_id) is None:
            return False
        self._commit(session.without_message(message_id))
        return True

    def attach_response(self, session_id: str, message_id: str, response: Response) -> Response:
        """Append a new branch and select it. Assigns the generation number."""
        session, message = self._message(session_id, message_id)
        number = max((r.generation_number for r in message.responses), default=0) + 1
        response = response.model_copy(update={"generation_number": number})
        responses = message.responses + (response,)
        message = message.model_copy(
            update={"responses": responses, "current_response_index": len(responses) - 1}
        )
        self._commit(session.replace_message(message))
        self._emit(
            "response_updated",
            session_id,
            {"message_id": message_id, "response_id": response.id, "status": response.status},
        )
        return response

    def update_response(self, session_id: str, message_id: str, response: Response) -> None:
        """Replace a branch in place. Ignores branches that no longer exist."""
        session = self._sessions.get(session_id)
        message = session.find_message(message_id) if session else None
        if message is None or message.find_response(response.id) is None:
            logger.debug("Dropping update for vanished response %s", response.id)
            return
        responses = tuple(response if r.id == response.id else r for r in message.responses)
        self._commit(session.replace_message(message.model_copy(update={"responses": responses})))
        if response.is_terminal:
            self._turns.pop(response.id, None)
        self._emit(
            "response_updated",
            session_id,
            {"message_id": message_id, "response_id": response.id, "status": response.status},
        )

    def _remove_response(self, session_id: str, message_id: str, response_id: str) -> bool:
        session = self._sessions.get(session_id)
        message = session.find_message(message_id) if session else None
        if message is None or message.find_response(response_id) is None:
            return False
        responses = tuple(r for r in message.responses if r.id != response_id)
        message = message.model_copy(
            update={"responses": responses, "current_response_index": max(len(responses) - 1, 0)}
        )
        self._commit(session.replace_message(message))
        return True

    def set_current_response_index(self, session_id: str, message_id: str, index: int) -> bool:
        """Select a branch. Out-of-range indexes are ignored."""
        session, message = self._message(session_id, message_id)
        if not 0 <= index < len(message.responses):
            return False
        self._commit(
            session.replace_message(message.model_copy(update={"current_response_index": index}))
        )
        return True

    def navigate_response(
        self, session_id: str, message_id: str, direction: Literal["prev", "next"]
    ) -> bool:
        _, message = self._message(session_id, message_id)
        step = -1 if direction == "prev" else 1
        return self.set_current_response_index(
            session_id, message_id, message.current_response_index + step
        )

    def annotate_response(
        self, session_id: str, message_id: str, response_id: str, note: str
    ) -> Response:
        session, message = self._message(session_id, message_id)
        response = message.find_response(response_id)
        if response is None:
            raise MessageNotFoundError(f"Response {response_id} not in message {message_id}")
        response = response.model_copy(update={"note": note})
        responses = tuple(response if r.id == response_id else r for r in message.responses)
        self._commit(session.replace_message(message.model_copy(update={"responses": responses})))
        return response

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    async def create_checkpoint(
        self, session_id: str, reason: CheckpointReason = CheckpointReason.MANUAL
    ) -> Checkpoint | None:
        """Summarize the current context into a checkpoint on demand."""
        session = self.get(session_id)
        try:
            checkpoint = await self._policy.create_checkpoint(session, reason)
        except (SummarizationError, ConfigurationError) as e:
            self._set_error(session_id, f"Failed to create checkpoint: {e}")
            return None
        if checkpoint is not None:
            self._append_checkpoint(session_id, checkpoint)
        return checkpoint

    def _append_checkpoint(self, session_id: str, checkpoint: Checkpoint) -> None:
        self._commit(self.get(session_id).with_checkpoint(checkpoint))
        self._emit(
            "checkpoint_created",
            session_id,
            {"checkpoint_id": checkpoint.id, "reason": checkpoint.reason},
        )

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def send_turn(
        self,
        session_id: str,
        content: str,
        attachments: tuple[Attachment, ...] | list[Attachment] = (),
        *,
        job_id: str | None = None,
    ) -> TurnResult:
        """Checkpoint if needed, append the user message, run the job."""
        session = self.get(session_id)
        self.clear_error(session_id)
        try:
            client = self._scheduler.client_for(session.provider)
        except ConfigurationError as e:
            self._set_error(session_id, str(e))
            return TurnResult(session_id, error=str(e))

        decision = await self._policy.maybe_checkpoint(
            session, content, supports_history=client.supports_history
        )
        if decision.checkpoint is not None:
            self._append_checkpoint(session_id, decision.checkpoint)

        if decision.reason == CheckpointReason.MANUAL:
            if decision.checkpoint is None and session.messages:
                self._set_error(session_id, "Failed to create checkpoint")
            return TurnResult(session_id, checkpoint=decision.checkpoint, error=self.error(session_id))

        message = self.add_user_message(
            session_id,
            content,
            attachments,
            topic_changed=decision.topic_changed,
            topic_change_reasoning=decision.topic_reasoning,
        )
        result = await self._generate(session_id, message, created_message=True, job_id=job_id)
        result.checkpoint = decision.checkpoint
        return result

    async def regenerate(
        self, session_id: str, message_id: str, *, job_id: str | None = None
    ) -> TurnResult:
        """Run another generation for an existing turn as a new branch."""
        session, message = self._message(session_id, message_id)
        self.clear_error(session_id)
        try:
            self._scheduler.client_for(session.provider)
        except ConfigurationError as e:
            self._set_error(session_id, str(e))
            return TurnResult(session_id, error=str(e))
        return await self._generate(session_id, message, created_message=False, job_id=job_id)

    async def _generate(
        self,
        session_id: str,
        message: Message,
        *,
        created_message: bool,
        job_id: str | None,
    ) -> TurnResult:
        session = self.get(session_id)
        fields: dict[str, Any] = {
            "session_id": session_id,
            "message_id": message.id,
            "provider": session.provider,
            "model": session.model,
            "prompt": message.content,
            "history": tuple(self._assembler.build_context(session, message.id)),
            "system_prompt": session.system_prompt,
            "attachments": message.attachments,
            "parameters": session.parameters,
        }
        if job_id:
            fields["job_id"] = job_id
        request = GenerationRequest(**fields)
        self._turns[request.job_id] = _TurnHandle(session_id, message.id, created_message)

        try:
            response = await self._scheduler.run(request, self)
        except (ProviderError, ConfigurationError) as e:
            self._turns.pop(request.job_id, None)
            self._set_error(session_id, str(e))
            return TurnResult(
                session_id,
                job_id=request.job_id,
                message=self.get(session_id).find_message(message.id),
                error=str(e),
            )

        if response is None:
            return TurnResult(session_id, job_id=request.job_id, cancelled=True)
        if response.is_terminal:
            self._turns.pop(request.job_id, None)
        return TurnResult(
            session_id,
            job_id=request.job_id,
            message=self.get(session_id).find_message(message.id),
            response=response,
        )

    def cancel(self, job_id: str) -> bool:
        """Cancel a turn's job and roll back its placeholder.

        A fresh turn loses its message; a regenerate loses its branch.
        Completed jobs are no longer cancellable.
        """
        handle = self._turns.pop(job_id, None)
        stopped = self._scheduler.cancel(job_id)
        if handle is None:
            return stopped
        if handle.session_id in self._sessions:
            if handle.created_message:
                self.remove_message(handle.session_id, handle.message_id)
            else:
                self._remove_response(handle.session_id, handle.message_id, job_id)
        self._emit(
            "turn_cancelled",
            handle.session_id,
            {"job_id": job_id, "message_id": handle.message_id},
        )
        logger.info("Turn %s cancelled in session %s", job_id, handle.session_id)
        return True

    def cancel_session_jobs(self, session_id: str) -> int:
        return sum(1 for job_id in self.turn_jobs(session_id) if self.cancel(job_id))

    async def close(self) -> None:
        """Stop polling and wait for outstanding writes."""
        await self._scheduler.close()
        await self.flush()
