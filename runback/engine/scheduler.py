"""Generation job scheduler: runs one response attempt per request.

Two execution modes, picked from the provider client:
  synchronous: one round trip; the Response is created already completed
  queued: submit -> pending Response -> fixed-interval poll loop -> fetch

Poll loops are asyncio tasks held in a PollRegistry owned by the
scheduler. At most one loop exists per response id, and close(id) is the
only way to remove one. Hidden responses (per VisibilityTracker) skip
their tick's network work but keep the loop alive.

Cancellation is local: the loop is stopped and any result that arrives
later is discarded. Network requests already in flight are not aborted.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from dataclasses import dataclass
from typing import Any, Protocol

from runback.config import Settings
from runback.engine.schemas import (
    Completed,
    ExecutionMode,
    Failed,
    GenerationRequest,
    JobState,
    JobStatus,
    Pending,
    Response,
    ResponseMetadata,
    progress,
    transition,
)
from runback.engine.visibility import VisibilityTracker
from runback.errors import InvalidTransitionError, PollingError, TimerExistsError
from runback.providers.base import FetchResult, PollResult, ProviderClient, ProviderRegistry

logger = logging.getLogger(__name__)


class ResponseSink(Protocol):
    """Where the scheduler hands Responses to. Implemented by SessionStore."""

    def attach_response(self, session_id: str, message_id: str, response: Response) -> Response: ...

    def update_response(self, session_id: str, message_id: str, response: Response) -> None: ...


# ------------------------------------------------------------------
# Poll registry
# ------------------------------------------------------------------


class PollRegistry:
    """Active poll loops keyed by response id."""

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task] = {}

    def open(self, response_id: str, loop: Coroutine[Any, Any, None]) -> asyncio.Task:
        """Start a poll loop. Refuses a second loop for the same id."""
        if response_id in self._tasks:
            loop.close()
            raise TimerExistsError(f"Poll loop already running for response {response_id}")
        task = asyncio.create_task(loop, name=f"poll-{response_id}")
        self._tasks[response_id] = task
        return task

    def close(self, response_id: str, *, owner: asyncio.Task | None = None) -> bool:
        """Stop and remove the loop for ``response_id``.

        With ``owner`` set, only removes the entry if it still belongs to that
        task (a loop finishing on its own must not close a newer loop).
        """
        task = self._tasks.get(response_id)
        if task is None or (owner is not None and task is not owner):
            return False
        del self._tasks[response_id]
        if not task.done() and task is not asyncio.current_task():
            task.cancel()
        return True

    def close_all(self) -> list[asyncio.Task]:
        tasks = list(self._tasks.values())
        for response_id in list(self._tasks):
            self.close(response_id)
        return tasks

    def get(self, response_id: str) -> asyncio.Task | None:
        return self._tasks.get(response_id)

    def __contains__(self, response_id: object) -> bool:
        return response_id in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    @property
    def active_ids(self) -> list[str]:
        return list(self._tasks)


# ------------------------------------------------------------------
# Scheduler
# ------------------------------------------------------------------


@dataclass
class _Job:
    job_id: str
    session_id: str
    message_id: str
    sink: ResponseSink
    response: Response | None = None
    wanted: bool = True
    visible: bool = True

    def on_visibility(self, response_id: str, visible: bool) -> None:
        self.visible = visible


class GenerationJobScheduler:
    """Owns the lifecycle of generation attempts and their poll loops."""

    def __init__(
        self,
        settings: Settings,
        providers: ProviderRegistry,
        visibility: VisibilityTracker,
    ) -> None:
        self._settings = settings
        self._providers = providers
        self._visibility = visibility
        self._jobs: dict[str, _Job] = {}
        self.registry = PollRegistry()

    def client_for(self, provider: str) -> ProviderClient:
        """Look up a provider client. Raises ConfigurationError if missing."""
        return self._providers.get(provider)

    @property
    def active_jobs(self) -> list[str]:
        return list(self._jobs)

    async def run(self, request: GenerationRequest, sink: ResponseSink) -> Response | None:
        """Run one generation attempt.

        Returns the attached Response (completed for synchronous providers,
        pending for queued ones) or None when the job was cancelled first.
        Synchronous provider failures propagate as ProviderError.
        """
        client = self.client_for(request.provider)
        job = _Job(
            job_id=request.job_id,
            session_id=request.session_id,
            message_id=request.message_id,
            sink=sink,
        )
        self._jobs[job.job_id] = job
        logger.info(
            "Job %s started (%s/%s, %s)",
            job.job_id,
            request.provider,
            request.model,
            client.mode,
        )

        if client.mode == ExecutionMode.QUEUED:
            return await self._run_queued(client, request, job)
        try:
            return await self._run_sync(client, request, job)
        finally:
            self._jobs.pop(job.job_id, None)

    async def _run_sync(
        self, client: ProviderClient, request: GenerationRequest, job: _Job
    ) -> Response | None:
        try:
            result = await client.send_sync(request)
        except Exception as e:
            if not job.wanted:
                logger.info("Ignoring failure of cancelled job %s: %s", job.job_id, e)
                return None
            raise
        if not job.wanted:
            logger.info("Discarding result of cancelled job %s", job.job_id)
            return None
        response = Response(
            id=job.job_id,
            provider=request.provider,
            model=request.model,
            state=Completed(content=result.content),
            metadata=ResponseMetadata(
                token_count=result.token_count,
                latency_ms=result.latency_ms,
            ),
        )
        return job.sink.attach_response(job.session_id, job.message_id, response)

    async def _run_queued(
        self, client: ProviderClient, request: GenerationRequest, job: _Job
    ) -> Response | None:
        try:
            submission = await client.submit_queued(request)
        except Exception as e:
            self._jobs.pop(job.job_id, None)
            if not job.wanted:
                logger.info("Ignoring failure of cancelled job %s: %s", job.job_id, e)
                return None
            raise
        except BaseException:
            self._jobs.pop(job.job_id, None)
            raise
        if not job.wanted:
            logger.info(
                "Job %s cancelled during submission, dropping request %s",
                job.job_id,
                submission.request_id,
            )
            return None

        response = Response(
            id=job.job_id,
            provider=request.provider,
            model=request.model,
            state=Pending(),
            request_id=submission.request_id,
        )
        job.response = job.sink.attach_response(job.session_id, job.message_id, response)
        self._start_polling(client, job)
        return job.response

    def resume(
        self,
        session_id: str,
        message_id: str,
        response: Response,
        sink: ResponseSink,
    ) -> bool:
        """Re-arm polling for a non-terminal queued Response loaded from storage."""
        if response.is_terminal or not response.request_id:
            return False
        if response.id in self.registry:
            return False
        client = self.client_for(response.provider)
        job = _Job(
            job_id=response.id,
            session_id=session_id,
            message_id=message_id,
            sink=sink,
            response=response,
        )
        self._jobs[job.job_id] = job
        self._start_polling(client, job)
        logger.info("Resumed polling for response %s (%s)", response.id, response.status)
        return True

    def _start_polling(self, client: ProviderClient, job: _Job) -> None:
        response_id = job.response.id
        self.registry.open(response_id, self._poll_loop(client, job))
        job.visible = self._visibility.is_visible(response_id)
        self._visibility.subscribe(response_id, job.on_visibility)

    async def _poll_loop(self, client: ProviderClient, job: _Job) -> None:
        """Fixed-interval poll loop. Ends on a terminal state or cancellation."""
        response_id = job.response.id
        try:
            while job.wanted:
                await asyncio.sleep(self._settings.poll_interval)
                if not job.wanted:
                    break
                if not job.visible:
                    logger.debug("Response %s hidden, skipping poll", response_id)
                    continue
                if await self._poll_once(client, job):
                    break
        finally:
            self.registry.close(response_id, owner=asyncio.current_task())
            self._visibility.unsubscribe(response_id, job.on_visibility)
            self._visibility.forget(response_id)
            if self._jobs.get(job.job_id) is job:
                del self._jobs[job.job_id]

    async def _poll_once(self, client: ProviderClient, job: _Job) -> bool:
        """One tick of network work. Returns True when the loop should stop."""
        current = job.response
        try:
            poll, result = await self._fetch(client, current.request_id)
        except PollingError as e:
            if not job.wanted:
                return True
            logger.warning("Response %s failed: %s", current.id, e)
            self._apply(job, Failed(error=str(e), logs=current.logs))
            return True

        if not job.wanted:
            logger.info("Discarding poll result of cancelled job %s", job.job_id)
            return True

        logs = tuple(poll.logs) or current.logs
        if result is not None:
            self._apply(
                job,
                Completed(
                    content=result.content,
                    media=tuple(result.media_assets),
                    logs=logs,
                ),
            )
            return True
        if poll.status == JobStatus.FAILED:
            self._apply(job, Failed(error=poll.error or "Generation failed", logs=logs))
            return True

        state = progress(current.state, poll.status, tuple(poll.logs))
        if state != current.state:
            self._apply(job, state)
        return False

    @staticmethod
    async def _fetch(
        client: ProviderClient, request_id: str
    ) -> tuple[PollResult, FetchResult | None]:
        """Status poll, plus the final result once completed."""
        try:
            poll = await client.poll_status(request_id)
            result = None
            if poll.status == JobStatus.COMPLETED:
                result = await client.fetch_result(request_id)
            return poll, result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise PollingError(str(e)) from e

    def _apply(self, job: _Job, state: JobState) -> None:
        try:
            transition(job.response.state, state)
        except InvalidTransitionError:
            logger.exception("Rejected state change for response %s", job.response.id)
            return
        job.response = job.response.model_copy(update={"state": state})
        job.sink.update_response(job.session_id, job.message_id, job.response)
        logger.debug("Response %s -> %s", job.response.id, state.status)

    def cancel(self, job_id: str) -> bool:
        """Stop a job's poll loop and discard anything it produces later."""
        job = self._jobs.pop(job_id, None)
        closed = self.registry.close(job_id)
        if job is None:
            return closed
        job.wanted = False
        self._visibility.forget(job_id)
        logger.info("Job %s cancelled", job_id)
        return True

    async def wait(self, job_id: str) -> None:
        """Wait until the poll loop for ``job_id`` has ended (if any)."""
        task = self.registry.get(job_id)
        if task is not None:
            await asyncio.wait({task})

    async def close(self) -> None:
        """Stop every poll loop (shutdown)."""
        for job in self._jobs.values():
            job.wanted = False
        tasks = self.registry.close_all()
        self._jobs.clear()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Scheduler stopped (%d poll loops closed)", len(tasks))
