"""Shared fixtures: scripted providers, fake collaborators, in-memory repository."""

from __future__ import annotations

import asyncio

import pytest
import pytest_asyncio

from runback.config import Settings
from runback.engine.compaction import CheckpointPolicy, TopicClassification
from runback.engine.context import ContextAssembler
from runback.engine.scheduler import GenerationJobScheduler
from runback.engine.schemas import (
    Completed,
    ContextEntry,
    ExecutionMode,
    JobStatus,
    Message,
    Response,
    Session,
)
from runback.engine.store import SessionStore
from runback.engine.visibility import VisibilityTracker
from runback.errors import SummarizationError
from runback.providers.base import FetchResult, PollResult, ProviderRegistry, Submission, SyncResult

# ---------------------------------------------------------------------------
# Scripted providers
# ---------------------------------------------------------------------------


class FakeSyncProvider:
    """Synchronous provider returning canned replies.

    Set ``gate`` to an asyncio.Event to hold send_sync() until it is set.
    """

    name = "openrouter"
    mode = ExecutionMode.SYNCHRONOUS
    supports_history = True

    def __init__(self, replies: list[str] | None = None) -> None:
        self.replies = list(replies or [])
        self.requests = []
        self.error: Exception | None = None
        self.gate: asyncio.Event | None = None

    async def send_sync(self, request):
        self.requests.append(request)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        content = self.replies.pop(0) if self.replies else f"reply {len(self.requests)}"
        return SyncResult(content=content, token_count=7, latency_ms=3)

    async def submit_queued(self, request):
        raise NotImplementedError

    async def poll_status(self, request_id):
        raise NotImplementedError

    async def fetch_result(self, request_id):
        raise NotImplementedError


class FakeQueuedProvider:
    """Queued provider replaying a script of poll results.

    Script items are PollResult or Exception. Once the script is used up
    every poll reports ``idle_status`` (queued by default). ``result`` may
    be an Exception to make fetch_result() fail. Set ``gate`` to hold
    submit_queued() and ``submit_error`` to make it raise.
    """

    name = "fal"
    mode = ExecutionMode.QUEUED
    supports_history = False

    def __init__(
        self,
        polls: list[PollResult | Exception] | None = None,
        result: FetchResult | Exception | None = None,
        request_id: str | None = None,
    ) -> None:
        self.polls = list(polls or [])
        self.result = result or FetchResult(content="done")
        self.request_id = request_id
        self.idle_status = JobStatus.QUEUED
        self.submitted = []
        self.poll_calls: list[str] = []
        self.fetch_calls: list[str] = []
        self.gate: asyncio.Event | None = None
        self.submit_error: Exception | None = None

    async def send_sync(self, request):
        raise NotImplementedError

    async def submit_queued(self, request):
        self.submitted.append(request)
        if self.gate is not None:
            await self.gate.wait()
        if self.submit_error is not None:
            raise self.submit_error
        return Submission(request_id=self.request_id or f"req-{len(self.submitted)}")

    async def poll_status(self, request_id):
        self.poll_calls.append(request_id)
        item = self.polls.pop(0) if self.polls else PollResult(status=self.idle_status)
        if isinstance(item, Exception):
            raise item
        return item

    async def fetch_result(self, request_id):
        self.fetch_calls.append(request_id)
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------


class FakeClassifier:
    def __init__(self, changed: bool = False, reasoning: str | None = None) -> None:
        self.changed = changed
        self.reasoning = reasoning
        self.error: Exception | None = None
        self.calls: list[tuple[str, list[ContextEntry]]] = []

    async def classify(self, new_input, recent_turns):
        self.calls.append((new_input, list(recent_turns)))
        if self.error is not None:
            raise self.error
        return TopicClassification(changed=self.changed, reasoning=self.reasoning)


class FakeSummarizer:
    def __init__(self, summary: str = "summary of the chat") -> None:
        self.summary = summary
        self.fail = False
        self.calls: list[list[ContextEntry]] = []

    async def summarize(self, turns):
        self.calls.append(list(turns))
        if self.fail:
            raise SummarizationError("summarizer down")
        return self.summary


class FakeRepository:
    """In-memory durable store."""

    def __init__(self, sessions: list[Session] | None = None) -> None:
        self.saved: dict[str, Session] = {s.id: s for s in sessions or []}
        self.save_count = 0
        self.deleted: list[str] = []
        self.fail = False

    async def save(self, session):
        if self.fail:
            raise RuntimeError("disk full")
        self.save_count += 1
        self.saved[session.id] = session

    async def load_all(self, *, include_closed=True):
        sessions = sorted(self.saved.values(), key=lambda s: s.updated_at, reverse=True)
        return [s for s in sessions if include_closed or not s.is_closed]

    async def delete(self, session_id):
        self.deleted.append(session_id)
        return self.saved.pop(session_id, None) is not None

    async def delete_unstarred(self):
        doomed = [sid for sid, s in self.saved.items() if not s.is_starred]
        for sid in doomed:
            del self.saved[sid]
        return len(doomed)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_message(content: str, reply: str | None = None) -> Message:
    """User turn, optionally with one completed branch."""
    responses = ()
    if reply is not None:
        responses = (
            Response(
                provider="openrouter",
                model="test/model",
                generation_number=1,
                state=Completed(content=reply),
            ),
        )
    return Message(content=content, responses=responses)


def make_session(*turns: tuple[str, str | None], **fields) -> Session:
    fields.setdefault("provider", "openrouter")
    fields.setdefault("model", "test/model")
    return Session(messages=tuple(make_message(c, r) for c, r in turns), **fields)


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll ``predicate`` until true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("condition not reached in time")
        await asyncio.sleep(0.005)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        db_path=str(tmp_path / "runback-test.db"),
        openrouter_api_key="or-test-key",
        fal_api_key="fal-test-key",
        poll_interval=0.01,
    )


@pytest.fixture
def assembler() -> ContextAssembler:
    return ContextAssembler()


@pytest.fixture
def visibility() -> VisibilityTracker:
    return VisibilityTracker()


@pytest.fixture
def sync_provider() -> FakeSyncProvider:
    return FakeSyncProvider()


@pytest.fixture
def queued_provider() -> FakeQueuedProvider:
    return FakeQueuedProvider()


@pytest.fixture
def providers(sync_provider, queued_provider) -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register(sync_provider)
    registry.register(queued_provider)
    return registry


@pytest_asyncio.fixture
async def scheduler(settings, providers, visibility):
    s = GenerationJobScheduler(settings, providers, visibility)
    yield s
    await s.close()


@pytest.fixture
def classifier() -> FakeClassifier:
    return FakeClassifier()


@pytest.fixture
def summarizer() -> FakeSummarizer:
    return FakeSummarizer()


@pytest.fixture
def policy(settings, assembler, classifier, summarizer) -> CheckpointPolicy:
    return CheckpointPolicy(settings, assembler, classifier=classifier, summarizer=summarizer)


@pytest.fixture
def repository() -> FakeRepository:
    return FakeRepository()


@pytest_asyncio.fixture
async def store(settings, scheduler, policy, assembler, repository):
    s = SessionStore(settings, scheduler, policy, assembler, repository=repository)
    yield s
    await s.close()
