"""Tests for SessionStore: turns, branches, checkpoints, cancellation, persistence."""

import asyncio
import logging

import pytest

from runback.engine.context import SUMMARY_PREFIX
from runback.engine.schemas import (
    ARCHIVE_VERSION,
    CheckpointReason,
    ContextEntry,
    JobStatus,
    Queued,
    Response,
    SessionArchive,
)
from runback.engine.store import SessionStore, generate_session_title
from runback.errors import (
    MessageNotFoundError,
    ProviderError,
    SessionNotFoundError,
    StarredSessionError,
)
from runback.events import EventBus
from runback.providers.base import PollResult

from tests.conftest import FakeRepository, make_session, wait_until


def _status(store, session_id, message_id, index=-1):
    return store.get(session_id).find_message(message_id).responses[index].status


class TestTitles:
    def test_short_message_used_verbatim(self):
        assert generate_session_title("Plan a trip") == "Plan a trip"

    def test_long_message_truncated(self):
        text = "x" * 50
        assert generate_session_title(text) == "x" * 40 + "..."

    def test_default_title(self):
        assert generate_session_title().startswith("Chat ")

    async def test_first_message_titles_session(self, store):
        session = store.create_session("openrouter", "test/model")
        assert session.title is None
        await store.send_turn(session.id, "What is the capital of France?")
        await store.send_turn(session.id, "And Spain?")
        assert store.get(session.id).title == "What is the capital of France?"


class TestSendTurn:
    async def test_synchronous_turn(self, store, sync_provider):
        sync_provider.replies = ["Paris"]
        session = store.create_session("openrouter", "test/model", system_prompt="Be brief")

        result = await store.send_turn(session.id, "Capital of France?")

        assert result.error is None
        assert result.response.status == JobStatus.COMPLETED
        message = store.get(session.id).messages[0]
        assert message.current_response.content == "Paris"
        assert message.current_response.generation_number == 1
        assert message.current_response_index == 0
        request = sync_provider.requests[0]
        assert request.prompt == "Capital of France?"
        assert request.history == ()
        assert request.system_prompt == "Be brief"

    async def test_history_excludes_current_turn(self, store, sync_provider):
        sync_provider.replies = ["one", "two"]
        session = store.create_session("openrouter", "test/model")
        await store.send_turn(session.id, "first")
        await store.send_turn(session.id, "second")

        assert sync_provider.requests[1].history == (
            ContextEntry("user", "first"),
            ContextEntry("assistant", "one"),
        )

    async def test_provider_error_goes_to_error_slot(self, store, sync_provider):
        sync_provider.error = ProviderError("OpenRouter API error (401): bad key", status_code=401)
        session = store.create_session("openrouter", "test/model")

        result = await store.send_turn(session.id, "hello")

        assert "bad key" in result.error
        assert store.error(session.id) == result.error
        message = store.get(session.id).messages[0]
        assert message.responses == ()

    async def test_error_cleared_on_next_turn(self, store, sync_provider):
        sync_provider.error = ProviderError("boom")
        session = store.create_session("openrouter", "test/model")
        await store.send_turn(session.id, "hello")
        sync_provider.error = None
        await store.send_turn(session.id, "again")
        assert store.error(session.id) is None

    async def test_unconfigured_provider(self, store):
        session = store.create_session("replicate", "some/model")

        result = await store.send_turn(session.id, "hello")

        assert "not configured" in result.error
        assert store.get(session.id).messages == ()

    async def test_unknown_session(self, store):
        with pytest.raises(SessionNotFoundError):
            await store.send_turn("nope", "hello")

    async def test_queued_turn_completes(self, store, queued_provider):
        queued_provider.polls = [
            PollResult(status=JobStatus.IN_PROGRESS, logs=["rendering"]),
            PollResult(status=JobStatus.COMPLETED),
        ]
        session = store.create_session("fal", "fal-ai/flux")

        result = await store.send_turn(session.id, "a red fox")
        assert result.response.status == JobStatus.PENDING

        message_id = result.message.id
        await wait_until(lambda: _status(store, session.id, message_id) == JobStatus.COMPLETED)
        response = store.get(session.id).messages[0].current_response
        assert response.content == "done"
        assert response.logs == ("rendering",)
        assert store.turn_jobs(session.id) == []

    async def test_queued_provider_gets_no_history(self, store, queued_provider):
        session = store.create_session("fal", "fal-ai/flux")
        await store.send_turn(session.id, "first")
        await store.send_turn(session.id, "second")
        assert queued_provider.submitted[1].prompt == "second"


class TestCheckpointsInTurns:
    async def test_manual_command_creates_checkpoint_only(self, store, summarizer):
        session = store.create_session("openrouter", "test/model")
        await store.send_turn(session.id, "hello")

        result = await store.send_turn(session.id, "/checkpoint")

        current = store.get(session.id)
        assert result.checkpoint.reason == CheckpointReason.MANUAL
        assert len(current.messages) == 1
        assert current.checkpoints[0].last_message_id == current.messages[0].id
        assert len(summarizer.calls) == 1

    async def test_manual_command_on_empty_session(self, store):
        session = store.create_session("openrouter", "test/model")
        result = await store.send_turn(session.id, "/checkpoint")
        assert result.checkpoint is None
        assert result.error is None
        assert store.get(session.id).messages == ()

    async def test_manual_command_summarizer_failure(self, store, summarizer):
        session = store.create_session("openrouter", "test/model")
        await store.send_turn(session.id, "hello")
        summarizer.fail = True

        result = await store.send_turn(session.id, "/checkpoint")

        assert result.error is not None
        assert store.get(session.id).checkpoints == ()

    async def test_token_limit_checkpoint_before_turn(self, store, sync_provider, summarizer):
        sync_provider.replies = ["ok", "ok"]
        session = store.create_session("openrouter", "test/model", context_length=20)
        await store.send_turn(session.id, "hello")

        result = await store.send_turn(session.id, "x" * 80)

        assert result.checkpoint.reason == CheckpointReason.TOKEN_LIMIT
        current = store.get(session.id)
        assert current.checkpoints[0].last_message_id == current.messages[0].id
        assert sync_provider.requests[1].history == (
            ContextEntry("system", SUMMARY_PREFIX + summarizer.summary),
        )

    async def test_topic_change_flags_message(self, store, classifier, summarizer):
        session = store.create_session("openrouter", "test/model", context_length=20)
        await store.send_turn(session.id, "hello")
        classifier.changed = True
        classifier.reasoning = "switched to cooking"

        # Long enough to also exceed the token limit
        result = await store.send_turn(session.id, "x" * 80)

        current = store.get(session.id)
        assert len(current.checkpoints) == 1
        assert current.checkpoints[0].reason == CheckpointReason.TOPIC_CHANGE
        assert result.message.topic_changed
        assert result.message.topic_change_reasoning == "switched to cooking"
        assert len(summarizer.calls) == 1

    async def test_manual_checkpoint_operation(self, store):
        session = store.create_session("openrouter", "test/model")
        assert await store.create_checkpoint(session.id) is None
        await store.send_turn(session.id, "hello")
        checkpoint = await store.create_checkpoint(session.id)
        assert store.get(session.id).checkpoints == (checkpoint,)


class TestBranches:
    async def test_regenerate_adds_branch(self, store, sync_provider):
        sync_provider.replies = ["first", "second"]
        session = store.create_session("openrouter", "test/model")
        result = await store.send_turn(session.id, "hello")

        again = await store.regenerate(session.id, result.message.id)

        message = store.get(session.id).messages[0]
        assert [r.generation_number for r in message.responses] == [1, 2]
        assert message.current_response_index == 1
        assert again.response.content == "second"
        assert sync_provider.requests[1].history == sync_provider.requests[0].history

    async def test_regenerate_unknown_message(self, store):
        session = store.create_session("openrouter", "test/model")
        with pytest.raises(MessageNotFoundError):
            await store.regenerate(session.id, "missing")

    async def test_navigation(self, store):
        session = store.create_session("openrouter", "test/model")
        result = await store.send_turn(session.id, "hello")
        await store.regenerate(session.id, result.message.id)
        mid = result.message.id

        assert store.navigate_response(session.id, mid, "prev")
        assert store.get(session.id).messages[0].current_response_index == 0
        assert not store.navigate_response(session.id, mid, "prev")
        assert not store.set_current_response_index(session.id, mid, 5)
        assert store.set_current_response_index(session.id, mid, 1)
        assert store.get(session.id).messages[0].current_response_index == 1

    async def test_annotate_response(self, store):
        session = store.create_session("openrouter", "test/model")
        result = await store.send_turn(session.id, "hello")
        store.annotate_response(session.id, result.message.id, result.response.id, "keep this")
        assert store.get(session.id).messages[0].current_response.note == "keep this"

    async def test_generation_numbers_unique_after_cancel(self, store):
        session = store.create_session("fal", "fal-ai/flux")
        first = await store.send_turn(session.id, "a cat")
        second = await store.regenerate(session.id, first.message.id)
        store.cancel(second.job_id)
        await store.regenerate(session.id, first.message.id)

        numbers = [r.generation_number for r in store.get(session.id).messages[0].responses]
        assert numbers == sorted(set(numbers))
        assert len(numbers) == 2


class TestCancel:
    async def test_cancel_queued_turn_removes_message(self, store, scheduler, queued_provider):
        session = store.create_session("fal", "fal-ai/flux")
        await store.send_turn(session.id, "earlier")
        before = len(store.get(session.id).messages)

        result = await store.send_turn(session.id, "a red fox")
        message_id = result.message.id
        await wait_until(lambda: _status(store, session.id, message_id) == JobStatus.QUEUED)

        assert store.cancel(result.job_id)

        assert len(store.get(session.id).messages) == before
        assert result.job_id not in scheduler.registry
        assert result.job_id not in scheduler.active_jobs

    async def test_cancel_synchronous_turn_in_flight(self, store, sync_provider):
        sync_provider.gate = asyncio.Event()
        session = store.create_session("openrouter", "test/model")

        task = asyncio.create_task(store.send_turn(session.id, "hello", job_id="job-1"))
        await wait_until(lambda: sync_provider.requests)
        assert len(store.get(session.id).messages) == 1

        assert store.cancel("job-1")
        sync_provider.gate.set()
        result = await task

        assert result.cancelled
        assert result.error is None
        assert store.get(session.id).messages == ()

    async def test_provider_failure_after_cancel_not_reported(self, store, sync_provider):
        sync_provider.gate = asyncio.Event()
        sync_provider.error = ProviderError("connection reset")
        session = store.create_session("openrouter", "test/model")

        task = asyncio.create_task(store.send_turn(session.id, "hello", job_id="job-1"))
        await wait_until(lambda: sync_provider.requests)
        assert store.cancel("job-1")
        sync_provider.gate.set()
        result = await task

        assert result.cancelled
        assert result.error is None
        assert store.error(session.id) is None
        assert store.get(session.id).messages == ()

    async def test_queued_submit_failure_after_cancel_not_reported(self, store, queued_provider):
        queued_provider.gate = asyncio.Event()
        queued_provider.submit_error = ProviderError("connection reset")
        session = store.create_session("fal", "fal-ai/flux")

        task = asyncio.create_task(store.send_turn(session.id, "a fox", job_id="job-2"))
        await wait_until(lambda: queued_provider.submitted)
        assert store.cancel("job-2")
        queued_provider.gate.set()
        result = await task

        assert result.cancelled
        assert store.error(session.id) is None
        assert store.get(session.id).messages == ()

    async def test_cancel_regenerate_removes_only_branch(self, store, queued_provider):
        session = store.create_session("fal", "fal-ai/flux")
        first = await store.send_turn(session.id, "a cat")
        second = await store.regenerate(session.id, first.message.id)

        store.cancel(second.job_id)

        message = store.get(session.id).messages[0]
        assert [r.id for r in message.responses] == [first.response.id]
        assert message.current_response_index == 0

    async def test_cancel_keeps_checkpoints(self, store, assembler):
        session = store.create_session("fal", "fal-ai/flux")
        result = await store.send_turn(session.id, "a cat")
        await store.create_checkpoint(session.id)

        store.cancel(result.job_id)

        current = store.get(session.id)
        assert current.messages == ()
        assert len(current.checkpoints) == 1
        assert assembler.build_context(current) == []

    async def test_cancel_completed_job_is_noop(self, store):
        session = store.create_session("openrouter", "test/model")
        result = await store.send_turn(session.id, "hello")
        assert not store.cancel(result.job_id)
        assert len(store.get(session.id).messages) == 1

    async def test_cancel_session_jobs(self, store, scheduler):
        session = store.create_session("fal", "fal-ai/flux")
        await store.send_turn(session.id, "one")
        await store.send_turn(session.id, "two")
        assert store.cancel_session_jobs(session.id) == 2
        assert store.get(session.id).messages == ()
        assert len(scheduler.registry) == 0


class TestSessionLifecycle:
    async def test_open_limit_closes_oldest(self, store, settings):
        for i in range(settings.max_open_sessions + 1):
            store.create_session("openrouter", f"model-{i}")
        assert len(store.open_sessions()) == settings.max_open_sessions
        assert len(store.sessions) == settings.max_open_sessions + 1

    async def test_close_reopen_star_rename(self, store):
        session = store.create_session("openrouter", "test/model")
        assert store.close_session(session.id).is_closed
        assert not store.reopen_session(session.id).is_closed
        assert store.toggle_star(session.id)
        assert store.rename_session(session.id, "Trip").title == "Trip"

    async def test_update_settings(self, store):
        session = store.create_session("openrouter", "test/model")
        updated = store.update_session_settings(session.id, model="other/model", context_length=4096)
        assert updated.model == "other/model"
        assert updated.context_length == 4096
        with pytest.raises(ValueError):
            store.update_session_settings(session.id, is_starred=True)

    async def test_update_settings_validates_values(self, store, sync_provider):
        session = store.create_session("openrouter", "test/model")
        with pytest.raises(ValueError):
            store.update_session_settings(session.id, context_length="big")
        with pytest.raises(ValueError):
            store.update_session_settings(session.id, parameters=["temperature"])

        assert store.get(session.id).context_length is None
        result = await store.send_turn(session.id, "still works")
        assert result.error is None

    async def test_starred_session_not_deleted(self, store, repository):
        session = store.create_session("openrouter", "test/model")
        store.toggle_star(session.id)
        with pytest.raises(StarredSessionError):
            await store.delete_session(session.id)

    async def test_delete_session(self, store, repository):
        session = store.create_session("openrouter", "test/model")
        await store.flush()
        await store.delete_session(session.id)
        assert repository.deleted == [session.id]
        assert session.id not in repository.saved
        with pytest.raises(SessionNotFoundError):
            store.get(session.id)

    async def test_delete_unstarred(self, store, repository):
        keep = store.create_session("openrouter", "a")
        store.toggle_star(keep.id)
        store.create_session("openrouter", "b")
        await store.flush()

        await store.delete_unstarred()

        assert [s.id for s in store.sessions] == [keep.id]
        assert list(repository.saved) == [keep.id]


class TestArchive:
    async def test_export_holds_every_session(self, store):
        first = store.create_session("openrouter", "test/model")
        second = store.create_session("fal", "fal-ai/flux")
        store.close_session(first.id)

        archive = store.export_sessions()

        assert archive.version == ARCHIVE_VERSION
        assert {s.id for s in archive.sessions} == {first.id, second.id}

    async def test_merge_skips_known_ids(self, store, repository):
        kept = store.create_session("openrouter", "test/model")
        store.rename_session(kept.id, "Local title")
        incoming = make_session(("hello", "hi"), title="Imported")
        clash = make_session(id=kept.id, title="Archived title")

        added = await store.import_sessions(SessionArchive(sessions=(incoming, clash)))
        await store.flush()

        assert added == 1
        assert store.get(kept.id).title == "Local title"
        assert store.get(incoming.id).messages[0].content == "hello"
        assert incoming.id in repository.saved

    async def test_replace_drops_current_sessions(self, store, repository):
        old = store.create_session("openrouter", "test/model")
        store.toggle_star(old.id)
        incoming = make_session(("hello", "hi"))

        added = await store.import_sessions(SessionArchive(sessions=(incoming,)), "replace")
        await store.flush()

        assert added == 1
        assert [s.id for s in store.sessions] == [incoming.id]
        assert old.id in repository.deleted
        assert set(repository.saved) == {incoming.id}

    async def test_import_respects_open_limit(self, store, settings):
        archive = SessionArchive(
            sessions=tuple(make_session() for _ in range(settings.max_open_sessions + 2))
        )

        await store.import_sessions(archive)

        assert len(store.open_sessions()) == settings.max_open_sessions

    async def test_unknown_mode(self, store):
        with pytest.raises(ValueError):
            await store.import_sessions(SessionArchive(), "overwrite")

    def test_newer_archive_version_rejected(self):
        with pytest.raises(ValueError):
            SessionArchive.model_validate({"version": ARCHIVE_VERSION + 1, "sessions": []})


class TestPersistence:
    async def test_latest_value_saved(self, store, repository):
        session = store.create_session("openrouter", "test/model")
        await store.send_turn(session.id, "hello")
        await store.flush()
        assert repository.saved[session.id] == store.get(session.id)

    async def test_save_failure_logged_not_raised(self, store, repository, caplog):
        repository.fail = True
        with caplog.at_level(logging.ERROR):
            session = store.create_session("openrouter", "test/model")
            await store.flush()
        assert store.get(session.id) == session
        assert "Failed to save session" in caplog.text

    async def test_load_resumes_queued_jobs(
        self, settings, scheduler, policy, assembler, queued_provider
    ):
        queued_provider.polls = [PollResult(status=JobStatus.COMPLETED)]
        stored = make_session(("a fox", None), provider="fal", model="fal-ai/flux")
        message = stored.messages[0]
        pending = Response(
            provider="fal", model="fal-ai/flux", generation_number=1, state=Queued(), request_id="req-7"
        )
        stored = stored.replace_message(message.model_copy(update={"responses": (pending,)}))
        store = SessionStore(
            settings, scheduler, policy, assembler, repository=FakeRepository([stored])
        )

        loaded = await store.load_sessions()

        assert [s.id for s in loaded] == [stored.id]
        await wait_until(lambda: _status(store, stored.id, message.id) == JobStatus.COMPLETED)
        assert queued_provider.poll_calls == ["req-7"]
        await store.close()

    async def test_load_enforces_open_limit(self, settings, scheduler, policy, assembler):
        sessions = [make_session(model=f"m{i}") for i in range(settings.max_open_sessions + 2)]
        store = SessionStore(
            settings, scheduler, policy, assembler, repository=FakeRepository(sessions)
        )
        await store.load_sessions()
        assert len(store.open_sessions()) == settings.max_open_sessions
        await store.close()


class TestEvents:
    async def test_mutations_publish_events(self, settings, scheduler, policy, assembler):
        bus = EventBus()
        seen = []

        async def record(event):
            seen.append(event)

        for event_type in ("message_added", "response_updated", "turn_cancelled"):
            bus.on(event_type, record)
        await bus.start()
        store = SessionStore(settings, scheduler, policy, assembler, bus=bus)

        session = store.create_session("fal", "fal-ai/flux")
        result = await store.send_turn(session.id, "a cat")
        store.cancel(result.job_id)
        await bus.stop()

        types = [e.type for e in seen]
        assert types[:2] == ["message_added", "response_updated"]
        assert types[-1] == "turn_cancelled"
        assert all(e.session_id == session.id for e in seen)
