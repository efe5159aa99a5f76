"""Runback entry point.

Initializes all components and starts the server:
  Settings -> Database -> Providers -> Scheduler -> SessionStore -> App -> Uvicorn

Uses Starlette lifespan to manage component lifecycle on the same
event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
import uvicorn
from starlette.applications import Starlette

from runback.config import Settings
from runback.engine.compaction import CheckpointPolicy
from runback.engine.context import ContextAssembler
from runback.engine.scheduler import GenerationJobScheduler
from runback.engine.store import SessionStore
from runback.engine.visibility import VisibilityTracker
from runback.events import EventBus
from runback.handlers import LLMSummarizer, LLMTopicClassifier
from runback.providers import build_providers
from runback.providers.openrouter import OpenRouterClient
from runback.storage import Database, SessionRepository

logger = logging.getLogger(__name__)


async def create_components(settings: Settings) -> dict:
    """Initialize all components in dependency order.

    Returns dict with all components for lifespan storage.

    1. Database - SQLite file, tables created on connect
    2. Providers - one client per configured credential
    3. Collaborators - summarizer + topic classifier (need OpenRouter)
    4. Scheduler - generation jobs and poll loops
    5. SessionStore - loads persisted sessions, resumes queued jobs
    """
    database = Database(settings)
    await database.connect()
    repository = SessionRepository(database)

    http = httpx.AsyncClient(
        timeout=httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10,
            pool=10,
        ),
    )
    providers = build_providers(settings, http)

    # Helper models always run on OpenRouter, even for fal sessions
    helper_client = OpenRouterClient(settings, http)
    summarizer = LLMSummarizer(settings, helper_client) if settings.openrouter_api_key else None
    classifier = None
    if settings.openrouter_api_key and settings.topic_detection_enabled:
        classifier = LLMTopicClassifier(settings, helper_client)

    bus = None
    visibility = VisibilityTracker(default_visible=settings.poll_when_unknown_visibility)
    if settings.event_bus_enabled:
        bus = EventBus()
        visibility.attach(bus)
        await bus.start()

    assembler = ContextAssembler()
    policy = CheckpointPolicy(settings, assembler, classifier=classifier, summarizer=summarizer)
    scheduler = GenerationJobScheduler(settings, providers, visibility)
    store = SessionStore(settings, scheduler, policy, assembler, repository=repository, bus=bus)
    await store.load_sessions(include_closed=True)

    return {
        "database": database,
        "http": http,
        "providers": providers,
        "bus": bus,
        "visibility": visibility,
        "assembler": assembler,
        "scheduler": scheduler,
        "store": store,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down Runback...")

    store = components.get("store")
    if store:
        await store.close()

    bus = components.get("bus")
    if bus:
        await bus.stop()

    http = components.get("http")
    if http:
        await http.aclose()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("Runback shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app. Components are created in the lifespan."""
    components: dict = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        nonlocal components
        components.update(await create_components(settings))

        # Store on app.state for access in tests
        app.state.components = components

        logger.info(
            "Runback started: providers=%s, db=%s",
            ",".join(components["providers"].names) or "none",
            settings.db_path,
        )
        yield

        await shutdown_components(components)

    from runback.api.rest import create_app

    return create_app(
        store=_lazy_component(components, "store"),
        scheduler=_lazy_component(components, "scheduler"),
        visibility=_lazy_component(components, "visibility"),
        assembler=_lazy_component(components, "assembler"),
        settings=settings,
        lifespan=lifespan,
    )


class _LazyProxy:
    """Proxy that defers attribute access to a dict-backed component.

    Allows create_app() to receive component references before lifespan
    has initialized them.
    """

    def __init__(self, components: dict, key: str) -> None:
        object.__setattr__(self, "_components", components)
        object.__setattr__(self, "_key", key)

    def _resolve(self):
        components = object.__getattribute__(self, "_components")
        key = object.__getattribute__(self, "_key")
        obj = components.get(key)
        if obj is None:
            raise RuntimeError(f"Component '{key}' not yet initialized, lifespan hasn't started")
        return obj

    def __getattr__(self, name):
        return getattr(self._resolve(), name)


def _lazy_component(components: dict, key: str) -> _LazyProxy:
    return _LazyProxy(components, key)


def main() -> None:
    """Entry point: parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting Runback on %s:%d", settings.host, settings.port)
    logger.info("Database: %s", settings.db_path)

    if not settings.openrouter_api_key:
        logger.warning("OPENROUTER_API_KEY not set, chat and checkpoint summaries will fail")
    if not settings.fal_api_key:
        logger.warning("FAL_KEY not set, fal.ai models will be unavailable")

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
