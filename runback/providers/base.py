"""Provider client interface and the registry the scheduler looks clients up in."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

from runback.engine.schemas import ExecutionMode, GenerationRequest, JobStatus, MediaAsset
from runback.errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    content: str
    token_count: int | None = None
    latency_ms: int = 0


@dataclass
class Submission:
    request_id: str


@dataclass
class PollResult:
    status: JobStatus
    logs: list[str] = field(default_factory=list)
    error: str | None = None


@dataclass
class FetchResult:
    content: str
    media_assets: list[MediaAsset] = field(default_factory=list)


class ProviderClient(Protocol):
    """What the scheduler needs from a provider.

    Synchronous providers implement send_sync(); queued providers implement
    submit_queued(), poll_status() and fetch_result(). Failures raise
    ProviderError.
    """

    name: str
    mode: ExecutionMode
    supports_history: bool

    async def send_sync(self, request: GenerationRequest) -> SyncResult: ...

    async def submit_queued(self, request: GenerationRequest) -> Submission: ...

    async def poll_status(self, request_id: str) -> PollResult: ...

    async def fetch_result(self, request_id: str) -> FetchResult: ...


class ProviderRegistry:
    """Configured provider clients keyed by provider name."""

    def __init__(self) -> None:
        self._clients: dict[str, ProviderClient] = {}

    def register(self, client: ProviderClient) -> None:
        self._clients[client.name] = client
        logger.debug("Registered provider %s (%s)", client.name, client.mode)

    def get(self, name: str) -> ProviderClient:
        client = self._clients.get(name)
        if client is None:
            raise ConfigurationError(f"Provider '{name}' is not configured")
        return client

    def __contains__(self, name: object) -> bool:
        return name in self._clients

    @property
    def names(self) -> list[str]:
        return sorted(self._clients)
