"""fal.ai queue client (queued mode).

Submit returns a request id; the scheduler polls status until the job is
terminal, then fetches the result. fal has no conversation memory, so
only the prompt (and system prompt) is sent.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from runback.config import Settings
from runback.engine.schemas import ExecutionMode, GenerationRequest, JobStatus, MediaAsset
from runback.errors import ConfigurationError, ProviderError
from runback.providers.base import FetchResult, PollResult, Submission, SyncResult

logger = logging.getLogger(__name__)

_STATUS_MAP = {
    "IN_QUEUE": JobStatus.QUEUED,
    "IN_PROGRESS": JobStatus.IN_PROGRESS,
    "COMPLETED": JobStatus.COMPLETED,
    "FAILED": JobStatus.FAILED,
    "ERROR": JobStatus.FAILED,
}

_MEDIA_KEYS = ("images", "image", "video", "audio")


def app_id(model: str) -> str:
    """fal app id is the first two path segments (``owner/app``)."""
    return "/".join(model.split("/")[:2])


class FalQueueClient:
    """Queued provider. Request ids are ``{app_id}/requests/{fal_request_id}``."""

    name = "fal"
    mode = ExecutionMode.QUEUED
    supports_history = False

    def __init__(self, settings: Settings, http: httpx.AsyncClient) -> None:
        self._settings = settings
        self._http = http

    def _headers(self) -> dict[str, str]:
        if not self._settings.fal_api_key:
            raise ConfigurationError("fal.ai API key not configured")
        return {"Authorization": f"Key {self._settings.fal_api_key}"}

    async def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        headers = self._headers()
        try:
            response = await self._http.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise ProviderError(f"fal.ai request failed: {e}") from e
        if response.status_code >= 400:
            raise ProviderError(
                f"fal.ai API error ({response.status_code}): {response.text[:200]}",
                status_code=response.status_code,
            )
        return response.json()

    async def send_sync(self, request: GenerationRequest) -> SyncResult:
        raise ProviderError("fal.ai only supports queued execution")

    async def submit_queued(self, request: GenerationRequest) -> Submission:
        payload: dict[str, Any] = {"prompt": request.prompt}
        if request.system_prompt:
            payload["system_prompt"] = request.system_prompt
        images = [a.content for a in request.attachments if a.type == "image"]
        if images:
            payload["image_url"] = images[0]
        payload.update(request.parameters)

        data = await self._request(
            "POST", f"{self._settings.fal_queue_base_url}/{request.model}", json=payload
        )
        fal_request_id = data.get("request_id")
        if not fal_request_id:
            raise ProviderError("fal.ai response missing request_id")
        request_id = f"{app_id(request.model)}/requests/{fal_request_id}"
        logger.info("Submitted fal job %s", request_id)
        return Submission(request_id=request_id)

    async def poll_status(self, request_id: str) -> PollResult:
        data = await self._request(
            "GET",
            f"{self._settings.fal_queue_base_url}/{request_id}/status",
            params={"logs": 1},
        )
        raw = data.get("status", "")
        status = _STATUS_MAP.get(raw)
        if status is None:
            logger.warning("Unknown fal status %r for %s", raw, request_id)
            status = JobStatus.QUEUED
        logs = [entry.get("message", "") for entry in data.get("logs") or [] if isinstance(entry, dict)]
        return PollResult(status=status, logs=[line for line in logs if line], error=data.get("error"))

    async def fetch_result(self, request_id: str) -> FetchResult:
        data = await self._request("GET", f"{self._settings.fal_queue_base_url}/{request_id}")
        return FetchResult(content=_extract_text(data), media_assets=_extract_media(data))


def _extract_text(data: dict[str, Any]) -> str:
    for key in ("output", "text", "content"):
        value = data.get(key)
        if isinstance(value, str) and value:
            return value
    return ""


def _extract_media(data: dict[str, Any]) -> list[MediaAsset]:
    assets: list[MediaAsset] = []
    for key in _MEDIA_KEYS:
        value = data.get(key)
        items = value if isinstance(value, list) else [value]
        for item in items:
            if isinstance(item, dict) and item.get("url"):
                assets.append(
                    MediaAsset(
                        url=item["url"],
                        content_type=item.get("content_type"),
                        file_name=item.get("file_name"),
                    )
                )
    return assets
