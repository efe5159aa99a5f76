"""OpenRouter chat completions client (synchronous mode).

One POST per turn; the reply arrives in the same round trip. Also used by
the summarizer and topic classifier through complete().
"""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from runback.config import Settings
from runback.engine.schemas import ExecutionMode, GenerationRequest
from runback.errors import ConfigurationError, ProviderError
from runback.providers.base import FetchResult, PollResult, Submission, SyncResult

logger = logging.getLogger(__name__)


class OpenRouterClient:
    """Synchronous provider. Receives full conversation history."""

    name = "openrouter"
    mode = ExecutionMode.SYNCHRONOUS
    supports_history = True

    def __init__(self, settings: Settings, http: httpx.AsyncClient) -> None:
        self._settings = settings
        self._http = http

    def _headers(self) -> dict[str, str]:
        if not self._settings.openrouter_api_key:
            raise ConfigurationError("OpenRouter API key not configured")
        return {
            "Authorization": f"Bearer {self._settings.openrouter_api_key}",
            "Content-Type": "application/json",
            "X-Title": "RunBack",
        }

    @staticmethod
    def build_messages(request: GenerationRequest) -> list[dict[str, Any]]:
        """System prompt, then assembled history, then the new user turn."""
        messages: list[dict[str, Any]] = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.extend(entry.as_dict() for entry in request.history)

        images = [a for a in request.attachments if a.type == "image"]
        if images:
            parts: list[dict[str, Any]] = [{"type": "text", "text": request.prompt}]
            parts.extend({"type": "image_url", "image_url": {"url": a.content}} for a in images)
            messages.append({"role": "user", "content": parts})
        else:
            messages.append({"role": "user", "content": request.prompt})
        return messages

    async def complete(
        self,
        model: str,
        messages: list[dict[str, Any]],
        **parameters: Any,
    ) -> SyncResult:
        """POST /chat/completions and return the first choice's text."""
        headers = self._headers()
        started = time.monotonic()
        try:
            response = await self._http.post(
                f"{self._settings.openrouter_base_url}/chat/completions",
                json={"model": model, "messages": messages, **parameters},
                headers=headers,
            )
        except httpx.HTTPError as e:
            raise ProviderError(f"OpenRouter request failed: {e}") from e

        if response.status_code != 200:
            raise ProviderError(
                f"OpenRouter API error ({response.status_code}): {_error_message(response)}",
                status_code=response.status_code,
            )

        data = response.json()
        choices = data.get("choices") or [{}]
        content = (choices[0].get("message") or {}).get("content") or ""
        usage = data.get("usage") or {}
        return SyncResult(
            content=content,
            token_count=usage.get("total_tokens"),
            latency_ms=int((time.monotonic() - started) * 1000),
        )

    async def send_sync(self, request: GenerationRequest) -> SyncResult:
        result = await self.complete(request.model, self.build_messages(request), **request.parameters)
        logger.debug(
            "OpenRouter %s replied in %dms (%s tokens)",
            request.model,
            result.latency_ms,
            result.token_count,
        )
        return result

    async def submit_queued(self, request: GenerationRequest) -> Submission:
        raise ProviderError("OpenRouter does not support queued execution")

    async def poll_status(self, request_id: str) -> PollResult:
        raise ProviderError("OpenRouter does not support queued execution")

    async def fetch_result(self, request_id: str) -> FetchResult:
        raise ProviderError("OpenRouter does not support queued execution")


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict):
        return str(error.get("message", error))
    return str(error or data)[:200]
