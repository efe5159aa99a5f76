"""REST API for the session engine.

Endpoints:
  GET    /health                                  - Health check
  GET    /sessions                                - List sessions (?closed=1 includes closed)
  POST   /sessions                                - Create a session
  GET    /sessions/{id}                           - Session detail + error slot
  PATCH  /sessions/{id}                           - Rename / change provider settings
  DELETE /sessions/{id}                           - Delete (starred sessions refuse)
  POST   /sessions/{id}/close                     - Close tab
  POST   /sessions/{id}/reopen                    - Reopen tab
  POST   /sessions/{id}/star                      - Toggle star
  GET    /sessions/{id}/context                   - Prompt context (?target=message_id)
  POST   /sessions/{id}/turns                     - Send a turn
  POST   /sessions/{id}/messages/{mid}/regenerate - New branch for a turn
  PUT    /sessions/{id}/messages/{mid}/current    - Select a branch
  POST   /sessions/{id}/checkpoints               - Manual checkpoint
  POST   /sessions/{id}/cancel                    - Cancel every job in the session
  POST   /jobs/{job_id}/cancel                    - Cancel one job
  PUT    /responses/{rid}/visibility              - Publish on-screen flag
  GET    /export                                  - Archive of every session
  POST   /import                                  - Import an archive (?mode=merge|replace)
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from runback.config import Settings
from runback.engine.context import ContextAssembler
from runback.engine.scheduler import GenerationJobScheduler
from runback.engine.schemas import Attachment, Session, SessionArchive
from runback.engine.store import SessionStore, TurnResult
from runback.engine.visibility import VisibilityTracker
from runback.errors import (
    ConfigurationError,
    MessageNotFoundError,
    ProviderError,
    RunbackError,
    SessionNotFoundError,
    StarredSessionError,
)

logger = logging.getLogger(__name__)

_ERROR_STATUS: list[tuple[type[RunbackError], int]] = [
    (SessionNotFoundError, 404),
    (MessageNotFoundError, 404),
    (StarredSessionError, 409),
    (ConfigurationError, 400),
    (ProviderError, 502),
]


def _error_response(e: RunbackError) -> JSONResponse:
    for error_type, status in _ERROR_STATUS:
        if isinstance(e, error_type):
            return JSONResponse({"error": str(e)}, status_code=status)
    logger.error("Unhandled engine error: %s", e)
    return JSONResponse({"error": str(e)}, status_code=500)


def _session_json(store: SessionStore, session: Session) -> dict[str, Any]:
    data = session.model_dump(mode="json")
    data["error"] = store.error(session.id)
    return data


def _summary_json(session: Session) -> dict[str, Any]:
    return {
        "id": session.id,
        "title": session.title,
        "provider": session.provider,
        "model": session.model,
        "is_starred": session.is_starred,
        "is_closed": session.is_closed,
        "message_count": len(session.messages),
        "updated_at": session.updated_at.isoformat(),
    }


def _turn_json(result: TurnResult) -> dict[str, Any]:
    return {
        "session_id": result.session_id,
        "job_id": result.job_id,
        "message": result.message.model_dump(mode="json") if result.message else None,
        "response": result.response.model_dump(mode="json") if result.response else None,
        "checkpoint": result.checkpoint.model_dump(mode="json") if result.checkpoint else None,
        "error": result.error,
        "cancelled": result.cancelled,
    }


async def _json_body(request: Request) -> dict[str, Any] | None:
    try:
        body = await request.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def create_app(
    store: SessionStore,
    scheduler: GenerationJobScheduler,
    visibility: VisibilityTracker,
    assembler: ContextAssembler,
    settings: Settings,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        return JSONResponse({
            "status": "healthy",
            "sessions": len(store.sessions),
            "active_jobs": len(scheduler.active_jobs),
            "poll_loops": len(scheduler.registry),
        })

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def list_sessions(request: Request) -> JSONResponse:
        """GET /sessions - Open sessions, or all with ?closed=1."""
        include_closed = request.query_params.get("closed", "").lower() in ("1", "true")
        sessions = store.sessions if include_closed else store.open_sessions()
        return JSONResponse({"sessions": [_summary_json(s) for s in sessions]})

    async def create_session(request: Request) -> JSONResponse:
        """POST /sessions - Create a session."""
        body = await _json_body(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        provider = body.get("provider")
        model = body.get("model")
        if not provider or not model:
            return JSONResponse({"error": "Missing required fields: provider, model"}, status_code=400)
        try:
            session = store.create_session(
                provider,
                model,
                context_length=body.get("context_length"),
                system_prompt=body.get("system_prompt"),
                parameters=body.get("parameters"),
            )
        except ValidationError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        return JSONResponse(_session_json(store, session), status_code=201)

    async def get_session(request: Request) -> JSONResponse:
        """GET /sessions/{id} - Session detail."""
        try:
            session = store.get(request.path_params["id"])
        except RunbackError as e:
            return _error_response(e)
        return JSONResponse(_session_json(store, session))

    async def update_session(request: Request) -> JSONResponse:
        """PATCH /sessions/{id} - Rename or change provider settings."""
        session_id = request.path_params["id"]
        body = await _json_body(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        title = body.pop("title", None)
        try:
            if title is not None:
                store.rename_session(session_id, title)
            session = store.update_session_settings(session_id, **body) if body else store.get(session_id)
        except RunbackError as e:
            return _error_response(e)
        except (ValueError, ValidationError) as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        return JSONResponse(_session_json(store, session))

    async def delete_session(request: Request) -> JSONResponse:
        """DELETE /sessions/{id} - Delete a session."""
        session_id = request.path_params["id"]
        try:
            await store.delete_session(session_id)
        except RunbackError as e:
            return _error_response(e)
        return JSONResponse({"status": "deleted", "session_id": session_id})

    async def close_session(request: Request) -> JSONResponse:
        """POST /sessions/{id}/close - Close the session's tab."""
        try:
            session = store.close_session(request.path_params["id"])
        except RunbackError as e:
            return _error_response(e)
        return JSONResponse(_summary_json(session))

    async def reopen_session(request: Request) -> JSONResponse:
        """POST /sessions/{id}/reopen - Reopen a closed session."""
        try:
            session = store.reopen_session(request.path_params["id"])
        except RunbackError as e:
            return _error_response(e)
        return JSONResponse(_summary_json(session))

    async def star_session(request: Request) -> JSONResponse:
        """POST /sessions/{id}/star - Toggle star."""
        session_id = request.path_params["id"]
        try:
            starred = store.toggle_star(session_id)
        except RunbackError as e:
            return _error_response(e)
        return JSONResponse({"session_id": session_id, "is_starred": starred})

    async def get_context(request: Request) -> JSONResponse:
        """GET /sessions/{id}/context - Assembled prompt context."""
        try:
            session = store.get(request.path_params["id"])
        except RunbackError as e:
            return _error_response(e)
        target = request.query_params.get("target")
        entries = assembler.build_context(session, target)
        return JSONResponse({"context": [entry.as_dict() for entry in entries]})

    # ------------------------------------------------------------------
    # Turns, branches, checkpoints
    # ------------------------------------------------------------------

    async def send_turn(request: Request) -> JSONResponse:
        """POST /sessions/{id}/turns - Send a user turn."""
        body = await _json_body(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        content = body.get("content")
        if not isinstance(content, str) or not content.strip():
            return JSONResponse({"error": "Missing required field: content"}, status_code=400)
        try:
            attachments = [Attachment.model_validate(a) for a in body.get("attachments") or []]
        except ValidationError as e:
            return JSONResponse({"error": str(e)}, status_code=400)

        try:
            result = await store.send_turn(
                request.path_params["id"], content, attachments, job_id=body.get("job_id")
            )
        except RunbackError as e:
            return _error_response(e)
        return JSONResponse(_turn_json(result))

    async def regenerate(request: Request) -> JSONResponse:
        """POST /sessions/{id}/messages/{mid}/regenerate - New branch."""
        body = await _json_body(request) or {}
        try:
            result = await store.regenerate(
                request.path_params["id"], request.path_params["mid"], job_id=body.get("job_id")
            )
        except RunbackError as e:
            return _error_response(e)
        return JSONResponse(_turn_json(result))

    async def select_branch(request: Request) -> JSONResponse:
        """PUT /sessions/{id}/messages/{mid}/current - Select a branch."""
        body = await _json_body(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        session_id = request.path_params["id"]
        message_id = request.path_params["mid"]
        try:
            if "direction" in body:
                if body["direction"] not in ("prev", "next"):
                    return JSONResponse({"error": "direction must be prev or next"}, status_code=400)
                changed = store.navigate_response(session_id, message_id, body["direction"])
            elif isinstance(body.get("index"), int):
                changed = store.set_current_response_index(session_id, message_id, body["index"])
            else:
                return JSONResponse({"error": "Missing required field: index"}, status_code=400)
            message = store.get(session_id).find_message(message_id)
        except RunbackError as e:
            return _error_response(e)
        return JSONResponse({
            "changed": changed,
            "current_response_index": message.current_response_index,
        })

    async def create_checkpoint(request: Request) -> JSONResponse:
        """POST /sessions/{id}/checkpoints - Manual checkpoint."""
        session_id = request.path_params["id"]
        try:
            checkpoint = await store.create_checkpoint(session_id)
        except RunbackError as e:
            return _error_response(e)
        if checkpoint is None:
            return JSONResponse(
                {"error": store.error(session_id) or "Nothing to checkpoint"}, status_code=409
            )
        return JSONResponse(checkpoint.model_dump(mode="json"), status_code=201)

    async def cancel_session(request: Request) -> JSONResponse:
        """POST /sessions/{id}/cancel - Cancel all in-flight jobs."""
        session_id = request.path_params["id"]
        try:
            store.get(session_id)
        except RunbackError as e:
            return _error_response(e)
        return JSONResponse({"cancelled": store.cancel_session_jobs(session_id)})

    async def cancel_job(request: Request) -> JSONResponse:
        """POST /jobs/{job_id}/cancel - Cancel one job."""
        job_id = request.path_params["job_id"]
        return JSONResponse({"job_id": job_id, "cancelled": store.cancel(job_id)})

    async def set_visibility(request: Request) -> JSONResponse:
        """PUT /responses/{rid}/visibility - Publish whether a response is on screen."""
        body = await _json_body(request)
        if body is None or not isinstance(body.get("visible"), bool):
            return JSONResponse({"error": "Missing required field: visible"}, status_code=400)
        response_id = request.path_params["rid"]
        visibility.publish(response_id, body["visible"])
        return JSONResponse({"response_id": response_id, "visible": body["visible"]})

    # ------------------------------------------------------------------
    # Backup
    # ------------------------------------------------------------------

    async def export_sessions(request: Request) -> JSONResponse:
        """GET /export - Archive of every loaded session."""
        return JSONResponse(store.export_sessions().model_dump(mode="json"))

    async def import_sessions(request: Request) -> JSONResponse:
        """POST /import - Merge or replace sessions from an archive."""
        mode = request.query_params.get("mode", "merge")
        if mode not in ("merge", "replace"):
            return JSONResponse({"error": f"Unknown import mode: {mode}"}, status_code=400)
        body = await _json_body(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        try:
            archive = SessionArchive.model_validate(body)
        except ValidationError as e:
            return JSONResponse({"error": f"Invalid archive: {e}"}, status_code=400)
        imported = await store.import_sessions(archive, mode)
        return JSONResponse({"imported": imported, "mode": mode})

    routes = [
        Route("/health", health),
        Route("/sessions", list_sessions),
        Route("/sessions", create_session, methods=["POST"]),
        Route("/sessions/{id}", get_session),
        Route("/sessions/{id}", update_session, methods=["PATCH"]),
        Route("/sessions/{id}", delete_session, methods=["DELETE"]),
        Route("/sessions/{id}/close", close_session, methods=["POST"]),
        Route("/sessions/{id}/reopen", reopen_session, methods=["POST"]),
        Route("/sessions/{id}/star", star_session, methods=["POST"]),
        Route("/sessions/{id}/context", get_context),
        Route("/sessions/{id}/turns", send_turn, methods=["POST"]),
        Route("/sessions/{id}/messages/{mid}/regenerate", regenerate, methods=["POST"]),
        Route("/sessions/{id}/messages/{mid}/current", select_branch, methods=["PUT"]),
        Route("/sessions/{id}/checkpoints", create_checkpoint, methods=["POST"]),
        Route("/sessions/{id}/cancel", cancel_session, methods=["POST"]),
        Route("/jobs/{job_id}/cancel", cancel_job, methods=["POST"]),
        Route("/responses/{rid}/visibility", set_visibility, methods=["PUT"]),
        Route("/export", export_sessions),
        Route("/import", import_sessions, methods=["POST"]),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
