"""REST API for Colloquy.

Endpoints:
  POST /utterances                       - Hand an utterance to the orchestrator
  POST /actions/{request_id}/approve     - Approve a pending action
  POST /actions/{request_id}/deny        - Deny a pending action
  GET  /actions/{request_id}             - Pending action status
  GET  /actions/{request_id}/result      - Cached action result
  GET  /channels/{channel_key}/messages  - Outbox (only with the in-memory transport)
  GET  /health                           - Health check (DB connectivity)
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import text
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from colloquy.api.outbox import OutboxTransport
from colloquy.config import Settings
from colloquy.core.approval import ActionApprovalManager
from colloquy.core.orchestrator import Orchestrator
from colloquy.core.schemas import ConversationKey
from colloquy.storage.database import Database

logger = logging.getLogger(__name__)


def create_app(
    orchestrator: Orchestrator,
    approvals: ActionApprovalManager,
    database: Database,
    settings: Settings,
    outbox: OutboxTransport | None = None,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    async def post_utterance(request: Request) -> JSONResponse:
        """POST /utterances - Process one utterance; replies go out through the transport."""
        try:
            body = await request.json()
        except ValueError:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        missing = [f for f in ("surface_id", "channel_id", "author_id", "text") if not body.get(f)]
        if missing:
            return JSONResponse({"error": f"Missing required fields: {', '.join(missing)}"}, status_code=400)

        thread_id = body.get("thread_id")
        if thread_id:
            key = ConversationKey(str(body["surface_id"]), str(body["channel_id"]), str(thread_id))
        else:
            key = ConversationKey.for_channel(str(body["surface_id"]), str(body["channel_id"]))

        await orchestrator.handle_utterance(
            key,
            str(body["text"]),
            str(body["author_id"]),
            origin_id=body.get("origin_id"),
            reply_to_origin_id=body.get("reply_to_origin_id"),
            author_name=body.get("author_name"),
        )
        return JSONResponse({"status": "handled", "conversation": str(key)}, status_code=202)

    async def _decision_body(request: Request) -> str:
        try:
            body = await request.json()
        except ValueError:
            body = {}
        return str(body.get("by") or "api")

    async def approve(request: Request) -> JSONResponse:
        """POST /actions/{request_id}/approve"""
        request_id = request.path_params["request_id"]
        approver = await _decision_body(request)
        if not await orchestrator.handle_approval(request_id, approver):
            return JSONResponse({"error": "Expired or already handled"}, status_code=409)
        result = approvals.get_result(request_id)
        return JSONResponse({
            "status": "approved",
            "result": result.model_dump(mode="json") if result else None,
        })

    async def deny(request: Request) -> JSONResponse:
        """POST /actions/{request_id}/deny"""
        request_id = request.path_params["request_id"]
        denier = await _decision_body(request)
        if not await orchestrator.handle_denial(request_id, denier):
            return JSONResponse({"error": "Expired or already handled"}, status_code=409)
        return JSONResponse({"status": "denied"})

    async def get_action(request: Request) -> JSONResponse:
        """GET /actions/{request_id} - Status of a pending action."""
        pending = approvals.get_pending(request.path_params["request_id"])
        if pending is None:
            return JSONResponse({"error": "No pending action"}, status_code=404)
        return JSONResponse({
            "request_id": pending.request_id,
            "kind": pending.kind.value,
            "query": pending.query,
            "reason": pending.reason,
            "channel_key": pending.channel_key,
            "status": pending.status.value,
            "created_at": pending.created_at,
        })

    async def get_result(request: Request) -> JSONResponse:
        """GET /actions/{request_id}/result - Cached result of an executed action."""
        result = approvals.get_result(request.path_params["request_id"])
        if result is None:
            return JSONResponse({"error": "No result (never produced or purged)"}, status_code=404)
        return JSONResponse(result.model_dump(mode="json"))

    async def channel_messages(request: Request) -> JSONResponse:
        """GET /channels/{channel_key}/messages - Outbox contents."""
        if not outbox:
            return JSONResponse({"error": "Outbox transport not in use"}, status_code=404)
        channel_key = request.path_params["channel_key"]
        return JSONResponse({"messages": [m.to_dict() for m in outbox.messages(channel_key)]})

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        try:
            async with database.session() as session:
                await session.execute(text("SELECT 1"))
            return JSONResponse({"status": "healthy", "pending_actions": approvals.pending_count})
        except Exception as e:
            logger.warning("Health check failed: %s", e)
            return JSONResponse({"status": "unhealthy", "error": str(e)}, status_code=503)

    routes = [
        Route("/utterances", post_utterance, methods=["POST"]),
        Route("/actions/{request_id}/approve", approve, methods=["POST"]),
        Route("/actions/{request_id}/deny", deny, methods=["POST"]),
        Route("/actions/{request_id}/result", get_result),
        Route("/actions/{request_id}", get_action),
        Route("/channels/{channel_key}/messages", channel_messages),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
