"""
Chat API: POST /chat runs one agent turn for the calling tenant.

Contract: 200 + AgentResponse (camelCase, `audio_description` verbatim).
404 CONFIG_NOT_FOUND when the tenant has no config for the agent, 502
PROVIDER_ERROR when the model backend fails, 400/401 for caller problems.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from concierge.dependencies import get_services, resolve_caller
from concierge.errors import (
    AuthError,
    ConfigNotFound,
    ProviderError,
    TenantRequired,
    build_error_envelope,
    new_request_id,
)
from concierge.models import ChatRequest, TurnContext
from concierge.storage.db import TenantScope

logger = logging.getLogger("tenant-concierge")

router = APIRouter(tags=["chat"])


def _chat_error(status_code: int, code: str, message: str, details: Any = None) -> JSONResponse:
    _, body = build_error_envelope(
        request_id=new_request_id(),
        status_code=status_code,
        code=code,
        message=message,
        details=details,
    )
    return JSONResponse(status_code=status_code, content=body)


@router.post("/chat")
def post_chat(payload: ChatRequest, request: Request) -> JSONResponse:
    try:
        caller = resolve_caller(request)
    except AuthError as exc:
        return _chat_error(401, "UNAUTHORIZED", str(exc))
    except TenantRequired as exc:
        return _chat_error(400, "TENANT_REQUIRED", str(exc))

    user_id = caller.user_id or payload.user_id
    if not user_id:
        return _chat_error(
            400,
            "MALFORMED_REQUEST",
            "userId is required. Provide it via JWT, x-user-id header, or the request body",
        )

    services = get_services(request)
    ctx = TurnContext(
        tenant_id=caller.tenant_id,
        user_id=user_id,
        conversation_id=payload.conversation_id or str(uuid.uuid4()),
        agent_id=payload.agent_id or "default",
    )

    try:
        response = services.orchestrator.process_message(ctx, payload.text)
    except ConfigNotFound as exc:
        return _chat_error(404, "CONFIG_NOT_FOUND", str(exc))
    except ProviderError as exc:
        logger.warning(
            "provider failed tenant=%s agent=%s provider=%s status=%s error=%s",
            ctx.tenant_id,
            ctx.agent_id,
            exc.provider,
            exc.status_code,
            exc,
        )
        return _chat_error(
            502,
            "PROVIDER_ERROR",
            str(exc),
            details={"provider": exc.provider, "status_code": exc.status_code},
        )

    try:
        services.configs.increment_usage(TenantScope(ctx.tenant_id), ctx.agent_id)
    except Exception:
        logger.exception("usage increment failed tenant=%s agent=%s", ctx.tenant_id, ctx.agent_id)

    return JSONResponse(status_code=200, content=response.model_dump(by_alias=True, mode="json"))
