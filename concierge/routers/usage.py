"""
Usage API: GET /usage/{agent_id} reports the monthly message counter.
"""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from concierge.dependencies import get_services, resolve_caller
from concierge.errors import AuthError, TenantRequired, build_error_envelope, new_request_id
from concierge.storage.db import TenantScope

router = APIRouter(prefix="/usage", tags=["usage"])


def _usage_error(status_code: int, code: str, message: str) -> JSONResponse:
    _, body = build_error_envelope(
        request_id=new_request_id(),
        status_code=status_code,
        code=code,
        message=message,
    )
    return JSONResponse(status_code=status_code, content=body)


@router.get("/{agent_id}")
async def get_usage(agent_id: str, request: Request) -> JSONResponse:
    try:
        caller = resolve_caller(request)
    except AuthError as exc:
        return _usage_error(401, "UNAUTHORIZED", str(exc))
    except TenantRequired as exc:
        return _usage_error(400, "TENANT_REQUIRED", str(exc))

    report = get_services(request).configs.usage(TenantScope(caller.tenant_id), agent_id)
    if report is None:
        return _usage_error(404, "CONFIG_NOT_FOUND", f"Agent config not found: {caller.tenant_id}/{agent_id}")
    return JSONResponse(status_code=200, content=report.model_dump(by_alias=True, mode="json"))
