"""
Agent configuration API, scoped to the calling tenant.

    POST   /agent-configs              201 + config, 400 INVALID_CONFIG, 409 CONFLICT
    GET    /agent-configs              200 + {configs: [...]}
    GET    /agent-configs/{agent_id}   200 + config or 404
    PUT    /agent-configs/{agent_id}   200 + config (shallow merge) or 404
    DELETE /agent-configs/{agent_id}   204 or 404

Credentials are sealed with the service key on write and never returned:
every credentialRef reads back as "[REDACTED]". Sending "[REDACTED]" back on
update keeps the stored credential.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterator, Optional, Tuple

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse

from concierge.crypto import CredentialCipher
from concierge.dependencies import Caller, get_services, resolve_caller
from concierge.errors import (
    AgentConfigExists,
    AgentConfigInvalid,
    AuthError,
    CredentialError,
    TenantRequired,
    build_error_envelope,
    new_request_id,
)
from concierge.models import AgentConfig
from concierge.storage.agent_config_store import validate_agent_config
from concierge.storage.db import TenantScope

logger = logging.getLogger("tenant-concierge")

router = APIRouter(prefix="/agent-configs", tags=["agent-configs"])

REDACTED = "[REDACTED]"


def _config_error(status_code: int, code: str, message: str, details: Any = None) -> JSONResponse:
    _, body = build_error_envelope(
        request_id=new_request_id(),
        status_code=status_code,
        code=code,
        message=message,
        details=details,
    )
    return JSONResponse(status_code=status_code, content=body)


def _caller_or_error(request: Request) -> Tuple[Optional[Caller], Optional[JSONResponse]]:
    try:
        return resolve_caller(request), None
    except AuthError as exc:
        return None, _config_error(401, "UNAUTHORIZED", str(exc))
    except TenantRequired as exc:
        return None, _config_error(400, "TENANT_REQUIRED", str(exc))


async def _json_object(request: Request) -> Optional[Dict[str, Any]]:
    try:
        body = await request.json()
    except Exception:
        return None
    return body if isinstance(body, dict) else None


def _credential_holders(document: Dict[str, Any]) -> Iterator[Tuple[str, Dict[str, Any]]]:
    """(slot, dict carrying credentialRef) for every credential in a camelCase document."""
    llm = document.get("llm")
    if isinstance(llm, dict):
        yield "llm", llm
    knowledge = document.get("knowledge")
    if isinstance(knowledge, dict):
        for name, source in knowledge.items():
            if isinstance(source, dict):
                yield f"knowledge.{name}", source
    tools = document.get("tools")
    if isinstance(tools, dict) and isinstance(tools.get("custom"), list):
        for tool in tools["custom"]:
            if isinstance(tool, dict):
                yield f"tools.custom.{tool.get('name')}", tool


def seal_credentials(
    document: Dict[str, Any],
    cipher: CredentialCipher,
    previous: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    stored = {slot: holder.get("credentialRef") for slot, holder in _credential_holders(previous or {})}
    for slot, holder in _credential_holders(document):
        value = holder.get("credentialRef")
        if value == REDACTED:
            holder["credentialRef"] = stored.get(slot)
        elif isinstance(value, str) and value:
            holder["credentialRef"] = cipher.seal(value)
    return document


def redacted(config: AgentConfig) -> Dict[str, Any]:
    document = config.model_dump(by_alias=True, mode="json")
    for _, holder in _credential_holders(document):
        if holder.get("credentialRef"):
            holder["credentialRef"] = REDACTED
    return document


@router.post("", status_code=201)
async def create_agent_config(request: Request) -> JSONResponse:
    caller, error = _caller_or_error(request)
    if error is not None:
        return error
    document = await _json_object(request)
    if document is None:
        return _config_error(400, "MALFORMED_REQUEST", "Request body must be a JSON object")

    services = get_services(request)
    document["tenantId"] = caller.tenant_id
    document.setdefault("agentId", "default")
    try:
        config = validate_agent_config(seal_credentials(document, services.cipher))
        created = services.configs.create(TenantScope(caller.tenant_id), config)
    except AgentConfigInvalid as exc:
        return _config_error(400, "INVALID_CONFIG", str(exc), details=exc.details)
    except AgentConfigExists as exc:
        return _config_error(409, "CONFLICT", str(exc))
    except CredentialError as exc:
        logger.error("cannot seal credentials tenant=%s error=%s", caller.tenant_id, exc)
        return _config_error(500, "ENCRYPTION_UNAVAILABLE", str(exc))

    return JSONResponse(status_code=201, content=redacted(created))


@router.get("")
async def list_agent_configs(request: Request) -> JSONResponse:
    caller, error = _caller_or_error(request)
    if error is not None:
        return error
    configs = get_services(request).configs.list(TenantScope(caller.tenant_id))
    return JSONResponse(status_code=200, content={"configs": [redacted(c) for c in configs]})


@router.get("/{agent_id}")
async def get_agent_config(agent_id: str, request: Request) -> JSONResponse:
    caller, error = _caller_or_error(request)
    if error is not None:
        return error
    config = get_services(request).configs.get(TenantScope(caller.tenant_id), agent_id)
    if config is None:
        return _config_error(404, "NOT_FOUND", f"Agent config not found: {agent_id}")
    return JSONResponse(status_code=200, content=redacted(config))


@router.put("/{agent_id}")
async def update_agent_config(agent_id: str, request: Request) -> JSONResponse:
    caller, error = _caller_or_error(request)
    if error is not None:
        return error
    updates = await _json_object(request)
    if updates is None:
        return _config_error(400, "MALFORMED_REQUEST", "Request body must be a JSON object")

    services = get_services(request)
    scope = TenantScope(caller.tenant_id)
    current = services.configs.get(scope, agent_id)
    if current is None:
        return _config_error(404, "NOT_FOUND", f"Agent config not found: {agent_id}")

    try:
        sealed = seal_credentials(updates, services.cipher, current.model_dump(by_alias=True, mode="json"))
        updated = services.configs.update(scope, agent_id, sealed)
    except AgentConfigInvalid as exc:
        return _config_error(400, "INVALID_CONFIG", str(exc), details=exc.details)
    except CredentialError as exc:
        logger.error("cannot seal credentials tenant=%s error=%s", caller.tenant_id, exc)
        return _config_error(500, "ENCRYPTION_UNAVAILABLE", str(exc))

    if updated is None:
        return _config_error(404, "NOT_FOUND", f"Agent config not found: {agent_id}")
    return JSONResponse(status_code=200, content=redacted(updated))


@router.delete("/{agent_id}", status_code=204)
async def delete_agent_config(agent_id: str, request: Request) -> Response:
    caller, error = _caller_or_error(request)
    if error is not None:
        return error
    if not get_services(request).configs.delete(TenantScope(caller.tenant_id), agent_id):
        return _config_error(404, "NOT_FOUND", f"Agent config not found: {agent_id}")
    return Response(status_code=204)
