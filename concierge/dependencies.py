from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

import jwt
from fastapi import Request

from .config import get_settings
from .errors import AuthError, TenantRequired
from .services import Services


@dataclass(frozen=True)
class Caller:
    tenant_id: str
    user_id: Optional[str] = None


def get_services(request: Request) -> Services:
    """Services built by the app lifespan (or handed to create_app by tests)."""
    return request.app.state.services


def _get_bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        token = auth_header.split(" ", 1)[1].strip()
        return token or None
    return None


def _get_session_token(request: Request) -> Optional[str]:
    return _get_bearer_token(request) or request.headers.get("x-session-token") or None


def authenticate(request: Request) -> Dict[str, Any]:
    """
    Return the caller's JWT claims ({} when no JWT is involved).

    Priority:
    - JWT_SECRET set and a token supplied: verify it (HS256). A token equal to
      AUTH_TOKEN is accepted as a static key instead.
    - AUTH_TOKEN set: require exactly that bearer token.
    - JWT_SECRET set but no token: reject.
    - Neither configured: authentication is disabled (dev/tests).
    """
    settings = get_settings()
    token = _get_session_token(request)

    if settings.auth_token and token == settings.auth_token:
        return {}

    if settings.jwt_secret and token:
        try:
            return jwt.decode(token, settings.jwt_secret, algorithms=["HS256"])
        except jwt.PyJWTError as exc:
            raise AuthError("Invalid or expired session token") from exc

    if settings.auth_token:
        if not _get_bearer_token(request):
            raise AuthError("Missing or invalid Authorization header")
        raise AuthError("Invalid bearer token")

    if settings.jwt_secret:
        raise AuthError("Missing session token")

    return {}


def resolve_caller(request: Request) -> Caller:
    """Authenticate, then read tenant and user from claims, headers or query."""
    claims = authenticate(request)

    tenant_id = (
        claims.get("tenantId")
        or request.headers.get("x-tenant-id")
        or request.query_params.get("tenantId")
        or ""
    ).strip()
    if not tenant_id:
        raise TenantRequired(
            "tenantId is required. Provide it via JWT, x-tenant-id header, or tenantId query param"
        )

    user_id = claims.get("userId") or request.headers.get("x-user-id") or request.query_params.get("userId")
    return Caller(tenant_id=tenant_id, user_id=user_id or None)
