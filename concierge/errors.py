"""
Error taxonomy for the orchestration engine.

Only ConfigNotFound and ProviderError escape a turn. Tool failures, missing
user input, unparseable model replies and persistence failures degrade into a
valid AgentResponse instead of raising.
"""

from __future__ import annotations

import uuid
from typing import Any, Dict, Optional, Tuple


class ConfigNotFound(LookupError):
    """Raised when no AgentConfig exists for (tenant_id, agent_id)."""

    def __init__(self, tenant_id: str, agent_id: str):
        self.tenant_id = tenant_id
        self.agent_id = agent_id
        super().__init__(f"Agent config not found: {tenant_id}/{agent_id}")


class ProviderError(RuntimeError):
    """An LLM backend call failed and the turn cannot continue."""

    retryable = False

    def __init__(self, message: str, *, provider: Optional[str] = None, status_code: Optional[int] = None):
        self.provider = provider
        self.status_code = status_code
        super().__init__(message)


class ProviderUnavailable(ProviderError):
    """Transient failure: timeout, connection error, rate limiting or 5xx."""

    retryable = True


class ProviderAuthError(ProviderError):
    """Credential rejected or missing. Never retried."""


class ProviderQuotaError(ProviderError):
    """Account quota exhausted. Never retried."""


class ToolUnavailable(RuntimeError):
    """An external tool endpoint timed out or could not be reached."""


class CredentialError(ValueError):
    """A stored credential reference could not be decrypted."""


class AgentConfigInvalid(ValueError):
    """Raised when an agent config document fails validation."""

    def __init__(self, message: str, details: Any = None):
        self.details = details
        super().__init__(message)


class AgentConfigExists(RuntimeError):
    """Raised when creating a config for an existing (tenant_id, agent_id)."""


class AuthError(RuntimeError):
    """Raised when authentication fails."""


class TenantRequired(ValueError):
    """Raised when a request names no tenant (JWT claim, x-tenant-id header or tenantId query)."""


def new_request_id() -> str:
    return str(uuid.uuid4())


def build_error_envelope(
    *,
    request_id: str,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> Tuple[int, Dict[str, Any]]:
    body = {
        "error": {
            "code": code,
            "message": message,
            "details": details,
        },
        "meta": {"request_id": request_id},
    }
    return status_code, body
