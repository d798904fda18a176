"""
Tenant-declared HTTP tools.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

from ..errors import CredentialError, ToolUnavailable
from ..external_api import ExternalApiClient
from ..models import CustomTool, ToolResult

logger = logging.getLogger("tenant-concierge")

_PLACEHOLDER = re.compile(r"\{(\w+)\}")


def path_placeholders(path: Optional[str]) -> List[str]:
    return _PLACEHOLDER.findall(path or "")


def map_query_argument(tool: CustomTool, args: Dict[str, Any]) -> Dict[str, Any]:
    """
    Models tend to send a generic `query`; copy it onto the path's first
    placeholder when that placeholder has another name and was not supplied.
    """
    mapped = dict(args)
    names = path_placeholders(tool.path)
    if "query" in args and names and names[0] != "query" and names[0] not in args:
        mapped[names[0]] = args["query"]
    return mapped


def build_request(tool: CustomTool, args: Dict[str, Any]) -> Tuple[str, str, Dict[str, Any]]:
    """Return (method, url, unconsumed args)."""
    base_url = tool.base_url.rstrip("/")
    remaining = dict(args)
    if tool.path:
        path = tool.path
        for name in path_placeholders(tool.path):
            if name in remaining:
                path = path.replace("{" + name + "}", quote(str(remaining.pop(name)), safe=""))
        if not path.startswith("/"):
            path = "/" + path
        url = f"{base_url}{path}"
    else:
        url = f"{base_url}/{tool.name}"
    return (tool.method or "POST"), url, remaining


def invoke_custom_tool(tool: CustomTool, args: Dict[str, Any], api: ExternalApiClient) -> ToolResult:
    if not tool.base_url:
        logger.error("custom tool missing baseUrl name=%s", tool.name)
        return ToolResult(success=False, error=f'Custom tool "{tool.name}" is missing baseUrl')

    method, url, remaining = build_request(tool, args)
    try:
        if method == "GET":
            data = api.fetch(url, method=method, params=remaining, credential_ref=tool.credential_ref)
        else:
            data = api.fetch(url, method=method, body=remaining, credential_ref=tool.credential_ref)
    except (ToolUnavailable, CredentialError) as exc:
        logger.warning("custom tool failed name=%s error=%s", tool.name, exc)
        return ToolResult(success=False, error=str(exc))

    return ToolResult(success=True, data=data)
