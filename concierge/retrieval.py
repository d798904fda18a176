"""
Retrieval collaborator for rag-backed knowledge topics.

Embedding and vector search happen elsewhere; this side only forwards the
query. `NullRetrieval` answers with nothing, `HttpRetrieval` POSTs to a
retrieval service at RETRIEVAL_URL.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from .errors import ToolUnavailable

logger = logging.getLogger("tenant-concierge")


class Retrieval:
    def query(self, tenant_id: str, text: str, index_ref: Optional[str] = None) -> Dict[str, List[Any]]:  # pragma: no cover - interface only
        raise NotImplementedError


class NullRetrieval(Retrieval):
    def query(self, tenant_id: str, text: str, index_ref: Optional[str] = None) -> Dict[str, List[Any]]:
        return {"data": [], "sources": []}


class HttpRetrieval(Retrieval):
    """
    POST {url}/query with {tenantId, query, index}; expects {data, sources}.
    """

    def __init__(self, url: str, *, timeout: float = 15.0, client: Optional[httpx.Client] = None) -> None:
        self.url = url.rstrip("/")
        self.timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)

    def query(self, tenant_id: str, text: str, index_ref: Optional[str] = None) -> Dict[str, List[Any]]:
        body = {"tenantId": tenant_id, "query": text, "index": index_ref or f"tenant-{tenant_id}"}
        try:
            resp = self._client.post(f"{self.url}/query", json=body, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as exc:
            logger.warning("retrieval failed tenant=%s error=%s", tenant_id, exc)
            raise ToolUnavailable(f"Retrieval service unavailable: {exc}") from exc

        if not isinstance(data, dict):
            return {"data": [], "sources": []}
        return {
            "data": list(data.get("data") or []),
            "sources": list(data.get("sources") or []),
        }
