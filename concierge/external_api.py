"""
HTTP transport for tenant-hosted endpoints: custom tools and product APIs.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

import httpx

from .crypto import CredentialCipher
from .errors import ToolUnavailable

logger = logging.getLogger("tenant-concierge")


class ExternalApiClient:
    def __init__(
        self,
        cipher: CredentialCipher,
        *,
        timeout: float = 15.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.cipher = cipher
        self.timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        self._client.close()

    def fetch(
        self,
        url: str,
        *,
        method: str = "GET",
        headers: Optional[Mapping[str, str]] = None,
        body: Any = None,
        params: Optional[Mapping[str, Any]] = None,
        credential_ref: Optional[str] = None,
    ) -> Any:
        """
        Call `url` and return the decoded JSON body.

        Raises ToolUnavailable on timeouts, connection errors and non-2xx
        responses; CredentialError when `credential_ref` cannot be decrypted.
        """
        request_headers: Dict[str, str] = {"Content-Type": "application/json"}
        request_headers.update(headers or {})
        if credential_ref:
            request_headers["Authorization"] = f"Bearer {self.cipher.decrypt(credential_ref)}"

        try:
            resp = self._client.request(
                method.upper(),
                url,
                headers=request_headers,
                json=body,
                params={k: str(v) for k, v in (params or {}).items()} or None,
                timeout=self.timeout,
            )
        except httpx.TimeoutException as exc:
            logger.warning("external api timeout url=%s", url)
            raise ToolUnavailable(f"External API timed out: {url}") from exc
        except httpx.HTTPError as exc:
            logger.warning("external api unreachable url=%s error=%s", url, exc)
            raise ToolUnavailable(f"External API unreachable: {url}") from exc

        if not resp.is_success:
            logger.warning("external api error url=%s status=%s", url, resp.status_code)
            raise ToolUnavailable(f"External API error: {resp.status_code} {resp.reason_phrase}")

        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            return resp.text

    def fetch_products(
        self,
        api_url: str,
        *,
        credential_ref: Optional[str] = None,
        query: str = "",
        limit: Optional[int] = None,
        category: Optional[str] = None,
    ) -> List[Any]:
        params: Dict[str, Any] = {}
        if query:
            params["q"] = query
        if limit:
            params["limit"] = limit
        if category:
            params["category"] = category

        data = self.fetch(api_url, method="GET", params=params, credential_ref=credential_ref)

        if isinstance(data, list):
            return data
        if isinstance(data, dict):
            for key in ("products", "data"):
                if isinstance(data.get(key), list):
                    return data[key]
        return []
