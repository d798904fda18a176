from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import httpx

from .crypto import CredentialCipher
from .errors import (
    CredentialError,
    ProviderAuthError,
    ProviderError,
    ProviderQuotaError,
    ProviderUnavailable,
)
from .models import LLMConfig, LLMMessage, ProviderResponse, TokenUsage, ToolCall, ToolDefinition

logger = logging.getLogger("tenant-concierge")

OPENAI_API_URL = "https://api.openai.com/v1/chat/completions"
GROQ_API_URL = "https://api.groq.com/openai/v1/chat/completions"
OPENROUTER_API_URL = "https://openrouter.ai/api/v1/chat/completions"
GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"


class BaseAdapter:
    """
    One vendor, one credential.

    `generate` is synchronous; the chat route is a plain `def`, so FastAPI runs
    it in its thread pool.
    """

    vendor = "base"

    def generate(
        self,
        llm: LLMConfig,
        messages: Sequence[LLMMessage],
        tools: Optional[Sequence[ToolDefinition]] = None,
    ) -> ProviderResponse:  # pragma: no cover - interface only
        raise NotImplementedError


def _error_detail(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:300]
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict):
            return str(error.get("message") or error.get("code") or error)
        if error:
            return str(error)
    return json.dumps(data)[:300]


def _is_quota_error(resp: httpx.Response) -> bool:
    if resp.status_code == 402:
        return True
    try:
        data = resp.json()
    except ValueError:
        return False
    error = data.get("error") if isinstance(data, dict) else None
    if not isinstance(error, dict):
        return False
    markers = " ".join(str(error.get(k) or "") for k in ("code", "type", "status", "message")).lower()
    return "insufficient_quota" in markers or ("quota" in markers and "exceeded" in markers)


def raise_for_vendor_status(vendor: str, resp: httpx.Response) -> None:
    """Map a non-2xx vendor response onto the ProviderError hierarchy."""
    if resp.is_success:
        return
    status = resp.status_code
    detail = _error_detail(resp)
    message = f"{vendor} returned {status}: {detail}"
    if status in (401, 403):
        raise ProviderAuthError(message, provider=vendor, status_code=status)
    if _is_quota_error(resp):
        raise ProviderQuotaError(message, provider=vendor, status_code=status)
    if status == 429 or status >= 500:
        raise ProviderUnavailable(message, provider=vendor, status_code=status)
    raise ProviderError(message, provider=vendor, status_code=status)


def _post(client: httpx.Client, vendor: str, url: str, **kwargs: Any) -> Dict[str, Any]:
    try:
        resp = client.post(url, **kwargs)
    except httpx.TimeoutException as exc:
        raise ProviderUnavailable(f"{vendor} request timed out", provider=vendor) from exc
    except httpx.HTTPError as exc:
        raise ProviderUnavailable(f"{vendor} request failed: {exc}", provider=vendor) from exc
    raise_for_vendor_status(vendor, resp)
    try:
        return resp.json()
    except ValueError as exc:
        raise ProviderError(f"{vendor} returned a non-JSON body", provider=vendor, status_code=resp.status_code) from exc


def _parse_arguments(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        logger.warning("tool call arguments are not valid JSON: %.200s", raw)
        return {}
    return parsed if isinstance(parsed, dict) else {}


class OpenAICompatibleAdapter(BaseAdapter):
    """
    Chat Completions wire format, shared by OpenAI, Groq and OpenRouter.
    """

    def __init__(
        self,
        vendor: str,
        api_key: str,
        url: str,
        *,
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.vendor = vendor
        self.api_key = api_key
        self.url = url
        self.timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)

    def generate(
        self,
        llm: LLMConfig,
        messages: Sequence[LLMMessage],
        tools: Optional[Sequence[ToolDefinition]] = None,
    ) -> ProviderResponse:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        body: Dict[str, Any] = {
            "model": llm.model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "temperature": llm.temperature,
            "max_tokens": llm.max_tokens,
        }
        if tools:
            body["tools"] = [
                {
                    "type": "function",
                    "function": {"name": t.name, "description": t.description, "parameters": t.parameters},
                }
                for t in tools
            ]

        data = _post(self._client, self.vendor, self.url, headers=headers, json=body, timeout=self.timeout)

        try:
            message = data["choices"][0]["message"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderError(f"{self.vendor} response has no choices", provider=self.vendor) from exc

        tool_calls: List[ToolCall] = []
        for tc in message.get("tool_calls") or []:
            fn = (tc or {}).get("function") or {}
            if not fn.get("name"):
                continue
            tool_calls.append(ToolCall(name=fn["name"], arguments=_parse_arguments(fn.get("arguments"))))

        usage = data.get("usage")
        tokens = None
        if isinstance(usage, dict):
            tokens = TokenUsage(
                prompt=usage.get("prompt_tokens"),
                completion=usage.get("completion_tokens"),
                total=usage.get("total_tokens"),
            )

        return ProviderResponse(
            content=message.get("content") or "",
            model=data.get("model") or llm.model,
            tokens=tokens,
            tool_calls=tool_calls,
        )


class GeminiAdapter(BaseAdapter):
    """Google Generative Language `generateContent`."""

    vendor = "gemini"

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = GEMINI_API_BASE,
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)

    def generate(
        self,
        llm: LLMConfig,
        messages: Sequence[LLMMessage],
        tools: Optional[Sequence[ToolDefinition]] = None,
    ) -> ProviderResponse:
        system_parts = [{"text": m.content} for m in messages if m.role == "system"]
        body: Dict[str, Any] = {
            "contents": [
                {"role": "model" if m.role == "assistant" else "user", "parts": [{"text": m.content}]}
                for m in messages
                if m.role != "system"
            ],
            "generationConfig": {"temperature": llm.temperature, "maxOutputTokens": llm.max_tokens},
        }
        if system_parts:
            body["systemInstruction"] = {"parts": system_parts}
        if tools:
            body["tools"] = [
                {
                    "functionDeclarations": [
                        {"name": t.name, "description": t.description, "parameters": t.parameters} for t in tools
                    ]
                }
            ]

        url = f"{self.base_url}/models/{llm.model}:generateContent"
        data = _post(
            self._client,
            self.vendor,
            url,
            params={"key": self.api_key},
            headers={"Content-Type": "application/json"},
            json=body,
            timeout=self.timeout,
        )

        candidates = data.get("candidates") or []
        parts = ((candidates[0].get("content") or {}).get("parts") or []) if candidates else []
        text = "".join(p.get("text", "") for p in parts if isinstance(p, dict))
        tool_calls = [
            ToolCall(name=p["functionCall"]["name"], arguments=_parse_arguments(p["functionCall"].get("args")))
            for p in parts
            if isinstance(p, dict) and isinstance(p.get("functionCall"), dict) and p["functionCall"].get("name")
        ]

        tokens = None
        usage = data.get("usageMetadata")
        if isinstance(usage, dict):
            prompt = usage.get("promptTokenCount")
            completion = usage.get("candidatesTokenCount")
            if prompt or completion:
                tokens = TokenUsage(
                    prompt=prompt,
                    completion=completion,
                    total=usage.get("totalTokenCount") or (prompt or 0) + (completion or 0),
                )

        return ProviderResponse(
            content=text,
            model=data.get("modelVersion") or llm.model,
            tokens=tokens,
            tool_calls=tool_calls,
        )


class StubAdapter(BaseAdapter):
    """
    Deterministic backend for keyless development and tests.

    Echoes the last user message inside a valid structured reply and never
    reports token usage.
    """

    vendor = "stub"

    def generate(
        self,
        llm: LLMConfig,
        messages: Sequence[LLMMessage],
        tools: Optional[Sequence[ToolDefinition]] = None,
    ) -> ProviderResponse:
        last_user = next((m.content for m in reversed(messages) if m.role == "user"), "")
        reply = {
            "message": f"Recibí tu mensaje: {last_user}",
            "audio_description": "Respuesta de prueba.",
            "action": {"type": None, "payload": {}},
        }
        return ProviderResponse(content=json.dumps(reply, ensure_ascii=False), model=llm.model or "stub")


# (api_key, timeout) -> adapter
AdapterFactory = Callable[[Optional[str], float], BaseAdapter]

DEFAULT_FACTORIES: Dict[str, AdapterFactory] = {
    "openai": lambda key, timeout: OpenAICompatibleAdapter("openai", key or "", OPENAI_API_URL, timeout=timeout),
    "groq": lambda key, timeout: OpenAICompatibleAdapter("groq", key or "", GROQ_API_URL, timeout=timeout),
    "openrouter": lambda key, timeout: OpenAICompatibleAdapter(
        "openrouter", key or "", OPENROUTER_API_URL, timeout=timeout
    ),
    "gemini": lambda key, timeout: GeminiAdapter(key or "", timeout=timeout),
    "stub": lambda key, timeout: StubAdapter(),
}

KEYLESS_VENDORS = frozenset({"stub"})


class ProviderRouter:
    """
    Uniform `generate` across vendors.

    Adapters are cached per (vendor, credential); construction happens under a
    lock so concurrent turns never build two adapters for the same key.
    Transient failures (ProviderUnavailable) are retried with exponential
    backoff; everything else propagates on the first attempt.
    """

    def __init__(
        self,
        cipher: CredentialCipher,
        *,
        timeout: float = 30.0,
        max_retries: int = 2,
        retry_base_delay: float = 0.5,
        factories: Optional[Mapping[str, AdapterFactory]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.cipher = cipher
        self.timeout = timeout
        self.max_retries = max(0, max_retries)
        self.retry_base_delay = retry_base_delay
        self.factories: Dict[str, AdapterFactory] = dict(DEFAULT_FACTORIES)
        if factories:
            self.factories.update(factories)
        self._sleep = sleep
        self._adapters: Dict[Tuple[str, Optional[str]], BaseAdapter] = {}
        self._lock = threading.Lock()

    def _api_key(self, llm: LLMConfig) -> Optional[str]:
        if llm.provider in KEYLESS_VENDORS:
            return None
        if not llm.credential_ref:
            raise ProviderAuthError(f"No credential configured for provider {llm.provider}", provider=llm.provider)
        try:
            return self.cipher.decrypt(llm.credential_ref)
        except CredentialError as exc:
            raise ProviderAuthError(str(exc), provider=llm.provider) from exc

    def adapter_for(self, llm: LLMConfig) -> BaseAdapter:
        factory = self.factories.get(llm.provider)
        if factory is None:
            raise ProviderError(f"Unsupported LLM provider: {llm.provider}", provider=llm.provider)
        key = (llm.provider, self._api_key(llm))
        with self._lock:
            adapter = self._adapters.get(key)
            if adapter is None:
                adapter = factory(key[1], self.timeout)
                self._adapters[key] = adapter
        return adapter

    @property
    def cached_adapters(self) -> int:
        return len(self._adapters)

    def generate(
        self,
        llm: LLMConfig,
        messages: Sequence[LLMMessage],
        tool_schemas: Optional[Sequence[ToolDefinition]] = None,
    ) -> ProviderResponse:
        adapter = self.adapter_for(llm)
        tools = list(tool_schemas) if tool_schemas else None
        attempts = self.max_retries + 1

        for attempt in range(attempts):
            started = time.monotonic()
            try:
                response = adapter.generate(llm, messages, tools)
            except ProviderError as exc:
                if not exc.retryable or attempt == attempts - 1:
                    logger.error(
                        "llm generation failed provider=%s model=%s attempt=%d error=%s",
                        llm.provider,
                        llm.model,
                        attempt + 1,
                        exc,
                    )
                    raise
                delay = self.retry_base_delay * (2**attempt)
                logger.warning(
                    "llm transient failure provider=%s model=%s attempt=%d retry_in=%.2fs error=%s",
                    llm.provider,
                    llm.model,
                    attempt + 1,
                    delay,
                    exc,
                )
                self._sleep(delay)
                continue

            response.latency = round((time.monotonic() - started) * 1000, 2)
            return response

        raise ProviderUnavailable("retries exhausted", provider=llm.provider)  # pragma: no cover
