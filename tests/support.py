"""Shared helpers for the test suite: scripted provider, env overrides, seed data."""

from __future__ import annotations

import json
import os
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Sequence, Union

from concierge.models import LLMConfig, LLMMessage, ProviderResponse, TokenUsage, ToolCall, ToolDefinition
from concierge.providers import BaseAdapter


@contextmanager
def env_vars(env: Dict[str, str]):
    """
    Temporarily set environment variables for a test.

    Restores previous values afterwards, even if the test fails.
    """
    old_values: Dict[str, Any] = {}
    for key, value in env.items():
        old_values[key] = os.environ.get(key)
        os.environ[key] = value
    try:
        yield
    finally:
        for key, old in old_values.items():
            if old is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = old


class ScriptedAdapter(BaseAdapter):
    """Replays queued responses (or raises queued exceptions) and records every call."""

    vendor = "scripted"

    def __init__(self, replies: Optional[Sequence[Union[ProviderResponse, Exception]]] = None) -> None:
        self.replies: List[Union[ProviderResponse, Exception]] = list(replies or [])
        self.calls: List[Dict[str, Any]] = []

    def queue(self, *replies: Union[ProviderResponse, Exception]) -> None:
        self.replies.extend(replies)

    def generate(
        self,
        llm: LLMConfig,
        messages: Sequence[LLMMessage],
        tools: Optional[Sequence[ToolDefinition]] = None,
    ) -> ProviderResponse:
        self.calls.append({"messages": list(messages), "tools": list(tools) if tools else None})
        if not self.replies:
            raise AssertionError("ScriptedAdapter ran out of replies")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply.model_copy(deep=True)


def json_reply(
    message: str,
    action_type: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
    *,
    audio: Optional[str] = None,
    tokens: Optional[TokenUsage] = None,
    model: str = "stub-model",
) -> ProviderResponse:
    body: Dict[str, Any] = {"message": message, "action": {"type": action_type, "payload": payload or {}}}
    if audio is not None:
        body["audio_description"] = audio
    return ProviderResponse(content=json.dumps(body, ensure_ascii=False), model=model, tokens=tokens)


def tool_calls(*calls: ToolCall, tokens: Optional[TokenUsage] = None, model: str = "stub-model") -> ProviderResponse:
    return ProviderResponse(content="", model=model, tool_calls=list(calls), tokens=tokens)


def agent_document(tenant_id: str = "t1", agent_id: str = "default", **overrides: Any) -> Dict[str, Any]:
    """A camelCase config document with every core tool enabled on the local store."""
    document: Dict[str, Any] = {
        "tenantId": tenant_id,
        "agentId": agent_id,
        "nameAgent": "Lucía",
        "llm": {"provider": "stub", "model": "stub-model"},
        "tools": {
            "mode": "default",
            "searchProduct": {"enabled": True, "type": "store"},
            "addToCart": {"enabled": True},
            "getOrder": {"enabled": True},
        },
        "personality": "friendly",
        "systemPrompt": "Vendes muebles de madera.",
    }
    document.update(overrides)
    return document


OAK_TABLE: Dict[str, Any] = {
    "title": "Mesa de roble",
    "slug": "mesa-roble",
    "description_short": "Mesa de comedor para seis personas",
    "price": {"regular": 500, "sale": 450},
    "image_default": ["https://cdn.example.com/mesa.jpg"],
    "category": [{"slug": "comedor"}],
    "is_available": True,
    "stock": 3,
    "order": 1,
}

OAK_CHAIR: Dict[str, Any] = {
    "title": "Silla de roble",
    "slug": "silla-roble",
    "description_short": "Silla tapizada",
    "price": {"regular": 120, "sale": 0},
    "image_default": [],
    "category": [{"slug": "comedor"}],
    "is_available": True,
    "stock": 12,
    "order": 2,
}
