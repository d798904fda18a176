"""
Per-turn pipeline: load config and history, think, act, explain, persist.

    think   -> one provider call with the advertised tool schema
    act     -> model-issued tool calls, or an action written inline in the JSON reply
    explain -> one narration call over the tool results (no tool schema)

Only ConfigNotFound and ProviderError (from the think call) leave
`process_message`; every other failure degrades into a valid AgentResponse.
"""

from __future__ import annotations

import json
import logging
import math
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from .errors import ConfigNotFound, ProviderError
from .models import (
    AgentAction,
    AgentConfig,
    AgentResponse,
    ConversationMessage,
    ExtractedContext,
    LLMMessage,
    MessageAction,
    NewMessage,
    ProviderResponse,
    ResponseMeta,
    ToolCall,
    ToolContext,
    ToolDefinition,
    ToolResult,
    TurnContext,
)
from .pricing import PriceTable
from .prompt_builder import build_messages, build_system_prompt, display_price, extract_context, product_ref
from .providers import ProviderRouter
from .reply_parser import DegradedReply, StructuredReply, audio_description_for, parse_reply
from .storage.agent_config_store import AgentConfigStore
from .storage.conversation_store import ConversationStore
from .storage.db import TenantScope
from .tools.custom import map_query_argument
from .tools.registry import ToolRegistry

logger = logging.getLogger("tenant-concierge")

ASSISTANT_ACK = "Voy a consultar la información que necesitas."
APOLOGY = "Ocurrió un error al procesar tu solicitud."
NEEDS_INPUT_FALLBACK = "Necesito más información para ayudarte."
NARRATION_HEADER = "He ejecutado las siguientes herramientas y obtuve estos resultados:"
NARRATION_INSTRUCTIONS = (
    "Basándote en estos resultados, genera una respuesta natural y útil para el usuario. "
    "Responde SIEMPRE en formato JSON con esta estructura:\n"
    "{\n"
    '  "message": "tu respuesta al usuario",\n'
    '  "audio_description": "descripción para audio",\n'
    '  "action": { "type": null, "payload": {} }\n'
    "}\n\n"
    "Si los resultados contienen información relevante, inclúyela en tu respuesta de manera clara y natural."
)
SEARCH_LISTING_CAP = 5
PRODUCT_REF_ACTIONS = ("add_to_cart", "show_product")


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text or "") / 4)


def estimate_prompt_tokens(messages: Sequence[LLMMessage], tools: Sequence[ToolDefinition] = ()) -> int:
    """~4 chars per token, 4 tokens of framing per message, 50 per tool on top of its JSON."""
    chars = sum(len(m.content) for m in messages)
    tool_tokens = 0.0
    for tool in tools:
        tool_tokens += len(json.dumps(tool.model_dump(), ensure_ascii=False)) / 4 + 50
    return round(math.ceil(chars / 4) + len(messages) * 4 + tool_tokens)


def narration_prompt(results: Sequence[Tuple[str, ToolResult]]) -> str:
    parts = [NARRATION_HEADER, ""]
    for name, result in results:
        parts.append(f"**Herramienta: {name}**")
        if result.success:
            parts.append("Resultado exitoso:\n" + json.dumps(result.data, indent=2, ensure_ascii=False, default=str))
        else:
            parts.append(f"Error: {result.error}")
        parts.append("")
    parts.append(NARRATION_INSTRUCTIONS)
    return "\n".join(parts)


def _format_price(value: Any, currency_symbol: str) -> str:
    if isinstance(value, (int, float)):
        return f"{currency_symbol} {value:.2f}"
    return str(value)


def search_listing(query: str, products: Sequence[Dict[str, Any]], count: int, currency_symbol: str) -> str:
    if count <= 0:
        return f'No encontré productos que coincidan con "{query or "tu búsqueda"}". ¿Podrías ser más específico?'
    lines = [
        f"{idx}. {p.get('title') or p.get('name') or 'Producto sin nombre'} - "
        f"{_format_price(display_price(p), currency_symbol)}"
        for idx, p in enumerate(products[:SEARCH_LISTING_CAP], start=1)
    ]
    message = f"Encontré {count} producto{'s' if count > 1 else ''}:\n\n" + "\n".join(lines)
    if count > SEARCH_LISTING_CAP:
        message += f"\n\n... y {count - SEARCH_LISTING_CAP} más."
    return message


def order_summary(order: Dict[str, Any], currency_symbol: str) -> str:
    lines = [
        f"{idx}. {p.get('title')} (x{p.get('qty')}) - {currency_symbol} {p.get('valid_price')}"
        for idx, p in enumerate(order.get("products") or [], start=1)
    ]
    return (
        f"Orden #{order.get('orderNumber')}\n\n"
        f"Productos:\n{chr(10).join(lines) if lines else 'Sin productos'}\n\n"
        f"Total: {order.get('currency')} {order.get('total')}\n"
        f"Estado: {(order.get('orderStatus') or {}).get('typeStatus') or 'N/A'}\n"
        f"Pago: {(order.get('paymentStatus') or {}).get('typeStatus') or 'N/A'}"
    )


def action_for_tool(name: str, data: Any) -> AgentAction:
    """Canonical action payload for a successful tool result."""
    if name == "search_product":
        data = data or {}
        return AgentAction(
            type=name,
            payload={
                "query": data.get("query") or "",
                "products": data.get("products") or [],
                "count": data.get("count") or 0,
            },
        )
    if isinstance(data, dict):
        return AgentAction(type=name, payload=data)
    if data is None:
        return AgentAction(type=name, payload={})
    return AgentAction(type=name, payload={"result": data})


@dataclass
class TurnUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def add(self, response: ProviderResponse, estimated_input: int) -> None:
        tokens = response.tokens
        input_tokens = (tokens.prompt if tokens else None) or estimated_input
        output_tokens = (tokens.completion if tokens else None) or estimate_tokens(response.content)
        self.input_tokens += input_tokens
        self.output_tokens += output_tokens
        self.total_tokens += (tokens.total if tokens else None) or input_tokens + output_tokens


@dataclass
class _Turn:
    """Everything one turn carries between its steps."""

    ctx: TurnContext
    scope: TenantScope
    config: AgentConfig
    user_text: str
    messages: List[LLMMessage]
    extracted: ExtractedContext
    tool_ctx: ToolContext
    usage: TurnUsage
    tools_used: List[str]


class Orchestrator:
    def __init__(
        self,
        configs: AgentConfigStore,
        conversations: ConversationStore,
        router: ProviderRouter,
        tools: ToolRegistry,
        prices: PriceTable,
        *,
        history_limit: Optional[int] = None,
        currency_symbol: str = "S/",
    ) -> None:
        self.configs = configs
        self.conversations = conversations
        self.router = router
        self.tools = tools
        self.prices = prices
        self.history_limit = history_limit
        self.currency_symbol = currency_symbol
        self._locks: Dict[Tuple[str, str, str], Tuple[threading.Lock, int]] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _conversation_lock(self, ctx: TurnContext) -> Iterator[None]:
        """Serialize turns of one conversation; the entry is dropped once no turn holds or waits on it."""
        key = (ctx.tenant_id, ctx.user_id, ctx.conversation_id)
        with self._locks_guard:
            lock, holders = self._locks.get(key) or (threading.Lock(), 0)
            self._locks[key] = (lock, holders + 1)
        try:
            with lock:
                yield
        finally:
            with self._locks_guard:
                lock, holders = self._locks[key]
                if holders <= 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, holders - 1)

    # ------------------------------------------------------------------ entry

    def process_message(self, ctx: TurnContext, user_text: str) -> AgentResponse:
        started = time.monotonic()
        scope = TenantScope(ctx.tenant_id)

        config = self.configs.get(scope, ctx.agent_id)
        if config is None:
            raise ConfigNotFound(ctx.tenant_id, ctx.agent_id)

        with self._conversation_lock(ctx):
            history = self._load_history(scope, ctx, config)
            extracted = extract_context(history, currency_symbol=self.currency_symbol)
            advertised = self.tools.get_advertised_tools(config)
            system_prompt = build_system_prompt(config, advertised)
            messages = build_messages(
                system_prompt, history, user_text, extracted, currency_symbol=self.currency_symbol
            )

            estimated_input = estimate_prompt_tokens(messages, advertised)
            think = self.router.generate(config.llm, messages, advertised or None)

            turn = _Turn(
                ctx=ctx,
                scope=scope,
                config=config,
                user_text=user_text,
                messages=messages,
                extracted=extracted,
                tool_ctx=ToolContext(
                    tenant_id=ctx.tenant_id,
                    user_id=ctx.user_id,
                    conversation_id=ctx.conversation_id,
                    agent_config=config,
                ),
                usage=TurnUsage(),
                tools_used=[],
            )
            turn.usage.add(think, estimated_input)

            if think.tool_calls:
                response = self._run_tool_calls(turn, think.tool_calls)
            else:
                response = self._run_inline(turn, think.content)

            latency_ms = round((time.monotonic() - started) * 1000, 2)
            response.meta = ResponseMeta(
                model=think.model,
                tokens=turn.usage.total_tokens,
                tokens_input=turn.usage.input_tokens,
                tokens_output=turn.usage.output_tokens,
                latency=latency_ms,
                tools_used=list(turn.tools_used),
                estimated_cost=self.prices.estimate_cost(
                    config.llm.provider, config.llm.model, turn.usage.input_tokens, turn.usage.output_tokens
                ),
            )
            response.conversation_id = ctx.conversation_id
            self._persist(turn, response)

        logger.info(
            "turn tenant=%s agent=%s conversation=%s tools=%s action=%s latency_ms=%.1f",
            ctx.tenant_id,
            ctx.agent_id,
            ctx.conversation_id,
            ",".join(turn.tools_used) or "-",
            response.action.type or "-",
            latency_ms,
        )
        return response

    def _load_history(self, scope: TenantScope, ctx: TurnContext, config: AgentConfig) -> List[ConversationMessage]:
        limit = self.history_limit if self.history_limit is not None else config.policies.history_limit
        try:
            return self.conversations.get_last_messages(scope, ctx.user_id, ctx.conversation_id, limit)
        except Exception:
            logger.exception("history unavailable tenant=%s conversation=%s", ctx.tenant_id, ctx.conversation_id)
            return []

    # -------------------------------------------------------- reference fill

    def resolve_references(self, turn: _Turn, name: str, args: Dict[str, Any]) -> Dict[str, Any]:
        resolved = dict(args or {})
        if name in PRODUCT_REF_ACTIONS and not resolved.get("productId") and turn.extracted.last_search_results:
            ref = product_ref(turn.extracted.last_search_results[0])
            if ref:
                resolved["productId"] = ref
        custom = self.tools.find_custom_tool(name, turn.config)
        if custom is not None:
            resolved = map_query_argument(custom, resolved)
        return resolved

    # ------------------------------------------------------- tool-call path

    def _run_tool_calls(self, turn: _Turn, calls: List[ToolCall]) -> AgentResponse:
        cap = turn.config.policies.max_tool_calls_per_message
        if cap and len(calls) > cap:
            logger.warning("tool calls capped requested=%d cap=%d tenant=%s", len(calls), cap, turn.ctx.tenant_id)
            calls = calls[:cap]

        results: List[Tuple[str, ToolResult]] = []
        for call in calls:
            args = self.resolve_references(turn, call.name, call.arguments)
            result = self.tools.execute_tool(call.name, args, turn.tool_ctx)
            turn.tools_used.append(call.name)

            if result.needs_user_input:
                return self._ask_user(result)
            if not result.success:
                logger.warning("tool failed tool=%s error=%s", call.name, result.error)
            results.append((call.name, result))

        action: Optional[AgentAction] = None
        for name, result in results:
            if result.success:
                action = action_for_tool(name, result.data)

        follow_up = turn.messages + [
            LLMMessage(role="assistant", content=ASSISTANT_ACK),
            LLMMessage(role="user", content=narration_prompt(results)),
        ]
        reply = self._narrate(turn, follow_up)
        if reply is None:
            message = self._local_summary(results)
            final_action = action or AgentAction()
            return AgentResponse(
                message=message,
                audio_description=audio_description_for(message, final_action),
                action=final_action,
            )

        final_action = action or reply.action
        return AgentResponse(
            message=reply.message,
            audio_description=reply.audio_description or audio_description_for(reply.message, final_action),
            action=final_action,
        )

    def _narrate(self, turn: _Turn, messages: List[LLMMessage]) -> Optional[Union[StructuredReply, DegradedReply]]:
        """Second provider call, without tools. None when the provider fails."""
        try:
            response = self.router.generate(turn.config.llm, messages, None)
        except ProviderError as exc:
            logger.warning(
                "narration failed after tools ran, degrading tenant=%s tools=%s error=%s",
                turn.ctx.tenant_id,
                ",".join(turn.tools_used),
                exc,
            )
            return None
        turn.usage.add(response, estimate_prompt_tokens(messages))
        return parse_reply(response.content)

    def _local_summary(self, results: Sequence[Tuple[str, ToolResult]]) -> str:
        for name, result in reversed(results):
            if result.success and name == "search_product":
                data = result.data or {}
                products = data.get("products") or []
                return search_listing(data.get("query") or "", products, data.get("count") or len(products), self.currency_symbol)
            if result.success and name == "add_to_cart" and isinstance(result.data, dict) and result.data.get("message"):
                return result.data["message"]
            if result.success and name == "get_order" and isinstance(result.data, dict):
                return order_summary(result.data, self.currency_symbol)
        lines = ["Esto es lo que obtuve:"]
        for name, result in results:
            lines.append(f"- {name}: " + ("completado" if result.success else f"error ({result.error})"))
        return "\n".join(lines)

    @staticmethod
    def _ask_user(result: ToolResult) -> AgentResponse:
        question = result.question or NEEDS_INPUT_FALLBACK
        return AgentResponse(
            message=question,
            audio_description=audio_description_for(question),
            action=AgentAction(),
            needs_user_input=True,
        )

    # ----------------------------------------------------------- inline path

    def _run_inline(self, turn: _Turn, content: str) -> AgentResponse:
        reply = parse_reply(content)
        action_type = reply.action.type
        if isinstance(reply, DegradedReply) or not action_type:
            return AgentResponse(
                message=reply.message,
                audio_description=reply.audio_description or audio_description_for(reply.message),
                action=AgentAction(),
            )

        if not self.tools.is_known_action(action_type, turn.config):
            logger.warning("unknown inline action type=%s tenant=%s", action_type, turn.ctx.tenant_id)
            return AgentResponse(
                message=reply.message,
                audio_description=reply.audio_description or audio_description_for(reply.message, reply.action),
                action=reply.action,
            )

        try:
            return self._execute_inline(turn, reply)
        except Exception:
            logger.exception("inline action failed type=%s tenant=%s", action_type, turn.ctx.tenant_id)
            return AgentResponse(
                message=APOLOGY,
                audio_description=audio_description_for("Error al procesar"),
                action=AgentAction(),
            )

    def _execute_inline(self, turn: _Turn, reply: StructuredReply) -> AgentResponse:
        action_type = reply.action.type or ""
        args = self.resolve_references(turn, action_type, reply.action.payload)
        result = self.tools.execute_tool(action_type, args, turn.tool_ctx)
        turn.tools_used.append(action_type)

        if result.needs_user_input:
            return self._ask_user(result)
        if not result.success:
            logger.warning("inline action failed type=%s error=%s", action_type, result.error)
            return AgentResponse(
                message=result.error or f"No pude ejecutar la acción {action_type}. Por favor, intenta de nuevo.",
                audio_description=audio_description_for(f"Error al ejecutar {action_type}"),
                action=AgentAction(),
            )

        data = result.data
        message = reply.message
        action = action_for_tool(action_type, data)

        if action_type == "search_product":
            payload = action.payload
            payload["query"] = args.get("query") or payload["query"]
            message = search_listing(payload["query"], payload["products"], payload["count"], self.currency_symbol)
        elif action_type == "add_to_cart":
            message = (data or {}).get("message") or reply.message
        elif action_type == "get_order":
            message = order_summary(data or {}, self.currency_symbol)
        elif action_type != "show_product":
            follow_up = [
                LLMMessage(role="system", content=build_system_prompt(turn.config, [])),
                LLMMessage(role="user", content=turn.user_text),
                LLMMessage(role="assistant", content=ASSISTANT_ACK),
                LLMMessage(role="user", content=narration_prompt([(action_type, result)])),
            ]
            narrated = self._narrate(turn, follow_up)
            if narrated is None:
                message = self._local_summary([(action_type, result)])
            else:
                return AgentResponse(
                    message=narrated.message,
                    audio_description=narrated.audio_description or audio_description_for(narrated.message),
                    action=action,
                )

        return AgentResponse(message=message, audio_description=audio_description_for(message, action), action=action)

    # ---------------------------------------------------------------- persist

    def _persist(self, turn: _Turn, response: AgentResponse) -> None:
        ctx = turn.ctx
        meta = response.meta
        try:
            self.conversations.save_message(
                turn.scope, ctx.user_id, ctx.conversation_id, NewMessage(role="user", content=turn.user_text)
            )
            self.conversations.save_message(
                turn.scope,
                ctx.user_id,
                ctx.conversation_id,
                NewMessage(
                    role="assistant",
                    content=response.message,
                    action=(
                        MessageAction(type=response.action.type, payload=response.action.payload)
                        if response.action.type
                        else None
                    ),
                    metadata={
                        "model": meta.model if meta else None,
                        "tokens": meta.tokens if meta else None,
                        "latency": meta.latency if meta else None,
                        "toolsUsed": list(meta.tools_used) if meta else [],
                    },
                ),
            )
            self.conversations.upsert_conversation(turn.scope, ctx.user_id, ctx.conversation_id)
        except Exception:
            logger.exception(
                "failed to persist conversation tenant=%s conversation=%s", ctx.tenant_id, ctx.conversation_id
            )
