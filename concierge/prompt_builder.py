"""
System prompt, message list and back-reference context for one turn.

The prompt text is Spanish; tenants serve Spanish-speaking shoppers.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from .models import AgentConfig, ConversationMessage, ExtractedContext, LLMMessage, PoliciesConfig, ToolDefinition

DEFAULT_AGENT_NAME = "SAM"
SEARCH_RESULTS_CAP = 5

PERSONALITIES: Dict[str, str] = {
    "friendly": "Tienes una personalidad amigable, cálida y cercana. Usa un tono conversacional y empático.",
    "formal": "Tienes una personalidad formal y profesional. Usa un tono respetuoso y estructurado.",
    "professional": "Tienes una personalidad profesional y eficiente. Sé claro, directo y orientado a resultados.",
    "casual": "Tienes una personalidad casual y relajada. Usa un tono informal pero respetuoso.",
}

BACK_REFERENCE_NOTE = (
    "IMPORTANTE: Si el usuario hace referencia a productos encontrados anteriormente "
    '(ej: "la mesa que encontraste", "ese producto", "agregalo"), usa la información '
    "de los productos listados arriba."
)

REPLY_FORMAT = (
    "FORMATO DE RESPUESTA:\n"
    "Responde SIEMPRE con un objeto JSON válido con esta forma:\n"
    '{"message": "texto para el usuario", "audio_description": "versión breve para voz", '
    '"action": {"type": "nombre_de_accion o null", "payload": {}}}'
)


def product_ref(product: Dict[str, Any]) -> Optional[str]:
    """The identifier a product is referred to by: _id, then id, then slug."""
    for key in ("_id", "id", "slug"):
        value = product.get(key)
        if value:
            return str(value)
    return None


def display_price(product: Dict[str, Any]) -> Any:
    price = product.get("price")
    if isinstance(price, dict):
        return price.get("sale") or price.get("regular") or "N/A"
    return price if price not in (None, "") else "N/A"


def _product_name(product: Dict[str, Any]) -> str:
    return product.get("title") or product.get("name") or "Producto"


def _policies_text(policies: PoliciesConfig) -> str:
    lines = [
        "POLÍTICAS:",
        f"- Umbral de confianza para usar herramientas: {policies.tool_use_threshold * 100:.0f}%",
    ]
    if policies.allow_external_api:
        lines.append("- Puedes usar APIs externas cuando sea necesario.")
    else:
        lines.append("- NO uses APIs externas.")
    if policies.max_tool_calls_per_message:
        lines.append(f"- Máximo {policies.max_tool_calls_per_message} llamadas a herramientas por mensaje.")
    return "\n".join(lines)


def _tools_text(tools: Sequence[ToolDefinition]) -> str:
    if not tools:
        return "No tienes herramientas disponibles en este momento."

    lines = ["HERRAMIENTAS DISPONIBLES:", ""]
    for tool in tools:
        lines.append(f"- {tool.name}: {tool.description}")
        properties = (tool.parameters or {}).get("properties") or {}
        if properties:
            required = set((tool.parameters or {}).get("required") or [])
            lines.append("  Parámetros:")
            for key, spec in properties.items():
                spec = spec if isinstance(spec, dict) else {}
                flag = "requerido" if key in required else "opcional"
                lines.append(f"  - {key} ({flag}): {spec.get('description') or spec.get('type') or 'string'}")
    lines.append("")
    lines.append(
        "IMPORTANTE: Usa estas herramientas cuando el usuario solicite información o acciones que "
        "requieran datos externos. Si hay herramientas personalizadas disponibles, úsalas cuando "
        "sean relevantes para la consulta del usuario."
    )
    return "\n".join(lines)


def build_system_prompt(config: AgentConfig, tools: Sequence[ToolDefinition]) -> str:
    name = config.name_agent or DEFAULT_AGENT_NAME
    sections = [
        f"Eres {name} un asistente virtual inteligente y profesional.",
        PERSONALITIES.get(config.personality, PERSONALITIES["friendly"]),
        _policies_text(config.policies),
        _tools_text(tools),
        REPLY_FORMAT,
    ]
    if config.system_prompt and config.system_prompt.strip():
        sections.append(config.system_prompt.strip())
    return "\n\n".join(sections) + "\n"


def _annotate(message: ConversationMessage, currency_symbol: str) -> str:
    content = message.content
    action = message.action
    if action is None:
        return content

    if action.type == "search_product":
        products = action.payload.get("products") or []
        if products:
            lines = [
                f"- {_product_name(p)} (ID: {product_ref(p)}, Precio: {currency_symbol} {display_price(p)})"
                for p in products
                if isinstance(p, dict)
            ]
            content += "\n\n[Productos encontrados en esta búsqueda:\n" + "\n".join(lines) + "]"
    elif action.type == "show_product" and action.payload:
        content += f"\n\n[Producto mostrado: {_product_name(action.payload)} (ID: {product_ref(action.payload)})]"
    return content


def build_messages(
    system_prompt: str,
    history: Sequence[ConversationMessage],
    current_text: str,
    extracted: Optional[ExtractedContext] = None,
    *,
    currency_symbol: str = "S/",
) -> List[LLMMessage]:
    system = system_prompt
    if extracted is not None and extracted.summary_text:
        system = f"{system_prompt}\n\n{extracted.summary_text}\n\n{BACK_REFERENCE_NOTE}"

    messages = [LLMMessage(role="system", content=system)]
    for msg in history:
        role = "user" if msg.role == "user" else "assistant"
        messages.append(LLMMessage(role=role, content=_annotate(msg, currency_symbol)))
    messages.append(LLMMessage(role="user", content=current_text))
    return messages


def extract_context(history: Sequence[ConversationMessage], *, currency_symbol: str = "S/") -> ExtractedContext:
    """
    Fold the history oldest to newest, collecting what the user may refer back to.
    """
    ctx = ExtractedContext()

    def mention(ref: Optional[str]) -> None:
        if ref and ref not in ctx.mentioned_products:
            ctx.mentioned_products.append(ref)

    for msg in history:
        action = msg.action
        if action is None:
            continue
        payload = action.payload or {}

        if action.type in ("show_product", "add_to_cart"):
            mention(payload.get("productId") or payload.get("id"))
            cart = payload.get("cart")
            if isinstance(cart, dict):
                for line in cart.get("products") or []:
                    if isinstance(line, dict):
                        ref = line.get("productId") or line.get("id")
                        mention(str(ref) if ref is not None else None)
        elif action.type == "search_product" and isinstance(payload.get("products"), list):
            # an empty result set still replaces the previous one
            products = [p for p in payload["products"] if isinstance(p, dict)]
            ctx.last_search_results = products[:SEARCH_RESULTS_CAP]
            for product in products:
                mention(product_ref(product))
        elif action.type == "get_order":
            order_ref = payload.get("orderId") or payload.get("orderNumber")
            if order_ref and order_ref not in ctx.mentioned_orders:
                ctx.mentioned_orders.append(str(order_ref))

        ctx.last_action = action

    parts: List[str] = []
    if ctx.last_search_results:
        lines = [
            f"{idx}. {_product_name(p)} (ID: {product_ref(p)}) - {currency_symbol} {display_price(p)}"
            for idx, p in enumerate(ctx.last_search_results, start=1)
        ]
        parts.append("PRODUCTOS ENCONTRADOS RECIENTEMENTE:\n" + "\n".join(lines))
    if ctx.mentioned_products:
        parts.append("Productos mencionados en la conversación: " + ", ".join(ctx.mentioned_products))
    if parts:
        ctx.summary_text = "\n\n".join(parts)
    return ctx
