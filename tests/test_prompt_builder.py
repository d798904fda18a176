from __future__ import annotations

from typing import Any, Dict, List, Optional

from concierge.models import AgentConfig, ConversationMessage, MessageAction
from concierge.prompt_builder import (
    BACK_REFERENCE_NOTE,
    build_messages,
    build_system_prompt,
    extract_context,
)
from concierge.tools.registry import GET_ORDER, SEARCH_PRODUCT
from support import agent_document


def _msg(role: str, content: str, action: Optional[MessageAction] = None) -> ConversationMessage:
    return ConversationMessage(
        tenant_id="t1", user_id="u1", conversation_id="c1", role=role, content=content, action=action
    )


def _products(count: int) -> List[Dict[str, Any]]:
    return [
        {"id": str(i), "title": f"Producto {i}", "price": {"regular": 10 * i, "sale": 0}}
        for i in range(1, count + 1)
    ]


def test_system_prompt_sections() -> None:
    config = AgentConfig.model_validate(agent_document(personality="formal"))

    prompt = build_system_prompt(config, [SEARCH_PRODUCT, GET_ORDER])

    assert prompt.startswith("Eres Lucía un asistente virtual")
    assert "personalidad formal" in prompt
    assert "POLÍTICAS:" in prompt
    assert "NO uses APIs externas." in prompt
    assert "- search_product:" in prompt
    assert "query (requerido)" in prompt
    assert "limit (opcional)" in prompt
    assert prompt.rstrip().endswith("Vendes muebles de madera.")


def test_system_prompt_defaults() -> None:
    document = agent_document(systemPrompt="")
    document.pop("nameAgent")
    config = AgentConfig.model_validate(document)

    prompt = build_system_prompt(config, [])

    assert prompt.startswith("Eres SAM ")
    assert "No tienes herramientas disponibles" in prompt


def test_extract_context_caps_and_dedupes() -> None:
    history = [
        _msg("assistant", "Primera", MessageAction(type="search_product", payload={"products": _products(2)})),
        _msg("assistant", "Segunda", MessageAction(type="search_product", payload={"products": _products(7)})),
        _msg("assistant", "Orden", MessageAction(type="get_order", payload={"orderNumber": "ORD-1"})),
    ]

    ctx = extract_context(history)

    assert [p["id"] for p in ctx.last_search_results] == ["1", "2", "3", "4", "5"]
    assert ctx.mentioned_products == ["1", "2", "3", "4", "5", "6", "7"]
    assert ctx.mentioned_orders == ["ORD-1"]
    assert ctx.last_action.type == "get_order"
    assert "PRODUCTOS ENCONTRADOS RECIENTEMENTE" in ctx.summary_text
    assert "1. Producto 1 (ID: 1) - S/ 10" in ctx.summary_text


def test_empty_search_replaces_previous_results() -> None:
    history = [
        _msg("assistant", "Mesa", MessageAction(type="search_product", payload={"products": _products(1), "count": 1})),
        _msg("assistant", "Nada", MessageAction(type="search_product", payload={"query": "sofa", "products": [], "count": 0})),
    ]

    ctx = extract_context(history)

    assert ctx.last_search_results == []
    assert ctx.mentioned_products == ["1"]
    assert "PRODUCTOS ENCONTRADOS RECIENTEMENTE" not in (ctx.summary_text or "")


def test_cart_lines_count_as_mentioned_products() -> None:
    cart = {"orderNumber": "N1", "products": [{"productId": 7, "id": 7, "qty": 1}, {"productId": "8", "qty": 2}]}
    history = [
        _msg("assistant", "Agregado", MessageAction(type="add_to_cart", payload={"message": "ok", "cart": cart})),
    ]

    ctx = extract_context(history)

    assert ctx.mentioned_products == ["7", "8"]
    assert ctx.last_action.type == "add_to_cart"


def test_extract_context_empty_history() -> None:
    ctx = extract_context([])
    assert ctx.summary_text is None
    assert ctx.last_search_results == []


def test_build_messages_annotates_history_and_appends_summary() -> None:
    history = [
        _msg("user", "busco mesas"),
        _msg("assistant", "Encontré esto", MessageAction(type="search_product", payload={"products": _products(1)})),
    ]
    extracted = extract_context(history)

    messages = build_messages("SYSTEM", history, "agrégala", extracted)

    assert [m.role for m in messages] == ["system", "user", "assistant", "user"]
    assert messages[0].content.startswith("SYSTEM\n\n")
    assert messages[0].content.endswith(BACK_REFERENCE_NOTE)
    assert "[Productos encontrados en esta búsqueda:" in messages[2].content
    assert "(ID: 1, Precio: S/ 10)" in messages[2].content
    assert messages[-1].content == "agrégala"


def test_build_messages_without_context() -> None:
    messages = build_messages("SYSTEM", [], "hola")
    assert [(m.role, m.content) for m in messages] == [("system", "SYSTEM"), ("user", "hola")]
