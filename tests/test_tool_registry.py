from __future__ import annotations

import json
from typing import Any, Dict, List

import httpx
import pytest

from concierge.external_api import ExternalApiClient
from concierge.models import AgentConfig, CustomTool, ToolContext
from concierge.services import Services
from concierge.storage.db import TenantScope
from concierge.tools.core import CoreTools, ORDER_INPUT_QUESTION, ORDER_NOT_FOUND_QUESTION
from concierge.tools.custom import build_request, map_query_argument
from concierge.tools.registry import ToolRegistry
from support import OAK_TABLE, agent_document

TRACK_TOOL: Dict[str, Any] = {
    "name": "track_shipment",
    "baseUrl": "https://logistics.example.com/api/",
    "path": "/shipments/{trackingId}",
    "method": "GET",
    "enabled": True,
    "description": "Estado de un envío",
    "parametersSchema": {
        "type": "object",
        "properties": {"trackingId": {"type": "string", "description": "Código de seguimiento"}},
        "required": ["trackingId"],
    },
}


def _config(mode: str = "default", **overrides: Any) -> AgentConfig:
    document = agent_document()
    document["tools"] = {**document["tools"], "mode": mode, "custom": [dict(TRACK_TOOL)]}
    document.update(overrides)
    return AgentConfig.model_validate(document)


def _ctx(config: AgentConfig) -> ToolContext:
    return ToolContext(tenant_id="t1", user_id="u1", conversation_id="c1", agent_config=config)


def _registry_with_transport(services: Services, handler) -> ToolRegistry:
    api = ExternalApiClient(
        services.cipher,
        client=httpx.Client(transport=httpx.MockTransport(handler)),
    )
    core = CoreTools(services.products, services.orders, api)
    return ToolRegistry(core, api)


@pytest.mark.parametrize(
    "mode, expected",
    [
        ("default", ["search_product", "add_to_cart", "get_order", "show_product"]),
        ("custom", ["track_shipment"]),
        ("hybrid", ["search_product", "add_to_cart", "get_order", "show_product", "track_shipment"]),
    ],
)
def test_advertised_tools_follow_mode(services: Services, mode: str, expected: List[str]) -> None:
    names = [t.name for t in services.tools.get_advertised_tools(_config(mode))]
    assert names == expected


def test_unusable_custom_tools_are_not_advertised(services: Services) -> None:
    config = _config("custom")
    config.tools.custom.append(CustomTool(name="disabled", base_url="https://x.example.com", enabled=False))
    config.tools.custom.append(CustomTool(name="no_url", enabled=True))

    names = [t.name for t in services.tools.get_advertised_tools(config)]

    assert names == ["track_shipment"]


def test_rag_knowledge_advertises_rag_query(services: Services) -> None:
    config = _config(knowledge={"companyInfo": {"source": "rag", "vectorIndex": "idx-t1"}})
    names = [t.name for t in services.tools.get_advertised_tools(config)]
    assert names[-1] == "rag_query"


def test_custom_tool_call_builds_url_and_params(services: Services) -> None:
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"status": "in_transit"})

    registry = _registry_with_transport(services, handler)
    config = _config("custom")

    result = registry.execute_tool("track_shipment", {"trackingId": "AB 12", "verbose": True}, _ctx(config))

    assert result.success is True
    assert result.data == {"status": "in_transit"}
    assert seen[0].method == "GET"
    assert seen[0].url.path == "/api/shipments/AB 12"
    assert seen[0].url.params["verbose"] == "True"
    assert "authorization" not in seen[0].headers


def test_custom_tool_sends_decrypted_bearer(services: Services) -> None:
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"ok": True})

    registry = _registry_with_transport(services, handler)
    tool = dict(TRACK_TOOL, method="POST", credentialRef=services.cipher.encrypt("tool-secret"))
    document = agent_document()
    document["tools"] = {**document["tools"], "mode": "custom", "custom": [tool]}
    config = AgentConfig.model_validate(document)

    result = registry.execute_tool("track_shipment", {"trackingId": "Z9", "note": "hola"}, _ctx(config))

    assert result.success is True
    assert seen[0].headers["authorization"] == "Bearer tool-secret"
    assert json.loads(seen[0].content) == {"note": "hola"}


def test_custom_tool_http_error_is_a_failed_result(services: Services) -> None:
    registry = _registry_with_transport(services, lambda request: httpx.Response(503))

    result = registry.execute_tool("track_shipment", {"trackingId": "Z9"}, _ctx(_config("custom")))

    assert result.success is False
    assert "503" in result.error


def test_custom_tool_timeout_is_a_failed_result(services: Services) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("too slow", request=request)

    registry = _registry_with_transport(services, handler)

    result = registry.execute_tool("track_shipment", {"trackingId": "Z9"}, _ctx(_config("custom")))

    assert result.success is False
    assert "timed out" in result.error


def test_unknown_tool(services: Services) -> None:
    result = services.tools.execute_tool("teleport", {}, _ctx(_config()))
    assert result.success is False
    assert result.error == "Tool not found: teleport"


@pytest.mark.parametrize(
    "name, args",
    [
        ("search_product", {"query": "mesa"}),
        ("show_product", {"productId": "1"}),
        ("add_to_cart", {"productId": "1"}),
        ("get_order", {"orderNumber": "N1"}),
        ("rag_query", {"query": "horario"}),
    ],
)
def test_core_tools_are_disabled_in_custom_mode(services: Services, name: str, args: Dict[str, Any]) -> None:
    config = _config("custom", knowledge={"companyInfo": {"source": "rag", "vectorIndex": "idx-t1"}})

    result = services.tools.execute_tool(name, args, _ctx(config))

    assert result.success is False
    assert "not enabled" in result.error


@pytest.mark.parametrize("search, cart, order", [(s, c, o) for s in (True, False) for c in (True, False) for o in (True, False)])
def test_default_mode_never_advertises_custom_tools(
    services: Services, search: bool, cart: bool, order: bool
) -> None:
    config = _config(knowledge={"companyInfo": {"source": "rag", "vectorIndex": "idx-t1"}})
    config.tools.search_product.enabled = search
    config.tools.add_to_cart.enabled = cart
    config.tools.get_order.enabled = order
    config.tools.custom.append(CustomTool(name="quote", base_url="https://q.example.com", enabled=True))

    names = {t.name for t in services.tools.get_advertised_tools(config)}

    assert names.isdisjoint({"track_shipment", "quote"})
    assert "rag_query" in names


def test_custom_tool_transport_crash_is_a_failed_result(services: Services) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise RuntimeError("socket exploded")

    registry = _registry_with_transport(services, handler)

    result = registry.execute_tool("track_shipment", {"trackingId": "Z9"}, _ctx(_config("custom")))

    assert result.success is False
    assert result.error == "socket exploded"


def test_search_by_category_on_the_store(services: Services, scope: TenantScope) -> None:
    services.products.insert(scope, dict(OAK_TABLE))
    services.products.insert(scope, dict(OAK_TABLE, title="Lámpara", slug="lampara", category=[{"slug": "iluminacion"}]))

    lamps = services.tools.execute_tool("search_product", {"query": "", "category": "iluminacion"}, _ctx(_config()))
    oak_lamps = services.tools.execute_tool(
        "search_product", {"query": "roble", "category": "iluminacion"}, _ctx(_config())
    )

    assert [p["slug"] for p in lamps.data["products"]] == ["lampara"]
    assert oak_lamps.data["count"] == 0


def test_query_argument_maps_onto_first_placeholder() -> None:
    tool = CustomTool.model_validate(TRACK_TOOL)

    assert map_query_argument(tool, {"query": "X1"}) == {"query": "X1", "trackingId": "X1"}
    assert map_query_argument(tool, {"query": "X1", "trackingId": "Y2"}) == {"query": "X1", "trackingId": "Y2"}


def test_build_request_without_path_uses_tool_name() -> None:
    tool = CustomTool(name="quote", base_url="https://q.example.com/", enabled=True)

    method, url, remaining = build_request(tool, {"amount": 3})

    assert (method, url, remaining) == ("POST", "https://q.example.com/quote", {"amount": 3})


def test_add_to_cart_merges_lines(services: Services, scope: TenantScope) -> None:
    product = services.products.insert(scope, dict(OAK_TABLE))
    ctx = _ctx(_config())

    first = services.tools.execute_tool("add_to_cart", {"productId": product["id"]}, ctx)
    second = services.tools.execute_tool("add_to_cart", {"productId": "mesa-roble", "quantity": 2}, ctx)

    assert first.success and second.success
    assert first.data["cart"]["orderNumber"] == second.data["cart"]["orderNumber"]
    lines = second.data["cart"]["products"]
    assert len(lines) == 1
    assert lines[0]["qty"] == 3
    assert second.data["cart"]["total"] == 1350.0


def test_add_to_cart_rejects_bad_quantity(services: Services, scope: TenantScope) -> None:
    product = services.products.insert(scope, dict(OAK_TABLE))

    result = services.tools.execute_tool("add_to_cart", {"productId": product["id"], "quantity": 0}, _ctx(_config()))

    assert result.success is False


def test_get_order_needs_user_input(services: Services) -> None:
    missing = services.tools.execute_tool("get_order", {}, _ctx(_config()))
    unknown = services.tools.execute_tool("get_order", {"orderNumber": "nope"}, _ctx(_config()))

    assert missing.needs_user_input and missing.question == ORDER_INPUT_QUESTION
    assert unknown.needs_user_input and unknown.question == ORDER_NOT_FOUND_QUESTION


def test_get_order_by_email(services: Services, scope: TenantScope) -> None:
    order = services.orders.create(
        scope,
        {
            "products": [{"productId": "1", "title": "Mesa", "qty": 2, "valid_price": 450}],
            "clientInfo": {"email": "ana@example.com", "phone": "999"},
            "orderStatus": {"typeStatus": "paid"},
            "currency": "PEN",
        },
    )

    result = services.tools.execute_tool("get_order", {"email": "ana@example.com"}, _ctx(_config()))

    assert result.success is True
    assert result.data["orderNumber"] == order["orderNumber"]
    assert result.data["total"] == 900.0
    assert isinstance(result.data["createdAt"], str)


def test_search_from_product_api(services: Services) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["q"] == "mesa"
        assert request.url.params["category"] == "comedor"
        return httpx.Response(200, json={"products": [{"title": "Mesa API", "price": 10}]})

    registry = _registry_with_transport(services, handler)
    config = _config(knowledge={"products": {"source": "api", "apiUrl": "https://shop.example.com/products"}})
    config.tools.search_product.type = "api"

    result = registry.execute_tool("search_product", {"query": "mesa", "category": "comedor"}, _ctx(config))

    assert result.success is True
    assert result.data["count"] == 1
    assert result.data["products"][0]["title"] == "Mesa API"
