from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from ..external_api import ExternalApiClient
from ..models import AgentConfig, CustomTool, ToolContext, ToolDefinition, ToolResult
from .core import CoreTools
from .custom import invoke_custom_tool

logger = logging.getLogger("tenant-concierge")

ToolExecutor = Callable[[Dict[str, Any], ToolContext], ToolResult]

# Actions the model may emit inline in its JSON reply instead of a tool call.
INLINE_CORE_ACTIONS = frozenset({"search_product", "show_product", "add_to_cart", "get_order"})

SEARCH_PRODUCT = ToolDefinition(
    name="search_product",
    description="Busca productos en el catálogo por nombre, descripción o categoría",
    parameters={
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "Término de búsqueda"},
            "limit": {"type": "number", "description": "Número máximo de resultados (default: 10)"},
            "category": {"type": "string", "description": "Slug de categoría para filtrar (opcional)"},
        },
        "required": ["query"],
    },
)

SHOW_PRODUCT = ToolDefinition(
    name="show_product",
    description="Muestra detalles de un producto específico",
    parameters={
        "type": "object",
        "properties": {"productId": {"type": "string", "description": "ID del producto"}},
        "required": ["productId"],
    },
)

ADD_TO_CART = ToolDefinition(
    name="add_to_cart",
    description="Agrega un producto al carrito del usuario",
    parameters={
        "type": "object",
        "properties": {
            "productId": {"type": "string", "description": "ID del producto a agregar"},
            "quantity": {"type": "number", "description": "Cantidad a agregar (default: 1)"},
        },
        "required": ["productId"],
    },
)

GET_ORDER = ToolDefinition(
    name="get_order",
    description=(
        "Obtiene información de una orden. Si no tienes el número de orden, pregunta al usuario "
        "por su email, teléfono o número de orden antes de usar esta herramienta."
    ),
    parameters={
        "type": "object",
        "properties": {
            "orderId": {"type": "string", "description": "ID interno de la orden"},
            "orderNumber": {"type": "string", "description": 'Número de orden (ej: "17405329519752tYdTn9")'},
            "email": {"type": "string", "description": "Email del cliente para buscar órdenes"},
            "phone": {"type": "string", "description": "Teléfono del cliente para buscar órdenes"},
        },
    },
)

RAG_QUERY = ToolDefinition(
    name="rag_query",
    description="Consulta información de la base de conocimiento de la empresa",
    parameters={
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "Consulta a realizar"},
            "source": {
                "type": "string",
                "description": "Fuente de conocimiento: companyInfo o products",
                "enum": ["companyInfo", "products"],
            },
        },
        "required": ["query"],
    },
)


class ToolRegistry:
    """
    Maps a tenant's enabled capabilities to executors and to the tool schema
    advertised to the model.
    """

    def __init__(self, core: CoreTools, external_api: ExternalApiClient) -> None:
        self.external_api = external_api
        self._executors: Dict[str, ToolExecutor] = {}
        self.register("search_product", core.search_product)
        self.register("show_product", core.show_product)
        self.register("add_to_cart", core.add_to_cart)
        self.register("get_order", core.get_order)
        self.register("rag_query", core.rag_query)

    def register(self, name: str, executor: ToolExecutor) -> None:
        self._executors[name] = executor

    def get_advertised_tools(self, config: AgentConfig) -> List[ToolDefinition]:
        tools = config.tools
        definitions: List[ToolDefinition] = []

        if tools.mode in ("default", "hybrid"):
            if tools.search_product.enabled:
                definitions.append(SEARCH_PRODUCT)
            if tools.add_to_cart.enabled:
                definitions.append(ADD_TO_CART)
            if tools.get_order.enabled:
                definitions.append(GET_ORDER)
            if tools.search_product.enabled:
                definitions.append(SHOW_PRODUCT)
            if any(source.source == "rag" for source in config.knowledge.values()):
                definitions.append(RAG_QUERY)

        if tools.mode in ("custom", "hybrid"):
            for custom in tools.custom:
                if not custom.is_usable:
                    continue
                definitions.append(
                    ToolDefinition(
                        name=custom.name,
                        description=custom.description or f"Custom tool: {custom.name}",
                        parameters=custom.parameters_schema,
                    )
                )

        return definitions

    def find_custom_tool(self, name: str, config: AgentConfig) -> Optional[CustomTool]:
        """Enabled custom tool with exactly this name, if any."""
        for custom in config.tools.custom:
            if custom.name == name and custom.enabled:
                return custom
        return None

    def is_known_action(self, name: Optional[str], config: AgentConfig) -> bool:
        if not name:
            return False
        return name in INLINE_CORE_ACTIONS or self.find_custom_tool(name, config) is not None

    def execute_tool(self, name: str, args: Dict[str, Any], ctx: ToolContext) -> ToolResult:
        args = dict(args or {})

        custom = self.find_custom_tool(name, ctx.agent_config)
        if custom is not None:
            try:
                result = invoke_custom_tool(custom, args, self.external_api)
            except Exception as exc:
                logger.exception("custom tool raised tool=%s tenant=%s", name, ctx.tenant_id)
                return ToolResult(success=False, error=str(exc) or exc.__class__.__name__)
            if not result.success:
                logger.warning("custom tool execution failed tool=%s error=%s", name, result.error)
            return result

        executor = self._executors.get(name)
        if executor is None:
            return ToolResult(success=False, error=f"Tool not found: {name}")

        try:
            return executor(args, ctx)
        except Exception as exc:
            logger.exception("tool execution raised tool=%s tenant=%s", name, ctx.tenant_id)
            return ToolResult(success=False, error=str(exc) or exc.__class__.__name__)
