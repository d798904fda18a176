"""
Built-in commerce tools: catalogue search, product detail, cart, order lookup
and knowledge retrieval.

Every executor takes (args, ctx) and returns a ToolResult; the registry turns
exceptions into failed results.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..external_api import ExternalApiClient
from ..models import ToolContext, ToolResult
from ..retrieval import NullRetrieval, Retrieval
from ..storage.db import TenantScope
from ..storage.order_store import OrderStore, order_total
from ..storage.product_store import ProductStore, product_image, product_price

logger = logging.getLogger("tenant-concierge")

ORDER_INPUT_QUESTION = (
    "Para buscar tu orden, necesito alguna de estas informaciones: número de orden, "
    "tu email o tu teléfono. ¿Cuál puedes proporcionarme?"
)
ORDER_NOT_FOUND_QUESTION = (
    "No encontré ninguna orden con esa información. ¿Podrías verificar el número de orden, email o teléfono?"
)


def _core_enabled(ctx: ToolContext, flag: str) -> bool:
    tools = ctx.agent_config.tools
    if tools.mode not in ("default", "hybrid"):
        return False
    return getattr(tools, flag).enabled


def _iso(value: Any) -> Any:
    return value.isoformat() if isinstance(value, datetime) else value


class CoreTools:
    def __init__(
        self,
        products: ProductStore,
        orders: OrderStore,
        external_api: ExternalApiClient,
        retrieval: Optional[Retrieval] = None,
        *,
        currency: str = "PEN",
    ) -> None:
        self.products = products
        self.orders = orders
        self.external_api = external_api
        self.retrieval = retrieval or NullRetrieval()
        self.currency = currency

    # ------------------------------------------------------------------ search

    def search_product(self, args: Dict[str, Any], ctx: ToolContext) -> ToolResult:
        if not _core_enabled(ctx, "search_product"):
            return ToolResult(success=False, error="search_product tool is not enabled")

        raw_query = str(args.get("query") or "").strip()
        query = "" if raw_query == "*" else raw_query
        limit = int(args.get("limit") or 10)
        category = str(args.get("category") or "").strip() or None
        scope = TenantScope(ctx.tenant_id)
        backend = ctx.agent_config.tools.search_product.type

        products: List[Any]
        if backend == "api":
            source = ctx.agent_config.knowledge.get("products")
            if source is None or not source.api_url:
                return ToolResult(success=False, error="API URL not configured for products")
            products = self.external_api.fetch_products(
                source.api_url,
                credential_ref=source.credential_ref,
                query=query,
                limit=limit,
                category=category,
            )
        elif backend == "rag":
            source = ctx.agent_config.knowledge.get("products")
            result = self.retrieval.query(ctx.tenant_id, query, source.vector_index if source else None)
            products = list(result.get("data") or [])
        elif category:
            products = self.products.get_by_category(scope, category, limit, query=query)
        else:
            products = self.products.search(scope, query, limit)

        return ToolResult(success=True, data={"query": query, "products": products, "count": len(products)})

    def show_product(self, args: Dict[str, Any], ctx: ToolContext) -> ToolResult:
        if not _core_enabled(ctx, "search_product"):
            return ToolResult(success=False, error="show_product tool is not enabled")

        product_id = args.get("productId")
        if not product_id:
            return ToolResult(success=False, error="productId parameter is required")

        product = self.products.get_by_id(TenantScope(ctx.tenant_id), str(product_id))
        if product is None:
            return ToolResult(success=False, error=f"Product not found: {product_id}")

        price = product.get("price") or {}
        categories = product.get("category") or []
        return ToolResult(
            success=True,
            data={
                "id": product["id"],
                "title": product.get("title"),
                "slug": product.get("slug"),
                "description": product.get("description_short") or product.get("description_long"),
                "price": product_price(product),
                "regularPrice": price.get("regular"),
                "salePrice": price.get("sale"),
                "image": product_image(product),
                "category": categories[0].get("slug") if categories and isinstance(categories[0], dict) else None,
                "isAvailable": product.get("is_available", True),
                "stock": product.get("stock"),
            },
        )

    # -------------------------------------------------------------------- cart

    def _new_cart(self, scope: TenantScope, user_id: str) -> Dict[str, Any]:
        client = {
            "doc": "",
            "name": "",
            "email": user_id if "@" in user_id else f"{user_id}@temp.com",
            "phone": "" if "@" in user_id else user_id,
        }
        return self.orders.create(
            scope,
            {
                "products": [],
                "clientInfo": client,
                "billingInfo": dict(client),
                "shippingInfo": dict(client),
                "paymentStatus": {"typeStatus": "pending", "message": "", "methodPayment": ""},
                "orderStatus": {"typeStatus": "pending", "message": ""},
                "currency": self.currency,
            },
        )

    def add_to_cart(self, args: Dict[str, Any], ctx: ToolContext) -> ToolResult:
        if not _core_enabled(ctx, "add_to_cart"):
            return ToolResult(success=False, error="add_to_cart tool is not enabled")

        product_id = args.get("productId")
        if not product_id:
            return ToolResult(success=False, error="productId parameter is required")
        raw_quantity = args.get("quantity")
        try:
            quantity = 1 if raw_quantity is None else int(raw_quantity)
        except (TypeError, ValueError):
            return ToolResult(success=False, error=f"Invalid quantity: {args.get('quantity')!r}")
        if quantity < 1:
            return ToolResult(success=False, error="quantity must be at least 1")

        scope = TenantScope(ctx.tenant_id)
        product = self.products.get_by_id(scope, str(product_id))
        if product is None:
            return ToolResult(success=False, error=f"Product not found: {product_id}")

        price = product_price(product)
        line_id = product["id"]
        cart = self.orders.get_active_cart(scope, ctx.user_id) or self._new_cart(scope, ctx.user_id)
        lines: List[Dict[str, Any]] = list(cart.get("products") or [])

        for line in lines:
            if line.get("productId") == line_id or line.get("id") == line_id:
                line["qty"] = int(line.get("qty") or 0) + quantity
                line["valid_price"] = price
                break
        else:
            raw_price = product.get("price") or {}
            lines.append(
                {
                    "productId": line_id,
                    "id": line_id,
                    "title": product.get("title") or "Producto sin nombre",
                    "image": product_image(product) or "",
                    "qty": quantity,
                    "price_regular": raw_price.get("regular") or price,
                    "price_sale": raw_price.get("sale") or 0,
                    "valid_price": price,
                    "slug": product.get("slug") or "",
                    "isValid": True,
                }
            )

        updated = self.orders.update_products(scope, cart["orderNumber"], lines)
        if updated is None:
            return ToolResult(success=False, error="Failed to update cart")

        logger.info(
            "cart updated tenant=%s order=%s product=%s qty=%d",
            ctx.tenant_id,
            updated["orderNumber"],
            line_id,
            quantity,
        )
        return ToolResult(
            success=True,
            data={
                "message": f"Producto {product.get('title')} agregado al carrito",
                "cart": {
                    "orderNumber": updated["orderNumber"],
                    "products": updated.get("products") or [],
                    "total": order_total(updated.get("products") or []),
                    "currency": updated.get("currency") or self.currency,
                },
            },
        )

    # ------------------------------------------------------------------ orders

    def get_order(self, args: Dict[str, Any], ctx: ToolContext) -> ToolResult:
        if not _core_enabled(ctx, "get_order"):
            return ToolResult(success=False, error="get_order tool is not enabled")

        scope = TenantScope(ctx.tenant_id)
        order_number = args.get("orderNumber")
        order_id = args.get("orderId")
        user_identifier = args.get("email") or args.get("phone")

        if order_number:
            order = self.orders.get_by_id(scope, str(order_number))
        elif order_id:
            order = self.orders.get_by_id(scope, str(order_id))
        elif user_identifier:
            found = self.orders.get_by_user(scope, str(user_identifier), limit=1)
            order = found[0] if found else None
        else:
            return ToolResult(
                success=False,
                needs_user_input=True,
                question=ORDER_INPUT_QUESTION,
                error="Missing required information: orderNumber, orderId, email, or phone",
            )

        if order is None:
            return ToolResult(
                success=False,
                needs_user_input=True,
                question=ORDER_NOT_FOUND_QUESTION,
                error="Order not found",
            )

        return ToolResult(
            success=True,
            data={
                "orderNumber": order["orderNumber"],
                "products": order.get("products") or [],
                "total": order.get("total"),
                "currency": order.get("currency"),
                "paymentStatus": order.get("paymentStatus"),
                "orderStatus": order.get("orderStatus"),
                "clientInfo": order.get("clientInfo"),
                "createdAt": _iso(order.get("createdAt")),
            },
        )

    # --------------------------------------------------------------- knowledge

    def rag_query(self, args: Dict[str, Any], ctx: ToolContext) -> ToolResult:
        if ctx.agent_config.tools.mode not in ("default", "hybrid"):
            return ToolResult(success=False, error="rag_query tool is not enabled")

        query = args.get("query")
        if not query:
            return ToolResult(success=False, error="query parameter is required")

        topic = args.get("source") or "companyInfo"
        source = ctx.agent_config.knowledge.get(topic)
        if source is None or source.source != "rag":
            return ToolResult(success=False, error=f"RAG not configured for source: {topic}")

        return ToolResult(success=True, data=self.retrieval.query(ctx.tenant_id, str(query), source.vector_index))
