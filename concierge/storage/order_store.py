"""
Orders; a pending order doubles as the user's cart.

orders table keeps order_number, client email/phone and the order status in
columns for lookup; the full order (products, clientInfo, paymentStatus, ...)
lives in `document`.
"""

from __future__ import annotations

import logging
import secrets
import string
import time
from typing import Any, Dict, List, Optional

from concierge.storage.db import Database, TenantScope, dump_json, from_ts, load_json, to_ts, utcnow

logger = logging.getLogger("tenant-concierge")

_ORDER_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


def order_total(products: List[Dict[str, Any]]) -> float:
    return round(sum(float(p.get("valid_price") or 0) * int(p.get("qty") or 0) for p in products), 2)


class OrderStore:
    _COLUMNS = "id, order_number, total, currency, document, created_at, updated_at"

    def __init__(self, db: Database) -> None:
        self.db = db

    def init_schema(self) -> None:
        with self.db.session() as conn:
            self.db.init_pragmas(conn)
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS orders (
                    {self.db.id_column()},
                    tenant_id TEXT NOT NULL,
                    order_number TEXT NOT NULL,
                    client_email TEXT,
                    client_phone TEXT,
                    status TEXT NOT NULL,
                    total REAL NOT NULL DEFAULT 0,
                    currency TEXT NOT NULL,
                    document TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (tenant_id, order_number)
                )
                """
            )

    def _row_to_order(self, row: Any) -> Dict[str, Any]:
        order = load_json(row["document"], default={})
        order.update(
            {
                "id": str(row["id"]),
                "orderNumber": row["order_number"],
                "total": row["total"],
                "currency": row["currency"],
                "createdAt": from_ts(row["created_at"]),
                "updatedAt": from_ts(row["updated_at"]),
            }
        )
        return order

    @staticmethod
    def generate_order_number() -> str:
        suffix = "".join(secrets.choice(_ORDER_SUFFIX_ALPHABET) for _ in range(9))
        return f"{int(time.time() * 1000)}{suffix}"

    def create(self, scope: TenantScope, order: Dict[str, Any]) -> Dict[str, Any]:
        now = to_ts(utcnow())
        client = order.get("clientInfo") or {}
        status = (order.get("orderStatus") or {}).get("typeStatus") or "pending"
        products = order.get("products") or []
        order_number = order.get("orderNumber") or self.generate_order_number()
        document = {k: v for k, v in order.items() if k not in {"id", "createdAt", "updatedAt"}}
        document["orderNumber"] = order_number
        document["products"] = products
        with self.db.session() as conn:
            conn.execute(
                self.db.sql(
                    "INSERT INTO orders "
                    "(tenant_id, order_number, client_email, client_phone, status, total, currency, document, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"
                ),
                (
                    scope.tenant_id,
                    order_number,
                    client.get("email") or None,
                    client.get("phone") or None,
                    status,
                    order_total(products),
                    order.get("currency") or "PEN",
                    dump_json(document),
                    now,
                    now,
                ),
            )
        logger.info("order created tenant=%s order=%s", scope.tenant_id, order_number)
        created = self.get_by_id(scope, order_number)
        if created is None:
            raise RuntimeError(f"order {order_number} vanished after insert")
        return created

    def get_by_id(self, scope: TenantScope, identifier: str) -> Optional[Dict[str, Any]]:
        """Order by row id or by order number."""
        identifier = str(identifier or "").strip()
        if not identifier:
            return None
        with self.db.session() as conn:
            row = conn.execute(
                self.db.sql(f"SELECT {self._COLUMNS} FROM orders WHERE tenant_id = ? AND order_number = ?"),
                (scope.tenant_id, identifier),
            ).fetchone()
            if row is None and identifier.isdigit():
                row = conn.execute(
                    self.db.sql(f"SELECT {self._COLUMNS} FROM orders WHERE tenant_id = ? AND id = ?"),
                    (scope.tenant_id, int(identifier)),
                ).fetchone()
        if row is None:
            return None
        return self._row_to_order(row)

    def get_by_user(self, scope: TenantScope, user_identifier: str, limit: int = 10) -> List[Dict[str, Any]]:
        """Orders whose client email or phone matches, newest first."""
        with self.db.session() as conn:
            rows = conn.execute(
                self.db.sql(
                    f"SELECT {self._COLUMNS} FROM orders "
                    "WHERE tenant_id = ? AND (client_email = ? OR client_phone = ?) "
                    "ORDER BY created_at DESC, id DESC LIMIT ?"
                ),
                (scope.tenant_id, user_identifier, user_identifier, int(limit)),
            ).fetchall()
        return [self._row_to_order(row) for row in rows]

    def get_active_cart(self, scope: TenantScope, user_identifier: str) -> Optional[Dict[str, Any]]:
        with self.db.session() as conn:
            row = conn.execute(
                self.db.sql(
                    f"SELECT {self._COLUMNS} FROM orders "
                    "WHERE tenant_id = ? AND status = 'pending' AND (client_email = ? OR client_phone = ?) "
                    "ORDER BY created_at DESC, id DESC LIMIT 1"
                ),
                (scope.tenant_id, user_identifier, user_identifier),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_order(row)

    def update_products(
        self,
        scope: TenantScope,
        order_number: str,
        products: List[Dict[str, Any]],
    ) -> Optional[Dict[str, Any]]:
        """Replace the order's product lines and recompute its total."""
        current = self.get_by_id(scope, order_number)
        if current is None:
            return None
        total = order_total(products)
        document = {k: v for k, v in current.items() if k not in {"id", "createdAt", "updatedAt"}}
        document["products"] = products
        document["total"] = total
        with self.db.session() as conn:
            conn.execute(
                self.db.sql(
                    "UPDATE orders SET document = ?, total = ?, updated_at = ? "
                    "WHERE tenant_id = ? AND order_number = ?"
                ),
                (dump_json(document), total, to_ts(utcnow()), scope.tenant_id, order_number),
            )
        return self.get_by_id(scope, order_number)
