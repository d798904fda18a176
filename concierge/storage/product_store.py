"""
Product catalogue, one row per product.

Products are handled as plain dicts in the catalogue's own field names
(title, slug, description_short, description_long, price.regular/sale,
image_default, stock, category, is_available, order). The searchable columns
are denormalized next to the JSON document.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from concierge.storage.db import Database, TenantScope, dump_json, load_json

logger = logging.getLogger("tenant-concierge")


def product_price(product: Dict[str, Any]) -> float:
    """Sale price when set, regular price otherwise."""
    price = product.get("price") or {}
    sale = float(price.get("sale") or 0)
    if sale > 0:
        return sale
    return float(price.get("regular") or 0)


def product_image(product: Dict[str, Any]) -> Optional[str]:
    images = product.get("image_default") or []
    if images:
        return images[0]
    return None


class ProductStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    def init_schema(self) -> None:
        with self.db.session() as conn:
            self.db.init_pragmas(conn)
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS products (
                    {self.db.id_column()},
                    tenant_id TEXT NOT NULL,
                    slug TEXT NOT NULL,
                    title TEXT NOT NULL,
                    description_short TEXT,
                    description_long TEXT,
                    is_available INTEGER NOT NULL DEFAULT 1,
                    is_trash INTEGER NOT NULL DEFAULT 0,
                    sort_order INTEGER NOT NULL DEFAULT 0,
                    document TEXT NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_products_tenant ON products (tenant_id, sort_order)")

    def _row_to_product(self, row: Any) -> Dict[str, Any]:
        product = load_json(row["document"], default={})
        product["id"] = str(row["id"])
        return product

    def insert(self, scope: TenantScope, product: Dict[str, Any]) -> Dict[str, Any]:
        trash = product.get("is_trash") or {}
        with self.db.session() as conn:
            cur = conn.execute(
                self.db.sql(
                    "INSERT INTO products "
                    "(tenant_id, slug, title, description_short, description_long, is_available, is_trash, sort_order, document) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)"
                    + (" RETURNING id" if self.db.is_postgres else "")
                ),
                (
                    scope.tenant_id,
                    product.get("slug") or "",
                    product.get("title") or "",
                    product.get("description_short"),
                    product.get("description_long"),
                    1 if product.get("is_available", True) else 0,
                    1 if trash.get("status") else 0,
                    int(product.get("order") or 0),
                    dump_json({k: v for k, v in product.items() if k != "id"}),
                ),
            )
            new_id = cur.fetchone()["id"] if self.db.is_postgres else cur.lastrowid
        return {**product, "id": str(new_id)}

    def search(self, scope: TenantScope, query: str, limit: int = 10) -> List[Dict[str, Any]]:
        """
        Case-insensitive substring search over title, descriptions and slug.

        An empty query returns every available, non-deleted product.
        """
        sql = (
            "SELECT id, document FROM products "
            "WHERE tenant_id = ? AND is_trash = 0 AND is_available = 1"
        )
        params: List[Any] = [scope.tenant_id]
        query = (query or "").strip()
        if query:
            like = f"%{query.lower()}%"
            sql += (
                " AND (LOWER(title) LIKE ? OR LOWER(COALESCE(description_short, '')) LIKE ?"
                " OR LOWER(COALESCE(description_long, '')) LIKE ? OR LOWER(slug) LIKE ?)"
            )
            params.extend([like, like, like, like])
        sql += " ORDER BY sort_order ASC, id ASC LIMIT ?"
        params.append(int(limit))

        with self.db.session() as conn:
            rows = conn.execute(self.db.sql(sql), tuple(params)).fetchall()
        return [self._row_to_product(row) for row in rows]

    def get_by_id(self, scope: TenantScope, identifier: str) -> Optional[Dict[str, Any]]:
        """Look up by numeric id first, then by slug."""
        identifier = str(identifier or "").strip()
        if not identifier:
            return None
        with self.db.session() as conn:
            row = None
            if identifier.isdigit():
                row = conn.execute(
                    self.db.sql("SELECT id, document FROM products WHERE tenant_id = ? AND id = ? AND is_trash = 0"),
                    (scope.tenant_id, int(identifier)),
                ).fetchone()
            if row is None:
                row = conn.execute(
                    self.db.sql("SELECT id, document FROM products WHERE tenant_id = ? AND slug = ? AND is_trash = 0"),
                    (scope.tenant_id, identifier),
                ).fetchone()
        if row is None:
            return None
        return self._row_to_product(row)

    def get_by_category(
        self, scope: TenantScope, category_slug: str, limit: int = 10, *, query: str = ""
    ) -> List[Dict[str, Any]]:
        """Search results whose category list contains `category_slug`."""
        matches: List[Dict[str, Any]] = []
        for product in self.search(scope, query, limit=10_000):
            slugs = [c.get("slug") for c in product.get("category") or [] if isinstance(c, dict)]
            if category_slug in slugs:
                matches.append(product)
            if len(matches) >= limit:
                break
        return matches
