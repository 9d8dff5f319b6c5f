"""Catalog reads, offset pagination and cross-store dedupe."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.engine import Engine

from look.db.tables import products
from look.logic.fields import fold, to_number

logger = logging.getLogger(__name__)

PAGE_SIZE = 24
DEFAULT_LIMIT = 60
MAX_LIMIT = 120


@dataclass(slots=True)
class PageResult:
    items: list[dict[str, Any]]
    has_more: bool
    next_page: int | None


def fetch_catalog(engine: Engine, store_ids: Sequence[int] | None = None, limit: int = DEFAULT_LIMIT) -> list[dict[str, Any]]:
    limit = max(1, min(MAX_LIMIT, limit))
    query = (
        select(products)
        .where(products.c.is_active.is_(True))
        .order_by(products.c.id.desc())
        .limit(limit)
    )
    if store_ids:
        query = query.where(products.c.store_id.in_(list(store_ids)))
    with engine.connect() as conn:
        return [dict(row) for row in conn.execute(query).mappings()]


class CatalogPager:
    """Offset pagination over a catalog loaded once and kept until invalidated.

    The pager owns its cache; callers decide its lifetime.
    """

    def __init__(self, loader: Callable[[], list[dict[str, Any]]], *, page_size: int = PAGE_SIZE) -> None:
        self.loader = loader
        self.page_size = page_size
        self._cache: list[dict[str, Any]] | None = None

    def catalog(self) -> list[dict[str, Any]]:
        if self._cache is None:
            data = self.loader()
            self._cache = list(data) if data else []
            logger.info("Catalog cache loaded with %s products", len(self._cache))
        return self._cache

    def page(self, page: int) -> PageResult:
        catalog = self.catalog()
        start = max(0, page) * self.page_size
        end = start + self.page_size
        has_more = end < len(catalog)
        return PageResult(
            items=catalog[start:end],
            has_more=has_more,
            next_page=page + 1 if has_more else None,
        )

    def invalidate(self) -> None:
        self._cache = None


def product_key(product: dict[str, Any]) -> str:
    for key in ("master_sku", "global_sku", "external_sku"):
        if product.get(key):
            return str(product[key]).strip()
    return "|".join(
        fold(str(product.get(key) or ""))
        for key in ("brand", "name", "color", "size")
    )


def dedupe_products(products_: Iterable[dict[str, Any]], *, prefer_cheapest: bool = True) -> list[dict[str, Any]]:
    """One card per product across stores, tracking which stores carry it."""
    by_key: dict[str, dict[str, Any]] = {}
    for product in products_:
        key = product_key(product)
        existing = by_key.get(key)
        if existing is None:
            by_key[key] = {**product, "store_count": 1, "stores": [product.get("store_name")]}
            continue
        store_count = existing["store_count"] + 1
        stores = list(existing["stores"])
        if product.get("store_name") not in stores:
            stores.append(product.get("store_name"))
        existing["store_count"] = store_count
        existing["stores"] = stores
        if prefer_cheapest:
            current = to_number(existing.get("price_tag")) or 0
            candidate = to_number(product.get("price_tag")) or 0
            if candidate < current:
                by_key[key] = {**product, "store_count": store_count, "stores": stores}
    return list(by_key.values())
