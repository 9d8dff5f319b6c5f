"""Grouping of imported staging rows into reviewable products.

Catalog imports land one row per size ("Vestido Azul - P", "Vestido Azul - M").
Partners review them as a single product with a size grid, so the staging
listing collapses rows that share a base name (or, failing that, an external
id) and sums their stock per size.
"""

from __future__ import annotations

import logging
import os
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from sqlalchemy import select
from sqlalchemy.engine import Engine

from look.db.tables import product_import_staging
from look.logic.fields import (
    SIZE_SPLIT_RE,
    fold,
    is_number,
    maybe_json,
    photo_list,
    split_list,
    to_number,
)

logger = logging.getLogger(__name__)

SIZE_TOKENS = r"(PP|P|M|G|GG|XG|XGG|U|UNICO|ÚNICO)"
SIZE_SUFFIX_RE = re.compile(rf"\s*[-/]\s*{SIZE_TOKENS}$", re.IGNORECASE)
ONE_SIZE = {"U", "UNICO", "ÚNICO"}
DEFAULT_ETA_TEXT = os.environ.get("DEFAULT_ETA_TEXT", "30 - 60 min")


@dataclass(slots=True)
class GroupedProduct:
    key: str
    id: Any
    store_id: int | None
    store_name: str | None = None
    provider: str | None = None
    external_id: str | None = None
    name: str | None = None
    mapped_name: str | None = None
    price_tag: float | None = None
    mapped_price: float | None = None
    stock_total: int = 0
    size_stock: dict[str, int] = field(default_factory=dict)
    staging_ids: list[Any] = field(default_factory=list)
    photo_url: list[str] | None = None
    mapped_image_url: str | None = None
    eta_text: str = DEFAULT_ETA_TEXT
    is_active: bool = True
    category: str | None = None
    categories: list[str] | None = None
    gender: list[str] | None = None
    raw_json: list[Any] = field(default_factory=list)
    truncated_sizes: list[str] = field(default_factory=list)

    @property
    def size_entries(self) -> list[dict[str, Any]] | None:
        if not self.size_stock:
            return None
        return [{"size": size, "stock": stock} for size, stock in self.size_stock.items()]

    def add_size_stock(self, size: str, stock: int) -> None:
        self.size_stock[size] = self.size_stock.get(size, 0) + stock

    def to_dict(self) -> dict[str, Any]:
        sizes = list(self.size_stock) or None
        return {
            "staging_ids": list(self.staging_ids),
            "id": self.id,
            "store_id": self.store_id,
            "store_name": self.store_name,
            "provider": self.provider,
            "external_id": self.external_id,
            "name": self.name,
            "mapped_name": self.mapped_name,
            "price_tag": self.price_tag,
            "mapped_price": self.mapped_price,
            "mapped_stock": self.stock_total,
            "stock_total": self.stock_total,
            "sizes": sizes,
            "size_stocks": [self.size_stock[s] for s in sizes] if sizes else None,
            "size_entries": self.size_entries,
            "photo_url": self.photo_url,
            "mapped_image_url": self.mapped_image_url,
            "eta_text": self.eta_text,
            "is_active": self.is_active,
            "category": self.category,
            "categories": self.categories,
            "gender": self.gender,
            "status": "draft",
            "raw_json": list(self.raw_json),
            "truncated_sizes": list(self.truncated_sizes),
        }


def normalize_name_for_group(name: str | None) -> str:
    if not name:
        return ""
    return SIZE_SUFFIX_RE.sub("", name.strip()).strip()


def infer_size_from_name(name: str | None) -> str | None:
    if not name:
        return None
    match = SIZE_SUFFIX_RE.search(name.strip())
    if not match:
        return None
    size = match.group(1).upper()
    return "U" if size in ONE_SIZE else size


def _display_name(row: Mapping[str, Any]) -> str:
    return row.get("mapped_name") or row.get("name") or ""


def group_key(row: Mapping[str, Any]) -> str:
    base_name = normalize_name_for_group(_display_name(row))
    if base_name:
        return f"name:{fold(base_name)}"
    external_id = row.get("external_id")
    if external_id is not None and str(external_id).strip():
        return f"ext:{str(external_id).strip()}"
    return f"row:{row.get('id')}"


def row_sizes(row: Mapping[str, Any]) -> list[str]:
    sizes = split_list(row.get("sizes"), SIZE_SPLIT_RE)
    if sizes:
        return sizes
    inferred = infer_size_from_name(_display_name(row))
    return [inferred] if inferred else []


def row_stock(row: Mapping[str, Any]) -> int:
    for key in ("mapped_stock", "stock_total"):
        value = row.get(key)
        if is_number(value):
            return int(value)
    for key in ("mapped_stock", "stock_total"):
        number = to_number(row.get(key))
        if number is not None:
            return int(round(number))
    return 0


def _row_price(row: Mapping[str, Any], *keys: str) -> float | None:
    for key in keys:
        value = row.get(key)
        if value is None:
            continue
        number = to_number(value)
        if number is not None:
            return number
    return None


def _seed_group(key: str, row: Mapping[str, Any], row_id: Any, base_name: str) -> GroupedProduct:
    is_active = row.get("is_active")
    return GroupedProduct(
        key=key,
        id=row_id,
        store_id=row.get("store_id"),
        store_name=row.get("store_name"),
        provider=row.get("provider"),
        external_id=row.get("external_id"),
        name=base_name or row.get("name") or None,
        mapped_name=base_name or row.get("mapped_name") or None,
        price_tag=_row_price(row, "price_tag", "mapped_price"),
        mapped_price=_row_price(row, "mapped_price"),
        photo_url=photo_list(row.get("photo_url")),
        mapped_image_url=row.get("mapped_image_url"),
        eta_text=row.get("eta_text") or DEFAULT_ETA_TEXT,
        is_active=is_active if isinstance(is_active, bool) else True,
        category=row.get("category"),
        categories=split_list(row.get("categories")),
        gender=split_list(row.get("gender")),
    )


def group_staging_rows(rows: Iterable[Mapping[str, Any]]) -> list[GroupedProduct]:
    """Collapse staging rows into one product per group key, in first-seen order."""
    buckets: dict[str, GroupedProduct] = {}
    for row in rows:
        row_id = row.get("id")
        if row_id is None:
            row_id = uuid.uuid4().hex
        key = group_key({**row, "id": row_id})
        sizes = row_sizes(row)
        stock = row_stock(row)

        group = buckets.get(key)
        if group is None:
            group = _seed_group(key, row, row_id, normalize_name_for_group(_display_name(row)))
            buckets[key] = group
        else:
            if not group.photo_url:
                group.photo_url = photo_list(row.get("photo_url")) or group.photo_url
            if not group.mapped_image_url and row.get("mapped_image_url"):
                group.mapped_image_url = row.get("mapped_image_url")

        group.staging_ids.append(row_id)
        group.stock_total += stock
        if sizes:
            # only the first size of a row gets a bucket
            group.add_size_stock(sizes[0], stock)
            if len(sizes) > 1:
                group.truncated_sizes.extend(s for s in sizes[1:] if s not in group.truncated_sizes)
                logger.warning(
                    "Staging row %s lists %d sizes; stock counted under %s only",
                    row_id,
                    len(sizes),
                    sizes[0],
                )
        raw = maybe_json(row.get("raw_json"))
        if raw is not None:
            group.raw_json.append(raw)
    return list(buckets.values())


def load_draft_groups(engine: Engine, store_id: int) -> list[GroupedProduct]:
    query = (
        select(product_import_staging)
        .where(product_import_staging.c.store_id == store_id)
        .where(product_import_staging.c.status == "draft")
        .order_by(product_import_staging.c.created_at.desc(), product_import_staging.c.id.desc())
    )
    with engine.connect() as conn:
        rows = [dict(row) for row in conn.execute(query).mappings()]
    logger.info("Grouping %s draft staging rows for store %s", len(rows), store_id)
    return group_staging_rows(rows)
