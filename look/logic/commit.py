"""Promotion of reviewed staging items into live products."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy import select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from look.db.tables import product_import_staging, products, stores
from look.errors import CommitError, ValidationFailed
from look.logic.fields import is_number, photo_list, split_list, to_number, to_stock, unique
from look.logic.staging import DEFAULT_ETA_TEXT

logger = logging.getLogger(__name__)

LEGACY_ETA_TEXT = "30-60 min"


@dataclass(slots=True)
class CommitResult:
    imported: int
    staging_ids: list[Any] = field(default_factory=list)


def resolve_size_stocks(item: Mapping[str, Any]) -> tuple[list[str] | None, list[int] | None]:
    entries = item.get("size_entries")
    if isinstance(entries, list) and entries:
        sizes = [str(entry.get("size")) for entry in entries]
        stocks = []
        for entry in entries:
            number = to_number(entry.get("stock"))
            stocks.append(int(number) if number is not None else 0)
        return sizes, stocks

    sizes = item.get("sizes")
    if isinstance(sizes, list) and sizes:
        sizes = [str(size) for size in sizes]
        parallel = item.get("size_stocks")
        if isinstance(parallel, list) and parallel:
            stocks = []
            for idx in range(len(sizes)):
                number = to_number(parallel[idx]) if idx < len(parallel) else None
                stocks.append(int(number) if number is not None else 0)
            return sizes, stocks
        return sizes, None

    if isinstance(sizes, str) and sizes.strip():
        return split_list(sizes), None
    return None, None


def resolve_gender(value: Any) -> list[str]:
    if isinstance(value, list) and value:
        return [str(g) for g in value]
    if isinstance(value, str) and value.strip():
        gender = value.strip().lower()
        return ["male", "female"] if gender == "unisex" else [gender]
    return []


def build_product_row(item: Mapping[str, Any], store_id: int, store_name: str | None) -> dict[str, Any]:
    sizes, size_stocks = resolve_size_stocks(item)
    if size_stocks:
        stock_total = sum(size_stocks)
    elif is_number(item.get("stock_total")):
        stock_total = int(item["stock_total"])
    elif is_number(item.get("mapped_stock")):
        stock_total = int(item["mapped_stock"])
    else:
        stock_total = 0

    if is_number(item.get("price_tag")):
        price_tag = float(item["price_tag"])
    elif is_number(item.get("mapped_price")):
        price_tag = float(item["mapped_price"])
    else:
        price_tag = None

    is_active = item.get("is_active")
    return {
        "store_id": item.get("store_id") or store_id,
        "store_name": item.get("store_name") or store_name,
        "name": item.get("name") or item.get("mapped_name"),
        "stock_total": stock_total,
        "price_tag": price_tag,
        "eta_text": item.get("eta_text") or DEFAULT_ETA_TEXT,
        "is_active": is_active if isinstance(is_active, bool) else True,
        "category": item.get("category"),
        "gender": resolve_gender(item.get("gender")),
        "categories": split_list(item.get("categories")) or [],
        "photo_url": photo_list(item.get("photo_url")),
        "sizes": sizes,
        "size_stocks": size_stocks,
    }


def collect_staging_ids(items: Iterable[Mapping[str, Any]]) -> list[Any]:
    ids: list[Any] = []
    for item in items:
        staging_ids = item.get("staging_ids")
        if isinstance(staging_ids, list):
            ids.extend(staging_ids)
        elif item.get("staging_id") is not None:
            ids.append(item["staging_id"])
    return unique(ids)


def _coerce_ids(ids: Sequence[Any]) -> list[int]:
    coerced: list[int] = []
    for value in ids:
        try:
            coerced.append(int(value))
        except (TypeError, ValueError):
            logger.warning("Ignoring non-numeric staging id %r", value)
    return coerced


def _validate(store_id: int | None, items: Sequence[Any] | None) -> None:
    if not store_id:
        raise ValidationFailed("missing-store")
    if not isinstance(items, list) or not items:
        raise ValidationFailed("no-items")


def lookup_store_name(conn: Connection, store_id: int) -> str | None:
    return conn.execute(
        select(stores.c.store_name).where(stores.c.id == store_id)
    ).scalar_one_or_none()


def _insert_products(conn: Connection, rows: list[dict[str, Any]]) -> None:
    conn.execute(products.insert(), rows)


def _mark_imported(conn: Connection, *conditions) -> int:
    result = conn.execute(
        update(product_import_staging).where(*conditions).values(status="imported")
    )
    return result.rowcount


def commit_to_products(engine: Engine, store_id: int | None, items: list[Mapping[str, Any]] | None) -> CommitResult:
    """Insert products for ``items`` and mark their staging rows imported.

    Both writes share one transaction: either every product exists and every
    contributing staging row is ``imported``, or nothing changed.
    """
    _validate(store_id, items)
    staging_ids = collect_staging_ids(items)
    try:
        with engine.begin() as conn:
            store_name = lookup_store_name(conn, store_id)
            rows = [build_product_row(item, store_id, store_name) for item in items]
            _insert_products(conn, rows)
            ids = _coerce_ids(staging_ids)
            if ids:
                marked = _mark_imported(conn, product_import_staging.c.id.in_(ids))
                logger.info("Marked %s staging rows imported for store %s", marked, store_id)
    except SQLAlchemyError as exc:
        logger.error("Commit for store %s failed: %s", store_id, exc)
        raise CommitError("products-insert-failed", str(exc)) from exc
    logger.info("Committed %s products for store %s", len(items), store_id)
    return CommitResult(imported=len(items), staging_ids=staging_ids)


def commit_legacy_items(engine: Engine, store_id: int | None, items: list[Mapping[str, Any]] | None) -> CommitResult:
    """Older flat payload keyed by ``external_id`` instead of staging ids."""
    _validate(store_id, items)
    external_ids = [str(item.get("external_id")) for item in items if item.get("external_id") is not None]
    try:
        with engine.begin() as conn:
            store_name = lookup_store_name(conn, store_id)
            rows = [
                {
                    "store_id": store_id,
                    "store_name": store_name,
                    "name": item.get("mapped_name"),
                    "stock_total": to_stock(item.get("mapped_stock")),
                    "price_tag": item.get("price_tag"),
                    "eta_text": LEGACY_ETA_TEXT,
                    "is_active": True,
                    "category": None,
                    "gender": [],
                    "categories": [],
                    "photo_url": None,
                    "sizes": item.get("sizes"),
                    "size_stocks": None,
                }
                for item in items
            ]
            _insert_products(conn, rows)
            if external_ids:
                _mark_imported(
                    conn,
                    product_import_staging.c.store_id == store_id,
                    product_import_staging.c.external_id.in_(external_ids),
                )
    except SQLAlchemyError as exc:
        logger.error("Legacy commit for store %s failed: %s", store_id, exc)
        raise CommitError("products-insert-failed", str(exc)) from exc
    return CommitResult(imported=len(items), staging_ids=external_ids)
