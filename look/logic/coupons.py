"""Coupon creation, listing, deletion and scoping."""

from __future__ import annotations

import enum
import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, insert, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from look.db.tables import coupon_applicabilities, coupons
from look.errors import Conflict, NotAllowed, NotFound, UpstreamError, ValidationFailed
from look.logic.fields import unique
from look.logic.stores import Creator

logger = logging.getLogger(__name__)

PAGE_SIZE = 20


class CouponKind(str, enum.Enum):
    SINGLE_USE_PER_IDENTITY = "A"
    FIRST_ORDER_ONLY = "B"
    UNLIMITED = "C"


class DiscountType(str, enum.Enum):
    PERCENT = "percent"
    FIXED = "fixed"


@dataclass(slots=True)
class CouponDraft:
    code: str
    discount_type: DiscountType
    discount_value: float
    coupon_kind: CouponKind = CouponKind.SINGLE_USE_PER_IDENTITY
    description: str | None = None
    active: bool = True
    max_uses: int | None = None
    expires_at: datetime | None = None


@dataclass(slots=True)
class CouponScope:
    apply_to_all: bool = True
    brand_ids: list[int] = field(default_factory=list)
    product_ids: list[int] = field(default_factory=list)


@dataclass(slots=True)
class CouponPage:
    items: list[dict[str, Any]]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return max(1, math.ceil(self.total / self.page_size))


def normalize_code(code: str | None) -> str:
    normalized = (code or "").strip().upper()
    if not normalized:
        raise ValidationFailed("missing-code", "Coupon code is required")
    return normalized


def normalize_discount(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationFailed("invalid-discount", "Discount value must be a number") from None
    if not math.isfinite(number) or number <= 0:
        raise ValidationFailed("invalid-discount", "Discount value must be greater than zero")
    return round(number * 100) / 100


def applicability_rows(coupon_id: str, scope: CouponScope) -> list[dict[str, Any]]:
    if scope.apply_to_all:
        return []
    if scope.brand_ids:
        return [{"coupon_id": coupon_id, "brand_id": brand_id} for brand_id in unique(scope.brand_ids)]
    return [
        {"coupon_id": coupon_id, "product_id": product_id, "sort_order": idx}
        for idx, product_id in enumerate(unique(scope.product_ids))
    ]


def write_applicabilities(conn: Connection, coupon_id: str, scope: CouponScope) -> int:
    """Replace the coupon's applicability rows with ``scope``.

    No rows means the coupon applies everywhere. Brand and product ids are
    not checked here; the foreign keys are the only guard.
    """
    conn.execute(delete(coupon_applicabilities).where(coupon_applicabilities.c.coupon_id == coupon_id))
    rows = applicability_rows(coupon_id, scope)
    if rows:
        conn.execute(insert(coupon_applicabilities), rows)
    return len(rows)


def _check_scope(creator: Creator, scope: CouponScope) -> None:
    if scope.brand_ids and not scope.apply_to_all and not creator.is_platform:
        raise NotAllowed("brand-scope-forbidden", "Only the platform can scope coupons to brands")


def create_coupon(engine: Engine, draft: CouponDraft, creator: Creator, scope: CouponScope) -> dict[str, Any]:
    _check_scope(creator, scope)
    code = normalize_code(draft.code)
    value = normalize_discount(draft.discount_value)
    kind = CouponKind(draft.coupon_kind)
    row = {
        "id": str(uuid.uuid4()),
        "code": code,
        "description": (draft.description or "").strip() or None,
        "discount_type": DiscountType(draft.discount_type).value,
        "discount_value": value,
        "coupon_kind": kind.value,
        "active": draft.active,
        "max_uses": draft.max_uses,
        "expires_at": draft.expires_at,
        "created_by": creator.created_by,
    }
    try:
        with engine.begin() as conn:
            existing = conn.execute(
                select(coupons.c.id).where(func.upper(coupons.c.code) == code)
            ).first()
            if existing is not None:
                raise Conflict("coupon-exists", f"Coupon {code} already exists")
            conn.execute(insert(coupons).values(**row))
            scoped = write_applicabilities(conn, row["id"], scope)
    except IntegrityError as exc:
        raise Conflict("coupon-exists", f"Coupon {code} already exists") from exc
    except SQLAlchemyError as exc:
        raise UpstreamError("coupon-insert-failed", str(exc)) from exc
    logger.info("Created coupon %s by %s with %s applicability rows", code, creator.created_by, scoped)
    return {**row, "applicabilities": scoped}


def _owned(query, creator: Creator):
    if creator.is_platform:
        return query
    return query.where(coupons.c.created_by == creator.created_by)


def list_coupons(engine: Engine, creator: Creator, page: int = 0, page_size: int = PAGE_SIZE) -> CouponPage:
    page = max(0, page)
    columns = [
        coupons.c.id,
        coupons.c.code,
        coupons.c.description,
        coupons.c.discount_type,
        coupons.c.discount_value,
        coupons.c.coupon_kind,
        coupons.c.created_by,
        coupons.c.active,
        coupons.c.max_uses,
        coupons.c.expires_at,
        coupons.c.created_at,
    ]
    with engine.connect() as conn:
        total = conn.execute(_owned(select(func.count()).select_from(coupons), creator)).scalar_one()
        rows = conn.execute(
            _owned(select(*columns), creator)
            .order_by(coupons.c.created_at.desc(), coupons.c.code)
            .offset(page * page_size)
            .limit(page_size)
        ).mappings()
        items = [dict(row) for row in rows]
    return CouponPage(items=items, total=int(total), page=page, page_size=page_size)


def _require_coupon(conn: Connection, coupon_id: str, creator: Creator) -> None:
    found = conn.execute(_owned(select(coupons.c.id).where(coupons.c.id == coupon_id), creator)).first()
    if found is None:
        raise NotFound("coupon-not-found")


def delete_coupon(engine: Engine, coupon_id: str, creator: Creator) -> None:
    with engine.begin() as conn:
        _require_coupon(conn, coupon_id, creator)
        conn.execute(delete(coupon_applicabilities).where(coupon_applicabilities.c.coupon_id == coupon_id))
        conn.execute(_owned(delete(coupons).where(coupons.c.id == coupon_id), creator))
    logger.info("Deleted coupon %s by %s", coupon_id, creator.created_by)


def rescope_coupon(engine: Engine, coupon_id: str, creator: Creator, scope: CouponScope) -> int:
    _check_scope(creator, scope)
    with engine.begin() as conn:
        _require_coupon(conn, coupon_id, creator)
        return write_applicabilities(conn, coupon_id, scope)
