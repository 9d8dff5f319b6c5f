"""Store lookup and partner access checks."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any

from sqlalchemy import func, insert, select, update
from sqlalchemy.engine import Connection, Engine

from look.db.tables import partner_emails, partner_integrations, stores
from look.errors import NotAllowed, UpstreamError, ValidationFailed
from look.utils.dates import utcnow

logger = logging.getLogger(__name__)

PLATFORM_CREATOR = "look"


@dataclass(slots=True)
class Creator:
    """Who is acting on coupons: the platform itself or one brand."""

    email: str
    store_id: int | None = None

    @property
    def is_platform(self) -> bool:
        return self.store_id is None

    @property
    def created_by(self) -> str:
        return PLATFORM_CREATOR if self.is_platform else f"brand:{self.store_id}"


def platform_admin_emails() -> set[str]:
    raw = os.environ.get("PLATFORM_ADMIN_EMAILS", "")
    return {email.strip().lower() for email in raw.split(",") if email.strip()}


def partner_email_allowed(engine: Engine, email: str) -> bool:
    with engine.connect() as conn:
        found = conn.execute(
            select(partner_emails.c.email)
            .where(func.lower(partner_emails.c.email) == email.lower())
            .where(partner_emails.c.active.is_(True))
        ).first()
    return found is not None


def resolve_partner_store(engine: Engine, email: str) -> int | None:
    with engine.connect() as conn:
        store_name = conn.execute(
            select(partner_emails.c.store_name)
            .where(func.lower(partner_emails.c.email) == email.lower())
            .where(partner_emails.c.active.is_(True))
            .limit(1)
        ).scalar_one_or_none()
        if not store_name:
            return None
        return find_store_id_by_name(conn, store_name)


def resolve_creator(engine: Engine, email: str | None) -> Creator:
    if not email or not email.strip():
        raise NotAllowed("not-allowed", "Missing caller email")
    email = email.strip().lower()
    if email in platform_admin_emails():
        return Creator(email=email)
    if not partner_email_allowed(engine, email):
        raise NotAllowed("not-allowed")
    store_id = resolve_partner_store(engine, email)
    if store_id is None:
        raise NotAllowed("store-not-found", "No store linked to this partner email")
    return Creator(email=email, store_id=store_id)


def find_store_id_by_name(conn: Connection, store_name: str) -> int | None:
    exact = conn.execute(
        select(stores.c.id).where(stores.c.store_name == store_name).order_by(stores.c.id).limit(1)
    ).scalar_one_or_none()
    if exact is not None:
        return exact
    return conn.execute(
        select(stores.c.id).where(stores.c.store_name.ilike(store_name)).order_by(stores.c.id).limit(1)
    ).scalar_one_or_none()


def resolve_store_id(
    conn: Connection,
    store_id: Any = None,
    store_name: str | None = None,
    *,
    create: bool = False,
) -> int | None:
    """Store id from an explicit id, else a name lookup, optionally creating the store."""
    if store_id not in (None, ""):
        try:
            return int(store_id)
        except (TypeError, ValueError):
            raise ValidationFailed("invalid-store", f"Invalid store_id {store_id!r}") from None
    if not store_name or not store_name.strip():
        return None
    clean_name = store_name.strip()
    found = find_store_id_by_name(conn, clean_name)
    if found is not None or not create:
        return found
    logger.info("Creating store %s", clean_name)
    result = conn.execute(insert(stores).values(store_name=clean_name).returning(stores.c.id))
    created = result.scalar_one_or_none()
    if created is None:
        raise UpstreamError("cannot-create-store")
    return int(created)


def upsert_integration(conn: Connection, store_id: int, provider: str, values: dict[str, Any]) -> int:
    values = {**values, "updated_at": utcnow()}
    existing = conn.execute(
        select(partner_integrations.c.id)
        .where(partner_integrations.c.store_id == store_id)
        .where(partner_integrations.c.provider == provider)
    ).scalar_one_or_none()
    if existing:
        conn.execute(
            update(partner_integrations).where(partner_integrations.c.id == existing).values(**values)
        )
        return existing
    result = conn.execute(
        insert(partner_integrations)
        .values(store_id=store_id, provider=provider, **values)
        .returning(partner_integrations.c.id)
    )
    return int(result.scalar_one())
