"""Partner stores and allow-listed emails loaded from YAML."""

from __future__ import annotations

import logging
import pathlib
from typing import Any

import yaml
from sqlalchemy import insert, select
from sqlalchemy.engine import Engine

from look.db.tables import partner_emails, stores

logger = logging.getLogger(__name__)

PARTNERS_PATH = pathlib.Path(__file__).with_name("partners.yml")


def load_partners(path: pathlib.Path = PARTNERS_PATH, limit: int | None = None) -> list[dict[str, Any]]:
    partners = yaml.safe_load(path.read_text()) or []
    if limit:
        return partners[:limit]
    return partners


def seed_partners(engine: Engine, partners: list[dict[str, Any]]) -> int:
    """Insert missing stores and partner emails; returns the number of emails added."""
    added = 0
    with engine.begin() as conn:
        for partner in partners:
            name = partner["store_name"]
            existing = conn.execute(select(stores.c.id).where(stores.c.store_name == name)).first()
            if existing is None:
                conn.execute(insert(stores).values(store_name=name, slug=partner.get("slug")))
            for email in partner.get("emails", []):
                email = email.strip().lower()
                known = conn.execute(select(partner_emails.c.email).where(partner_emails.c.email == email)).first()
                if known is None:
                    conn.execute(insert(partner_emails).values(email=email, store_name=name, active=True))
                    added += 1
    logger.info("Seeded %s partner emails", added)
    return added
