"""Datetime helpers."""

from __future__ import annotations

import os
from datetime import datetime

import pendulum

DEFAULT_TZ = "America/Sao_Paulo"


def timezone_name() -> str:
    return os.environ.get("TIMEZONE", DEFAULT_TZ)


def now_in_tz() -> pendulum.DateTime:
    tz = pendulum.timezone(timezone_name())
    return pendulum.now(tz)


def utcnow() -> datetime:
    return pendulum.now("UTC").naive()


def tiny_month_start(now: datetime | None = None) -> str:
    """First day of the current month in Tiny's ``dd/mm/yyyy HH:MM:SS`` format."""
    current = now or now_in_tz()
    return f"01/{current.month:02d}/{current.year} 00:00:00"


def parse_expiry(value: str | None) -> datetime | None:
    """Parse a date or datetime string into a UTC datetime, ``None`` when blank."""
    if value is None or not str(value).strip():
        return None
    parsed = pendulum.parse(str(value).strip(), tz=timezone_name())
    return datetime.fromtimestamp(parsed.timestamp(), tz=pendulum.UTC)
