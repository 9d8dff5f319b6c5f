"""Coercion helpers for loosely typed catalog fields."""

from __future__ import annotations

import json
import math
import re
import unicodedata
from typing import Any, Iterable

SIZE_SPLIT_RE = re.compile(r"[,/]")


def to_number(value: Any) -> float | None:
    """Numeric value of ``value`` or ``None`` when it is not a finite number."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    text = str(value).strip()
    if not text:
        return 0.0
    if text.count(",") == 1 and "." not in text:
        # decimal comma, e.g. "89,90"
        text = text.replace(",", ".")
    try:
        number = float(text)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def to_stock(value: Any) -> int:
    number = to_number(value)
    if number is None:
        return 0
    return int(round(number))


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def maybe_json(value: Any) -> Any:
    """Decode strings that hold a JSON array or object; anything else passes through."""
    if isinstance(value, str):
        stripped = value.strip()
        if stripped[:1] in ("[", "{"):
            try:
                return json.loads(stripped)
            except json.JSONDecodeError:
                return None
    return value


def split_list(value: Any, pattern: re.Pattern[str] | None = None) -> list[str] | None:
    """List of non-empty strings from a list or a delimited string."""
    value = maybe_json(value)
    if isinstance(value, list):
        return [str(item).strip() for item in value if item is not None and str(item).strip()]
    if isinstance(value, str) and value.strip():
        parts = (pattern or re.compile(",")).split(value)
        return [part.strip() for part in parts if part.strip()]
    return None


def photo_list(value: Any) -> list[str] | None:
    value = maybe_json(value)
    if isinstance(value, list):
        return [str(item) for item in value if item]
    if isinstance(value, str) and value.strip():
        return [value.strip()]
    return None


def fold(text: str) -> str:
    """Lower-case ``text`` and strip diacritics."""
    decomposed = unicodedata.normalize("NFD", text or "")
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return stripped.strip().lower()


def unique(values: Iterable[Any]) -> list[Any]:
    seen: set[Any] = set()
    result: list[Any] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        result.append(value)
    return result
