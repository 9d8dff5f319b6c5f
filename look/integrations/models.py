"""Payload shapes returned by the Tiny ERP API.

Tiny answers every call with a ``{"retorno": {"status": ...}}`` envelope,
except when it does not: some endpoints reply with a bare "File not found."
body. Each response is parsed into exactly one of the envelope variants
below, and stock figures into one of the stock readings, so callers branch
on a type instead of probing optional keys.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union


@dataclass(slots=True)
class TinyOk:
    retorno: dict[str, Any]

    @property
    def products(self) -> list[dict[str, Any]]:
        wraps = self.retorno.get("produtos")
        if not isinstance(wraps, list):
            return []
        unwrapped = (unwrap_product(wrap) for wrap in wraps)
        return [product for product in unwrapped if product]

    @property
    def product(self) -> dict[str, Any] | None:
        product = self.retorno.get("produto")
        return product if isinstance(product, dict) and product else None


@dataclass(slots=True)
class TinyRejected:
    status: str | None
    raw: str


@dataclass(slots=True)
class TinyUnparseable:
    text: str


TinyEnvelope = Union[TinyOk, TinyRejected, TinyUnparseable]


@dataclass(slots=True)
class DepositStock:
    total: int
    deposits: int


@dataclass(slots=True)
class FieldStock:
    field: str
    total: int


@dataclass(slots=True)
class UnknownStock:
    total: int = 0


StockReading = Union[DepositStock, FieldStock, UnknownStock]


@dataclass(slots=True)
class StockSnapshot:
    by_id: dict[str, int] = field(default_factory=dict)
    by_code: dict[str, int] = field(default_factory=dict)
    debug: list[dict[str, Any]] = field(default_factory=list)


@dataclass(slots=True)
class StockResolution:
    stock: int
    source: str


def unwrap_product(wrap: Any) -> dict[str, Any] | None:
    """List entries come either as ``{"produto": {...}}`` or as the bare product."""
    if not isinstance(wrap, dict):
        return None
    inner = wrap.get("produto")
    if isinstance(inner, dict) and inner:
        return inner
    return wrap
