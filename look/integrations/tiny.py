"""Tiny ERP integration: inventory lookups, catalog preview and staging import."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from datetime import datetime
from typing import Any, Iterable, Mapping
from urllib.parse import urlparse

import httpx
from sqlalchemy import insert, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from look.db.tables import product_import_staging
from look.errors import UpstreamError, ValidationFailed
from look.integrations.models import (
    DepositStock,
    FieldStock,
    StockReading,
    StockResolution,
    StockSnapshot,
    TinyEnvelope,
    TinyOk,
    TinyRejected,
    TinyUnparseable,
    UnknownStock,
)
from look.logic.commit import lookup_store_name
from look.logic.fields import to_number, to_stock
from look.logic.staging import infer_size_from_name
from look.logic.stores import resolve_store_id, upsert_integration
from look.utils.dates import tiny_month_start
from look.utils.rate_limit import RateLimiter
from look.utils.retry import retry_async

logger = logging.getLogger(__name__)

TINY_API_BASE = os.environ.get("TINY_API_BASE", "https://api.tiny.com.br/api2")
TINY_RATE = float(os.environ.get("TINY_RATE", "2.0"))
PROVIDER = "tiny"
MAX_PAGES = 50
PREVIEW_SAMPLE = 5
IMPORT_ETA_TEXT = "30-60 min"

STOCK_ENDPOINTS = ("lista.atualizacoes.estoque", "lista.atualizacoes.estoque.php")
LIST_STOCK_ALIASES = ("saldo", "saldo_estoque", "estoque", "saldoReservado")
DETAIL_STOCK_ALIASES = ("saldo_estoque", "estoque_atual", "estoque", "saldo")
LISTING_STOCK_ALIASES = ("estoque", "saldo", "quantidade")
VARIATION_STOCK_ALIASES = ("estoque", "saldo", "quantidade", "qtd", "estoque_disponivel", "estoque_atual")
VARIATION_LABEL_KEYS = ("tamanho", "variacao", "descricao", "nome", "sku")
IMAGE_KEYS = ("imagem", "image", "foto", "foto_principal")
PRODUCT_TYPE_VALUES = {
    "p", "v", "prod", "produto", "variacao", "variação", "variation", "var", "1",
}


def parse_envelope(text: str) -> TinyEnvelope:
    try:
        document = json.loads(text)
    except (TypeError, ValueError):
        return TinyUnparseable(text=text or "")
    retorno = document.get("retorno") if isinstance(document, dict) else None
    if not isinstance(retorno, dict):
        return TinyRejected(status=None, raw=text)
    status = retorno.get("status")
    if status == "OK":
        return TinyOk(retorno=retorno)
    return TinyRejected(status=str(status) if status is not None else None, raw=text)


def envelope_debug(envelope: TinyEnvelope | None) -> Any:
    if isinstance(envelope, TinyOk):
        return {"retorno": envelope.retorno}
    if isinstance(envelope, TinyRejected):
        return {"status": envelope.status, "raw_text": envelope.raw}
    if isinstance(envelope, TinyUnparseable):
        return {"raw_text": envelope.text}
    return None


def read_stock(record: Mapping[str, Any], aliases: Iterable[str]) -> StockReading:
    """Stock of a Tiny record: deposit sum first, then the first present alias."""
    deposits = record.get("depositos")
    if isinstance(deposits, list) and deposits:
        total = 0
        counted = 0
        for entry in deposits:
            deposit = entry.get("deposito") if isinstance(entry, dict) else None
            if not isinstance(deposit, dict):
                continue
            if deposit.get("desconsiderar") == "S":
                continue
            balance = to_number(deposit.get("saldo")) if deposit.get("saldo") is not None else 0
            if balance is not None:
                total += balance
                counted += 1
        return DepositStock(total=int(round(total)), deposits=counted)
    for alias in aliases:
        value = record.get(alias)
        if value is not None:
            return FieldStock(field=alias, total=to_stock(value))
    return UnknownStock()


def snapshot_from_products(products: Iterable[Mapping[str, Any]]) -> tuple[dict[str, int], dict[str, int]]:
    by_id: dict[str, int] = {}
    by_code: dict[str, int] = {}
    for product in products:
        total = read_stock(product, LIST_STOCK_ALIASES).total
        if product.get("id") is not None:
            by_id[str(product["id"])] = total
        if product.get("codigo") is not None:
            by_code[str(product["codigo"])] = total
    return by_id, by_code


def product_identifier(product: Mapping[str, Any]) -> str:
    for key in ("id", "codigo_produto", "codigo"):
        value = product.get(key)
        if value not in (None, ""):
            return str(value)
    return ""


def product_code(product: Mapping[str, Any]) -> str:
    code = product.get("codigo")
    return str(code).strip() if code is not None else ""


def resolve_stock(
    product: Mapping[str, Any],
    snapshot: StockSnapshot,
    detail: TinyEnvelope | None = None,
) -> StockResolution:
    """Pick the stock of one listed product, tagged with where it came from."""
    product_id = product_identifier(product)
    code = product_code(product)
    if product_id and product_id in snapshot.by_id:
        return StockResolution(snapshot.by_id[product_id], "realtime-id")
    if code and code in snapshot.by_code:
        return StockResolution(snapshot.by_code[code], "realtime-code")
    if isinstance(detail, TinyOk) and detail.product:
        reading = read_stock(detail.product, DETAIL_STOCK_ALIASES)
        source = "detail-depositos" if isinstance(reading, DepositStock) else "detail-campos"
        return StockResolution(reading.total, source)
    return StockResolution(read_stock(product, LISTING_STOCK_ALIASES).total, "lista")


class TinyClient:
    def __init__(
        self,
        token: str,
        *,
        session: httpx.AsyncClient | None = None,
        rate_limiter: RateLimiter | None = None,
        base_url: str = TINY_API_BASE,
    ) -> None:
        self.token = token
        self.base_url = base_url.rstrip("/")
        self._session = session or httpx.AsyncClient(timeout=30.0)
        self._rate_limiter = rate_limiter or RateLimiter(rate=TINY_RATE)

    async def close(self) -> None:
        await self._session.aclose()

    async def _request(self, method: str, endpoint: str, **kwargs) -> httpx.Response:
        url = f"{self.base_url}/{endpoint}"
        await self._rate_limiter.wait_for_host(urlparse(url).netloc)
        return await retry_async(self._session.request)(method, url, **kwargs)

    async def _post_form(self, endpoint: str, fields: dict[str, str]) -> httpx.Response:
        data = {"token": self.token, "formato": "json", **fields}
        return await self._request("POST", endpoint, data=data)

    async def fetch_stock_updates(self, now: datetime | None = None) -> StockSnapshot:
        """Stock changed since the start of the month, keyed by id and by code.

        Tries each endpoint variant in turn; never raises.
        """
        snapshot = StockSnapshot()
        for endpoint in STOCK_ENDPOINTS:
            label = "estoque.php" if endpoint.endswith(".php") else "estoque"
            try:
                response = await self._post_form(endpoint, {"dataAlteracao": tiny_month_start(now)})
            except httpx.HTTPError as exc:
                snapshot.debug.append({"endpoint": label, "error": str(exc)})
                continue
            snapshot.debug.append({"endpoint": label, "text": response.text})
            envelope = parse_envelope(response.text)
            if isinstance(envelope, TinyOk):
                snapshot.by_id, snapshot.by_code = snapshot_from_products(envelope.products)
                return snapshot
        logger.info("Tiny stock updates unavailable; continuing without realtime stock")
        return snapshot

    async def fetch_detail(self, product_id: str) -> TinyEnvelope:
        try:
            response = await self._request(
                "GET",
                "produtos.obter.php",
                params={"token": self.token, "formato": "json", "id": product_id},
            )
        except httpx.HTTPError as exc:
            return TinyUnparseable(text=str(exc))
        envelope = parse_envelope(response.text)
        if isinstance(envelope, TinyOk) and envelope.product is None:
            return TinyRejected(status="OK", raw=response.text)
        return envelope

    async def search_page(self, page: int) -> TinyEnvelope:
        response = await self._post_form("produtos.pesquisa.php", {"pesquisa": "", "pagina": str(page)})
        if response.status_code >= 400:
            return TinyRejected(status=str(response.status_code), raw=response.text)
        return parse_envelope(response.text)

    async def fetch_all_products(self, max_pages: int = MAX_PAGES) -> list[dict[str, Any]]:
        products: list[dict[str, Any]] = []
        for page in range(1, max_pages + 1):
            envelope = await self.search_page(page)
            if not isinstance(envelope, TinyOk) or not envelope.products:
                break
            products.extend(envelope.products)
            logger.info("Fetched Tiny page %s (%s products)", page, len(envelope.products))
        return products

    async def enrich(self, product: dict[str, Any], snapshot: StockSnapshot, *, always_detail: bool = False) -> dict[str, Any]:
        """Attach resolved stock, its source and the product detail when fetched."""
        product_id = product_identifier(product)
        detail: TinyEnvelope | None = None
        in_snapshot = product_id in snapshot.by_id or product_code(product) in snapshot.by_code
        if product_id and (always_detail or not in_snapshot):
            detail = await self.fetch_detail(product_id)
        resolution = resolve_stock(product, snapshot, detail)
        if isinstance(detail, TinyOk):
            detail_payload: Any = detail.product
        elif detail is None:
            detail_payload = None
        else:
            detail_payload = {"raw_text": envelope_debug(detail).get("raw_text"), "parsed": None}
        return {
            **product,
            "estoque": resolution.stock,
            "stock_source": resolution.source,
            "detail": detail_payload,
        }


def looks_like_product_type(value: str) -> bool:
    return value.strip().lower() in PRODUCT_TYPE_VALUES


def _text(product: Mapping[str, Any], key: str | None) -> str | None:
    if not key:
        return None
    value = product.get(key)
    return None if value is None else str(value)


def _variation_fields(variation: Mapping[str, Any]) -> Mapping[str, Any]:
    inner = variation.get("variacao")
    return inner if isinstance(inner, dict) else variation


def variation_stock(variation: Mapping[str, Any]) -> int:
    fields = _variation_fields(variation)
    for alias in VARIATION_STOCK_ALIASES:
        if fields.get(alias) is not None:
            number = to_number(fields[alias])
            return int(round(number)) if number is not None else 0
    return 0


def variation_label(variation: Mapping[str, Any]) -> str:
    fields = _variation_fields(variation)
    for key in VARIATION_LABEL_KEYS:
        value = fields.get(key)
        if value and not isinstance(value, dict):
            return str(value).upper()
    grade = fields.get("grade")
    if isinstance(grade, dict) and grade.get("Tamanho"):
        return str(grade["Tamanho"]).upper()
    return "U"


def _image(product: Mapping[str, Any], detail: Mapping[str, Any] | None) -> str | None:
    for key in IMAGE_KEYS:
        if product.get(key):
            return str(product[key])
    if detail and detail.get("imagem"):
        return str(detail["imagem"])
    return None


def _row_size(product: Mapping[str, Any], mapping: Mapping[str, str], name: str | None) -> str | None:
    size_key = mapping.get("sizes")
    if size_key and product.get(size_key) is not None:
        candidate = str(product[size_key]).strip()
    elif product.get("grade"):
        candidate = str(product["grade"]).strip()
    else:
        candidate = ""
    if candidate and not looks_like_product_type(candidate):
        return candidate
    return infer_size_from_name(name or _text(product, "descricao") or _text(product, "nome"))


def group_tiny_products(
    products: Iterable[dict[str, Any]],
    mapping: Mapping[str, str],
    store_id: int,
    store_name: str | None,
) -> list[dict[str, Any]]:
    """One staging row per Tiny product code, merging variations and repeated codes."""
    by_key: dict[str, dict[str, Any]] = {}
    for product in products:
        detail = product.get("detail") if isinstance(product.get("detail"), dict) else None
        if detail is not None and "parsed" in detail:
            detail = None

        name = _text(product, mapping.get("name"))
        if name is None:
            name = _text(product, "descricao") or _text(product, "nome")

        price_key = mapping.get("price")
        if price_key and product.get(price_key) is not None:
            raw_price = product.get(price_key)
        else:
            raw_price = next(
                (source.get(key) for source in (product, detail or {}) for key in ("preco", "preco_venda")
                 if source.get(key) is not None),
                None,
            )
        price = to_number(raw_price) if raw_price is not None else None
        stock = to_stock(product.get("estoque"))
        size = _row_size(product, mapping, name)

        variations = []
        for source in (detail or {}, product):
            if isinstance(source.get("variacoes"), list) and source["variacoes"]:
                variations = source["variacoes"]
                break

        key = _text(product, "codigo_produto") or _text(product, "codigo") or _text(product, "id")
        if not key:
            continue

        image = _image(product, detail)
        group = by_key.get(key)
        if group is None:
            variation_total = sum(variation_stock(v) for v in variations if isinstance(v, dict))
            group = {
                "store_id": store_id,
                "store_name": store_name,
                "provider": PROVIDER,
                "external_id": key,
                "raw_json": [product],
                "mapped_name": name.upper() if name else None,
                "mapped_price": price,
                "price_tag": price,
                "mapped_stock": variation_total if variation_total > 0 else stock,
                "sizes": [size] if size else [],
                "mapped_image_url": image,
                "photo_url": [image] if image else [],
                "eta_text": IMPORT_ETA_TEXT,
                "is_active": True,
                "status": "draft",
            }
            by_key[key] = group
        else:
            if group["mapped_price"] is None and price is not None:
                group["mapped_price"] = price
                group["price_tag"] = price
            group["mapped_stock"] += stock
            group["mapped_stock"] += sum(variation_stock(v) for v in variations if isinstance(v, dict))
            if image and (not group["mapped_image_url"] or not group["photo_url"]):
                group["mapped_image_url"] = image
                group["photo_url"] = [image]
            group["raw_json"].append(product)

        for variation in variations:
            if not isinstance(variation, dict):
                continue
            label = variation_label(variation)
            if label not in group["sizes"]:
                group["sizes"].append(label)
    return list(by_key.values())


def upsert_staging_rows(engine: Engine, rows: list[dict[str, Any]]) -> int:
    table = product_import_staging
    with engine.begin() as conn:
        for row in rows:
            values = {**row, "sizes": row["sizes"] or None}
            existing = conn.execute(
                select(table.c.id)
                .where(table.c.store_id == row["store_id"])
                .where(table.c.provider == row["provider"])
                .where(table.c.external_id == row["external_id"])
            ).scalar_one_or_none()
            if existing:
                conn.execute(update(table).where(table.c.id == existing).values(**values))
            else:
                conn.execute(insert(table).values(**values))
    return len(rows)


def save_integration(engine: Engine, token: str | None, store_id: Any = None, store_name: str | None = None) -> int:
    """Store the partner's Tiny token, creating the store by name if needed."""
    if not token or not str(token).strip():
        raise ValidationFailed("missing-token")
    try:
        with engine.begin() as conn:
            final_store_id = resolve_store_id(conn, store_id, store_name, create=True)
            if not final_store_id:
                raise ValidationFailed("missing-store")
            upsert_integration(conn, final_store_id, PROVIDER, {"token": str(token).strip()})
    except SQLAlchemyError as exc:
        raise UpstreamError("db-error", str(exc)) from exc
    return final_store_id


class TinyImporter:
    def __init__(self, engine: Engine, client: TinyClient) -> None:
        self.engine = engine
        self.client = client

    def _run(self, func, *args):
        return asyncio.get_running_loop().run_in_executor(None, func, *args)

    def _record_step(self, store_id: int, store_name: str | None, step: str, extra: dict[str, Any]) -> None:
        token = self.client.token
        with self.engine.begin() as conn:
            upsert_integration(
                conn,
                store_id,
                PROVIDER,
                {
                    "store_name": store_name,
                    "token": token,
                    "access_token": token,
                    "integration_data": {"token": token, "step": step, **extra},
                },
            )

    def _preview_store(self, store_id: Any, store_name: str | None) -> int | None:
        with self.engine.connect() as conn:
            return resolve_store_id(conn, store_id, store_name)

    async def preview(self, store_id: Any = None, store_name: str | None = None) -> dict[str, Any]:
        final_store_id = await self._run(self._preview_store, store_id, store_name)
        if not final_store_id:
            raise ValidationFailed("store-not-found")
        await self._run(self._record_step, final_store_id, store_name, "preview", {})

        search = await self.client.search_page(1)
        sample = search.products[:PREVIEW_SAMPLE] if isinstance(search, TinyOk) else []
        tiny_fields = list(sample[0].keys()) if sample else []

        snapshot = await self.client.fetch_stock_updates()
        enriched = [await self.client.enrich(product, snapshot, always_detail=True) for product in sample]
        if "estoque" not in tiny_fields:
            tiny_fields.append("estoque")
        return {
            "ok": True,
            "store_id": final_store_id,
            "tiny_fields": tiny_fields,
            "products_sample": enriched,
            "tiny_debug": {"search": envelope_debug(search), "stock": snapshot.debug},
        }

    def _store_name(self, store_id: int) -> str | None:
        with self.engine.connect() as conn:
            return lookup_store_name(conn, store_id)

    async def import_to_staging(self, store_id: int, mapping: Mapping[str, str] | None = None) -> dict[str, Any]:
        mapping = dict(mapping or {})
        try:
            store_name = await self._run(self._store_name, store_id)
        except SQLAlchemyError as exc:
            raise UpstreamError("store-query-failed", str(exc)) from exc
        try:
            await self._run(self._record_step, store_id, store_name, "commit", {"mapping": mapping})
        except SQLAlchemyError as exc:
            raise UpstreamError("integration-upsert-failed", str(exc)) from exc

        products = await self.client.fetch_all_products()
        if not products:
            return {"ok": True, "warning": "empty-tiny-products"}

        snapshot = await self.client.fetch_stock_updates()
        enriched = [await self.client.enrich(product, snapshot) for product in products]
        rows = group_tiny_products(enriched, mapping, store_id, store_name)
        logger.info("Grouped %s Tiny products into %s staging rows for store %s", len(products), len(rows), store_id)
        try:
            await self._run(upsert_staging_rows, self.engine, rows)
        except SQLAlchemyError as exc:
            logger.warning("Staging upsert failed for store %s: %s", store_id, exc)
            return {"ok": True, "warning": "staging-upsert-failed", "detail": str(exc)}
        return {"ok": True, "imported_to_staging": len(rows)}
