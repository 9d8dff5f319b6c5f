"""FastAPI application for partner imports, catalog browsing and coupons."""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator, Callable
from typing import Any

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, Field
from sqlalchemy.engine import Engine

from look.db.session import create_engine_from_env
from look.errors import LookError, ValidationFailed
from look.integrations.shopify import (
    ShopifyOAuth,
    build_install_url,
    decode_state,
    normalize_shop,
    save_shopify_integration,
    validate_hmac,
)
from look.integrations.tiny import TinyClient, TinyImporter, save_integration
from look.logic.catalog import MAX_LIMIT, CatalogPager, dedupe_products, fetch_catalog
from look.logic.commit import commit_legacy_items, commit_to_products
from look.logic.coupons import (
    CouponDraft,
    CouponKind,
    CouponScope,
    DiscountType,
    create_coupon,
    delete_coupon,
    list_coupons,
    rescope_coupon,
)
from look.logic.staging import load_draft_groups
from look.logic.stores import resolve_creator
from look.utils.dates import parse_expiry

load_dotenv()

logger = logging.getLogger(__name__)

app = FastAPI(title="Look Marketplace API")


class StagingCommitRequest(BaseModel):
    action: str | None = None
    store_id: int | None = None
    items: list[dict[str, Any]] | None = None


class TinyPreviewRequest(BaseModel):
    token: str | None = None
    store_id: int | str | None = None
    store_name: str | None = None


class TinyCommitRequest(BaseModel):
    token: str | None = None
    store_id: int | None = None
    mapping: dict[str, str] = Field(default_factory=dict)


class TinySaveRequest(BaseModel):
    token: str | None = None
    store_id: int | str | None = None
    store_name: str | None = None


class ScopeRequest(BaseModel):
    apply_to_all: bool = True
    brand_ids: list[int] = Field(default_factory=list)
    product_ids: list[int] = Field(default_factory=list)

    def to_scope(self) -> CouponScope:
        return CouponScope(
            apply_to_all=self.apply_to_all,
            brand_ids=list(self.brand_ids),
            product_ids=list(self.product_ids),
        )


class CouponRequest(ScopeRequest):
    code: str | None = None
    description: str | None = None
    discount_type: DiscountType = DiscountType.PERCENT
    discount_value: Any = None
    coupon_kind: CouponKind = CouponKind.SINGLE_USE_PER_IDENTITY
    active: bool = True
    max_uses: int | None = None
    expires_at: str | None = None


def get_engine() -> Engine:
    return create_engine_from_env()


def get_tiny_client_factory() -> Callable[[str], TinyClient]:
    return TinyClient


async def get_shopify_oauth() -> AsyncIterator[ShopifyOAuth]:
    oauth = ShopifyOAuth()
    try:
        yield oauth
    finally:
        await oauth.close()


def get_catalog_pager(request: Request, engine: Engine = Depends(get_engine)) -> CatalogPager:
    pager = getattr(request.app.state, "catalog_pager", None)
    if pager is None:
        pager = CatalogPager(lambda: fetch_catalog(engine, limit=MAX_LIMIT))
        request.app.state.catalog_pager = pager
    return pager


def _invalidate_catalog(request: Request) -> None:
    pager = getattr(request.app.state, "catalog_pager", None)
    if pager is not None:
        pager.invalidate()


def _require_token(token: str | None) -> str:
    if not token or not token.strip():
        raise ValidationFailed("missing-token")
    return token.strip()


@app.exception_handler(LookError)
async def look_error_handler(request: Request, exc: LookError) -> JSONResponse:
    return JSONResponse(exc.to_payload(), status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        {"ok": False, "error": "invalid-payload", "detail": str(exc.errors())},
        status_code=400,
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse({"ok": False, "error": "server-error", "detail": str(exc)}, status_code=500)


@app.get("/api/integrations/tiny/staging")
async def list_staging(store_id: int | None = Query(None), engine: Engine = Depends(get_engine)) -> dict[str, Any]:
    if not store_id:
        raise ValidationFailed("missing-store")
    groups = load_draft_groups(engine, store_id)
    return {"ok": True, "items": [group.to_dict() for group in groups]}


@app.post("/api/integrations/tiny/staging")
async def commit_staging(
    payload: StagingCommitRequest,
    request: Request,
    engine: Engine = Depends(get_engine),
) -> dict[str, Any]:
    if payload.action == "commit_to_products":
        result = commit_to_products(engine, payload.store_id, payload.items)
    else:
        result = commit_legacy_items(engine, payload.store_id, payload.items)
    _invalidate_catalog(request)
    return {"ok": True, "imported": result.imported}


@app.post("/api/integrations/tiny/preview")
async def tiny_preview(
    payload: TinyPreviewRequest,
    engine: Engine = Depends(get_engine),
    client_factory: Callable[[str], TinyClient] = Depends(get_tiny_client_factory),
) -> dict[str, Any]:
    token = _require_token(payload.token)
    client = client_factory(token)
    try:
        return await TinyImporter(engine, client).preview(payload.store_id, payload.store_name)
    finally:
        await client.close()


@app.post("/api/integrations/tiny/commit")
async def tiny_commit(
    payload: TinyCommitRequest,
    engine: Engine = Depends(get_engine),
    client_factory: Callable[[str], TinyClient] = Depends(get_tiny_client_factory),
) -> dict[str, Any]:
    token = _require_token(payload.token)
    if not payload.store_id:
        raise ValidationFailed("missing-store")
    client = client_factory(token)
    try:
        return await TinyImporter(engine, client).import_to_staging(payload.store_id, payload.mapping)
    finally:
        await client.close()


@app.post("/api/integrations/tiny/save")
async def tiny_save(payload: TinySaveRequest, engine: Engine = Depends(get_engine)) -> dict[str, Any]:
    store_id = save_integration(engine, payload.token, payload.store_id, payload.store_name)
    return {"ok": True, "store_id": store_id}


@app.get("/api/integrations/shopify/install")
async def shopify_install(
    shop: str | None = None,
    store: str | None = None,
    store_id: str | None = None,
) -> RedirectResponse:
    return RedirectResponse(build_install_url(shop, store, store_id), status_code=307)


@app.get("/api/integrations/shopify/callback")
async def shopify_callback(
    request: Request,
    shop: str | None = None,
    code: str | None = None,
    state: str | None = None,
    engine: Engine = Depends(get_engine),
    oauth: ShopifyOAuth = Depends(get_shopify_oauth),
) -> RedirectResponse:
    if not shop or not code or not state:
        raise ValidationFailed("missing-params")
    if not validate_hmac(dict(request.query_params)):
        logger.warning("Shopify HMAC mismatch for %s", shop)
    domain = normalize_shop(shop)
    access_token = await oauth.exchange_code(domain, code)
    save_shopify_integration(engine, domain, access_token, decode_state(state))
    app_url = os.environ.get("APP_URL", "").rstrip("/")
    return RedirectResponse(f"{app_url}/parceiros/produtos/conectar?ok=1", status_code=307)


@app.get("/api/catalog")
async def catalog(
    page: int = Query(0, ge=0),
    dedupe: bool = False,
    pager: CatalogPager = Depends(get_catalog_pager),
) -> dict[str, Any]:
    result = pager.page(page)
    items = dedupe_products(result.items) if dedupe else result.items
    return {"ok": True, "items": items, "has_more": result.has_more, "next_page": result.next_page}


@app.get("/api/coupons")
async def coupons_index(
    page: int = Query(0, ge=0),
    user_email: str | None = Header(None, alias="X-User-Email"),
    engine: Engine = Depends(get_engine),
) -> dict[str, Any]:
    creator = resolve_creator(engine, user_email)
    result = list_coupons(engine, creator, page)
    return {
        "ok": True,
        "items": result.items,
        "total": result.total,
        "page": result.page,
        "total_pages": result.total_pages,
    }


@app.post("/api/coupons")
async def coupons_create(
    payload: CouponRequest,
    user_email: str | None = Header(None, alias="X-User-Email"),
    engine: Engine = Depends(get_engine),
) -> dict[str, Any]:
    creator = resolve_creator(engine, user_email)
    try:
        expires_at = parse_expiry(payload.expires_at)
    except ValueError:
        raise ValidationFailed("invalid-expiry", f"Cannot parse {payload.expires_at!r}") from None
    draft = CouponDraft(
        code=payload.code or "",
        discount_type=payload.discount_type,
        discount_value=payload.discount_value,
        coupon_kind=payload.coupon_kind,
        description=payload.description,
        active=payload.active,
        max_uses=payload.max_uses,
        expires_at=expires_at,
    )
    coupon = create_coupon(engine, draft, creator, payload.to_scope())
    return {"ok": True, "coupon": coupon}


@app.put("/api/coupons/{coupon_id}/scope")
async def coupons_rescope(
    coupon_id: str,
    payload: ScopeRequest,
    user_email: str | None = Header(None, alias="X-User-Email"),
    engine: Engine = Depends(get_engine),
) -> dict[str, Any]:
    creator = resolve_creator(engine, user_email)
    written = rescope_coupon(engine, coupon_id, creator, payload.to_scope())
    return {"ok": True, "applicabilities": written}


@app.delete("/api/coupons/{coupon_id}")
async def coupons_delete(
    coupon_id: str,
    user_email: str | None = Header(None, alias="X-User-Email"),
    engine: Engine = Depends(get_engine),
) -> dict[str, Any]:
    creator = resolve_creator(engine, user_email)
    delete_coupon(engine, coupon_id, creator)
    return {"ok": True}
