"""Shopify app install: authorize URL, callback checks and token exchange."""

from __future__ import annotations

import hashlib
import hmac
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Mapping
from urllib.parse import urlencode

import httpx
from itsdangerous import BadData
from sqlalchemy import insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from look.db.tables import partner_integrations
from look.errors import UpstreamError, ValidationFailed
from look.logic.stores import resolve_store_id, upsert_integration
from look.utils.dates import utcnow
from look.utils.retry import retry_async
from look.utils.signing import generate_token, load_token

logger = logging.getLogger(__name__)

PROVIDER = "shopify"
STATE_PURPOSE = "shopify-install"
DEFAULT_SCOPES = "read_products,write_products,read_inventory,write_inventory,read_locations"
DEFAULT_REDIRECT_URI = "https://wearalook.com/api/integrations/shopify/callback"
SHOP_SUFFIX = ".myshopify.com"
WHITESPACE_RE = re.compile(r"\s+")


@dataclass(slots=True)
class InstallState:
    store_name: str | None = None
    store_id: int | None = None


def _api_key() -> str:
    return os.environ.get("SHOPIFY_API_KEY", "")


def _api_secret() -> str:
    return os.environ.get("SHOPIFY_API_SECRET", "")


def normalize_shop(shop: str | None) -> str:
    shop = (shop or "").strip()
    if not shop:
        raise ValidationFailed("missing-shop")
    if SHOP_SUFFIX in shop:
        return shop
    slug = WHITESPACE_RE.sub("-", shop.lower())
    return f"{slug}{SHOP_SUFFIX}"


def encode_state(store_name: str | None, store_id: Any) -> str:
    return generate_token({"s": store_name, "i": store_id}, STATE_PURPOSE)


def decode_state(state: str) -> InstallState:
    """Store name and id carried through the install; empty when the state is unreadable."""
    try:
        data = load_token(state, STATE_PURPOSE)
    except BadData:
        logger.warning("Unreadable Shopify install state")
        return InstallState()
    store_id = data.get("i")
    try:
        parsed_id = int(store_id) if store_id not in (None, "") else None
    except (TypeError, ValueError):
        parsed_id = None
    store_name = data.get("s")
    return InstallState(store_name=str(store_name) if store_name else None, store_id=parsed_id)


def build_install_url(shop: str | None, store_name: str | None = None, store_id: Any = None) -> str:
    domain = normalize_shop(shop)
    query = urlencode(
        {
            "client_id": _api_key(),
            "scope": os.environ.get("SHOPIFY_SCOPES", DEFAULT_SCOPES),
            "redirect_uri": os.environ.get("SHOPIFY_REDIRECT_URI", DEFAULT_REDIRECT_URI),
            "state": encode_state(store_name, store_id),
        }
    )
    return f"https://{domain}/admin/oauth/authorize?{query}"


def validate_hmac(query: Mapping[str, str], secret: str | None = None) -> bool:
    received = query.get("hmac")
    if not received:
        return False
    message = urlencode(sorted((key, value) for key, value in query.items() if key != "hmac"))
    digest = hmac.new((secret if secret is not None else _api_secret()).encode(), message.encode(), hashlib.sha256)
    return hmac.compare_digest(digest.hexdigest(), received)


class ShopifyOAuth:
    def __init__(self, *, session: httpx.AsyncClient | None = None) -> None:
        self._session = session or httpx.AsyncClient(timeout=30.0)

    async def close(self) -> None:
        await self._session.aclose()

    async def exchange_code(self, shop: str, code: str) -> str:
        response = await retry_async(self._session.post)(
            f"https://{shop}/admin/oauth/access_token",
            json={"client_id": _api_key(), "client_secret": _api_secret(), "code": code},
        )
        if response.status_code >= 400:
            logger.error("Shopify token exchange failed for %s: %s", shop, response.text)
            raise UpstreamError("token-exchange-failed", response.text)
        token = response.json().get("access_token")
        if not token:
            raise UpstreamError("token-exchange-failed", "Missing access_token")
        return str(token)


def save_shopify_integration(engine: Engine, shop: str, access_token: str, state: InstallState) -> None:
    values = {"store_name": state.store_name, "access_token": access_token, "shop_domain": shop}
    try:
        with engine.begin() as conn:
            store_id = state.store_id
            if store_id is None and state.store_name:
                store_id = resolve_store_id(conn, None, state.store_name)
            if store_id is None:
                conn.execute(
                    insert(partner_integrations).values(provider=PROVIDER, updated_at=utcnow(), **values)
                )
            else:
                upsert_integration(conn, store_id, PROVIDER, values)
    except SQLAlchemyError as exc:
        raise UpstreamError("integration-save-failed", str(exc)) from exc
    logger.info("Saved Shopify integration for %s", shop)
