import hashlib
import hmac
import json
from urllib.parse import parse_qs, urlencode, urlparse

import httpx
import pytest
import respx
from sqlalchemy import select

from look.db.tables import partner_integrations
from look.errors import UpstreamError, ValidationFailed
from look.integrations.shopify import (
    InstallState,
    ShopifyOAuth,
    build_install_url,
    decode_state,
    normalize_shop,
    save_shopify_integration,
    validate_hmac,
)


@pytest.fixture(autouse=True)
def shopify_env(monkeypatch):
    monkeypatch.setenv("SHOPIFY_API_KEY", "key-1")
    monkeypatch.setenv("SHOPIFY_API_SECRET", "shh")
    monkeypatch.setenv("SIGNING_SECRET", "signing")


def test_normalize_shop():
    assert normalize_shop("loja.myshopify.com") == "loja.myshopify.com"
    assert normalize_shop("  Tatiana   Loureiro ") == "tatiana-loureiro.myshopify.com"
    with pytest.raises(ValidationFailed):
        normalize_shop(" ")


def test_install_url_carries_signed_state():
    url = urlparse(build_install_url("Farm Rio", "Farm", "2"))
    query = {key: values[0] for key, values in parse_qs(url.query).items()}
    assert url.netloc == "farm-rio.myshopify.com"
    assert url.path == "/admin/oauth/authorize"
    assert query["client_id"] == "key-1"
    assert "read_products" in query["scope"]
    assert decode_state(query["state"]) == InstallState(store_name="Farm", store_id=2)


def test_tampered_state_is_empty():
    assert decode_state("not-a-token") == InstallState()


def test_validate_hmac():
    query = {"shop": "farm.myshopify.com", "code": "abc", "state": "xyz", "timestamp": "1700000000"}
    message = urlencode(sorted(query.items()))
    signed = {**query, "hmac": hmac.new(b"shh", message.encode(), hashlib.sha256).hexdigest()}
    assert validate_hmac(signed)
    assert not validate_hmac({**signed, "code": "other"})
    assert not validate_hmac(query)


@pytest.mark.asyncio
async def test_exchange_code():
    async with respx.mock(assert_all_called=True) as router:
        route = router.post("https://farm.myshopify.com/admin/oauth/access_token").mock(
            return_value=httpx.Response(200, json={"access_token": "shpat_1"})
        )
        oauth = ShopifyOAuth(session=httpx.AsyncClient())
        token = await oauth.exchange_code("farm.myshopify.com", "abc")
        await oauth.close()
    assert token == "shpat_1"
    assert json.loads(route.calls[0].request.content) == {"client_id": "key-1", "client_secret": "shh", "code": "abc"}


@pytest.mark.asyncio
async def test_exchange_code_failure():
    async with respx.mock() as router:
        router.post("https://farm.myshopify.com/admin/oauth/access_token").mock(
            return_value=httpx.Response(400, text="invalid code")
        )
        oauth = ShopifyOAuth(session=httpx.AsyncClient())
        with pytest.raises(UpstreamError) as exc:
            await oauth.exchange_code("farm.myshopify.com", "bad")
        await oauth.close()
    assert exc.value.code == "token-exchange-failed"
    assert exc.value.detail == "invalid code"


def test_save_integration_by_name_and_without_store(seeded_engine):
    save_shopify_integration(seeded_engine, "farm.myshopify.com", "shpat_1", InstallState(store_name="Farm"))
    save_shopify_integration(seeded_engine, "farm.myshopify.com", "shpat_2", InstallState(store_name="Farm", store_id=2))
    save_shopify_integration(seeded_engine, "ghost.myshopify.com", "shpat_3", InstallState())
    with seeded_engine.connect() as conn:
        rows = conn.execute(
            select(partner_integrations).order_by(partner_integrations.c.id)
        ).mappings().all()
    assert [(row["store_id"], row["access_token"]) for row in rows] == [(2, "shpat_2"), (None, "shpat_3")]
    assert all(row["provider"] == "shopify" for row in rows)
