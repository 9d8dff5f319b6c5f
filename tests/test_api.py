import json
from urllib.parse import parse_qs, urlparse

import httpx
import respx
from sqlalchemy import select

from look.api import main
from look.db.tables import partner_integrations, product_import_staging

ADMIN = {"X-User-Email": "admin@look.com"}
PARTNER = {"X-User-Email": "owner@farm.com"}


def test_staging_get_requires_store(client):
    response = client.get("/api/integrations/tiny/staging")
    assert response.status_code == 400
    assert response.json() == {"ok": False, "error": "missing-store"}


def test_staging_get_then_commit(client, stage, seeded_engine):
    stage([
        {"name": "Vestido Azul - P", "mapped_stock": 3},
        {"name": "Vestido Azul - M", "mapped_stock": 5},
    ])
    listing = client.get("/api/integrations/tiny/staging", params={"store_id": 1}).json()
    assert listing["ok"] is True
    [item] = listing["items"]
    assert item["name"] == "Vestido Azul"
    assert item["mapped_stock"] == 8

    response = client.post(
        "/api/integrations/tiny/staging",
        json={"action": "commit_to_products", "store_id": 1, "items": [item]},
    )
    assert response.json() == {"ok": True, "imported": 1}
    assert client.get("/api/integrations/tiny/staging", params={"store_id": 1}).json()["items"] == []


def test_staging_commit_validation(client):
    response = client.post("/api/integrations/tiny/staging", json={"action": "commit_to_products", "store_id": 1, "items": []})
    assert response.status_code == 400
    assert response.json()["error"] == "no-items"
    response = client.post("/api/integrations/tiny/staging", json={"store_id": "abc"})
    assert response.status_code == 400
    assert response.json()["error"] == "invalid-payload"


def test_commit_invalidates_catalog(client, stage):
    assert len(client.get("/api/catalog").json()["items"]) == 2
    stage([{"name": "Cinto - U", "mapped_stock": 1}])
    item = client.get("/api/integrations/tiny/staging", params={"store_id": 1}).json()["items"][0]
    client.post("/api/integrations/tiny/staging", json={"action": "commit_to_products", "store_id": 1, "items": [item]})
    names = [product["name"] for product in client.get("/api/catalog").json()["items"]]
    assert names[0] == "Cinto"
    assert len(names) == 3


def test_catalog_pages(client):
    body = client.get("/api/catalog", params={"page": 0, "dedupe": True}).json()
    assert body["has_more"] is False
    assert body["next_page"] is None
    assert {item["store_count"] for item in body["items"]} == {1}


def test_tiny_preview_requires_token(client):
    response = client.post("/api/integrations/tiny/preview", json={"store_id": 1})
    assert response.status_code == 400
    assert response.json()["error"] == "missing-token"


def test_tiny_commit_route(client, seeded_engine):
    with respx.mock() as router:
        router.post("https://tiny.test/api2/produtos.pesquisa.php").mock(
            return_value=httpx.Response(200, text=json.dumps({"retorno": {"status": "OK", "produtos": []}}))
        )
        response = client.post("/api/integrations/tiny/commit", json={"token": "tok", "store_id": 1})
    assert response.json() == {"ok": True, "warning": "empty-tiny-products"}
    with seeded_engine.connect() as conn:
        assert conn.execute(select(product_import_staging)).first() is None


def test_tiny_save_route(client, seeded_engine):
    response = client.post("/api/integrations/tiny/save", json={"token": "tok-1", "store_name": "Farm"})
    assert response.json() == {"ok": True, "store_id": 2}
    with seeded_engine.connect() as conn:
        token = conn.execute(
            select(partner_integrations.c.token).where(partner_integrations.c.provider == "tiny")
        ).scalar_one()
    assert token == "tok-1"
    assert client.post("/api/integrations/tiny/save", json={"store_name": "Farm"}).json()["error"] == "missing-token"


def test_shopify_install_and_callback(client, seeded_engine, monkeypatch):
    monkeypatch.setenv("APP_URL", "https://look.test")
    install = client.get(
        "/api/integrations/shopify/install",
        params={"shop": "farm", "store": "Farm", "store_id": "2"},
        follow_redirects=False,
    )
    assert install.status_code == 307
    location = urlparse(install.headers["location"])
    assert location.netloc == "farm.myshopify.com"
    state = parse_qs(location.query)["state"][0]

    class FakeOAuth:
        async def exchange_code(self, shop, code):
            assert (shop, code) == ("farm.myshopify.com", "abc")
            return "shpat_9"

    main.app.dependency_overrides[main.get_shopify_oauth] = FakeOAuth
    callback = client.get(
        "/api/integrations/shopify/callback",
        params={"shop": "farm.myshopify.com", "code": "abc", "state": state, "hmac": "bad"},
        follow_redirects=False,
    )
    assert callback.status_code == 307
    assert callback.headers["location"] == "https://look.test/parceiros/produtos/conectar?ok=1"
    with seeded_engine.connect() as conn:
        row = conn.execute(select(partner_integrations)).mappings().one()
    assert (row["store_id"], row["access_token"], row["shop_domain"]) == (2, "shpat_9", "farm.myshopify.com")


def test_shopify_callback_missing_params(client):
    response = client.get("/api/integrations/shopify/callback", params={"shop": "farm"})
    assert response.status_code == 400
    assert response.json()["error"] == "missing-params"


def test_coupon_lifecycle(client):
    created = client.post(
        "/api/coupons",
        headers=PARTNER,
        json={"code": "farm10", "discount_type": "percent", "discount_value": "10", "apply_to_all": False, "product_ids": [11]},
    )
    assert created.status_code == 200
    coupon = created.json()["coupon"]
    assert coupon["code"] == "FARM10"
    assert coupon["applicabilities"] == 1

    listing = client.get("/api/coupons", headers=PARTNER).json()
    assert [item["code"] for item in listing["items"]] == ["FARM10"]
    assert listing["total_pages"] == 1

    rescoped = client.put(f"/api/coupons/{coupon['id']}/scope", headers=PARTNER, json={"apply_to_all": True})
    assert rescoped.json() == {"ok": True, "applicabilities": 0}

    duplicate = client.post("/api/coupons", headers=ADMIN, json={"code": "FARM10", "discount_value": 5})
    assert duplicate.status_code == 409
    assert duplicate.json()["error"] == "coupon-exists"

    assert client.delete(f"/api/coupons/{coupon['id']}", headers=PARTNER).json() == {"ok": True}
    missing = client.delete(f"/api/coupons/{coupon['id']}", headers=ADMIN)
    assert missing.status_code == 404


def test_coupon_access_gate(client):
    for headers in ({}, {"X-User-Email": "stranger@gmail.com"}):
        response = client.get("/api/coupons", headers=headers)
        assert response.status_code == 403
        assert response.json()["error"] == "not-allowed"
    response = client.post(
        "/api/coupons",
        headers=PARTNER,
        json={"code": "MARCA", "discount_value": 5, "apply_to_all": False, "brand_ids": [1]},
    )
    assert response.status_code == 403
    assert response.json()["error"] == "brand-scope-forbidden"


def test_coupon_validation_errors(client):
    response = client.post("/api/coupons", headers=ADMIN, json={"code": "X", "discount_value": 0})
    assert response.json()["error"] == "invalid-discount"
    response = client.post("/api/coupons", headers=ADMIN, json={"code": "X", "discount_value": 5, "expires_at": "someday"})
    assert response.json()["error"] == "invalid-expiry"
    response = client.post("/api/coupons", headers=ADMIN, json={"code": "X", "discount_value": 5, "coupon_kind": "Z"})
    assert response.json()["error"] == "invalid-payload"


def test_unexpected_errors_render_server_error(client, monkeypatch):
    def explode(engine, store_id):
        raise RuntimeError("kaboom")

    monkeypatch.setattr(main, "load_draft_groups", explode)
    response = client.get("/api/integrations/tiny/staging", params={"store_id": 1})
    assert response.status_code == 500
    assert response.json() == {"ok": False, "error": "server-error", "detail": "kaboom"}
