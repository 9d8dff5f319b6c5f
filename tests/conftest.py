import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from look.api import main
from look.db.migrate import run_migrations
from look.db.tables import partner_emails, product_import_staging, products, stores
from look.integrations.tiny import TinyClient
from look.utils.rate_limit import RateLimiter

TINY_BASE = "https://tiny.test/api2"


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        future=True,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    run_migrations(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def seeded_engine(engine):
    with engine.begin() as conn:
        conn.execute(stores.insert(), [
            {"id": 1, "store_name": "Maria Filó", "slug": "maria-filo"},
            {"id": 2, "store_name": "Farm", "slug": "farm"},
        ])
        conn.execute(partner_emails.insert(), [
            {"email": "owner@farm.com", "store_name": "Farm", "active": True},
            {"email": "former@farm.com", "store_name": "Farm", "active": False},
            {"email": "orphan@nowhere.com", "store_name": "Ghost Store", "active": True},
        ])
        conn.execute(products.insert(), [
            {"id": 10, "store_id": 1, "store_name": "Maria Filó", "name": "Blusa Linho", "price_tag": 199.9, "stock_total": 3, "is_active": True},
            {"id": 11, "store_id": 2, "store_name": "Farm", "name": "Saia Midi", "price_tag": 259.0, "stock_total": 1, "is_active": True},
        ])
    return engine


@pytest.fixture()
def stage(seeded_engine):
    def _stage(rows):
        with seeded_engine.begin() as conn:
            for row in rows:
                conn.execute(
                    product_import_staging.insert().values({"store_id": 1, "provider": "tiny", "status": "draft", **row})
                )
    return _stage


@pytest.fixture()
def tiny_client_factory():
    return lambda token: TinyClient(token, rate_limiter=RateLimiter(rate=0), base_url=TINY_BASE)


@pytest.fixture()
def client(seeded_engine, tiny_client_factory, monkeypatch):
    monkeypatch.setenv("PLATFORM_ADMIN_EMAILS", "admin@look.com")
    main.app.dependency_overrides[main.get_engine] = lambda: seeded_engine
    main.app.dependency_overrides[main.get_tiny_client_factory] = lambda: tiny_client_factory
    main.app.state.catalog_pager = None
    with TestClient(main.app, raise_server_exceptions=False) as test_client:
        yield test_client
    main.app.dependency_overrides.clear()
    main.app.state.catalog_pager = None
