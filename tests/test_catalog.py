from look.db.tables import products
from look.logic.catalog import CatalogPager, dedupe_products, fetch_catalog, product_key


def test_fetch_catalog_filters_and_clamps(seeded_engine):
    with seeded_engine.begin() as conn:
        conn.execute(products.insert().values(store_id=1, name="Oculto", stock_total=0, is_active=False))
    names = [item["name"] for item in fetch_catalog(seeded_engine)]
    assert names == ["Saia Midi", "Blusa Linho"]
    assert len(fetch_catalog(seeded_engine, store_ids=[1])) == 1
    assert len(fetch_catalog(seeded_engine, limit=0)) == 1


def test_pager_loads_once_until_invalidated():
    calls = []

    def loader():
        calls.append(1)
        return [{"id": idx} for idx in range(5)]

    pager = CatalogPager(loader, page_size=2)
    first = pager.page(0)
    assert [item["id"] for item in first.items] == [0, 1]
    assert (first.has_more, first.next_page) == (True, 1)
    last = pager.page(2)
    assert [item["id"] for item in last.items] == [4]
    assert (last.has_more, last.next_page) == (False, None)
    assert len(calls) == 1

    pager.invalidate()
    pager.page(0)
    assert len(calls) == 2


def test_independent_pagers_do_not_share_cache():
    a = CatalogPager(lambda: [{"id": 1}])
    b = CatalogPager(lambda: [])
    assert a.page(0).items == [{"id": 1}]
    assert b.page(0).items == []


def test_dedupe_keeps_cheapest_and_tracks_stores():
    items = [
        {"id": 1, "brand": "Farm", "name": "Saia Midi", "color": "Azul", "size": "P", "price_tag": 259.0, "store_name": "Farm Leblon"},
        {"id": 2, "brand": "farm", "name": "SAIA MÍDI", "color": "azul", "size": "p", "price_tag": 239.0, "store_name": "Farm Ipanema"},
        {"id": 3, "master_sku": "SKU-9", "name": "Bolsa", "price_tag": 100.0, "store_name": "A"},
        {"id": 4, "master_sku": "SKU-9", "name": "Bolsa", "price_tag": 120.0, "store_name": "A"},
    ]
    deduped = {item["id"]: item for item in dedupe_products(items)}
    assert set(deduped) == {2, 3}
    assert deduped[2]["store_count"] == 2
    assert deduped[2]["stores"] == ["Farm Leblon", "Farm Ipanema"]
    assert deduped[3]["store_count"] == 2
    assert deduped[3]["stores"] == ["A"]
    assert product_key({"global_sku": " G-1 "}) == "G-1"
