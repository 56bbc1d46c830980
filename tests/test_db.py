import sqlite3

import pytest

from services.db import ChildWrite, SalesDb, StoreError, with_store_retry


@pytest.fixture()
def db(tmp_path):
    store = SalesDb(tmp_path / "sales.db", page_cap=3)
    store.ensure_schema()
    return store


def test_ensure_schema_is_repeatable(db):
    db.ensure_schema()
    tables = {r["name"] for r in db.query("SELECT name FROM sqlite_master WHERE type = 'table'")}
    assert {"products", "product_mappings", "inventory", "sales", "sales_daily", "coupang_orders",
            "coupang_order_items", "rocket_growth_orders", "coupang_revenues", "api_sync_logs"} <= tables


def test_fetch_range_is_capped(db):
    for i in range(5):
        db.execute_write("INSERT INTO sales (product_id, quantity, sold_at) VALUES (?, 1, '2026-01-01')", (f"p{i}",))
    sql = "SELECT product_id FROM sales ORDER BY id"
    assert len(db.fetch_range(sql, (), 0, 999)) == 3
    assert [r["product_id"] for r in db.fetch_range(sql, (), 3, 5)] == ["p3", "p4"]
    assert db.fetch_range(sql, (), 5, 4) == []


def test_upsert_and_select_where_in_compound_key(db):
    rows = [
        {"order_id": "o1", "vendor_id": "v1", "items": [{"vendorItemId": 1}], "updated_at": "t"},
        {"order_id": "o1", "vendor_id": "v2", "items": [], "updated_at": "t"},
    ]
    out = db.upsert("coupang_revenues", rows, ("order_id", "vendor_id"))
    assert out["errors"] == []
    assert len(out["rows"]) == 2
    assert all("id" in r for r in out["rows"])

    again = db.upsert("coupang_revenues", rows[:1], ("order_id", "vendor_id"))
    assert again["rows"][0]["id"] == next(r["id"] for r in out["rows"] if r["vendor_id"] == "v1")
    assert len(db.query("SELECT * FROM coupang_revenues")) == 2

    found = db.select_where_in("coupang_revenues", ("order_id", "vendor_id"), [("o1", "v2"), ("o9", "v1")])
    assert found == [{"order_id": "o1", "vendor_id": "v2"}]
    assert db.query("SELECT items FROM coupang_revenues WHERE vendor_id = 'v1'")[0]["items"] == '[{"vendorItemId": 1}]'


def test_upsert_constraint_error_is_reported(db):
    out = db.upsert("coupang_orders", [{"shipment_box_id": "B1", "order_id": None, "synced_at": "t"}], ("shipment_box_id",))
    assert out["rows"] == []
    assert "NOT NULL" in out["errors"][0]


def test_replace_children(db):
    db.replace_children("coupang_order_items", "coupang_order_id", [1], [
        {"coupang_order_id": 1, "vendor_item_id": "a", "created_at": "t"},
        {"coupang_order_id": 1, "vendor_item_id": "b", "created_at": "t"},
    ])
    db.replace_children("coupang_order_items", "coupang_order_id", [1], [
        {"coupang_order_id": 1, "vendor_item_id": "c", "created_at": "t"},
    ])
    assert db.query("SELECT vendor_item_id FROM coupang_order_items") == [{"vendor_item_id": "c"}]


def test_upsert_with_children_commits_together(db):
    parents = [{"shipment_box_id": "B1", "order_id": "O1", "status": "ACCEPT", "synced_at": "t"}]

    def items(created_at):
        def build(stored):
            ids = [r["id"] for r in stored]
            rows = [{"coupang_order_id": ids[0], "vendor_item_id": "V1", "created_at": created_at}]
            return ChildWrite("coupang_order_items", "coupang_order_id", ids, rows)

        return build

    bad = db.upsert("coupang_orders", parents, ("shipment_box_id",), children=items(None))
    assert bad["rows"] == []
    assert "NOT NULL" in bad["errors"][0]
    assert db.query("SELECT * FROM coupang_orders") == []

    good = db.upsert("coupang_orders", parents, ("shipment_box_id",), children=items("t"))
    assert good["errors"] == []
    assert db.query("SELECT vendor_item_id FROM coupang_order_items") == [{"vendor_item_id": "V1"}]


def test_unsafe_identifier_rejected(db):
    with pytest.raises(ValueError):
        db.select_where_in("sales; DROP TABLE sales", ("id",), [(1,)])


def test_store_retry_on_lock_then_success():
    waits = []
    attempts = {"n": 0}

    def op():
        attempts["n"] += 1
        if attempts["n"] < 3:
            raise sqlite3.OperationalError("database is locked")
        return "ok"

    assert with_store_retry(op, "write", attempts=3, delay_seconds=2, sleep=waits.append) == "ok"
    assert waits == [2, 2]


def test_store_retry_exhausted_and_non_transient():
    waits = []

    def locked():
        raise sqlite3.OperationalError("database is locked")

    with pytest.raises(StoreError):
        with_store_retry(locked, "write", attempts=2, delay_seconds=1, sleep=waits.append)
    assert waits == [1]

    def broken():
        raise sqlite3.IntegrityError("constraint")

    with pytest.raises(StoreError):
        with_store_retry(broken, "write", sleep=waits.append)
    assert waits == [1]


def test_catalog_queries(db):
    db.execute_write("INSERT INTO products (id, sku, name, category) VALUES ('p1', 'S1', 'A', 'Food')")
    db.execute_write("INSERT INTO products (id, sku, name, category, is_active) VALUES ('p2', 'S2', 'B', 'Gone', 0)")
    db.execute_write("INSERT INTO inventory (product_id, location, quantity) VALUES ('p1', 'warehouse', 3)")
    db.execute_write("INSERT INTO inventory (product_id, location, quantity) VALUES ('p1', 'other', 8)")
    db.execute_write(
        "INSERT INTO product_mappings (product_id, marketplace, external_option_id, is_active) "
        "VALUES ('p1', 'coupang', 'V1', 1), ('p1', 'coupang', 'V2', 0), ('p1', 'naver', 'N1', 1)"
    )

    assert [p["id"] for p in db.list_active_products()] == ["p1"]
    assert db.list_active_categories() == ["Food"]
    assert db.get_inventory(["p1"], ["warehouse", "coupang"]) == [
        {"product_id": "p1", "location": "warehouse", "quantity": 3}
    ]
    assert db.list_active_mappings("coupang") == [{"product_id": "p1", "external_option_id": "V1"}]
