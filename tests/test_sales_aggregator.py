import json
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from services.db import SalesDb
from services.identity_resolver import IdentityResolver
from services.sale_events import DailyRollupSale, LedgerSale, RevenueItem
from services.sales_aggregator import (
    WINDOWS,
    SalesAggregator,
    SalesBucket,
    days_ago,
    filter_rollup,
    forecast_now,
    ledger_product_ids,
)

KST = ZoneInfo("Asia/Seoul")
NOW = forecast_now("Asia/Seoul", datetime(2026, 3, 1, 15, 30, tzinfo=KST))


def _db(tmp_path, page_cap=1000) -> SalesDb:
    db = SalesDb(tmp_path / "sales.db", page_cap=page_cap)
    db.ensure_schema()
    db.execute_write("INSERT INTO products (id, sku, name, category) VALUES ('p1', 'ABC123456', 'Kimchi', 'Food')")
    db.execute_write("INSERT INTO products (id, sku, name, category) VALUES ('p2', 'XYZ000001', 'Mug', 'Home')")
    db.execute_write(
        "INSERT INTO product_mappings (product_id, marketplace, external_option_id) VALUES ('p2', 'coupang', 'V2')"
    )
    return db


def _aggregator(db) -> SalesAggregator:
    resolver = IdentityResolver(db.list_active_products(), db.list_active_mappings("coupang"))
    return SalesAggregator(db, resolver, tz_name="Asia/Seoul")


def _ago(days, **extra) -> str:
    return (NOW - timedelta(days=days, **extra)).isoformat()


def test_forecast_now_is_start_of_local_day():
    assert NOW == datetime(2026, 3, 1, tzinfo=KST)
    assert forecast_now("Asia/Seoul", datetime(2026, 2, 28, 16, 0, tzinfo=ZoneInfo("UTC"))) == NOW


def test_bucket_windows():
    bucket = SalesBucket()
    bucket.add(45, 3)
    assert bucket.as_dict() == {"d7": 0, "d30": 0, "d40": 0, "d60": 3, "d90": 3, "d120": 3}
    bucket.add(-1, 1)  # later the same day
    assert bucket.d7 == 1 and bucket.d120 == 4


def test_days_ago_floors():
    assert days_ago(NOW, NOW - timedelta(days=7, hours=23)) == 7
    assert days_ago(NOW, NOW + timedelta(hours=5)) == -1


def test_single_event_45_days_ago(tmp_path):
    db = _db(tmp_path)
    db.execute_write("INSERT INTO sales (product_id, quantity, sold_at) VALUES ('p1', 3, ?)", (_ago(45),))

    result = _aggregator(db).aggregate(NOW)

    assert result["p1"].total.as_dict() == {"d7": 0, "d30": 0, "d40": 0, "d60": 3, "d90": 3, "d120": 3}
    assert result["p1"].by_source["general"].d60 == 3


def test_rollup_skipped_for_products_in_ledger(tmp_path):
    db = _db(tmp_path)
    db.execute_write("INSERT INTO sales (product_id, quantity, sold_at) VALUES ('p1', 2, ?)", (_ago(1),))
    day = (NOW - timedelta(days=1)).date().isoformat()
    db.execute_write("INSERT INTO sales_daily (product_id, sale_date, total_qty) VALUES ('p1', ?, 2)", (day,))
    db.execute_write("INSERT INTO sales_daily (product_id, sale_date, total_qty) VALUES ('p2', ?, 5)", (day,))

    result = _aggregator(db).aggregate(NOW)

    assert result["p1"].total.d7 == 2
    assert result["p2"].total.d7 == 5


def test_two_phase_dedup_helpers():
    ts = NOW
    ledger = [LedgerSale("p1", 1, ts)]
    rollup = [DailyRollupSale("p1", 4, ts), DailyRollupSale("p2", 4, ts)]
    seen = ledger_product_ids(ledger)
    assert seen == {"p1"}
    assert filter_rollup(rollup, seen) == [DailyRollupSale("p2", 4, ts)]


def test_channel_sources_are_attributed(tmp_path):
    db = _db(tmp_path)
    # warehouse scan-out, stored negative
    inv_id = db.execute_write("INSERT INTO inventory (product_id, location, quantity) VALUES ('p1', 'warehouse', 10)")
    db.execute_write(
        "INSERT INTO inventory_logs (inventory_id, change_type, change_qty, created_at) VALUES (?, 'out', -2, ?)",
        (inv_id, _ago(3)),
    )
    db.execute_write(
        "INSERT INTO inventory_logs (inventory_id, change_type, change_qty, created_at) VALUES (?, 'in', 50, ?)",
        (inv_id, _ago(3)),
    )
    # seller order resolved by mapping, and one resolved by external SKU code
    order_id = db.execute_write(
        "INSERT INTO coupang_orders (shipment_box_id, order_id, ordered_at, status, synced_at) "
        "VALUES ('B1', 'O1', ?, 'ACCEPT', ?)",
        (_ago(10), _ago(0)),
    )
    db.execute_write(
        "INSERT INTO coupang_order_items (coupang_order_id, vendor_item_id, shipping_count, created_at) "
        "VALUES (?, 'V2', 4, ?)",
        (order_id, _ago(0)),
    )
    db.execute_write(
        "INSERT INTO coupang_order_items (coupang_order_id, vendor_item_id, external_vendor_sku_code, "
        "shipping_count, created_at) VALUES (?, 'V-unknown', 'ABC123456', 1, ?)",
        (order_id, _ago(0)),
    )
    # revenue: absent quantity counts 1, explicit 0 counts 0
    items = [{"vendorItemId": "V2", "quantity": 2}, {"vendorItemId": "V2"}, {"vendorItemId": "V2", "quantity": 0}]
    db.execute_write(
        "INSERT INTO coupang_revenues (order_id, vendor_id, sale_date, items) VALUES ('R1', 'A1', ?, ?)",
        ((NOW - timedelta(days=35)).date().isoformat(), json.dumps(items)),
    )

    result = _aggregator(db).aggregate(NOW)

    assert result["p1"].by_source["naver"].d7 == 2
    assert result["p1"].by_source["coupang_seller"].d30 == 1
    assert result["p2"].by_source["coupang_seller"].d30 == 4
    assert result["p2"].by_source["coupang_rocket"].as_dict() == {
        "d7": 0, "d30": 0, "d40": 3, "d60": 3, "d90": 3, "d120": 3,
    }
    assert result["p2"].total.d40 == 7


def test_unmapped_events_are_dropped(tmp_path):
    db = _db(tmp_path)
    items = [{"vendorItemId": "NOPE", "quantity": 9}]
    db.execute_write(
        "INSERT INTO coupang_revenues (order_id, vendor_id, sale_date, items) VALUES ('R1', 'A1', ?, ?)",
        (NOW.date().isoformat(), json.dumps(items)),
    )
    aggregator = _aggregator(db)
    result = aggregator.aggregate(NOW)
    assert result == {}
    assert aggregator.resolver.unmapped["NOPE"] == 1


def test_events_past_horizon_are_ignored(tmp_path):
    db = _db(tmp_path)
    db.execute_write("INSERT INTO sales (product_id, quantity, sold_at) VALUES ('p1', 3, ?)", (_ago(121),))
    db.execute_write("INSERT INTO sales (product_id, quantity, sold_at) VALUES ('p1', 1, ?)", (_ago(120),))
    result = _aggregator(db).aggregate(NOW)
    assert result["p1"].total.d120 == 1


def test_reads_every_page(tmp_path):
    db = _db(tmp_path, page_cap=2)
    for i in range(5):
        db.execute_write("INSERT INTO sales (product_id, quantity, sold_at) VALUES ('p1', 1, ?)", (_ago(i),))
    result = _aggregator(db).aggregate(NOW)
    assert result["p1"].total.d7 == 5


def test_failed_source_counts_as_zero(tmp_path, monkeypatch):
    db = _db(tmp_path)
    db.execute_write("INSERT INTO sales (product_id, quantity, sold_at) VALUES ('p1', 3, ?)", (_ago(2),))
    aggregator = _aggregator(db)
    original = aggregator.fetch_events

    def flaky(source, since):
        if source.name == "revenue":
            raise RuntimeError("revenue table offline")
        return original(source, since)

    monkeypatch.setattr(aggregator, "fetch_events", flaky)
    result = aggregator.aggregate(NOW)

    assert result["p1"].total.d7 == 3
    assert aggregator.failed_sources == ["revenue"]


@pytest.mark.parametrize("ages", [[0, 5, 33, 59, 61, 95, 119], [7, 30, 40, 60, 90, 120]])
def test_windows_are_monotonic(tmp_path, ages):
    db = _db(tmp_path)
    for age in ages:
        db.execute_write("INSERT INTO sales (product_id, quantity, sold_at) VALUES ('p1', 2, ?)", (_ago(age),))
    bucket = _aggregator(db).aggregate(NOW)["p1"].total
    counts = [bucket.window(w) for w in WINDOWS]
    assert counts == sorted(counts)
    assert bucket.d120 == 2 * len(ages)


def test_revenue_item_variant_fields():
    item = RevenueItem("V1", 2, NOW)
    assert item.channel == "coupang_rocket"


def test_naive_now_is_read_as_local_time(tmp_path):
    db = _db(tmp_path)
    db.execute_write("INSERT INTO sales (product_id, quantity, sold_at) VALUES ('p1', 3, ?)", (_ago(45),))
    db.execute_write("INSERT INTO sales (product_id, quantity, sold_at) VALUES ('p1', 1, ?)", (_ago(2),))

    result = _aggregator(db).aggregate(datetime(2026, 3, 1))

    assert result["p1"].total.as_dict() == {"d7": 1, "d30": 1, "d40": 1, "d60": 4, "d90": 4, "d120": 4}


def test_revenue_item_snake_case_id(tmp_path):
    db = _db(tmp_path)
    items = [{"vendor_item_id": "V2", "quantity": 2}]
    db.execute_write(
        "INSERT INTO coupang_revenues (order_id, vendor_id, sale_date, items) VALUES ('R1', 'A1', ?, ?)",
        ((NOW - timedelta(days=3)).date().isoformat(), json.dumps(items)),
    )
    result = _aggregator(db).aggregate(NOW)
    assert result["p2"].by_source["coupang_rocket"].d7 == 2
