from __future__ import annotations

import logging
import unicodedata
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from config import FORECAST_HORIZON_DAYS, FORECAST_TIMEZONE
from services.db import SalesDb
from services.identity_resolver import IdentityResolver
from services.sales_aggregator import ProductSales, SalesAggregator, SalesBucket, forecast_now

logger = logging.getLogger(__name__)

LOCATION_WAREHOUSE = "warehouse"
LOCATION_FULFILLMENT = "coupang"
INVENTORY_LOCATIONS = (LOCATION_WAREHOUSE, LOCATION_FULFILLMENT)
MAPPING_MARKETPLACE = "coupang"
UNCATEGORIZED = "Uncategorized"


class ForecastRecord(BaseModel):
    product_id: str
    sku: Optional[str] = None
    name: str = ""
    category: str = UNCATEGORIZED
    warehouse_qty: int = 0
    coupang_qty: int = 0
    total_qty: int = 0
    sales: Dict[str, int] = Field(default_factory=dict)
    sales_by_source: Dict[str, Dict[str, int]] = Field(default_factory=dict)
    need_60d: int = 0
    need_90d: int = 0
    need_120d: int = 0
    coupang_need_40d: int = 0
    stockout_risk: bool = False


class ForecastSummary(BaseModel):
    total: int
    at_risk: int


class ForecastReport(BaseModel):
    generated_at: str
    items: List[ForecastRecord]
    summary: ForecastSummary
    categories: List[str]
    unmapped: List[Dict[str, object]] = Field(default_factory=list)
    failed_sources: List[str] = Field(default_factory=list)


def collation_key(value: Optional[str]) -> str:
    """
    Case-insensitive, width-normalized sort key.

    Ordering is by code point, not a locale collation: Hangul syllables come
    out in dictionary order, but Latin letters, digits and punctuation keep
    their code-point order instead of Korean collation rules.
    """
    return unicodedata.normalize("NFKC", value or "").casefold()


def sort_key(record: ForecastRecord):
    return (not record.stockout_risk, collation_key(record.category), collation_key(record.name))


def build_record(product: dict, stock: Dict[str, int], sales: Optional[ProductSales]) -> ForecastRecord:
    warehouse_qty = int(stock.get(LOCATION_WAREHOUSE, 0))
    coupang_qty = int(stock.get(LOCATION_FULFILLMENT, 0))
    total_qty = warehouse_qty + coupang_qty
    bucket = sales.total if sales else SalesBucket()

    need_60d = total_qty - bucket.d60
    need_90d = total_qty - bucket.d90
    return ForecastRecord(
        product_id=str(product["id"]),
        sku=product.get("sku"),
        name=product.get("name") or "",
        category=product.get("category") or UNCATEGORIZED,
        warehouse_qty=warehouse_qty,
        coupang_qty=coupang_qty,
        total_qty=total_qty,
        sales=bucket.as_dict(),
        sales_by_source={ch: b.as_dict() for ch, b in (sales.by_source.items() if sales else [])},
        need_60d=need_60d,
        need_90d=need_90d,
        need_120d=total_qty - bucket.d120,
        coupang_need_40d=bucket.d40 - coupang_qty,
        stockout_risk=need_60d < 0 or need_90d < 0,
    )


def build_forecast(
    products: Iterable[dict],
    inventory: Iterable[dict],
    aggregate: Dict[str, ProductSales],
) -> List[ForecastRecord]:
    """
    One record per product, risk first, then category and name.
    A product without inventory rows has zero stock.
    """
    stock: Dict[str, Dict[str, int]] = {}
    for row in inventory:
        per_product = stock.setdefault(str(row["product_id"]), {})
        loc = row.get("location")
        per_product[loc] = per_product.get(loc, 0) + int(row.get("quantity") or 0)

    records = [
        build_record(p, stock.get(str(p["id"]), {}), aggregate.get(str(p["id"])))
        for p in products
    ]
    records.sort(key=sort_key)
    return records


def generate_forecast(
    db: SalesDb,
    now: Optional[datetime] = None,
    category: Optional[str] = None,
    only_risk: bool = False,
    tz_name: str = FORECAST_TIMEZONE,
    horizon_days: int = FORECAST_HORIZON_DAYS,
) -> ForecastReport:
    anchor = forecast_now(tz_name, now)

    all_products = db.list_active_products()
    resolver = IdentityResolver(all_products, db.list_active_mappings(MAPPING_MARKETPLACE))
    aggregator = SalesAggregator(db, resolver, tz_name=tz_name)
    aggregate = aggregator.aggregate(anchor, horizon_days=horizon_days)

    products = all_products
    if category:
        products = [p for p in all_products if (p.get("category") or UNCATEGORIZED) == category]
    inventory = db.get_inventory([p["id"] for p in products], INVENTORY_LOCATIONS)

    records = build_forecast(products, inventory, aggregate)
    if only_risk:
        records = [r for r in records if r.stockout_risk]
    summary = ForecastSummary(total=len(records), at_risk=sum(1 for r in records if r.stockout_risk))

    logger.info(
        "[Forecast] %d product(s), %d at risk (category=%s, only_risk=%s)",
        summary.total,
        summary.at_risk,
        category or "all",
        only_risk,
    )
    return ForecastReport(
        generated_at=datetime.now(anchor.tzinfo).isoformat(timespec="seconds"),
        items=records,
        summary=summary,
        categories=db.list_active_categories(),
        unmapped=resolver.unmapped_ids(),
        failed_sources=list(aggregator.failed_sources),
    )
