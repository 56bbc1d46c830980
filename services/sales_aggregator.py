"""
Trailing-window sales aggregation across every sales source table.

Sources:
  - sales (ledger)          -> general, authoritative per product
  - sales_daily (rollup)    -> general, only for products absent from the ledger
  - inventory_logs 'out'    -> naver (warehouse scan-out)
  - coupang_order_items     -> coupang_seller (resolved via IdentityResolver)
  - coupang_revenues.items  -> coupang_rocket (resolved via IdentityResolver)

A source that fails to load contributes nothing; the others still count.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, tzinfo
from typing import Callable, Dict, Iterable, List, Optional, Set
from zoneinfo import ZoneInfo

from config import FORECAST_HORIZON_DAYS, FORECAST_TIMEZONE
from services.db import SalesDb, with_store_retry
from services.identity_resolver import IdentityResolver
from services.pagination import fetch_all
from services.sale_events import (
    DailyRollupSale,
    LedgerSale,
    RevenueItem,
    SaleEvent,
    SellerOrderItem,
    WarehouseScanOut,
    ledger_sale_from_row,
    parse_rows,
    revenue_items_from_row,
    rollup_sale_from_row,
    scan_out_from_row,
    seller_item_from_row,
)

logger = logging.getLogger(__name__)

WINDOWS = (7, 30, 40, 60, 90, 120)


@dataclass
class SalesBucket:
    d7: int = 0
    d30: int = 0
    d40: int = 0
    d60: int = 0
    d90: int = 0
    d120: int = 0

    def add(self, days_ago: int, quantity: int) -> None:
        for w in WINDOWS:
            if days_ago <= w:
                setattr(self, f"d{w}", getattr(self, f"d{w}") + quantity)

    def window(self, days: int) -> int:
        return getattr(self, f"d{days}")

    def as_dict(self) -> Dict[str, int]:
        return {f"d{w}": self.window(w) for w in WINDOWS}


@dataclass
class ProductSales:
    total: SalesBucket = field(default_factory=SalesBucket)
    by_source: Dict[str, SalesBucket] = field(default_factory=dict)

    def add(self, channel: str, days_ago: int, quantity: int) -> None:
        self.total.add(days_ago, quantity)
        self.by_source.setdefault(channel, SalesBucket()).add(days_ago, quantity)


@dataclass(frozen=True)
class EventSource:
    name: str
    sql: str
    parser: Callable
    resolved: bool = True  # rows already carry an internal product id


EVENT_SOURCES = {
    "ledger": EventSource(
        "ledger",
        "SELECT id, product_id, quantity, sold_at FROM sales WHERE sold_at >= ? ORDER BY id",
        ledger_sale_from_row,
    ),
    "rollup": EventSource(
        "rollup",
        "SELECT product_id, sale_date, total_qty FROM sales_daily WHERE sale_date >= ? "
        "ORDER BY product_id, sale_date",
        rollup_sale_from_row,
    ),
    "scan_out": EventSource(
        "scan_out",
        """
        SELECT l.id, i.product_id, l.change_qty, l.created_at
        FROM inventory_logs l
        JOIN inventory i ON i.id = l.inventory_id
        WHERE l.change_type = 'out' AND l.created_at >= ?
        ORDER BY l.id
        """,
        scan_out_from_row,
    ),
    "seller_orders": EventSource(
        "seller_orders",
        """
        SELECT it.id, it.vendor_item_id, it.external_vendor_sku_code, it.shipping_count,
               it.created_at, o.ordered_at
        FROM coupang_order_items it
        JOIN coupang_orders o ON o.id = it.coupang_order_id
        WHERE COALESCE(o.ordered_at, it.created_at) >= ?
        ORDER BY it.id
        """,
        seller_item_from_row,
        resolved=False,
    ),
    "revenue": EventSource(
        "revenue",
        "SELECT id, order_id, sale_date, items FROM coupang_revenues WHERE sale_date >= ? ORDER BY id",
        revenue_items_from_row,
        resolved=False,
    ),
}


def forecast_now(tz_name: str = FORECAST_TIMEZONE, now: Optional[datetime] = None) -> datetime:
    """Start of the current day in `tz_name`."""
    tz = ZoneInfo(tz_name)
    current = now.astimezone(tz) if now else datetime.now(tz)
    return current.replace(hour=0, minute=0, second=0, microsecond=0)


def days_ago(now: datetime, timestamp: datetime) -> int:
    return math.floor((now - timestamp).total_seconds() / 86400)


def ledger_product_ids(events: Iterable[SaleEvent]) -> Set[str]:
    return {e.product_id for e in events if isinstance(e, LedgerSale)}


def filter_rollup(events: Iterable[SaleEvent], seen: Set[str]) -> List[SaleEvent]:
    """Drop every rollup row of a product the ledger already reports."""
    return [e for e in events if not (isinstance(e, DailyRollupSale) and e.product_id in seen)]


class SalesAggregator:
    def __init__(
        self,
        db: SalesDb,
        resolver: IdentityResolver,
        tz_name: str = FORECAST_TIMEZONE,
        page_size: Optional[int] = None,
    ):
        self.db = db
        self.resolver = resolver
        self.tz: tzinfo = ZoneInfo(tz_name)
        self.page_size = page_size or db.page_cap
        self.failed_sources: List[str] = []

    def fetch_events(self, source: EventSource, since: str) -> List[SaleEvent]:
        def _page(start: int, end: int):
            return with_store_retry(
                lambda: self.db.fetch_range(source.sql, (since,), start, end),
                label=f"read {source.name}",
            )

        rows = fetch_all(_page, page_size=self.page_size, label=source.name, raise_errors=True)
        return parse_rows(rows, source.parser, self.tz)

    def _load(self, name: str, since: str) -> List[SaleEvent]:
        source = EVENT_SOURCES[name]
        try:
            events = self.fetch_events(source, since)
        except Exception as exc:
            logger.error("[Aggregate] Source %s failed, counting it as zero: %s", name, exc)
            self.failed_sources.append(name)
            return []
        logger.debug("[Aggregate] Source %s: %d event(s)", name, len(events))
        return events

    def product_for(self, event: SaleEvent) -> Optional[str]:
        if isinstance(event, (LedgerSale, DailyRollupSale, WarehouseScanOut)):
            return event.product_id
        if isinstance(event, SellerOrderItem):
            return self.resolver.resolve(event.external_item_id, event.external_sku)
        if isinstance(event, RevenueItem):
            return self.resolver.resolve(event.external_item_id)
        raise TypeError(f"Unknown sale event type: {type(event).__name__}")

    def aggregate(self, now: datetime, horizon_days: int = FORECAST_HORIZON_DAYS) -> Dict[str, ProductSales]:
        self.failed_sources = []
        if now.tzinfo is None:
            now = now.replace(tzinfo=self.tz)
        # one day of slack; exact cut happens on days_ago below
        since = (now - timedelta(days=horizon_days + 1)).date().isoformat()

        ledger = self._load("ledger", since)
        seen = ledger_product_ids(ledger)
        rollup = filter_rollup(self._load("rollup", since), seen)

        events: List[SaleEvent] = [*ledger, *rollup]
        for name in ("scan_out", "seller_orders", "revenue"):
            events.extend(self._load(name, since))

        result: Dict[str, ProductSales] = {}
        for event in events:
            age = days_ago(now, event.timestamp)
            if age > horizon_days:
                continue
            product_id = self.product_for(event)
            if product_id is None:
                continue
            result.setdefault(product_id, ProductSales()).add(event.channel, age, event.quantity)

        self.resolver.log_summary()
        logger.info(
            "[Aggregate] %d event(s) -> %d product(s); failed sources: %s",
            len(events),
            len(result),
            self.failed_sources or "none",
        )
        return result
