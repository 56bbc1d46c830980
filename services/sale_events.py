"""
Typed sale events, one variant per source table.

Each variant carries only what its table provides. Variants that already hold
an internal product id skip identity resolution in the aggregator; the
marketplace variants carry the external identifiers instead.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, tzinfo
from typing import Any, Dict, Iterator, List, Optional, Union

logger = logging.getLogger(__name__)

CHANNEL_GENERAL = "general"
CHANNEL_NAVER = "naver"
CHANNEL_COUPANG_SELLER = "coupang_seller"
CHANNEL_COUPANG_ROCKET = "coupang_rocket"

CHANNELS = (CHANNEL_GENERAL, CHANNEL_NAVER, CHANNEL_COUPANG_SELLER, CHANNEL_COUPANG_ROCKET)


@dataclass(frozen=True)
class LedgerSale:
    """Row of the consolidated sales ledger (no channel attribution)."""

    product_id: str
    quantity: int
    timestamp: datetime
    channel = CHANNEL_GENERAL


@dataclass(frozen=True)
class DailyRollupSale:
    """Row of the coarser daily rollup; only used for products absent from the ledger."""

    product_id: str
    quantity: int
    timestamp: datetime
    channel = CHANNEL_GENERAL


@dataclass(frozen=True)
class WarehouseScanOut:
    product_id: str
    quantity: int
    timestamp: datetime
    channel = CHANNEL_NAVER


@dataclass(frozen=True)
class SellerOrderItem:
    external_item_id: Optional[str]
    external_sku: Optional[str]
    quantity: int
    timestamp: datetime
    channel = CHANNEL_COUPANG_SELLER


@dataclass(frozen=True)
class RevenueItem:
    external_item_id: Optional[str]
    quantity: int
    timestamp: datetime
    channel = CHANNEL_COUPANG_ROCKET


SaleEvent = Union[LedgerSale, DailyRollupSale, WarehouseScanOut, SellerOrderItem, RevenueItem]


# ---------------------------------------------------------------------------
# Field coercion
# ---------------------------------------------------------------------------

def parse_timestamp(value: Any, tz: tzinfo) -> Optional[datetime]:
    """
    Parse a stored timestamp into an aware datetime.

    Date-only values mean the start of that day in `tz`; naive datetimes are
    read as local to `tz`; epoch numbers are milliseconds.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime.combine(value, time.min)
    elif isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000.0, tz)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            logger.debug("[Events] Unparseable timestamp %r", value)
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=tz)
    return dt


def coerce_quantity(*candidates: Any) -> int:
    """First non-null candidate as int; 1 when every candidate is absent."""
    for value in candidates:
        if value is None or value == "":
            continue
        try:
            return int(float(value))
        except (TypeError, ValueError):
            continue
    return 1


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


# ---------------------------------------------------------------------------
# Row -> event parsers (rows as returned by SalesDb queries)
# ---------------------------------------------------------------------------

def ledger_sale_from_row(row: Dict[str, Any], tz: tzinfo) -> Optional[LedgerSale]:
    ts = parse_timestamp(row.get("sold_at"), tz)
    if not row.get("product_id") or ts is None:
        return None
    return LedgerSale(str(row["product_id"]), coerce_quantity(row.get("quantity")), ts)


def rollup_sale_from_row(row: Dict[str, Any], tz: tzinfo) -> Optional[DailyRollupSale]:
    ts = parse_timestamp(row.get("sale_date"), tz)
    if not row.get("product_id") or ts is None:
        return None
    return DailyRollupSale(str(row["product_id"]), coerce_quantity(row.get("total_qty")), ts)


def scan_out_from_row(row: Dict[str, Any], tz: tzinfo) -> Optional[WarehouseScanOut]:
    ts = parse_timestamp(row.get("created_at"), tz)
    if not row.get("product_id") or ts is None:
        return None
    return WarehouseScanOut(str(row["product_id"]), abs(coerce_quantity(row.get("change_qty"))), ts)


def seller_item_from_row(row: Dict[str, Any], tz: tzinfo) -> Optional[SellerOrderItem]:
    ts = parse_timestamp(row.get("ordered_at") or row.get("created_at"), tz)
    if ts is None:
        return None
    return SellerOrderItem(
        external_item_id=_text(row.get("vendor_item_id")),
        external_sku=_text(row.get("external_vendor_sku_code")),
        quantity=coerce_quantity(row.get("shipping_count")),
        timestamp=ts,
    )


def revenue_items_from_row(row: Dict[str, Any], tz: tzinfo) -> Iterator[RevenueItem]:
    ts = parse_timestamp(row.get("sale_date"), tz)
    if ts is None:
        return
    items = row.get("items")
    if isinstance(items, str):
        try:
            items = json.loads(items)
        except ValueError:
            logger.warning("[Events] Revenue %s has unreadable items payload", row.get("order_id"))
            return
    if not isinstance(items, list):
        return
    for item in items:
        if not isinstance(item, dict):
            continue
        yield RevenueItem(
            external_item_id=_text(item.get("vendorItemId") or item.get("vendor_item_id")),
            quantity=coerce_quantity(item.get("quantity"), item.get("salesQuantity")),
            timestamp=ts,
        )


def parse_rows(rows: List[Dict[str, Any]], parser, tz: tzinfo) -> List[SaleEvent]:
    events: List[SaleEvent] = []
    for row in rows:
        parsed = parser(row, tz)
        if parsed is None:
            continue
        if isinstance(parsed, (LedgerSale, DailyRollupSale, WarehouseScanOut, SellerOrderItem, RevenueItem)):
            events.append(parsed)
        else:
            events.extend(parsed)
    return events
