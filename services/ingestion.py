"""
Marketplace ingestion: chunk -> page -> dedup -> batched upsert.

A unit is one (account, status, date chunk). Its pages are accumulated in
memory and only persisted once the whole unit has been fetched, so a unit that
fails or hits its deadline leaves nothing behind. Persisting a unit is
serialized per table, and writes are keyed on the natural key, so re-running
the same range stores nothing new.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

from config import (
    FORECAST_TIMEZONE,
    SYNC_BATCH_SIZE,
    SYNC_CHUNK_DELAY_SECONDS,
    SYNC_MAX_CHUNK_DAYS,
    SYNC_PAGE_DELAY_SECONDS,
    SYNC_UNIT_DEADLINE_SECONDS,
    ConfigurationError,
    MarketplaceAccount,
)
from services.coupang_api import ORDER_SHEET_STATUSES, CoupangApiError, CoupangClient
from services.date_chunks import DateRange, DateLike, chunk_date_range, coerce_date
from services.db import ChildWrite, SalesDb, StoreError, with_store_retry
from services.rate_limit import PacerRegistry, RetryExhaustedError, call_with_backoff

logger = logging.getLogger("ingestion")

SYNC_CHANNEL = "coupang"
MAX_LOGGED_ERRORS = 5


class UnitCancelledError(RuntimeError):
    """A unit ran past its hard deadline; whatever it fetched is discarded."""


@dataclass
class SyncResult:
    source: str
    synced: int = 0
    skipped: int = 0
    failed: int = 0
    updated: int = 0
    failed_units: int = 0
    errors: List[str] = field(default_factory=list)

    def merge(self, other: "SyncResult") -> None:
        self.synced += other.synced
        self.skipped += other.skipped
        self.failed += other.failed
        self.updated += other.updated
        self.failed_units += other.failed_units
        self.errors.extend(other.errors)

    @property
    def status(self) -> str:
        if not self.errors and not self.failed and not self.failed_units:
            return "success"
        if self.synced or self.updated or self.skipped:
            return "partial"
        return "failed"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "status": self.status,
            "synced": self.synced,
            "skipped": self.skipped,
            "failed": self.failed,
            "updated": self.updated,
            "failed_units": self.failed_units,
            "errors": self.errors[:MAX_LOGGED_ERRORS],
        }


class Deadline:
    def __init__(self, seconds: Optional[float], clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._expires = clock() + seconds if seconds else None

    def check(self, label: str) -> None:
        if self._expires is not None and self._clock() >= self._expires:
            raise UnitCancelledError(f"{label}: deadline exceeded")

    def guard_sleep(self, sleep: Callable[[float], None], label: str) -> Callable[[float], None]:
        """Wrap `sleep` so a wait that would end past the deadline cancels instead."""

        def _sleep(seconds: float) -> None:
            self.check(label)
            if self._expires is not None and self._clock() + seconds > self._expires:
                raise UnitCancelledError(f"{label}: deadline exceeded before {seconds:.0f}s backoff")
            sleep(seconds)

        return _sleep


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _str_or_none(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _epoch_ms_to_iso(value: Any) -> Optional[str]:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value) / 1000.0, timezone.utc).isoformat(timespec="seconds")
    except (TypeError, ValueError, OverflowError):
        return _str_or_none(value)


# ---------------------------------------------------------------------------
# Source definitions
# ---------------------------------------------------------------------------

class IngestionSource:
    """How one marketplace feed maps onto its store table."""

    name = ""
    sync_type = ""
    endpoint = ""
    table = ""
    key_columns: Tuple[str, ...] = ()
    compare_columns: Tuple[str, ...] = ()
    child_table: Optional[str] = None
    child_parent_column: Optional[str] = None

    def unit_params(self) -> Sequence[Optional[str]]:
        return (None,)

    def clamp_range(self, start: date, end: date, today: date) -> Tuple[date, date]:
        return start, end

    def fetch_page(self, client: CoupangClient, chunk: DateRange, param: Optional[str], token: Optional[str]) -> dict:
        raise NotImplementedError

    def records(self, payload: dict) -> List[dict]:
        data = payload.get("data")
        return [r for r in data if isinstance(r, dict)] if isinstance(data, list) else []

    def next_token(self, payload: dict) -> Optional[str]:
        return _str_or_none(payload.get("nextToken"))

    def natural_key(self, record: dict, account: MarketplaceAccount) -> Optional[Tuple[str, ...]]:
        raise NotImplementedError

    def to_row(self, record: dict, account: MarketplaceAccount, now_iso: str) -> Dict[str, Any]:
        raise NotImplementedError

    def child_rows(self, record: dict, parent_id: Any, now_iso: str) -> List[Dict[str, Any]]:
        return []

    def needs_update(self, stored: Dict[str, Any], row: Dict[str, Any]) -> bool:
        return any(_str_or_none(stored.get(c)) != _str_or_none(row.get(c)) for c in self.compare_columns)


class SellerOrderSource(IngestionSource):
    name = "seller-orders"
    sync_type = "orders"
    endpoint = "ordersheets"
    table = "coupang_orders"
    key_columns = ("shipment_box_id",)
    compare_columns = ("status",)
    child_table = "coupang_order_items"
    child_parent_column = "coupang_order_id"

    def unit_params(self):
        return ORDER_SHEET_STATUSES

    def fetch_page(self, client, chunk, param, token):
        return client.get_order_sheets(chunk.start, chunk.end, param, next_token=token)

    def natural_key(self, record, account):
        box = _str_or_none(record.get("shipmentBoxId"))
        return (box,) if box else None

    def to_row(self, record, account, now_iso):
        return {
            "shipment_box_id": str(record["shipmentBoxId"]),
            "order_id": str(record.get("orderId") or ""),
            "vendor_id": account.vendor_id,
            "ordered_at": _str_or_none(record.get("orderedAt")),
            "status": _str_or_none(record.get("status")),
            "synced_at": now_iso,
            "updated_at": now_iso,
        }

    def child_rows(self, record, parent_id, now_iso):
        rows = []
        for item in record.get("orderItems") or []:
            rows.append(
                {
                    "coupang_order_id": parent_id,
                    "vendor_item_id": _str_or_none(item.get("vendorItemId")),
                    "vendor_item_name": item.get("vendorItemName"),
                    "shipping_count": item.get("shippingCount"),
                    "sales_price": item.get("salesPrice"),
                    "order_price": item.get("orderPrice"),
                    "external_vendor_sku_code": _str_or_none(item.get("externalVendorSkuCode")),
                    "seller_product_id": _str_or_none(item.get("sellerProductId")),
                    "seller_product_name": item.get("sellerProductName"),
                    "created_at": now_iso,
                }
            )
        return rows


class RocketOrderSource(IngestionSource):
    name = "rocket-orders"
    sync_type = "rocket_growth_orders"
    endpoint = "rg_orders"
    table = "rocket_growth_orders"
    key_columns = ("order_id",)
    child_table = "rocket_growth_order_items"
    child_parent_column = "rocket_growth_order_id"

    def fetch_page(self, client, chunk, param, token):
        return client.get_rocket_growth_orders(chunk.start, chunk.end, next_token=token)

    def natural_key(self, record, account):
        order_id = _str_or_none(record.get("orderId"))
        return (order_id,) if order_id else None

    def to_row(self, record, account, now_iso):
        return {
            "order_id": str(record["orderId"]),
            "vendor_id": account.vendor_id,
            "paid_at": _epoch_ms_to_iso(record.get("paidAt")),
            "raw_data": record,
            "synced_at": now_iso,
        }

    def child_rows(self, record, parent_id, now_iso):
        return [
            {
                "rocket_growth_order_id": parent_id,
                "vendor_item_id": _str_or_none(item.get("vendorItemId")),
                "product_name": item.get("productName"),
                "sales_quantity": item.get("salesQuantity"),
                "sales_price": item.get("salesPrice"),
                "currency": item.get("currency"),
            }
            for item in record.get("orderItems") or []
        ]


class RevenueSource(IngestionSource):
    name = "revenue"
    sync_type = "revenue"
    endpoint = "revenue_history"
    table = "coupang_revenues"
    key_columns = ("order_id", "vendor_id")

    def clamp_range(self, start, end, today):
        # the provider rejects the current day
        return start, min(end, today - timedelta(days=1))

    def fetch_page(self, client, chunk, param, token):
        return client.get_revenue_history(chunk.start, chunk.end, token=token)

    def next_token(self, payload):
        if payload.get("hasNext") is False:
            return None
        return _str_or_none(payload.get("nextToken"))

    def natural_key(self, record, account):
        order_id = _str_or_none(record.get("orderId"))
        return (order_id, account.vendor_id) if order_id else None

    def to_row(self, record, account, now_iso):
        return {
            "order_id": str(record["orderId"]),
            "vendor_id": account.vendor_id,
            "sale_type": record.get("saleType"),
            "sale_date": _str_or_none(record.get("saleDate")),
            "recognition_date": _str_or_none(record.get("recognitionDate")),
            "settlement_date": _str_or_none(record.get("settlementDate")),
            "items": record.get("items") or [],
            "raw_data": record,
            "updated_at": now_iso,
        }


SOURCES: Dict[str, IngestionSource] = {
    s.name: s for s in (SellerOrderSource(), RocketOrderSource(), RevenueSource())
}


def get_source(name: str) -> IngestionSource:
    try:
        return SOURCES[name]
    except KeyError:
        raise ValueError(f"Unknown sync source {name!r}; expected one of {sorted(SOURCES)}") from None


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class SyncPipeline:
    def __init__(
        self,
        db: SalesDb,
        client_factory: Callable[[MarketplaceAccount], CoupangClient] = CoupangClient,
        pacers: Optional[PacerRegistry] = None,
        page_delay: float = SYNC_PAGE_DELAY_SECONDS,
        chunk_delay: float = SYNC_CHUNK_DELAY_SECONDS,
        max_chunk_days: int = SYNC_MAX_CHUNK_DAYS,
        batch_size: int = SYNC_BATCH_SIZE,
        unit_deadline: Optional[float] = SYNC_UNIT_DEADLINE_SECONDS,
        max_workers: int = 1,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        tz_name: str = FORECAST_TIMEZONE,
    ):
        self.db = db
        self.client_factory = client_factory
        self.pacers = pacers or PacerRegistry(page_delay, clock=clock, sleep=sleep)
        self.page_delay = page_delay
        self.chunk_delay = chunk_delay
        self.max_chunk_days = max_chunk_days
        self.batch_size = max(int(batch_size), 1)
        self.unit_deadline = unit_deadline
        self.max_workers = max(int(max_workers), 1)
        self.sleep = sleep
        self.clock = clock
        self.tz = ZoneInfo(tz_name)

    def sync(
        self,
        source: IngestionSource,
        accounts: Sequence[MarketplaceAccount],
        start: DateLike,
        end: DateLike,
        today: Optional[date] = None,
    ) -> SyncResult:
        if not accounts:
            raise ConfigurationError("No marketplace accounts configured")
        today = today or datetime.now(self.tz).date()
        start, end = source.clamp_range(coerce_date(start), coerce_date(end), today)
        result = SyncResult(source=source.name)
        chunks = chunk_date_range(start, end, self.max_chunk_days) if start <= end else []
        logger.info(
            "[Ingest] %s: %s..%s, %d chunk(s), %d account(s)",
            source.name,
            start,
            end,
            len(chunks),
            len(accounts),
        )

        if chunks:
            if self.max_workers > 1 and len(accounts) > 1:
                with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                    for partial in pool.map(lambda a: self._sync_account(source, a, chunks), accounts):
                        result.merge(partial)
            else:
                for account in accounts:
                    result.merge(self._sync_account(source, account, chunks))

        self._write_log(source, result)
        logger.info("[Ingest] %s done: %s", source.name, result.as_dict())
        return result

    def sync_all(
        self,
        accounts: Sequence[MarketplaceAccount],
        start: DateLike,
        end: DateLike,
        today: Optional[date] = None,
    ) -> Dict[str, SyncResult]:
        return {name: self.sync(src, accounts, start, end, today=today) for name, src in SOURCES.items()}

    # ------------------------------------------------------------------
    def _sync_account(self, source: IngestionSource, account: MarketplaceAccount, chunks: List[DateRange]) -> SyncResult:
        result = SyncResult(source=source.name)
        client = self.client_factory(account)
        units = [(param, chunk) for param in source.unit_params() for chunk in chunks]
        for i, (param, chunk) in enumerate(units):
            label = f"{source.name}[{account.name}{'/' + param if param else ''} {chunk.start}..{chunk.end}]"
            try:
                records = self._fetch_unit(source, client, account, chunk, param, label)
            except (RetryExhaustedError, CoupangApiError, UnitCancelledError) as exc:
                logger.error("[Ingest] %s fetch failed: %s", label, exc)
                result.failed_units += 1
                result.errors.append(f"{label}: {exc}")
            else:
                result.merge(self._persist_unit(source, account, records, label))
            if i < len(units) - 1 and self.chunk_delay:
                self.sleep(self.chunk_delay)
        return result

    def _fetch_unit(
        self,
        source: IngestionSource,
        client: CoupangClient,
        account: MarketplaceAccount,
        chunk: DateRange,
        param: Optional[str],
        label: str,
    ) -> List[dict]:
        deadline = Deadline(self.unit_deadline, self.clock)
        backoff_sleep = deadline.guard_sleep(self.sleep, label)
        pacer = self.pacers.get((account.vendor_id, source.endpoint))
        records: List[dict] = []
        token: Optional[str] = None
        seen_tokens = set()
        page = 0
        while True:
            deadline.check(label)

            def _call(tok=token):
                with pacer.slot():
                    return source.fetch_page(client, chunk, param, tok)

            payload = call_with_backoff(_call, sleep=backoff_sleep, label=f"{label} page {page}")
            records.extend(source.records(payload))
            page += 1
            token = source.next_token(payload)
            if not token:
                break
            if token in seen_tokens:
                logger.warning("[Ingest] %s repeated nextToken %s, stopping", label, token)
                break
            seen_tokens.add(token)
            if self.page_delay:
                self.sleep(self.page_delay)
        logger.debug("[Ingest] %s fetched %d record(s) over %d page(s)", label, len(records), page)
        return records

    def _persist_unit(
        self,
        source: IngestionSource,
        account: MarketplaceAccount,
        records: List[dict],
        label: str,
    ) -> SyncResult:
        result = SyncResult(source=source.name)
        if not records:
            return result
        now_iso = _iso_now()

        by_key: Dict[Tuple[str, ...], dict] = {}
        for record in records:
            key = source.natural_key(record, account)
            if key is None:
                result.failed += 1
                result.errors.append(f"{label}: record without natural key")
                continue
            by_key[key] = record

        with self.db.unit_lock(source.table):
            try:
                stored = with_store_retry(
                    lambda: self.db.select_where_in(
                        source.table,
                        source.key_columns,
                        list(by_key),
                        columns=("id", *source.compare_columns),
                    ),
                    label=f"{label} existence check",
                    sleep=self.sleep,
                )
            except StoreError as exc:
                logger.error("[Ingest] %s existence check failed: %s", label, exc)
                result.failed += len(by_key)
                result.errors.append(f"{label}: {exc}")
                return result

            existing = {tuple(str(row[c]) for c in source.key_columns): row for row in stored}
            fresh: List[Tuple[dict, Dict[str, Any]]] = []
            changed: List[Tuple[dict, Dict[str, Any]]] = []
            for key, record in by_key.items():
                row = source.to_row(record, account, now_iso)
                if key not in existing:
                    fresh.append((record, row))
                elif source.needs_update(existing[key], row):
                    changed.append((record, row))
                else:
                    result.skipped += 1

            ok, _ = self._write_batches(source, fresh, now_iso, label, result)
            result.synced += ok
            ok, _ = self._write_batches(source, changed, now_iso, label, result)
            result.updated += ok
        return result

    def _write_batches(
        self,
        source: IngestionSource,
        pairs: List[Tuple[dict, Dict[str, Any]]],
        now_iso: str,
        label: str,
        result: SyncResult,
    ) -> Tuple[int, int]:
        written = failed = 0
        for i in range(0, len(pairs), self.batch_size):
            batch = pairs[i:i + self.batch_size]
            rows = [row for _, row in batch]
            batch_label = f"{label} batch {i // self.batch_size + 1}"
            children = self._child_writer(source, batch, now_iso) if source.child_table else None
            try:
                outcome = with_store_retry(
                    lambda: self.db.upsert(source.table, rows, source.key_columns, children=children),
                    label=batch_label,
                    sleep=self.sleep,
                )
            except StoreError as exc:
                outcome = {"rows": [], "errors": [str(exc)]}
            if outcome["errors"]:
                logger.error("[Ingest] %s failed: %s", batch_label, outcome["errors"][0])
                failed += len(batch)
                result.failed += len(batch)
                result.errors.append(f"{batch_label}: {outcome['errors'][0]}")
                continue
            written += len(batch)
        return written, failed

    def _child_writer(
        self,
        source: IngestionSource,
        batch: List[Tuple[dict, Dict[str, Any]]],
        now_iso: str,
    ) -> Callable[[List[Dict[str, Any]]], ChildWrite]:
        def build(stored_rows: List[Dict[str, Any]]) -> ChildWrite:
            ids = {tuple(str(r[c]) for c in source.key_columns): r["id"] for r in stored_rows}
            parent_ids: List[Any] = []
            children: List[Dict[str, Any]] = []
            for record, row in batch:
                parent_id = ids.get(tuple(str(row[c]) for c in source.key_columns))
                if parent_id is None:
                    continue
                parent_ids.append(parent_id)
                children.extend(source.child_rows(record, parent_id, now_iso))
            return ChildWrite(source.child_table, source.child_parent_column, parent_ids, children)

        return build

    def _write_log(self, source: IngestionSource, result: SyncResult) -> None:
        message = "; ".join(result.errors[:MAX_LOGGED_ERRORS]) or None
        try:
            with_store_retry(
                lambda: self.db.insert_sync_log(
                    channel=SYNC_CHANNEL,
                    sync_type=source.sync_type,
                    status=result.status,
                    records_count=result.synced + result.updated,
                    error_message=message,
                    completed_at=_iso_now(),
                ),
                label="sync log",
                sleep=self.sleep,
            )
        except StoreError as exc:
            logger.error("[Ingest] Could not write sync log for %s: %s", source.name, exc)
