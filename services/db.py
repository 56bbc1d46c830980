import json
import logging
import sqlite3
import time
from collections import defaultdict
from contextlib import contextmanager
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple

from config import STORE_PAGE_CAP, STORE_RETRY_ATTEMPTS, STORE_RETRY_DELAY_SECONDS

logger = logging.getLogger(__name__)

# ====================================================================
# SQLITE HARDENING: WAL MODE + TIMEOUT + WRITE LOCK
# - WAL mode allows concurrent reads while serializing writes
# - 10s timeout prevents infinite hangs on database locks
# - the per-instance write lock serializes INSERT/UPDATE/DELETE
# - one SalesDb handle is built by the entry point and passed down
# ====================================================================

_db_timeout = 10  # seconds
_IN_CHUNK = 500  # keys per IN (...) clause, stays below SQLite's variable limit


class StoreError(RuntimeError):
    """Raised when a store operation fails after its retry budget."""


class ChildWrite(NamedTuple):
    """Child rows that replace the current children of `parent_ids`."""

    table: str
    parent_column: str
    parent_ids: List[Any]
    rows: List[Dict[str, Any]]


SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS products (
        id TEXT PRIMARY KEY,
        sku TEXT NOT NULL,
        external_sku TEXT,
        name TEXT NOT NULL,
        category TEXT,
        is_active INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS product_mappings (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        product_id TEXT NOT NULL,
        marketplace TEXT NOT NULL,
        external_option_id TEXT,
        is_active INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS inventory (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        product_id TEXT NOT NULL,
        location TEXT NOT NULL,
        quantity INTEGER NOT NULL DEFAULT 0,
        UNIQUE (product_id, location)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS inventory_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        inventory_id INTEGER NOT NULL,
        change_type TEXT NOT NULL,
        change_qty INTEGER NOT NULL,
        reason TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sales (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        product_id TEXT,
        quantity INTEGER,
        sold_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sales_daily (
        product_id TEXT NOT NULL,
        sale_date TEXT NOT NULL,
        total_qty INTEGER,
        PRIMARY KEY (product_id, sale_date)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS coupang_orders (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        shipment_box_id TEXT NOT NULL UNIQUE,
        order_id TEXT NOT NULL,
        vendor_id TEXT,
        ordered_at TEXT,
        status TEXT,
        synced_at TEXT NOT NULL,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS coupang_order_items (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        coupang_order_id INTEGER NOT NULL,
        vendor_item_id TEXT,
        vendor_item_name TEXT,
        shipping_count INTEGER,
        sales_price REAL,
        order_price REAL,
        external_vendor_sku_code TEXT,
        seller_product_id TEXT,
        seller_product_name TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rocket_growth_orders (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        order_id TEXT NOT NULL UNIQUE,
        vendor_id TEXT,
        paid_at TEXT,
        raw_data TEXT,
        synced_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rocket_growth_order_items (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        rocket_growth_order_id INTEGER NOT NULL,
        vendor_item_id TEXT,
        product_name TEXT,
        sales_quantity INTEGER,
        sales_price REAL,
        currency TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS coupang_revenues (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        order_id TEXT NOT NULL,
        vendor_id TEXT NOT NULL,
        sale_type TEXT,
        sale_date TEXT,
        recognition_date TEXT,
        settlement_date TEXT,
        items TEXT,
        raw_data TEXT,
        updated_at TEXT,
        UNIQUE (order_id, vendor_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS api_sync_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        channel TEXT NOT NULL,
        sync_type TEXT NOT NULL,
        status TEXT NOT NULL,
        records_count INTEGER NOT NULL DEFAULT 0,
        error_message TEXT,
        completed_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_coupang_order_items_order ON coupang_order_items (coupang_order_id)",
    "CREATE INDEX IF NOT EXISTS idx_rocket_items_order ON rocket_growth_order_items (rocket_growth_order_id)",
    "CREATE INDEX IF NOT EXISTS idx_inventory_logs_type_created ON inventory_logs (change_type, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_sales_sold_at ON sales (sold_at)",
    "CREATE INDEX IF NOT EXISTS idx_mappings_marketplace ON product_mappings (marketplace, is_active)",
]


def _quote_ident(name: str) -> str:
    if not name.replace("_", "").isalnum():
        raise ValueError(f"Unsafe SQL identifier: {name!r}")
    return f'"{name}"'


def _encode_value(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return value


def with_store_retry(
    fn: Callable[[], Any],
    label: str,
    attempts: int = STORE_RETRY_ATTEMPTS,
    delay_seconds: float = STORE_RETRY_DELAY_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    """
    Run a store operation, retrying transient lock/busy errors with a fixed delay.
    Any other error, or exhaustion, surfaces as StoreError for this operation only.
    """
    attempts = max(int(attempts), 1)
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except sqlite3.OperationalError as exc:
            if attempt == attempts:
                raise StoreError(f"{label} failed after {attempts} attempts: {exc}") from exc
            logger.warning("[DB] %s failed (%s), retry %d/%d in %.1fs", label, exc, attempt, attempts, delay_seconds)
            sleep(delay_seconds)
        except sqlite3.DatabaseError as exc:
            raise StoreError(f"{label} failed: {exc}") from exc
    raise StoreError(f"{label} failed")


class SalesDb:
    """
    Query/write handle over the sales store.

    Reads are capped at `page_cap` rows per response, the same way the hosted
    store caps a single query; callers that need everything page through
    `fetch_range`.
    """

    def __init__(self, db_path: Path, page_cap: int = STORE_PAGE_CAP):
        self.db_path = Path(db_path)
        self.page_cap = max(int(page_cap), 1)
        self._write_lock = Lock()
        self._table_locks: Dict[str, Lock] = defaultdict(Lock)
        self._table_locks_guard = Lock()

    @contextmanager
    def connection(self):
        """
        Context manager for a safe SQLite connection.
        - Enforces timeout to prevent infinite waits
        - Enables WAL mode for better concurrency
        - Ensures cleanup even on exception
        """
        conn = None
        try:
            conn = sqlite3.connect(self.db_path, timeout=_db_timeout)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            yield conn
        except sqlite3.DatabaseError as e:
            logger.error(f"[DB] Database error: {e}", exc_info=True)
            raise
        finally:
            if conn:
                try:
                    conn.close()
                except Exception as e:
                    logger.warning(f"[DB] Error closing connection: {e}")

    @contextmanager
    def unit_lock(self, table: str):
        """Serialize dedup + persist for one table across concurrent sync units."""
        with self._table_locks_guard:
            lock = self._table_locks[table]
        with lock:
            yield

    def ensure_schema(self) -> None:
        with self._write_lock:
            with self.connection() as conn:
                for stmt in SCHEMA_STATEMENTS:
                    conn.execute(stmt)
                conn.commit()
        logger.info("[DB] Schema ensured at %s", self.db_path)

    # ------------------------------------------------------------------
    # Generic reads
    # ------------------------------------------------------------------
    def query(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        with self.connection() as conn:
            rows = conn.execute(sql, tuple(params)).fetchall()
        return [dict(r) for r in rows]

    def fetch_range(self, sql: str, params: Sequence[Any], start: int, end: int) -> List[Dict[str, Any]]:
        """
        Return rows start..end (inclusive) of `sql`, never more than `page_cap`.
        `sql` must carry a deterministic ORDER BY.
        """
        if end < start:
            return []
        limit = min(end - start + 1, self.page_cap)
        return self.query(f"{sql} LIMIT ? OFFSET ?", (*params, limit, start))

    def select_where_in(
        self,
        table: str,
        key_columns: Sequence[str],
        keys: Iterable[Tuple[Any, ...]],
        columns: Sequence[str] = (),
    ) -> List[Dict[str, Any]]:
        """
        Bulk existence lookup by natural key. Single-column keys use IN (...);
        compound keys use row-value IN (VALUES ...). Large key sets are split
        into several statements.
        """
        with self.connection() as conn:
            return self._select_where_in(conn, table, key_columns, keys, columns)

    def _select_where_in(self, conn, table, key_columns, keys, columns=()) -> List[Dict[str, Any]]:
        key_columns = list(key_columns)
        wanted = [c for c in (list(columns) or key_columns)]
        select_cols = ", ".join(_quote_ident(c) for c in dict.fromkeys(wanted + key_columns))
        key_list = [tuple(k) for k in keys]
        found: List[Dict[str, Any]] = []
        for i in range(0, len(key_list), _IN_CHUNK):
            chunk = key_list[i:i + _IN_CHUNK]
            if len(key_columns) == 1:
                marks = ",".join("?" * len(chunk))
                sql = (
                    f"SELECT {select_cols} FROM {_quote_ident(table)} "
                    f"WHERE {_quote_ident(key_columns[0])} IN ({marks})"
                )
                params: List[Any] = [k[0] for k in chunk]
            else:
                row_marks = "(" + ",".join("?" * len(key_columns)) + ")"
                cols = ", ".join(_quote_ident(c) for c in key_columns)
                sql = (
                    f"SELECT {select_cols} FROM {_quote_ident(table)} "
                    f"WHERE ({cols}) IN (VALUES {','.join([row_marks] * len(chunk))})"
                )
                params = [v for k in chunk for v in k]
            found.extend(dict(r) for r in conn.execute(sql, params).fetchall())
        return found

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def upsert(
        self,
        table: str,
        rows: Sequence[Dict[str, Any]],
        conflict_columns: Sequence[str],
        returning: Sequence[str] = ("id",),
        children: Optional[Callable[[List[Dict[str, Any]]], ChildWrite]] = None,
    ) -> Dict[str, Any]:
        """
        INSERT ... ON CONFLICT(conflict_columns) DO UPDATE for one batch, in one
        transaction. Returns {"rows": [<returning + conflict columns>], "errors": []};
        a failed batch rolls back and reports its error instead of raising.

        `children` is called with the stored parent rows before commit and
        returns the child rows to put in place of the parents' current ones.
        Parents and children commit together, or the whole batch rolls back.
        """
        if not rows:
            return {"rows": [], "errors": []}
        columns = list(rows[0].keys())
        conflict = list(conflict_columns)
        update_cols = [c for c in columns if c not in conflict]
        col_sql = ", ".join(_quote_ident(c) for c in columns)
        marks = ", ".join("?" * len(columns))
        if update_cols:
            set_sql = ", ".join(f"{_quote_ident(c)} = excluded.{_quote_ident(c)}" for c in update_cols)
            action = f"DO UPDATE SET {set_sql}"
        else:
            action = "DO NOTHING"
        sql = (
            f"INSERT INTO {_quote_ident(table)} ({col_sql}) VALUES ({marks}) "
            f"ON CONFLICT({', '.join(_quote_ident(c) for c in conflict)}) {action}"
        )
        params = [tuple(_encode_value(r.get(c)) for c in columns) for r in rows]
        keys = [tuple(r.get(c) for c in conflict) for r in rows]

        with self._write_lock:
            with self.connection() as conn:
                try:
                    conn.executemany(sql, params)
                    stored = self._select_where_in(conn, table, conflict, keys, list(returning) + conflict)
                    if children is not None:
                        self._replace_children(conn, children(stored))
                    conn.commit()
                except sqlite3.OperationalError:
                    conn.rollback()
                    raise
                except sqlite3.DatabaseError as exc:
                    conn.rollback()
                    logger.error(f"[DB] Upsert into {table} failed rows={len(rows)}: {exc}")
                    return {"rows": [], "errors": [str(exc)]}
        return {"rows": stored, "errors": []}

    def replace_children(
        self,
        table: str,
        parent_column: str,
        parent_ids: Sequence[Any],
        rows: Sequence[Dict[str, Any]],
    ) -> int:
        """Delete the children of `parent_ids` and insert `rows` in one transaction."""
        if not parent_ids:
            return 0
        with self._write_lock:
            with self.connection() as conn:
                try:
                    self._replace_children(conn, ChildWrite(table, parent_column, list(parent_ids), list(rows)))
                    conn.commit()
                except sqlite3.DatabaseError:
                    conn.rollback()
                    raise
        return len(rows)

    def _replace_children(self, conn, write: ChildWrite) -> None:
        if not write.parent_ids:
            return
        for i in range(0, len(write.parent_ids), _IN_CHUNK):
            chunk = list(write.parent_ids[i:i + _IN_CHUNK])
            conn.execute(
                f"DELETE FROM {_quote_ident(write.table)} WHERE {_quote_ident(write.parent_column)} "
                f"IN ({','.join('?' * len(chunk))})",
                chunk,
            )
        if write.rows:
            columns = list(write.rows[0].keys())
            conn.executemany(
                f"INSERT INTO {_quote_ident(write.table)} ({', '.join(_quote_ident(c) for c in columns)}) "
                f"VALUES ({', '.join('?' * len(columns))})",
                [tuple(_encode_value(r.get(c)) for c in columns) for r in write.rows],
            )

    def execute_write(self, sql: str, params: Sequence[Any] = ()) -> Optional[int]:
        with self._write_lock:
            with self.connection() as conn:
                try:
                    cur = conn.execute(sql, tuple(params))
                    conn.commit()
                    return cur.lastrowid
                except sqlite3.OperationalError as e:
                    if "database is locked" in str(e):
                        logger.error(f"[DB] Database locked after {_db_timeout}s timeout: {e}")
                    raise

    # ------------------------------------------------------------------
    # Collaborator queries used by the forecast read path
    # ------------------------------------------------------------------
    def list_active_products(self) -> List[Dict[str, Any]]:
        return self.query("SELECT id, sku, external_sku, name, category FROM products WHERE is_active = 1 ORDER BY id")

    def list_active_categories(self) -> List[str]:
        rows = self.query(
            "SELECT DISTINCT category FROM products WHERE is_active = 1 AND category IS NOT NULL AND category != ''"
        )
        return sorted(r["category"] for r in rows)

    def get_inventory(self, product_ids: Sequence[str], locations: Sequence[str]) -> List[Dict[str, Any]]:
        if not product_ids or not locations:
            return []
        results: List[Dict[str, Any]] = []
        loc_marks = ",".join("?" * len(locations))
        ids = list(product_ids)
        for i in range(0, len(ids), _IN_CHUNK):
            chunk = ids[i:i + _IN_CHUNK]
            results.extend(
                self.query(
                    f"SELECT product_id, location, quantity FROM inventory "
                    f"WHERE product_id IN ({','.join('?' * len(chunk))}) AND location IN ({loc_marks})",
                    [*chunk, *locations],
                )
            )
        return results

    def list_active_mappings(self, marketplace: str) -> List[Dict[str, Any]]:
        return self.query(
            """
            SELECT product_id, external_option_id
            FROM product_mappings
            WHERE is_active = 1 AND marketplace = ? AND external_option_id IS NOT NULL
            ORDER BY id
            """,
            (marketplace,),
        )

    def insert_sync_log(
        self,
        channel: str,
        sync_type: str,
        status: str,
        records_count: int,
        error_message: Optional[str],
        completed_at: str,
    ) -> None:
        self.execute_write(
            """
            INSERT INTO api_sync_logs (channel, sync_type, status, records_count, error_message, completed_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (channel, sync_type, status, int(records_count), error_message, completed_at),
        )

    def list_sync_logs(self, limit: int = 50) -> List[Dict[str, Any]]:
        return self.query(
            "SELECT * FROM api_sync_logs ORDER BY id DESC LIMIT ?",
            (max(int(limit), 1),),
        )
