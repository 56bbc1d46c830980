import argparse
import json
import logging
import sys
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import List, Optional
from zoneinfo import ZoneInfo

# Ensure repo root is on sys.path so "services.*" imports work when running scripts directly.
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from config import FORECAST_TIMEZONE, SALES_DB_PATH, ConfigurationError, require_marketplace_accounts  # noqa: E402
from services.db import SalesDb  # noqa: E402
from services.ingestion import SOURCES, SyncPipeline  # noqa: E402

LOGGER = logging.getLogger("backfill")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Backfill marketplace orders and revenue into the sales store.")
    parser.add_argument(
        "--source",
        default="all",
        choices=["all", *SOURCES],
        help="Which feed to sync (default: all)",
    )
    parser.add_argument("--from", dest="date_from", type=date.fromisoformat, help="First day, YYYY-MM-DD")
    parser.add_argument("--to", dest="date_to", type=date.fromisoformat, help="Last day, YYYY-MM-DD (default: today)")
    parser.add_argument("--days", type=int, help="Sync the last N days instead of --from")
    parser.add_argument("--db", type=str, default=str(SALES_DB_PATH), help="Path to the sales store")
    parser.add_argument("--workers", type=int, default=1, help="Accounts synced in parallel")
    args = parser.parse_args(argv)
    if args.date_from is None and args.days is None:
        parser.error("one of --from or --days is required")
    if args.days is not None and args.days < 1:
        parser.error("--days must be >= 1")
    return args


def resolve_range(args: argparse.Namespace, today: Optional[date] = None) -> tuple:
    today = today or datetime.now(ZoneInfo(FORECAST_TIMEZONE)).date()
    end = args.date_to or today
    start = args.date_from if args.date_from else end - timedelta(days=args.days - 1)
    return start, end


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )

    start, end = resolve_range(args)
    if start > end:
        LOGGER.error("--from %s is after --to %s", start, end)
        return 2

    try:
        accounts = require_marketplace_accounts()
    except ConfigurationError as exc:
        LOGGER.error("Configuration error: %s", exc)
        return 2

    db = SalesDb(Path(args.db).resolve())
    db.ensure_schema()
    pipeline = SyncPipeline(db, max_workers=args.workers)

    names = list(SOURCES) if args.source == "all" else [args.source]
    exit_code = 0
    for name in names:
        result = pipeline.sync(SOURCES[name], accounts, start, end)
        print(json.dumps(result.as_dict(), ensure_ascii=False))
        if result.status == "failed":
            exit_code = 1
    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
