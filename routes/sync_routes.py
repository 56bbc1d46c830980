from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field

from config import FORECAST_TIMEZONE, SYNC_DEFAULT_LOOKBACK_DAYS, ConfigurationError, require_marketplace_accounts
from routes.deps import get_sales_db, get_sync_pipeline
from services.db import SalesDb
from services.ingestion import SyncPipeline, get_source

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])


class SyncRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    date_from: Optional[date] = Field(None, alias="from")
    date_to: Optional[date] = Field(None, alias="to")


def default_range(today: Optional[date] = None) -> tuple[date, date]:
    today = today or datetime.now(ZoneInfo(FORECAST_TIMEZONE)).date()
    return today - timedelta(days=SYNC_DEFAULT_LOOKBACK_DAYS), today


@router.get("/logs")
def sync_logs(limit: int = Query(50, ge=1, le=500), db: SalesDb = Depends(get_sales_db)) -> dict:
    return {"logs": db.list_sync_logs(limit)}


@router.post("/{source}")
def run_sync(
    source: str,
    payload: SyncRequest = Body(default_factory=SyncRequest),
    pipeline: SyncPipeline = Depends(get_sync_pipeline),
) -> dict:
    try:
        ingestion_source = get_source(source)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc))

    start, end = default_range()
    start = payload.date_from or start
    end = payload.date_to or end
    if start > end:
        raise HTTPException(status_code=400, detail="'from' must not be after 'to'")

    try:
        accounts = require_marketplace_accounts()
        result = pipeline.sync(ingestion_source, accounts, start, end)
    except ConfigurationError as exc:
        logger.error("[Sync] %s aborted: %s", source, exc)
        raise HTTPException(status_code=400, detail=str(exc))
    except Exception as exc:
        logger.error("[Sync] %s failed: %s", source, exc, exc_info=True)
        raise HTTPException(status_code=500, detail=str(exc))

    return {"ok": result.status != "failed", "from": start.isoformat(), "to": end.isoformat(), **result.as_dict()}


def register_sync_routes(app: FastAPI) -> None:
    app.include_router(router)
