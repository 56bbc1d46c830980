import logging
import sqlite3
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query

from routes.deps import get_sales_db
from services.db import SalesDb, StoreError
from services.forecast import ForecastReport, generate_forecast

router = APIRouter(prefix="/api/forecast", tags=["forecast"])
logger = logging.getLogger("forecast_api")


@router.get("", response_model=ForecastReport)
def get_forecast(
    category: Optional[str] = Query(None),
    only_risk: bool = Query(False),
    db: SalesDb = Depends(get_sales_db),
):
    """
    Per-product stock forecast: trailing sales windows, needed inventory and
    stockout risk. READ-ONLY; a failing sales source only zeroes its own share.
    """
    try:
        return generate_forecast(db, category=category, only_risk=only_risk)
    except (StoreError, sqlite3.DatabaseError) as exc:
        logger.error("[Forecast] Store unavailable: %s", exc)
        raise HTTPException(status_code=503, detail=str(exc))


def register_forecast_routes(app: FastAPI) -> None:
    app.include_router(router)
