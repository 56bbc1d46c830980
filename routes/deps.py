from fastapi import HTTPException, Request

from services.db import SalesDb
from services.ingestion import SyncPipeline


def get_sales_db(request: Request) -> SalesDb:
    db = getattr(request.app.state, "sales_db", None)
    if db is None:
        raise HTTPException(status_code=503, detail="Sales store is not initialised")
    return db


def get_sync_pipeline(request: Request) -> SyncPipeline:
    pipeline = getattr(request.app.state, "sync_pipeline", None)
    if pipeline is None:
        pipeline = SyncPipeline(get_sales_db(request))
        request.app.state.sync_pipeline = pipeline
    return pipeline
