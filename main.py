# =============================================
#  SALES FORECAST ENGINE - ENTRYPOINT
# =============================================
#
#   GET  /api/forecast             per-product forecast (category, only_risk)
#   POST /api/sync/{source}        seller-orders | rocket-orders | revenue
#   GET  /api/sync/logs            recent api_sync_logs rows
#   GET  /api/ping
#
# The store handle is built here and handed to routes through app.state.

import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import APP_NAME, APP_VERSION, SALES_DB_PATH, SALES_LOG_LEVEL
from routes import register_forecast_routes, register_sync_routes
from services.db import SalesDb
from services.ingestion import SyncPipeline

# --- Logging configuration ---
LOG_DIR = Path(__file__).parent / "logs"
LOG_DIR.mkdir(exist_ok=True)

LOG_FILE_PATH = LOG_DIR / "sales_forecast.log"

root_logger = logging.getLogger()
logger = root_logger
if not root_logger.handlers:
    root_logger.setLevel(SALES_LOG_LEVEL)

    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    file_handler = RotatingFileHandler(
        LOG_FILE_PATH,
        maxBytes=5_000_000,  # 5 MB
        backupCount=3,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)

    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

logging.getLogger("uvicorn").propagate = True
logging.getLogger("uvicorn.error").propagate = True
logging.getLogger("uvicorn.access").propagate = True
# --- End logging configuration ---

app = FastAPI(title=APP_NAME, version=APP_VERSION)
app.state.sales_db = SalesDb(SALES_DB_PATH)
app.state.sync_pipeline = SyncPipeline(app.state.sales_db)

register_forecast_routes(app)
register_sync_routes(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def startup_event():
    """Make sure every table the engine reads or writes exists."""
    try:
        app.state.sales_db.ensure_schema()
    except Exception as exc:
        logger.error("[Startup] Failed to ensure sales schema at %s: %s", SALES_DB_PATH, exc)
        raise


@app.get("/api/ping")
def ping() -> JSONResponse:
    ts = datetime.now(timezone.utc).isoformat()
    logger.info("[PING] ping called")
    return JSONResponse({"ok": True, "ts": ts})


if __name__ == "__main__":
    uvicorn.run("main:app", host="127.0.0.1", port=8001, reload=True)
