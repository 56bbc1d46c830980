import logging
import os
from dataclasses import dataclass
from pathlib import Path

# Load .env early so os.getenv picks up local dev secrets.
try:  # pragma: no cover - environment bootstrap
    from dotenv import load_dotenv

    _DOTENV_PATHS = [Path.cwd() / ".env", Path(__file__).resolve().parent / ".env"]
    for _env_path in _DOTENV_PATHS:
        if _env_path.exists():
            load_dotenv(dotenv_path=_env_path, override=False)
except ImportError:  # python-dotenv optional in some deployments
    logging.getLogger(__name__).debug("python-dotenv not installed; skipping .env load")
except Exception as exc:
    logging.getLogger(__name__).warning("Failed to load .env: %s", exc)

APP_NAME = "Sales Forecast Engine"
APP_VERSION = "1.0.0"

ROOT_DIR = Path(__file__).resolve().parent

MAX_ACCOUNT_SLOTS = 9


class ConfigurationError(RuntimeError):
    """Raised when accounts or credentials are missing or malformed."""


@dataclass(frozen=True)
class MarketplaceAccount:
    id: str
    name: str
    vendor_id: str
    access_key: str
    secret_key: str

    def __repr__(self) -> str:
        # keep secrets out of logs
        return f"MarketplaceAccount(id={self.id!r}, name={self.name!r}, vendor_id={self.vendor_id!r})"


# ----------------------------
# Helpers
# ----------------------------
def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"Env var {name} must be a number, got {raw!r}")


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, default))


def _slot_suffix(slot: int) -> str:
    return "" if slot == 1 else f"_{slot}"


def get_marketplace_accounts() -> list[MarketplaceAccount]:
    """
    Read every configured marketplace account from the environment.

    Account 1 uses the bare variable names (COUPANG_VENDOR_ID, ...); further
    accounts append _2, _3, ... A slot with a vendor id but missing keys is a
    malformed credential and fails the whole invocation.
    """
    accounts: list[MarketplaceAccount] = []
    for slot in range(1, MAX_ACCOUNT_SLOTS + 1):
        suffix = _slot_suffix(slot)
        vendor_id = (os.getenv(f"COUPANG_VENDOR_ID{suffix}") or "").strip()
        access_key = (os.getenv(f"COUPANG_ACCESS_KEY{suffix}") or "").strip()
        secret_key = (os.getenv(f"COUPANG_SECRET_KEY{suffix}") or "").strip()
        if not vendor_id:
            if access_key or secret_key:
                raise ConfigurationError(f"Keys configured without COUPANG_VENDOR_ID{suffix}")
            continue
        if not access_key or not secret_key:
            raise ConfigurationError(f"Account slot {slot} ({vendor_id}) is missing its access/secret key")
        name = (os.getenv(f"COUPANG_ACCOUNT_NAME{suffix}") or "").strip() or f"account-{slot}"
        accounts.append(
            MarketplaceAccount(
                id=str(slot),
                name=name,
                vendor_id=vendor_id,
                access_key=access_key,
                secret_key=secret_key,
            )
        )
    return accounts


def require_marketplace_accounts() -> list[MarketplaceAccount]:
    accounts = get_marketplace_accounts()
    if not accounts:
        raise ConfigurationError("No marketplace accounts configured (set COUPANG_VENDOR_ID/ACCESS_KEY/SECRET_KEY)")
    return accounts


# ----------------------------
# Store
# ----------------------------
SALES_DB_PATH = Path(os.getenv("SALES_DB_PATH") or (ROOT_DIR / "sales.db"))
STORE_PAGE_CAP = _env_int("STORE_PAGE_CAP", 1000)
STORE_RETRY_ATTEMPTS = _env_int("STORE_RETRY_ATTEMPTS", 3)
STORE_RETRY_DELAY_SECONDS = _env_float("STORE_RETRY_DELAY_SECONDS", 2.0)

# ----------------------------
# Marketplace API
# ----------------------------
COUPANG_API_URL = os.getenv("COUPANG_API_URL", "https://api-gateway.coupang.com")
PROXY_URL = (os.getenv("PROXY_URL") or "").strip() or None
COUPANG_REQUEST_TIMEOUT = _env_float("COUPANG_REQUEST_TIMEOUT", 10.0)

THROTTLE_MAX_ATTEMPTS = 3
THROTTLE_BASE_DELAY_SECONDS = _env_float("THROTTLE_BASE_DELAY_SECONDS", 30.0)
THROTTLE_STEP_SECONDS = _env_float("THROTTLE_STEP_SECONDS", 15.0)

# ----------------------------
# Ingestion
# ----------------------------
SYNC_PAGE_DELAY_SECONDS = _env_float("SYNC_PAGE_DELAY_SECONDS", 0.5)
SYNC_CHUNK_DELAY_SECONDS = _env_float("SYNC_CHUNK_DELAY_SECONDS", 1.0)
SYNC_MAX_CHUNK_DAYS = _env_int("SYNC_MAX_CHUNK_DAYS", 30)
SYNC_BATCH_SIZE = _env_int("SYNC_BATCH_SIZE", 50)
SYNC_UNIT_DEADLINE_SECONDS = _env_float("SYNC_UNIT_DEADLINE_SECONDS", 0.0) or None
SYNC_DEFAULT_LOOKBACK_DAYS = _env_int("SYNC_DEFAULT_LOOKBACK_DAYS", 3)

# ----------------------------
# Forecast
# ----------------------------
FORECAST_TIMEZONE = os.getenv("FORECAST_TIMEZONE", "Asia/Seoul")
FORECAST_HORIZON_DAYS = _env_int("FORECAST_HORIZON_DAYS", 120)

SALES_LOG_LEVEL = os.getenv("SALES_LOG_LEVEL", "INFO").upper()
