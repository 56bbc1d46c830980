import logging
from datetime import date
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlencode

import requests

from auth.coupang_auth import CoupangAuth
from config import COUPANG_API_URL, COUPANG_REQUEST_TIMEOUT, PROXY_URL, MarketplaceAccount
from services.rate_limit import ThrottledError

logger = logging.getLogger("coupang_api")

ORDER_SHEET_STATUSES = ("ACCEPT", "INSTRUCT", "DEPARTURE", "DELIVERING", "FINAL_DELIVERY")
DEFAULT_MAX_PER_PAGE = 50

_THROTTLE_MARKERS = ("Too many", "TOO_MANY", "429", "RATE_LIMIT", "QuotaExceeded")


class CoupangApiError(RuntimeError):
    """Non-throttling failure talking to the Coupang Open API."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class CoupangThrottledError(CoupangApiError, ThrottledError):
    """Raised when the API answers 429 / 'Too many requests'."""


def is_throttle_signal(status_code: Optional[int], text: str = "") -> bool:
    if status_code == 429:
        return True
    return any(marker in (text or "") for marker in _THROTTLE_MARKERS)


def _fmt_dash(value: date) -> str:
    return value.isoformat()


def _fmt_compact(value: date) -> str:
    return value.strftime("%Y%m%d")


class CoupangClient:
    """
    Thin signed-request wrapper for one vendor account.

    Every call is one HTTP request; retry/backoff and pacing are layered on
    top by the ingestion pipeline.
    """

    def __init__(
        self,
        account: MarketplaceAccount,
        base_url: str = COUPANG_API_URL,
        proxy_url: Optional[str] = PROXY_URL,
        timeout: float = COUPANG_REQUEST_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.account = account
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._auth = CoupangAuth(account.access_key, account.secret_key)
        self._session = session or requests.Session()
        self._proxies = {"http": proxy_url, "https": proxy_url} if proxy_url else None

    @property
    def vendor_id(self) -> str:
        return self.account.vendor_id

    def request(
        self,
        method: str,
        path: str,
        params: Sequence[Tuple[str, Any]] = (),
        body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        method = method.upper()
        query = urlencode([(k, "" if v is None else str(v)) for k, v in params])
        url = f"{self.base_url}{path}" + (f"?{query}" if query else "")
        headers = self._auth.signed_headers(method, path, query)
        try:
            resp = self._session.request(
                method,
                url,
                headers=headers,
                json=body,
                proxies=self._proxies,
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as exc:
            raise CoupangApiError(f"Coupang API timeout: {method} {path} after {self.timeout}s") from exc
        except requests.exceptions.RequestException as exc:
            raise CoupangApiError(f"Coupang API request failed: {method} {path}: {exc}") from exc

        if resp.status_code >= 300:
            text = resp.text or ""
            if is_throttle_signal(resp.status_code, text):
                logger.warning("[CoupangApi] %s %s throttled (%s)", method, path, resp.status_code)
                raise CoupangThrottledError(f"Coupang API {resp.status_code}: {text[:200]}", resp.status_code)
            logger.error("[CoupangApi] %s %s failed %s: %s", method, path, resp.status_code, text[:500])
            raise CoupangApiError(f"Coupang API {resp.status_code}: {text[:200]}", resp.status_code)

        try:
            payload = resp.json()
        except ValueError as exc:
            raise CoupangApiError(f"Coupang API returned non-JSON body for {path}", resp.status_code) from exc
        if not isinstance(payload, dict):
            raise CoupangApiError(f"Unexpected Coupang API payload type {type(payload).__name__} for {path}")
        return payload

    # ------------------------------------------------------------------
    # Seller-fulfilled order sheets
    # ------------------------------------------------------------------
    def get_order_sheets(
        self,
        created_from: date,
        created_to: date,
        status: str,
        next_token: Optional[str] = None,
        max_per_page: int = DEFAULT_MAX_PER_PAGE,
    ) -> Dict[str, Any]:
        path = f"/v2/providers/openapi/apis/api/v4/vendors/{self.vendor_id}/ordersheets"
        params: List[Tuple[str, Any]] = [
            ("createdAtFrom", _fmt_dash(created_from)),
            ("createdAtTo", _fmt_dash(created_to)),
            ("status", status),
            ("maxPerPage", max_per_page),
        ]
        if next_token:
            params.append(("nextToken", next_token))
        return self.request("GET", path, params)

    # ------------------------------------------------------------------
    # Rocket Growth (fulfillment-center) orders
    # ------------------------------------------------------------------
    def get_rocket_growth_orders(
        self,
        paid_from: date,
        paid_to: date,
        next_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        path = f"/v2/providers/rg_open_api/apis/api/v1/vendors/{self.vendor_id}/rg/orders"
        params: List[Tuple[str, Any]] = [
            ("paidDateFrom", _fmt_compact(paid_from)),
            ("paidDateTo", _fmt_compact(paid_to)),
        ]
        if next_token:
            params.append(("nextToken", next_token))
        return self.request("GET", path, params)

    # ------------------------------------------------------------------
    # Revenue history (per order, items[])
    # ------------------------------------------------------------------
    def get_revenue_history(
        self,
        recognition_from: date,
        recognition_to: date,
        token: Optional[str] = None,
        max_per_page: int = DEFAULT_MAX_PER_PAGE,
    ) -> Dict[str, Any]:
        path = "/v2/providers/openapi/apis/api/v1/revenue-history"
        params: List[Tuple[str, Any]] = [
            ("vendorId", self.vendor_id),
            ("recognitionDateFrom", _fmt_dash(recognition_from)),
            ("recognitionDateTo", _fmt_dash(recognition_to)),
            ("maxPerPage", max_per_page),
            ("token", token or ""),
        ]
        return self.request("GET", path, params)
