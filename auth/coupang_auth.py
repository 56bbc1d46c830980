# ================================================================
#  COUPANG OPEN API AUTH MODULE
#  ---------------------------------------------------------------
#  - Build the HMAC-SHA256 "CEA" Authorization header
#  - Signed message: signed-date + method + path + query
#  - No token exchange; every request is signed independently
# ================================================================

import datetime
import hashlib
import hmac
import logging

logger = logging.getLogger("coupang_auth")

SIGNED_DATE_FORMAT = "%y%m%dT%H%M%SZ"


def format_signed_date(now: datetime.datetime | None = None) -> str:
    now = now or datetime.datetime.now(datetime.timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(datetime.timezone.utc)
    return now.strftime(SIGNED_DATE_FORMAT)


def generate_signature(method: str, path: str, query: str, signed_date: str, secret_key: str) -> str:
    message = f"{signed_date}{method}{path}{query}"
    return hmac.new(secret_key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


class CoupangAuth:
    def __init__(self, access_key: str, secret_key: str):
        if not access_key or not secret_key:
            raise ValueError("access_key and secret_key are required")
        self._access_key = access_key
        self._secret_key = secret_key

    def authorization_header(
        self,
        method: str,
        path: str,
        query: str = "",
        now: datetime.datetime | None = None,
    ) -> str:
        """
        Sign one request. `path` must not include the query string; `query`
        is the raw query string without the leading '?'.
        """
        signed_date = format_signed_date(now)
        signature = generate_signature(method.upper(), path, query, signed_date, self._secret_key)
        logger.debug("[Auth] Signed %s %s at %s", method.upper(), path, signed_date)
        return (
            f"CEA algorithm=HmacSHA256, access-key={self._access_key}, "
            f"signed-date={signed_date}, signature={signature}"
        )

    def signed_headers(self, method: str, path: str, query: str = "") -> dict:
        return {
            "Content-Type": "application/json;charset=UTF-8",
            "Authorization": self.authorization_header(method, path, query),
        }
