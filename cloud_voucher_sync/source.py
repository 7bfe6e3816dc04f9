"""
Client for the source accounting API (the pull side).

The source returns raw sale records for a date range. Records are
priced in INR and carry enough customer detail to build the cloud
documents in ``vouchers``.
"""
from __future__ import annotations
from datetime import date
from typing import Any, Optional
import requests
from tenacity import retry, wait_exponential, stop_after_attempt, retry_if_exception_type
from loguru import logger

from .config import SyncConfig
from .errors import NoDataFound, SourceAPIError

NEPAL_COUNTRY_ID = 4


def is_nepal_voucher(record: dict) -> bool:
    """True when a source record belongs to the Nepal region."""
    country = str(record.get("Country") or "").lower()
    country_main = str(record.get("CountryMain") or "").lower()
    state = str(record.get("State") or "").lower()
    return (
        country == "nepal"
        or country_main == "nepal"
        or record.get("CountryID") == NEPAL_COUNTRY_ID
        or "province" in state
    )


def _records(body: Any) -> list[dict]:
    if isinstance(body, list):
        return body
    if isinstance(body, dict):
        for key in ("data", "result", "records"):
            if isinstance(body.get(key), list):
                return body[key]
    return []


class SourceClient:
    """HTTP client for the source sales API with retry logic."""

    def __init__(self, config: Optional[SyncConfig] = None):
        self.config = config or SyncConfig.from_env()
        self.session = requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        if self.config.source_authorization:
            self.session.headers["Authorization"] = self.config.source_authorization
        if self.config.source_cookie:
            self.session.headers["Cookie"] = self.config.source_cookie

    @retry(
        wait=wait_exponential(multiplier=1, min=1, max=30),
        stop=stop_after_attempt(3),
        retry=retry_if_exception_type(SourceAPIError),
        reraise=True,
        before_sleep=lambda retry_state: logger.warning(
            f"Retrying source request (attempt {retry_state.attempt_number})..."
        ),
    )
    def _post(self, payload: dict) -> Any:
        try:
            r = self.session.post(
                self.config.sales_url, json=payload, timeout=self.config.request_timeout
            )
            r.raise_for_status()
            return r.json()
        except requests.RequestException as e:
            logger.error(f"Source request failed: {e}")
            raise SourceAPIError(f"Source request failed: {e}") from e
        except ValueError as e:
            raise SourceAPIError(f"Malformed source response: {e}") from e

    def fetch_sales(self, start_date: date, end_date: date) -> list[dict]:
        """
        Fetch raw sale records between two dates (inclusive).

        Raises:
            NoDataFound: If the source reports code "404" for the range
            SourceAPIError: If the source cannot be reached
        """
        if not self.config.sales_url:
            raise SourceAPIError("SALES_URL is not configured")
        payload = {
            "from_date": start_date.strftime("%Y/%m/%d"),
            "to_date": end_date.strftime("%Y/%m/%d"),
        }
        logger.info(f"Fetching sales from {start_date} to {end_date}")
        body = self._post(payload)
        if isinstance(body, dict) and str(body.get("code")) == "404":
            raise NoDataFound(f"No Data Found between {start_date} and {end_date}")
        records = _records(body)
        logger.info(f"  Fetched {len(records)} records")
        return records

    def fetch_nepal_sales(self, start_date: date, end_date: date) -> list[dict]:
        """Fetch records and keep the Nepal ones only."""
        return [r for r in self.fetch_sales(start_date, end_date) if is_nepal_voucher(r)]

    def close(self):
        """Close the session."""
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
