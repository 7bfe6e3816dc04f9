"""
HTTP client for the destination cloud accounting APIs.

Every call posts ``{"data": [...]}`` with an ``Authtoken`` header and
reads back a list of per-item status objects::

    {"data": [{"statuscode": "200", "statusmessage": "...", "voucherno": "..."}]}
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Optional
import requests
from tenacity import retry, wait_exponential, stop_after_attempt, retry_if_exception_type
from loguru import logger

from .config import Destination, SyncConfig
from .errors import CloudRejectedError, CloudTransportError

DEFAULT_HEADERS = {
    "Content-Type": "application/json",
    "Accept": "application/json",
    "User-Agent": "cloud-voucher-sync/1.0",
}


@dataclass(frozen=True)
class CloudOutcome:
    """
    Interpreted response for one submitted voucher.

    Transport failures and payload rejections both come back as
    ``accepted=False``; ``transport`` tells them apart for logging.
    """

    accepted: bool
    message: str = ""
    status_code: Optional[str] = None
    transport: bool = False

    def raise_for_rejection(self) -> None:
        if not self.accepted:
            raise CloudRejectedError(
                self.message or "Cloud rejected", status_code=self.status_code, transport=self.transport
            )


def extract_statuses(body: Any) -> list[dict]:
    """
    Pull the per-item status list out of a cloud response body.

    The cloud answers either with a bare list or with the list nested
    under ``data``. Anything else yields an empty list.
    """
    if isinstance(body, dict):
        body = body.get("data")
    if isinstance(body, list):
        return [s for s in body if isinstance(s, dict)]
    return []


def interpret_status(status: Optional[dict], accept_codes: tuple[str, ...]) -> CloudOutcome:
    """Compare a status object's code against the destination's sentinels."""
    if not status:
        return CloudOutcome(accepted=False, message="Cloud response had no status")
    code = status.get("statuscode")
    code_str = None if code is None else str(code).strip()
    message = str(status.get("statusmessage") or "")
    if code_str is not None and code_str in accept_codes:
        return CloudOutcome(accepted=True, message=message, status_code=code_str)
    return CloudOutcome(accepted=False, message=message or "Cloud rejected", status_code=code_str)


class CloudClient:
    """
    Client for one cloud destination.

    Features:
    - Connection pooling via requests.Session
    - Configurable timeouts
    - Response normalization into CloudOutcome
    - Retry with backoff for un-numbered batch posts only
    """

    def __init__(self, destination: Destination, config: Optional[SyncConfig] = None):
        self.config = config or SyncConfig.from_env()
        self.destination = destination
        self.session = requests.Session()
        self.session.headers.update(DEFAULT_HEADERS)
        self.session.headers["Authtoken"] = destination.auth_token

    @classmethod
    def for_destination(cls, name: str, config: Optional[SyncConfig] = None) -> "CloudClient":
        config = config or SyncConfig.from_env()
        return cls(config.destination(name), config)

    def _post(self, documents: list[dict]) -> Any:
        """
        POST one ``{"data": documents}`` call and return the decoded body.

        Raises:
            CloudTransportError: On connection failure, timeout, non-2xx
                status or a body that is not JSON
        """
        if not self.destination.url:
            raise CloudTransportError(f"No URL configured for {self.destination.name}")
        try:
            r = self.session.post(
                self.destination.url,
                json={"data": documents},
                timeout=self.config.request_timeout,
            )
            r.raise_for_status()
            return r.json()
        except requests.Timeout as e:
            logger.error(f"{self.destination.name} request timed out after {self.config.request_timeout}s")
            raise CloudTransportError(f"Request timeout: {e}") from e
        except requests.ConnectionError as e:
            logger.error(f"Failed to connect to {self.destination.name} at {self.destination.url}: {e}")
            raise CloudTransportError(f"Cannot connect to cloud: {e}") from e
        except requests.RequestException as e:
            logger.error(f"{self.destination.name} request failed: {e}")
            raise CloudTransportError(f"Request failed: {e}") from e
        except ValueError as e:
            raise CloudTransportError(f"Malformed cloud response: {e}") from e

    def submit_voucher(self, document: dict) -> CloudOutcome:
        """
        Submit a single voucher document. Never retries and never raises.

        A timeout here is ambiguous: the cloud may have stored the voucher
        after we gave up. It is still reported as not accepted so nothing
        is committed locally.
        """
        try:
            body = self._post([document])
        except CloudTransportError as e:
            return CloudOutcome(accepted=False, message=str(e), transport=True)

        statuses = extract_statuses(body)
        if not statuses:
            return CloudOutcome(accepted=False, message="Malformed cloud response", transport=True)
        return interpret_status(statuses[0], self.destination.accept_codes)

    def post_batch(self, documents: list[dict]) -> Any:
        """
        Submit a batch of documents that carry their own numbers.

        Transport failures are retried with exponential backoff, which is
        only safe because these documents need no allocation.
        """
        retrying = retry(
            wait=wait_exponential(multiplier=1, min=1, max=30),
            stop=stop_after_attempt(max(1, self.config.retry_attempts)),
            retry=retry_if_exception_type(CloudTransportError),
            reraise=True,
            before_sleep=lambda retry_state: logger.warning(
                f"Retrying {self.destination.name} batch (attempt {retry_state.attempt_number})..."
            ),
        )
        return retrying(self._post)(documents)

    def close(self):
        """Close the session."""
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
