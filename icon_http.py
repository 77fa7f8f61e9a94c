"""HTTP client and retry layer for the OpenAI REST API.

All outbound JSON calls go through ApiClient.send(), which turns every outcome
into either a parsed JSON dict or one of the icon_errors exceptions:

  transport failure            -> NetworkError
  429                          -> RateLimitExceeded  (unless it is a quota/billing error)
  empty body                   -> NoDataError
  body is not a JSON object    -> DecodingError
  top-level error.message      -> ApiError(message)
  other non-2xx                -> ApiError("HTTP <status>")

The client never retries on its own.  send_with_backoff() is the bounded
exponential policy used by label extraction; generation relies on the
orchestrator's fixed pause instead.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Dict, Optional

import requests

from icon_errors import (
    RATE_LIMIT_MESSAGE,
    ApiError,
    DecodingError,
    ImageDownloadError,
    NetworkError,
    NoDataError,
    RateLimitExceeded,
    UnknownError,
)

log = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1/"
DEFAULT_TIMEOUT = 120

# Billing conditions also come back as 429 but waiting will not fix them
_QUOTA_CODES = ("insufficient_quota", "billing_hard_limit_reached")


class ApiClient:
    """Authenticated JSON client bound to one credential and base URL."""

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[Any] = None,
    ) -> None:
        if not api_key:
            raise ValueError("api_key is required")
        self.api_key = api_key
        self.base_url = base_url if base_url.endswith("/") else base_url + "/"
        self.timeout = timeout
        self._session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    # ------------------------------------------------------------------
    # Single request
    # ------------------------------------------------------------------

    def send(self, method: str, path: str, body: Optional[Dict] = None) -> Dict:
        """Issue one request and return the parsed JSON object."""
        url = self.base_url + path.lstrip("/")
        try:
            data = json.dumps(body) if body is not None else None
        except (TypeError, ValueError) as exc:
            raise UnknownError(f"Could not serialise request body: {exc}") from exc

        t0 = time.time()
        try:
            resp = self._session.request(
                method,
                url,
                data=data,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            log.warning("%s %s transport failure after %.1fs: %s", method, path, time.time() - t0, exc)
            raise NetworkError(exc) from exc

        status = resp.status_code
        log.debug("%s %s -> %d (%d bytes)", method, path, status, len(resp.content or b""))
        log.info("API call: %s %s  status=%d  %.1fs", method, path, status, time.time() - t0)

        if not resp.content:
            if status == 429:
                raise RateLimitExceeded(RATE_LIMIT_MESSAGE, status)
            raise NoDataError(f"Empty body from {method} {path} (HTTP {status})")

        try:
            payload = resp.json()
        except ValueError as exc:
            # Gateways answer 429 with HTML; the status alone decides
            if status == 429:
                raise RateLimitExceeded(RATE_LIMIT_MESSAGE, status) from exc
            raise DecodingError(exc) from exc
        if not isinstance(payload, dict):
            if status == 429:
                raise RateLimitExceeded(RATE_LIMIT_MESSAGE, status)
            raise DecodingError(ValueError(f"expected a JSON object, got {type(payload).__name__}"))

        error = payload.get("error")
        message = None
        if isinstance(error, dict):
            message = error.get("message")

        if status == 429:
            if _is_quota_error(error):
                raise ApiError(message or "Insufficient quota", status)
            raise RateLimitExceeded(message or RATE_LIMIT_MESSAGE, status)
        if message:
            log.warning("API error from %s %s (HTTP %d): %s", method, path, status, message)
            raise ApiError(message, status)
        if status >= 400:
            raise ApiError(f"HTTP {status}", status)
        return payload

    # ------------------------------------------------------------------
    # Bounded exponential backoff on 429
    # ------------------------------------------------------------------

    def send_with_backoff(
        self,
        method: str,
        path: str,
        body: Optional[Dict] = None,
        *,
        max_attempts: int = 5,
        base_delay: float = 2.0,
        sleep: Callable[[float], Any] = time.sleep,
        on_retry: Optional[Callable[[int, float, RateLimitExceeded], None]] = None,
    ) -> Dict:
        """send() with up to ``max_attempts`` tries on RateLimitExceeded.

        Delays double from ``base_delay`` between attempts.  Once the budget
        is spent the rate limit surfaces as a terminal ApiError.
        """
        delay = base_delay
        for attempt in range(1, max_attempts + 1):
            try:
                return self.send(method, path, body)
            except RateLimitExceeded as exc:
                if attempt >= max_attempts:
                    log.error("Rate limited on %s %s, giving up after %d attempts", method, path, attempt)
                    raise ApiError(RATE_LIMIT_MESSAGE, exc.status) from exc
                log.warning(
                    "Rate limited on %s %s (attempt %d/%d). Retrying in %.0fs.",
                    method, path, attempt, max_attempts, delay,
                )
                if on_retry:
                    on_retry(attempt, delay, exc)
                sleep(delay)
                delay *= 2
        raise ApiError(RATE_LIMIT_MESSAGE)

    # ------------------------------------------------------------------
    # Artifact download
    # ------------------------------------------------------------------

    def download(self, url: str) -> bytes:
        """Plain GET of a generated artifact URL (pre-signed, so no bearer)."""
        try:
            resp = self._session.get(url, timeout=self.timeout)
        except requests.RequestException as exc:
            log.warning("Download transport failure: %s", exc)
            raise NetworkError(exc) from exc

        if resp.status_code != 200:
            raise ImageDownloadError(f"Download failed with HTTP {resp.status_code}")
        if not resp.content:
            raise ImageDownloadError("Download returned no bytes")
        return resp.content


def _is_quota_error(error: Any) -> bool:
    if not isinstance(error, dict):
        return False
    return error.get("code") in _QUOTA_CODES or error.get("type") in _QUOTA_CODES
