"""Retrying HTTP wrapper used by the HTTP model adapters and the fetch tool.

Transient statuses and connection errors are retried with exponential
backoff that honors ``Retry-After``. A 429 whose body says the account is
out of balance is never retried: it is rewritten to a 402 so the review
loop classifies it as a billing failure on the first attempt.
"""

import json
import logging
import random
import threading
import time as _time
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Optional

import requests
from requests.structures import CaseInsensitiveDict

from config import fetch_config

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})
ORIGINAL_STATUS_HEADER = "x-original-status"

_RATE_LIMIT_MIN_BASE_MS = 5000
_JITTER_MS = 250
_NON_RETRYABLE_429_MARKERS = ("余额不足", "无可用资源包", "insufficient", "quota", "payment required")


def parse_retry_after_header(value: Optional[str]) -> Optional[float]:
    """Return the Retry-After delay in milliseconds (seconds or HTTP-date form)."""
    if not value:
        return None
    value = value.strip()
    try:
        seconds = float(value)
        return max(0.0, seconds * 1000)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    return max(0.0, (when.timestamp() - _time.time()) * 1000)


def is_non_retryable_rate_limit(body: str) -> bool:
    """True when a 429 body reports exhausted balance rather than throttling."""
    if not body:
        return False
    try:
        payload = json.loads(body)
    except (TypeError, ValueError):
        payload = None
    if isinstance(payload, dict):
        error = payload.get("error", payload)
        if isinstance(error, dict):
            if str(error.get("code", "")) == "1113":
                return True
            message = str(error.get("message", "")).lower()
            if any(marker in message for marker in _NON_RETRYABLE_429_MARKERS):
                return True
    lowered = body.lower()
    return '"1113"' in lowered or any(marker in lowered for marker in _NON_RETRYABLE_429_MARKERS)


def _as_payment_required(response: requests.Response) -> requests.Response:
    mapped = requests.Response()
    mapped.status_code = 402
    mapped.reason = "Payment Required"
    mapped._content = response.content
    mapped.headers = CaseInsensitiveDict(response.headers)
    mapped.headers[ORIGINAL_STATUS_HEADER] = str(response.status_code)
    mapped.encoding = response.encoding
    mapped.url = response.url
    mapped.request = response.request
    return mapped


class RetryingFetcher:
    """Wraps a ``requests.Session`` with retry, backoff and a shared cooldown.

    The cooldown is shared by every request made through one fetcher: after
    a throttled response, later requests wait out the same window instead of
    hammering the provider in parallel.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        max_retries: Optional[int] = None,
        base_delay_ms: Optional[int] = None,
        max_delay_ms: Optional[int] = None,
        sleep: Callable[[float], None] = _time.sleep,
    ):
        self.session = session or requests.Session()
        self.max_retries = fetch_config.max_retries if max_retries is None else max_retries
        self.base_delay_ms = fetch_config.base_delay_ms if base_delay_ms is None else base_delay_ms
        self.max_delay_ms = fetch_config.max_delay_ms if max_delay_ms is None else max_delay_ms
        self._sleep = sleep
        self._cooldown_until = 0.0
        self._lock = threading.Lock()

    def _compute_delay_ms(self, attempt: int, status: Optional[int],
                          retry_after_ms: Optional[float]) -> float:
        if retry_after_ms is not None:
            delay = retry_after_ms
        else:
            base = self.base_delay_ms
            if status == 429:
                base = max(base, _RATE_LIMIT_MIN_BASE_MS)
            delay = base * (2 ** attempt) + random.uniform(0, _JITTER_MS)
        return min(delay, self.max_delay_ms)

    def _wait_for_cooldown(self) -> None:
        with self._lock:
            remaining = self._cooldown_until - _time.monotonic()
        if remaining > 0:
            self._sleep(remaining)

    def _extend_cooldown(self, delay_ms: float) -> None:
        with self._lock:
            self._cooldown_until = max(self._cooldown_until, _time.monotonic() + delay_ms / 1000)

    def request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        """Issue a request, retrying transient failures. Never raises for HTTP statuses."""
        attempt = 0
        while True:
            self._wait_for_cooldown()
            try:
                response = self.session.request(method, url, **kwargs)
            except (requests.ConnectionError, requests.Timeout) as e:
                if attempt >= self.max_retries:
                    raise
                delay = self._compute_delay_ms(attempt, None, None)
                logger.warning(
                    f"[HTTP] {method} {url} failed ({e}), retry {attempt + 1}/{self.max_retries} in {delay:.0f}ms"
                )
                self._sleep(delay / 1000)
                attempt += 1
                continue

            status = response.status_code
            if status == 429 and is_non_retryable_rate_limit(response.text):
                logger.error(f"[HTTP] {url} rejected: account balance or quota exhausted")
                return _as_payment_required(response)

            if status not in RETRYABLE_STATUS_CODES or attempt >= self.max_retries:
                return response

            retry_after_ms = parse_retry_after_header(response.headers.get("retry-after"))
            delay = self._compute_delay_ms(attempt, status, retry_after_ms)
            if status == 429:
                self._extend_cooldown(delay)
            logger.warning(
                f"[HTTP] {method} {url} returned {status}, retry {attempt + 1}/{self.max_retries} in {delay:.0f}ms"
            )
            response.close()
            self._sleep(delay / 1000)
            attempt += 1

    def get(self, url: str, **kwargs: Any) -> requests.Response:
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs: Any) -> requests.Response:
        return self.request("POST", url, **kwargs)
