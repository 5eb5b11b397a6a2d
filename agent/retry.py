"""
Model-call error classification and backoff.

Billing and quota failures are never retried; network blips, throttling and
provider overload are. Everything else surfaces unchanged.
"""

import random
import re
from typing import Optional

from llm.base import ModelError

BILLING_MARKERS = (
    "1113",
    "余额不足",
    "无可用资源包",
    "payment required",
    "insufficient balance",
    "insufficient_quota",
    "insufficient quota",
    "exceeded your current quota",
    "billing",
)

TRANSIENT_MARKERS = (
    "network error",
    "fetch failed",
    "etimedout",
    "econnreset",
    "socket hang up",
    "timeout",
    "timed out",
    "connection",
    "429",
    "rate limit",
    "too many requests",
    "overloaded",
    "throttl",
    "当前api请求过多",
    "请稍后重试",
    "temporarily unavailable",
    "service unavailable",
    "retry later",
)

TRANSIENT_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})

_RETRY_AFTER_RE = re.compile(r"retry[-\s]?after[:\s]?(\d+)", re.IGNORECASE)


def _status(error: BaseException) -> Optional[int]:
    status = getattr(error, "status_code", None)
    return status if isinstance(status, int) else None


def is_billing_error(error: BaseException) -> bool:
    """Balance, quota or payment-required failures. Retrying cannot help."""
    if _status(error) == 402:
        return True
    message = str(error).lower()
    return any(marker in message for marker in BILLING_MARKERS) or bool(re.search(r"\b402\b", message))


def is_transient_error(error: BaseException) -> bool:
    """Network, timeout, throttling or overload failures worth another try."""
    if is_billing_error(error):
        return False
    if isinstance(error, (TimeoutError, ConnectionError)):
        return True
    status = _status(error)
    if status is not None and status in TRANSIENT_STATUS_CODES:
        return True
    message = str(error).lower()
    return any(marker in message for marker in TRANSIENT_MARKERS)


def parse_retry_after(error: BaseException) -> Optional[float]:
    """Retry-after hint in seconds, from the error itself or its message."""
    if isinstance(error, ModelError) and error.retry_after is not None:
        return error.retry_after
    match = _RETRY_AFTER_RE.search(str(error))
    if match:
        return float(match.group(1))
    return None


def backoff_delay_ms(attempt: int, retry_after_secs: Optional[float], max_delay_ms: int) -> float:
    """Delay before retry ``attempt`` (1-based): retry-after when given, else linear-with-jitter."""
    if retry_after_secs:
        delay = retry_after_secs * 1000
    else:
        delay = 3000 * attempt + random.uniform(0, 1000)
    return min(delay, max_delay_ms)


def call_backoff_ms(attempt: int, retry_after_secs: Optional[float], max_delay_ms: int) -> float:
    """Exponential delay between retries of a single model call (1s, 2s, 4s ...)."""
    if retry_after_secs:
        return min(retry_after_secs * 1000, max_delay_ms)
    return min(1000 * (2 ** (attempt - 1)) + random.uniform(0, 250), max_delay_ms)
