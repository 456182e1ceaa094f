"""Bounded exponential-backoff retry for inference calls."""

import logging
import random
import time
from typing import Callable, TypeVar

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RATE_LIMIT_MARKERS = ("rate_limit", "rate limit", "429", "too many requests")
_TRANSIENT_MARKERS = (
    "overloaded",
    "529",
    "econnreset",
    "connection reset",
    "socket hang up",
    "timeout",
    "timed out",
    "500",
    "502",
    "503",
    "504",
)


# ── Error Classification ─────────────────────────────────────────────


def _error_text(exc: BaseException) -> str:
    status = getattr(exc, "status_code", None)
    text = str(exc).lower()
    return f"{status} {text}" if status is not None else text


def is_rate_limit_error(exc: BaseException) -> bool:
    text = _error_text(exc)
    return any(marker in text for marker in _RATE_LIMIT_MARKERS)


def is_retryable_error(exc: BaseException) -> bool:
    """Transient errors (rate limit, overload, network, 5xx) are worth retrying."""
    if is_rate_limit_error(exc):
        return True
    text = _error_text(exc)
    return any(marker in text for marker in _TRANSIENT_MARKERS)


# ── Policy ───────────────────────────────────────────────────────────


class RetryPolicy(BaseModel):
    """Retry count, backoff and jitter for one call site."""

    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=2, ge=0)
    base_delay: float = Field(default=2.0, ge=0, description="Seconds")
    max_jitter: float = Field(default=1.0, ge=0, description="Seconds")
    rate_limit_delay: float = Field(
        default=15.0, ge=0, description="Minimum base delay after a rate-limit error"
    )

    def delay_for(self, attempt: int, exc: BaseException) -> float:
        """Backoff before retry number ``attempt + 1`` (attempt counts from 0)."""
        base = self.base_delay
        if is_rate_limit_error(exc):
            base = max(base, self.rate_limit_delay)
        return base * 2**attempt + random.uniform(0, self.max_jitter)

    def run(self, fn: Callable[[], T], label: str = "inference call") -> T:
        """Invoke ``fn``; retry transient failures up to ``max_retries`` times.

        Non-retryable errors propagate immediately. After the last retry the
        final error propagates to the caller.
        """
        attempt = 0
        while True:
            try:
                return fn()
            except Exception as exc:
                if attempt >= self.max_retries or not is_retryable_error(exc):
                    raise
                delay = self.delay_for(attempt, exc)
                logger.warning(
                    "%s failed (attempt %d/%d)%s: %s — retrying in %.1fs",
                    label,
                    attempt + 1,
                    self.max_retries + 1,
                    " [rate limited]" if is_rate_limit_error(exc) else "",
                    exc,
                    delay,
                )
                time.sleep(delay)
                attempt += 1
