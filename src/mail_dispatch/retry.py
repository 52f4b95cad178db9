# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Retry policy for failed delivery attempts.

The default behaviour is a flat delay: every retry waits ``retry_delay``
seconds (5 by default) whatever the attempt number. An exponential schedule
can be selected with ``backoff="exponential"``; it doubles the delay on each
attempt up to ``max_delay``.

Failures are classified as transient or permanent before the attempt budget
is consulted. A permanent failure (SMTP 5xx, rejected address, HTTP 4xx from
the provider) ends the message at once; anything else is retried until
``max_attempts`` is reached.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Literal

import aiosmtplib

from .exceptions import DeliveryError

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_DELAY = 5.0
DEFAULT_MAX_DELAY = 3600.0
MAX_BACKOFF_EXPONENT = 64

TEMPORARY_PATTERNS = (
    "421",
    "450",
    "451",
    "452",
    "timeout",
    "timed out",
    "connection refused",
    "connection reset",
    "temporarily unavailable",
    "try again",
    "throttl",
    "rate limit",
)


def classify_error(exc: BaseException) -> tuple[bool, int | None]:
    """Classify a delivery error as temporary or permanent.

    Returns:
        tuple: ``(is_temporary, code)`` where ``code`` is the SMTP reply code
        or HTTP status when one is available.
    """
    if isinstance(exc, DeliveryError):
        code = exc.smtp_code or exc.status_code
        return not exc.permanent, code

    smtp_code = None
    if isinstance(exc, aiosmtplib.SMTPException):
        smtp_code = getattr(exc, "code", None) or getattr(exc, "smtp_code", None)

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True, smtp_code

    if isinstance(smtp_code, int):
        if 400 <= smtp_code < 500:
            return True, smtp_code
        if 500 <= smtp_code < 600:
            return False, smtp_code

    if isinstance(exc, OSError):
        return True, smtp_code

    error_msg = str(exc).lower()
    for pattern in TEMPORARY_PATTERNS:
        if pattern in error_msg:
            return True, smtp_code

    # Unknown errors are retried.
    return True, smtp_code


@dataclass(frozen=True)
class RetryPolicy:
    """Decide whether and when a failed message is attempted again.

    Attributes:
        max_attempts: Default attempt budget for messages that set none.
        retry_delay: Seconds between attempts (first delay when exponential).
        backoff: ``"fixed"`` or ``"exponential"``.
        max_delay: Upper bound for exponential delays.
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    retry_delay: float = DEFAULT_RETRY_DELAY
    backoff: Literal["fixed", "exponential"] = "fixed"
    max_delay: float = DEFAULT_MAX_DELAY

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.retry_delay < 0:
            raise ValueError("retry_delay must not be negative")
        if self.backoff not in ("fixed", "exponential"):
            raise ValueError(f"unknown backoff strategy {self.backoff!r}")

    def should_retry(self, attempts: int, max_attempts: int) -> bool:
        return attempts < max_attempts

    def next_delay(self, attempts: int) -> float:
        """Seconds to wait after the ``attempts``-th failed attempt."""
        if self.backoff == "fixed":
            return self.retry_delay
        exponent = min(max(0, attempts - 1), MAX_BACKOFF_EXPONENT)
        return min(self.max_delay, self.retry_delay * (2 ** exponent))
