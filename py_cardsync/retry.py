"""Retry with exponential backoff, and error categorization for CardDAV calls."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

import httpx

from .internal import HrefError, HTTPError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_NETWORK_PATTERNS = ("network", "timeout", "econnrefused", "enotfound")


def error_status(error: BaseException) -> int | None:
    """Extract an HTTP status code from an error, if it carries one."""
    if isinstance(error, HTTPError):
        return error.code
    if isinstance(error, HrefError):
        return error_status(error.err)
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    for attr in ("status", "status_code", "code"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and 100 <= value <= 599:
            return value
    return None


def is_retryable_error(error: BaseException) -> bool:
    """Default retry predicate: network failures, HTTP 5xx and 429."""
    if isinstance(error, httpx.TransportError):
        return True

    status = error_status(error)
    if status is not None:
        return status >= 500 or status == 429

    message = str(error).lower()
    return any(pattern in message for pattern in _NETWORK_PATTERNS)


@dataclass
class RetryOptions:
    """Backoff policy for ``with_retry``. Delays are in seconds."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    backoff_factor: float = 2.0
    # Fraction of the current delay added at random to each sleep
    jitter: float = 0.1
    should_retry: Callable[[BaseException], bool] = field(default=is_retryable_error)


async def with_retry(
    operation: Callable[[], Awaitable[T]], options: RetryOptions | None = None
) -> T:
    """Run an async operation, retrying transient failures.

    Args:
        operation: Zero-argument coroutine function to call
        options: Backoff policy (defaults to 3 attempts, 1s doubling to 10s)

    Returns:
        The operation's result

    Raises:
        Exception: The last error once attempts are exhausted, or the first
            error the policy does not consider transient
    """
    opts = options or RetryOptions()
    delay = opts.initial_delay

    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as e:
            if attempt >= opts.max_attempts or not opts.should_retry(e):
                raise

            sleep_time = min(delay, opts.max_delay)
            if opts.jitter:
                sleep_time += sleep_time * opts.jitter * random.random()
            logger.warning(
                "Attempt %d/%d failed (%s), retrying in %.1fs",
                attempt,
                opts.max_attempts,
                e,
                sleep_time,
            )
            await asyncio.sleep(sleep_time)

            delay = min(delay * opts.backoff_factor, opts.max_delay)
            attempt += 1


class ErrorCategory(str, Enum):
    AUTH = "auth"
    NETWORK = "network"
    SERVER = "server"
    RATE_LIMIT = "rate_limit"
    MALFORMED = "malformed"
    NOT_FOUND = "not_found"
    UNKNOWN = "unknown"


USER_MESSAGES = {
    ErrorCategory.AUTH: (
        "Authentication failed. Please check your username and password. "
        "For Google and iCloud, make sure you are using an app-specific password."
    ),
    ErrorCategory.RATE_LIMIT: "Too many requests. Please wait a moment and try again.",
    ErrorCategory.SERVER: "The CardDAV server is experiencing issues. Please try again later.",
    ErrorCategory.NOT_FOUND: "The requested resource was not found. Please check your server URL.",
    ErrorCategory.NETWORK: "Network error. Please check your internet connection and server URL.",
    ErrorCategory.MALFORMED: "Invalid data received from server. The contact may be corrupted.",
    ErrorCategory.UNKNOWN: "An unexpected error occurred. Please try again or contact support.",
}


@dataclass
class CategorizedError:
    category: ErrorCategory
    message: str
    original_error: Any
    user_message: str


def _category_for(error: BaseException) -> ErrorCategory:
    status = error_status(error)
    if status in (401, 403):
        return ErrorCategory.AUTH
    if status == 429:
        return ErrorCategory.RATE_LIMIT
    if status is not None and status >= 500:
        return ErrorCategory.SERVER
    if status == 404:
        return ErrorCategory.NOT_FOUND

    if isinstance(error, httpx.TransportError):
        return ErrorCategory.NETWORK

    message = str(error).lower()
    if any(pattern in message for pattern in (*_NETWORK_PATTERNS, "dns")):
        return ErrorCategory.NETWORK
    if any(pattern in message for pattern in ("parse", "malformed", "invalid")):
        return ErrorCategory.MALFORMED
    return ErrorCategory.UNKNOWN


def categorize_error(error: BaseException) -> CategorizedError:
    """Map an error to a category and a message safe to show to the user.

    HTTP status rules take priority over message-text rules.
    """
    category = _category_for(error)
    return CategorizedError(
        category=category,
        message=str(error),
        original_error=error,
        user_message=USER_MESSAGES[category],
    )
