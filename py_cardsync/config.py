"""Runtime configuration for the sync engine and the CardDAV client."""

from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


CARDSYNC_SECRET_KEY = os.getenv("CARDSYNC_SECRET_KEY")
CARDSYNC_HTTP_TIMEOUT = os.getenv("CARDSYNC_HTTP_TIMEOUT")
CARDSYNC_VCARD_VERSION = os.getenv("CARDSYNC_VCARD_VERSION")
CARDSYNC_RETRY_ATTEMPTS = os.getenv("CARDSYNC_RETRY_ATTEMPTS")
CARDSYNC_RETRY_INITIAL_DELAY = os.getenv("CARDSYNC_RETRY_INITIAL_DELAY")
CARDSYNC_RETRY_MAX_DELAY = os.getenv("CARDSYNC_RETRY_MAX_DELAY")


@dataclass
class Settings:
    """Configuration for CardDAV synchronization.

    Defaults are read from ``CARDSYNC_*`` environment variables.
    """

    # Key used to encrypt stored CardDAV passwords
    secret_key: str = CARDSYNC_SECRET_KEY or "insecure-development-key"

    # HTTP
    http_timeout: float = float(CARDSYNC_HTTP_TIMEOUT or 30.0)  # seconds
    allow_private_hosts: bool = _env_bool("CARDSYNC_ALLOW_PRIVATE_HOSTS")
    debug: bool = _env_bool("CARDSYNC_DEBUG")

    # vCard version emitted on export ("3.0" or "4.0")
    vcard_version: str = CARDSYNC_VCARD_VERSION or "3.0"
    strip_markdown: bool = False

    # Retry policy for remote calls
    retry_attempts: int = int(CARDSYNC_RETRY_ATTEMPTS or 3)
    retry_initial_delay: float = float(CARDSYNC_RETRY_INITIAL_DELAY or 1.0)
    retry_max_delay: float = float(CARDSYNC_RETRY_MAX_DELAY or 10.0)

    def __post_init__(self) -> None:
        if self.vcard_version not in ("3.0", "4.0"):
            raise ValueError(f"Unsupported vCard version: {self.vcard_version!r}")
        if self.retry_attempts < 1:
            raise ValueError("retry_attempts must be at least 1")
