"""Periodic background sync across all connections."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from ..models import SyncResult, utcnow
from .engine import SyncEngine
from .errors import SyncError

logger = logging.getLogger(__name__)


def should_sync_now(last_sync_at: datetime | None, interval: int, now: datetime | None = None) -> bool:
    """Whether a connection is due for its next automatic sync.

    Args:
        last_sync_at: When the connection last synced successfully
        interval: Seconds between automatic syncs
        now: Current time (defaults to the clock)
    """
    if last_sync_at is None:
        return True
    now = now or utcnow()
    return now - last_sync_at >= timedelta(seconds=interval)


async def run_scheduled_sync(engine: SyncEngine, now: datetime | None = None) -> dict[str, SyncResult]:
    """Run a bidirectional sync for every due connection, one user at a time.

    A failing user is logged and skipped.

    Returns:
        Results keyed by user id, for the users that synced
    """
    results: dict[str, SyncResult] = {}
    connections = await engine.store.list_connections()

    for connection in connections:
        if not connection.sync_enabled:
            continue
        if not should_sync_now(connection.last_sync_at, connection.auto_sync_interval, now):
            continue

        try:
            results[connection.user_id] = await engine.bidirectional_sync(connection.user_id)
        except SyncError as e:
            logger.warning("Scheduled sync failed for user %s: %s", connection.user_id, e)
        except Exception:
            logger.exception("Scheduled sync crashed for user %s", connection.user_id)

    logger.info("Scheduled sync finished: %d of %d connection(s) synced", len(results), len(connections))
    return results
