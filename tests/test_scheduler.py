"""Tests for the background sync scheduler."""

from datetime import UTC, datetime, timedelta

import pytest
from conftest import SECRET_KEY, FakeClient, FakeServer

from py_cardsync.encryption import encrypt_password
from py_cardsync.internal import HTTPError
from py_cardsync.models import Connection, Contact
from py_cardsync.sync import SyncEngine, run_scheduled_sync, should_sync_now

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


def test_should_sync_now_never_synced():
    assert should_sync_now(None, 3600, NOW)


def test_should_sync_now_interval():
    assert not should_sync_now(NOW - timedelta(minutes=59), 3600, NOW)
    assert should_sync_now(NOW - timedelta(hours=1), 3600, NOW)
    assert should_sync_now(NOW - timedelta(days=2), 43200, NOW)


async def _connection(store, user_id, **kwargs):
    conn = Connection(
        user_id=user_id,
        server_url=f"https://dav.example.com/{user_id}/",
        username=user_id,
        password=encrypt_password("secret", SECRET_KEY),
        **kwargs,
    )
    await store.save_connection(conn)
    return conn


@pytest.mark.asyncio
async def test_run_scheduled_sync_continues_past_failures(store, settings):
    servers = {"alice": FakeServer(), "bob": FakeServer(), "carol": FakeServer()}
    servers["alice"].discovery_error = HTTPError(401)
    engine = SyncEngine(store, lambda conn: FakeClient(servers[conn.user_id]), settings=settings)

    await _connection(store, "alice")
    await _connection(store, "bob")
    await _connection(store, "carol", sync_enabled=False)
    await store.create_contact(Contact(user_id="bob", name="Bob's Friend"))

    results = await run_scheduled_sync(engine)

    assert set(results) == {"bob"}
    assert results["bob"].exported == 1
    assert len(servers["bob"].cards) == 1
    assert servers["carol"].requests == []
    assert (await store.get_connection("alice")).last_error is not None


@pytest.mark.asyncio
async def test_run_scheduled_sync_skips_recent_connections(store, settings):
    server = FakeServer()
    engine = SyncEngine(store, lambda conn: FakeClient(server), settings=settings)
    await _connection(store, "dave", last_sync_at=NOW - timedelta(minutes=5))

    results = await run_scheduled_sync(engine, now=NOW)

    assert results == {}
    assert server.requests == []
