"""Tests for the sync engine against an in-memory CardDAV server."""

import asyncio
from datetime import timedelta

import pytest
from conftest import add_mapped_contact, make_vcard

from py_cardsync.internal import HTTPError
from py_cardsync.models import (
    ConflictResolution,
    Contact,
    ContactData,
    ContactEmail,
    SyncStatus,
    utcnow,
)
from py_cardsync.retry import USER_MESSAGES, ErrorCategory
from py_cardsync.sync import (
    ConflictNotFoundError,
    ConnectionNotFoundError,
    ProgressRecorder,
    SyncDisabledError,
    SyncError,
    SyncPhase,
)


@pytest.mark.asyncio
async def test_pull_applies_remote_change(engine, store, server, connection):
    """Remote-only change overwrites the local contact and adopts the new etag."""
    contact, mapping = await add_mapped_contact(store, server, connection)
    card = server.put("uid-1.vcf", make_vcard("uid-1", "Johnny", "Doe", tel="+1 555 0199"), etag='"B"')

    result = await engine.sync_from_server("alice")

    assert result.updated_locally == 1
    assert result.conflicts == 0
    assert result.errors == 0

    updated = await store.get_contact(contact.id)
    assert updated.name == "Johnny"
    assert [p.number for p in updated.phone_numbers] == ["+1 555 0199"]
    assert updated.phone_numbers[0].type == "mobile"

    mapping = await store.get_mapping(mapping.id)
    assert mapping.etag == card.etag
    assert mapping.sync_status == SyncStatus.SYNCED


@pytest.mark.asyncio
async def test_pull_unchanged_etag_is_skipped(engine, store, server, connection):
    contact, mapping = await add_mapped_contact(store, server, connection)

    result = await engine.sync_from_server("alice")

    assert result.updated_locally == 0
    assert result.conflicts == 0
    assert (await store.get_mapping(mapping.id)).last_synced_at == mapping.last_synced_at


@pytest.mark.asyncio
async def test_pull_detects_conflict_and_adopts_etag(engine, store, server, connection):
    """Concurrent edits create one conflict, and the next pull does not create another."""
    contact, mapping = await add_mapped_contact(store, server, connection, local_change=True)
    server.put("uid-1.vcf", make_vcard("uid-1", "Remote", "Doe"), etag='"B"')

    result = await engine.sync_from_server("alice")

    assert result.conflicts == 1
    assert result.updated_locally == 0

    conflicts = await store.list_conflicts(mapping.id)
    assert len(conflicts) == 1
    assert '"Remote"' in conflicts[0].remote_version
    assert '"John"' in conflicts[0].local_version

    stored = await store.get_mapping(mapping.id)
    assert stored.sync_status == SyncStatus.CONFLICT
    assert stored.etag == '"B"'

    # The local contact is untouched until the conflict is resolved
    assert (await store.get_contact(contact.id)).name == "John"

    again = await engine.sync_from_server("alice")
    assert again.conflicts == 0
    assert len(await store.list_conflicts(mapping.id, unresolved_only=False)) == 1


@pytest.mark.asyncio
async def test_pull_records_unmapped_vcards_as_pending(engine, store, server, connection):
    server.put("new.vcf", make_vcard("uid-new", "Jane", "Roe"))

    result = await engine.sync_from_server("alice")

    assert result.pending_imports == 1
    pending = await store.list_pending_imports(connection.id)
    assert [p.uid for p in pending] == ["uid-new"]
    assert pending[0].display_name == "Jane Roe"
    assert await store.list_contacts("alice") == []


@pytest.mark.asyncio
async def test_discovery_is_idempotent(engine, store, server, connection):
    server.put("a.vcf", make_vcard("uid-a", "Ann"))
    server.put("b.vcf", make_vcard("uid-b", "Bob"))

    first = await engine.discover_new_contacts("alice")
    second = await engine.discover_new_contacts("alice")

    assert first.discovered == 2
    assert second.discovered == 0
    assert len(await store.list_pending_imports(connection.id)) == 2


@pytest.mark.asyncio
async def test_discovery_skips_mapped_and_removes_vanished(engine, store, server, connection):
    await add_mapped_contact(store, server, connection)
    card = server.put("gone.vcf", make_vcard("uid-gone", "Gone"))
    await engine.discover_new_contacts("alice")
    assert [p.uid for p in await store.list_pending_imports(connection.id)] == ["uid-gone"]

    del server.cards[card.url]
    result = await engine.discover_new_contacts("alice")

    assert result.removed == 1
    assert await store.list_pending_imports(connection.id) == []


@pytest.mark.asyncio
async def test_discovery_counts_cards_without_uid(engine, store, server, connection):
    server.put("nouid.vcf", "BEGIN:VCARD\r\nVERSION:3.0\r\nFN:No Uid\r\nEND:VCARD\r\n")

    result = await engine.discover_new_contacts("alice")

    assert result.discovered == 0
    assert result.errors == 1, f"expected one error, got {result.error_messages}"
    assert "missing UID" in result.error_messages[0]
    assert await store.list_pending_imports(connection.id) == []


@pytest.mark.asyncio
async def test_pull_counts_cards_without_uid(engine, store, server, connection):
    """A card without UID is skipped, but still shows up as an error."""
    await add_mapped_contact(store, server, connection)
    server.put("nouid.vcf", "BEGIN:VCARD\r\nVERSION:3.0\r\nFN:No Uid\r\nEND:VCARD\r\n")

    result = await engine.sync_from_server("alice")

    assert result.errors == 1
    assert result.error_messages == [f"{server.book.url}nouid.vcf: missing UID"]
    assert result.updated_locally == 0


@pytest.mark.asyncio
async def test_push_updates_changed_mapping(engine, store, server, connection):
    contact, mapping = await add_mapped_contact(store, server, connection, local_change=True)
    contact.name = "Jonathan"
    await store.save_contact(contact)

    result = await engine.sync_to_server("alice")

    assert result.updated_remotely == 1
    card = server.cards[mapping.href]
    assert "FN:Jonathan Doe" in card.data

    stored = await store.get_mapping(mapping.id)
    assert stored.sync_status == SyncStatus.SYNCED
    assert stored.etag == card.etag
    assert stored.local_version
    assert not stored.has_local_change


@pytest.mark.asyncio
async def test_push_skips_unchanged_mappings(engine, store, server, connection):
    await add_mapped_contact(store, server, connection)

    result = await engine.sync_to_server("alice")

    assert result.updated_remotely == 0
    assert [method for method, _ in server.requests if method == "PUT"] == []


@pytest.mark.asyncio
async def test_push_exports_unmapped_contacts(engine, store, server, connection):
    contact = await store.create_contact(
        Contact(
            user_id="alice",
            name="Erika",
            surname="Mustermann",
            emails=[ContactEmail(type="home", email="erika@example.com")],
        )
    )

    result = await engine.sync_to_server("alice")

    assert result.exported == 1
    stored = await store.get_contact(contact.id)
    assert stored.uid

    mapping = await store.get_mapping_for_contact(connection.id, contact.id)
    assert mapping.uid == stored.uid
    assert mapping.href == f"{server.book.url}{stored.uid}.vcf"
    assert mapping.etag == server.cards[mapping.href].etag
    assert "EMAIL;TYPE=HOME:erika@example.com" in server.cards[mapping.href].data


@pytest.mark.asyncio
async def test_push_skips_contacts_excluded_from_sync(engine, store, server, connection):
    await store.create_contact(Contact(user_id="alice", name="Private", carddav_sync_enabled=False))

    result = await engine.sync_to_server("alice")

    assert result.exported == 0
    assert server.cards == {}


@pytest.mark.asyncio
async def test_push_leaves_conflicts_alone(engine, store, server, connection):
    contact, mapping = await add_mapped_contact(store, server, connection, local_change=True)
    mapping.sync_status = SyncStatus.CONFLICT
    await store.save_mapping(mapping)
    before = server.cards[mapping.href].data

    result = await engine.sync_to_server("alice")

    assert result.updated_remotely == 0
    assert server.cards[mapping.href].data == before


@pytest.mark.asyncio
async def test_push_counts_item_errors_and_continues(engine, store, server, connection):
    contact, mapping = await add_mapped_contact(store, server, connection, local_change=True)
    del server.cards[mapping.href]
    await store.create_contact(Contact(user_id="alice", name="Fresh"))

    result = await engine.sync_to_server("alice")

    assert result.errors == 1
    assert len(result.error_messages) == 1
    assert result.exported == 1


@pytest.mark.asyncio
async def test_post_create_reconciliation_adopts_server_identity(engine, store, server, connection):
    server.rewrite_on_create = True
    contact = await store.create_contact(Contact(user_id="alice", uid="local-uid", name="Max", surname="Muster"))

    result = await engine.sync_to_server("alice")

    assert result.exported == 1
    mapping = await store.get_mapping_for_contact(connection.id, contact.id)
    assert mapping.href == f"{server.book.url}server-1.vcf"
    assert mapping.uid == "server-1"
    assert mapping.etag == server.cards[mapping.href].etag
    assert (await store.get_contact(contact.id)).uid == "server-1"


@pytest.mark.asyncio
async def test_bidirectional_sums_both_passes(engine, store, server, connection):
    await add_mapped_contact(store, server, connection, uid="uid-1")
    server.put("uid-1.vcf", make_vcard("uid-1", "Changed", "Remotely"), etag='"B"')
    local, _ = await add_mapped_contact(store, server, connection, uid="uid-2", name="Ann", local_change=True)
    await store.create_contact(Contact(user_id="alice", name="New"))

    result = await engine.bidirectional_sync("alice")

    assert result.updated_locally == 1
    assert result.updated_remotely == 1
    assert result.exported == 1
    assert result.conflicts == 0


@pytest.mark.asyncio
async def test_success_clears_connection_error(engine, store, server, connection):
    connection.last_error = "old failure"
    connection.last_error_at = utcnow()
    await store.save_connection(connection)

    await engine.bidirectional_sync("alice")

    stored = await store.get_connection("alice")
    assert stored.last_error is None
    assert stored.last_error_at is None
    assert stored.last_sync_at is not None


@pytest.mark.asyncio
async def test_connection_failure_is_categorized_and_persisted(engine, store, server, connection):
    server.discovery_error = HTTPError(401)
    recorder = ProgressRecorder()

    with pytest.raises(SyncError) as exc_info:
        await engine.sync_from_server("alice", progress=recorder)

    assert exc_info.value.category == ErrorCategory.AUTH
    stored = await store.get_connection("alice")
    assert stored.last_error == USER_MESSAGES[ErrorCategory.AUTH]
    assert stored.last_error_at is not None
    assert recorder.last.error == USER_MESSAGES[ErrorCategory.AUTH]


@pytest.mark.asyncio
async def test_missing_address_book_aborts(engine, store, server, connection):
    server.has_book = False

    with pytest.raises(SyncError):
        await engine.sync_to_server("alice")

    assert (await store.get_connection("alice")).last_error is not None


@pytest.mark.asyncio
async def test_server_errors_are_retried(engine, store, server, connection):
    failures = [HTTPError(503), HTTPError(503)]

    async def flaky():
        if failures:
            raise failures.pop()
        return [server.book]

    client = engine.client_factory(connection)
    client.discover_address_books = flaky
    engine.client_factory = lambda conn: client

    result = await engine.sync_from_server("alice")

    assert result.errors == 0
    assert failures == []


@pytest.mark.asyncio
async def test_missing_or_disabled_connection(engine, store, connection):
    with pytest.raises(ConnectionNotFoundError):
        await engine.sync_from_server("bob")

    connection.sync_enabled = False
    await store.save_connection(connection)
    with pytest.raises(SyncDisabledError):
        await engine.bidirectional_sync("alice")


@pytest.mark.asyncio
async def test_progress_events_end_with_completion(engine, store, server, connection):
    server.put("a.vcf", make_vcard("uid-a", "Ann"))
    recorder = ProgressRecorder()

    await engine.sync_from_server("alice", progress=recorder)

    assert recorder.events[0].contact_name == "Ann"
    assert recorder.events[0].total == 1
    assert recorder.last.complete
    assert sum(1 for e in recorder.events if e.is_final) == 1


@pytest.mark.asyncio
async def test_bidirectional_failure_is_reported_under_the_failing_pass(engine, store, server, connection):
    """A pull that fails inside a two-way run reports a PULL error, not PUSH."""
    client = engine.client_factory(connection)

    async def forbidden(address_book):
        raise HTTPError(403)

    client.list_vcards = forbidden
    engine.client_factory = lambda conn: client
    recorder = ProgressRecorder()

    with pytest.raises(SyncError):
        await engine.bidirectional_sync("alice", progress=recorder)

    assert recorder.last.phase == SyncPhase.PULL
    assert recorder.last.error is not None
    assert SyncPhase.PUSH not in recorder.phases()


@pytest.mark.asyncio
async def test_bidirectional_progress_follows_each_pass(engine, store, server, connection):
    server.put("a.vcf", make_vcard("uid-a", "Ann"))
    await store.create_contact(Contact(user_id="alice", uid="local-1", name="Local"))
    recorder = ProgressRecorder()

    await engine.bidirectional_sync("alice", progress=recorder)

    assert recorder.phases() == [SyncPhase.PULL, SyncPhase.PUSH]
    assert recorder.last.phase == SyncPhase.PUSH
    assert recorder.last.complete


@pytest.mark.asyncio
async def test_concurrent_runs_do_not_export_twice(engine, store, server, connection):
    await store.create_contact(Contact(user_id="alice", uid="only-once", name="Solo"))

    await asyncio.gather(engine.sync_to_server("alice"), engine.sync_to_server("alice"))

    assert len(server.cards) == 1
    assert len(await store.list_mappings(connection.id)) == 1


@pytest.mark.asyncio
async def test_import_pending_creates_contacts(engine, store, server, connection, photos):
    data = make_vcard("uid-new", "Jane", "Roe", tel="+44 20 7946 0000").replace(
        "END:VCARD", "CATEGORIES:Friends,Work\r\nPHOTO:data:image/png;base64,iVBORw0KGgo=\r\nEND:VCARD"
    )
    server.put("new.vcf", data)
    await engine.discover_new_contacts("alice")

    result = await engine.import_pending("alice", ["uid-new"])

    assert result.imported == 1
    assert await store.list_pending_imports(connection.id) == []

    [contact] = await store.list_contacts("alice")
    assert contact.uid == "uid-new"
    assert contact.surname == "Roe"
    assert contact.groups == ["Friends", "Work"]
    assert contact.photo == f"alice/{contact.id}.png"
    assert photos.photos[contact.photo].startswith("data:image/png;base64,")

    mapping = await store.get_mapping_by_uid(connection.id, "uid-new")
    assert mapping.contact_id == contact.id
    assert mapping.sync_status == SyncStatus.SYNCED


@pytest.mark.asyncio
async def test_import_pending_restores_soft_deleted_contact(engine, store, server, connection):
    old = await store.create_contact(Contact(user_id="alice", uid="uid-back", name="Old"))
    await store.soft_delete_contact(old.id)
    server.put("back.vcf", make_vcard("uid-back", "Back", "Again"))
    await engine.discover_new_contacts("alice")

    result = await engine.import_pending("alice")

    assert result.imported == 1
    restored = await store.get_contact(old.id)
    assert restored is not None
    assert restored.name == "Back"
    assert len(await store.list_contacts("alice")) == 1


@pytest.mark.asyncio
async def test_export_contacts_skips_mapped(engine, store, server, connection):
    mapped, _ = await add_mapped_contact(store, server, connection)
    fresh = await store.create_contact(Contact(user_id="alice", name="Fresh"))

    result = await engine.export_contacts("alice", [mapped.id, fresh.id, "missing"])

    assert result.exported == 1
    assert result.errors == 1
    assert await store.get_mapping_for_contact(connection.id, fresh.id) is not None


@pytest.mark.asyncio
async def test_resolve_conflict_keep_remote(engine, store, server, connection):
    contact, mapping = await add_mapped_contact(store, server, connection, local_change=True)
    server.put("uid-1.vcf", make_vcard("uid-1", "Remote", "Doe"), etag='"B"')
    await engine.sync_from_server("alice")
    [conflict] = await store.list_conflicts(mapping.id)

    resolved = await engine.resolve_conflict("alice", conflict.id, ConflictResolution.KEEP_REMOTE)

    assert resolved.is_resolved
    assert resolved.resolution == ConflictResolution.KEEP_REMOTE
    assert (await store.get_contact(contact.id)).name == "Remote"
    assert (await store.get_mapping(mapping.id)).sync_status == SyncStatus.SYNCED
    assert await store.list_conflicts(mapping.id) == []


@pytest.mark.asyncio
async def test_resolve_conflict_keep_local_pushes(engine, store, server, connection):
    contact, mapping = await add_mapped_contact(store, server, connection, local_change=True)
    server.put("uid-1.vcf", make_vcard("uid-1", "Remote", "Doe"), etag='"B"')
    await engine.sync_from_server("alice")
    [conflict] = await store.list_conflicts(mapping.id)

    await engine.resolve_conflict("alice", conflict.id, "keep_local")

    assert "FN:John Doe" in server.cards[mapping.href].data
    stored = await store.get_mapping(mapping.id)
    assert stored.sync_status == SyncStatus.SYNCED
    assert stored.etag == server.cards[mapping.href].etag


@pytest.mark.asyncio
async def test_resolve_conflict_merged(engine, store, server, connection):
    contact, mapping = await add_mapped_contact(store, server, connection, local_change=True)
    server.put("uid-1.vcf", make_vcard("uid-1", "Remote", "Doe"), etag='"B"')
    await engine.sync_from_server("alice")
    [conflict] = await store.list_conflicts(mapping.id)

    with pytest.raises(ValueError):
        await engine.resolve_conflict("alice", conflict.id, ConflictResolution.MERGED)

    merged = ContactData(name="Merged", surname="Doe", uid="uid-1")
    await engine.resolve_conflict("alice", conflict.id, ConflictResolution.MERGED, merged=merged)

    assert (await store.get_contact(contact.id)).name == "Merged"
    assert "FN:Merged Doe" in server.cards[mapping.href].data


@pytest.mark.asyncio
async def test_resolve_conflict_errors(engine, store, server, connection):
    contact, mapping = await add_mapped_contact(store, server, connection, local_change=True)
    server.put("uid-1.vcf", make_vcard("uid-1", "Remote", "Doe"), etag='"B"')
    await engine.sync_from_server("alice")
    [conflict] = await store.list_conflicts(mapping.id)

    with pytest.raises(ConflictNotFoundError):
        await engine.resolve_conflict("alice", "no-such-conflict", "keep_local")

    await engine.resolve_conflict("alice", conflict.id, "keep_remote")
    with pytest.raises(ValueError, match="already resolved"):
        await engine.resolve_conflict("alice", conflict.id, "keep_remote")


@pytest.mark.asyncio
async def test_pull_refreshes_open_conflict_on_second_remote_change(engine, store, server, connection):
    contact, mapping = await add_mapped_contact(store, server, connection, local_change=True)
    server.put("uid-1.vcf", make_vcard("uid-1", "First", "Doe"), etag='"B"')
    await engine.sync_from_server("alice")
    server.put("uid-1.vcf", make_vcard("uid-1", "Second", "Doe"), etag='"C"')

    result = await engine.sync_from_server("alice")

    assert result.conflicts == 1
    [conflict] = await store.list_conflicts(mapping.id)
    assert '"Second"' in conflict.remote_version
    assert (await store.get_mapping(mapping.id)).etag == '"C"'


@pytest.mark.asyncio
async def test_pending_mapping_without_sync_time_counts_as_local_change(engine, store, server, connection):
    contact, mapping = await add_mapped_contact(store, server, connection)
    mapping.sync_status = SyncStatus.PENDING
    mapping.last_synced_at = None
    mapping.last_local_change = utcnow() - timedelta(minutes=1)
    await store.save_mapping(mapping)
    server.put("uid-1.vcf", make_vcard("uid-1", "Remote", "Doe"), etag='"B"')

    result = await engine.sync_from_server("alice")

    assert result.conflicts == 1
