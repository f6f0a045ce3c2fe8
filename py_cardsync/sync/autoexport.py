"""Push single contacts as they are created, edited or deleted.

These hooks run outside the batch sync loop, right after a local write.
"""

from __future__ import annotations

import logging

from ..carddav import VCard
from ..internal import HTTPError, is_not_found
from ..models import Mapping, SyncStatus, utcnow
from .engine import SyncEngine
from .errors import ContactNotFoundError

logger = logging.getLogger(__name__)


async def auto_export_contact(engine: SyncEngine, contact_id: str) -> Mapping | None:
    """Create a remote vCard for a newly created contact.

    Does nothing unless the owner's connection has sync and auto-export
    enabled and the contact is not mapped yet. If the contact gets deleted
    while the vCard is being created, the remote copy is deleted again.

    Args:
        engine: Sync engine holding the store and client factory
        contact_id: Contact that was just created

    Returns:
        The new mapping, or None when nothing was exported

    Raises:
        ContactNotFoundError: If the contact does not exist
        SyncError: If talking to the server failed
    """
    store = engine.store
    contact = await store.get_contact(contact_id)
    if contact is None:
        raise ContactNotFoundError(contact_id)

    connection = await store.get_connection(contact.user_id)
    if connection is None or not connection.sync_enabled or not connection.auto_export_new:
        return None
    if not contact.carddav_sync_enabled:
        return None

    async with engine.lock_for(connection.id):
        if await store.get_mapping_for_contact(connection.id, contact.id):
            return None

        async with engine.session(connection, mark_synced=False) as (client, address_book):
            mapped_hrefs = {m.href for m in await store.list_mappings(connection.id) if m.href}
            mapping = await engine.export_new_contact(connection, client, address_book, contact, mapped_hrefs)

            current = await store.get_contact(contact_id, include_deleted=True)
            if current is None or current.is_deleted:
                logger.info("Contact %s was deleted during export, removing %s", contact_id, mapping.href)
                await engine.retry(client.delete_vcard, VCard(url=mapping.href, etag=mapping.etag or ""))
                await store.delete_mapping(mapping.id)
                return None

    logger.info("Auto-exported contact %s to CardDAV", contact_id)
    return mapping


async def auto_update_contact(engine: SyncEngine, contact_id: str) -> Mapping | None:
    """Record a local edit and push it when sync is enabled.

    The mapping is always stamped with ``last_local_change`` so a later sync
    picks the edit up even if the immediate push is skipped or fails. A
    contact in conflict stays in conflict and is not pushed.

    Returns:
        The contact's mapping, or None if the contact is not exported
    """
    store = engine.store
    contact = await store.get_contact(contact_id)
    if contact is None:
        raise ContactNotFoundError(contact_id)

    connection = await store.get_connection(contact.user_id)
    if connection is None:
        return None

    mapping = await store.get_mapping_for_contact(connection.id, contact.id)
    if mapping is None:
        return await auto_export_contact(engine, contact_id)

    mapping.last_local_change = utcnow()
    if mapping.sync_status != SyncStatus.CONFLICT:
        mapping.sync_status = SyncStatus.PENDING
    await store.save_mapping(mapping)

    if not connection.sync_enabled or mapping.sync_status == SyncStatus.CONFLICT:
        return mapping
    if not contact.carddav_sync_enabled:
        return mapping

    async with engine.lock_for(connection.id):
        # A sync may have pushed the edit while we waited for the lock
        mapping = await store.get_mapping(mapping.id)
        if mapping is None or mapping.sync_status != SyncStatus.PENDING:
            return mapping
        async with engine.session(connection, mark_synced=False) as (client, address_book):
            await engine.push_mapping(client, address_book, mapping, contact)

    logger.info("Auto-updated contact %s on CardDAV", contact_id)
    return mapping


async def delete_from_server(engine: SyncEngine, contact_id: str) -> bool:
    """Delete a contact's remote vCard and drop its mapping.

    Works for soft-deleted contacts. A vCard already gone from the server
    counts as deleted.

    Returns:
        True if the contact was mapped and its mapping removed
    """
    store = engine.store
    contact = await store.get_contact(contact_id, include_deleted=True)
    if contact is None:
        raise ContactNotFoundError(contact_id)

    connection = await store.get_connection(contact.user_id)
    if connection is None:
        return False

    async with engine.lock_for(connection.id):
        mapping = await store.get_mapping_for_contact(connection.id, contact.id)
        if mapping is None:
            return False

        if mapping.href and connection.sync_enabled:
            try:
                async with engine.client_factory(connection) as client:
                    await engine.retry(client.delete_vcard, VCard(url=mapping.href, etag=mapping.etag or ""))
            except HTTPError as e:
                if not is_not_found(e) and e.code != 410:
                    raise await engine.record_failure(connection, e) from e
                logger.debug("vCard %s already gone from server", mapping.href)
            except Exception as e:
                raise await engine.record_failure(connection, e) from e

        await store.delete_mapping(mapping.id)

    logger.info("Deleted contact %s from CardDAV", contact_id)
    return True
