"""Bidirectional synchronization between the record store and a CardDAV server.

Each mapping moves through ``pending -> synced <-> conflict``. A pull pass
applies remote edits, a push pass sends local edits, and conflicts stay put
until ``SyncEngine.resolve_conflict`` settles them.
"""

from __future__ import annotations

import asyncio
import copy
import functools
import json
import logging
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from contextlib import asynccontextmanager
from urllib.parse import unquote

from ..carddav import AddressBook, CardDAVClient, VCard
from ..config import Settings
from ..hashing import build_local_hash, hash_parsed_contact
from ..internal import is_precondition_failed
from ..models import (
    CHILD_TYPES,
    VCARD_SCALAR_FIELDS,
    Conflict,
    ConflictResolution,
    Connection,
    Contact,
    ContactData,
    DiscoveryResult,
    Mapping,
    PendingImport,
    Relationship,
    SyncResult,
    SyncStatus,
    utcnow,
)
from ..retry import RetryOptions, categorize_error, with_retry
from ..store import PhotoStore, RecordStore
from ..vcard import ParsedContact, VCardOptions, contact_to_vcard, format_full_name, parse_vcard
from ..vcard.parser import parse_properties
from .errors import (
    ConflictNotFoundError,
    ConnectionNotFoundError,
    NoAddressBookError,
    SyncDisabledError,
    SyncError,
)
from .progress import ProgressCallback, SyncPhase, SyncProgress, emit

logger = logging.getLogger(__name__)

ClientFactory = Callable[[Connection], CardDAVClient]
SyncPass = Callable[[Connection, CardDAVClient, AddressBook, ProgressCallback | None], Awaitable[SyncResult]]


def _local_changed(mapping: Mapping) -> bool:
    return mapping.sync_status == SyncStatus.PENDING or mapping.has_local_change


def _vcard_property(text: str, name: str) -> str | None:
    for prop in parse_properties(text):
        if prop.name.upper() == name:
            return prop.text
    return None


def _apply_extras(contact: Contact, parsed: ParsedContact) -> None:
    """Copy reminder settings carried in X-NAMETAG properties."""
    if parsed.contact_reminder_enabled is not None:
        contact.contact_reminder_enabled = parsed.contact_reminder_enabled
    if parsed.contact_reminder_interval is not None:
        contact.contact_reminder_interval = parsed.contact_reminder_interval
    if parsed.contact_reminder_interval_unit is not None:
        contact.contact_reminder_interval_unit = parsed.contact_reminder_interval_unit


def contact_from_parsed(user_id: str, parsed: ParsedContact) -> Contact:
    """Build a new local contact from a decoded vCard."""
    contact = Contact(user_id=user_id, uid=parsed.uid, groups=list(parsed.categories))
    for name in VCARD_SCALAR_FIELDS:
        setattr(contact, name, copy.deepcopy(getattr(parsed, name)))
    contact.name = contact.name or ""
    for kind in CHILD_TYPES:
        setattr(contact, kind, copy.deepcopy(getattr(parsed, kind)))
    _apply_extras(contact, parsed)
    return contact


class SyncEngine:
    """Runs sync passes for the connections kept in a record store.

    Runs for the same connection are serialized with a per-connection lock;
    different connections may sync concurrently.
    """

    def __init__(
        self,
        store: RecordStore,
        client_factory: ClientFactory | None = None,
        photos: PhotoStore | None = None,
        settings: Settings | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            store: Contacts and sync bookkeeping
            client_factory: Builds a CardDAV client for a connection
                (defaults to ``CardDAVClient.from_connection``)
            photos: Blob store for contact photos, if photos live outside
                the contact record
            settings: Runtime configuration
        """
        self.store = store
        self.settings = settings or Settings()
        self.client_factory = client_factory or functools.partial(
            CardDAVClient.from_connection, settings=self.settings
        )
        self.photos = photos
        self.retry_options = RetryOptions(
            max_attempts=self.settings.retry_attempts,
            initial_delay=self.settings.retry_initial_delay,
            max_delay=self.settings.retry_max_delay,
        )
        self._locks: dict[str, asyncio.Lock] = {}

    def lock_for(self, connection_id: str) -> asyncio.Lock:
        return self._locks.setdefault(connection_id, asyncio.Lock())

    async def retry(self, operation: Callable[..., Awaitable], *args):
        """Call a remote operation under the engine's retry policy."""
        return await with_retry(lambda: operation(*args), self.retry_options)

    async def connection_for(self, user_id: str, require_enabled: bool = True) -> Connection:
        connection = await self.store.get_connection(user_id)
        if connection is None:
            raise ConnectionNotFoundError(user_id)
        if require_enabled and not connection.sync_enabled:
            raise SyncDisabledError()
        return connection

    # Connection bookkeeping

    async def record_failure(self, connection: Connection, error: BaseException) -> SyncError:
        """Persist a connection-level failure and build the error to raise.

        Only the categorized user message is stored, never the raw error text.
        """
        categorized = categorize_error(error)
        logger.error(
            "CardDAV sync failed for connection %s (%s): %s",
            connection.id,
            categorized.category.value,
            categorized.message,
        )
        current = await self.store.get_connection(connection.user_id) or connection
        current.last_error = categorized.user_message
        current.last_error_at = utcnow()
        await self.store.save_connection(current)
        return SyncError(categorized.category, categorized.user_message)

    async def _record_success(self, connection: Connection, address_book: AddressBook) -> None:
        current = await self.store.get_connection(connection.user_id) or connection
        current.last_sync_at = utcnow()
        current.last_error = None
        current.last_error_at = None
        if address_book.sync_token:
            current.sync_token = address_book.sync_token
        await self.store.save_connection(current)

    @asynccontextmanager
    async def session(
        self, connection: Connection, mark_synced: bool = True
    ) -> AsyncIterator[tuple[CardDAVClient, AddressBook]]:
        """Open a client and locate the connection's first address book.

        Any error escaping the block is a connection-level failure: it is
        recorded on the connection and re-raised as ``SyncError``.

        Args:
            connection: Connection to talk to
            mark_synced: Stamp ``last_sync_at`` and clear ``last_error`` when
                the block completes
        """
        try:
            async with self.client_factory(connection) as client:
                books = await self.retry(client.discover_address_books)
                if not books:
                    raise NoAddressBookError()
                address_book = books[0]
                yield client, address_book
        except SyncError:
            raise
        except Exception as e:
            raise await self.record_failure(connection, e) from e

        if mark_synced:
            await self._record_success(connection, address_book)

    async def _run(
        self, connection: Connection, progress: ProgressCallback | None, *passes: tuple[SyncPhase, SyncPass]
    ) -> SyncResult:
        """Run passes in one session; progress and errors carry the phase of the pass at hand."""
        result = SyncResult()
        phase = passes[0][0]
        try:
            async with self.session(connection) as (client, address_book):
                for phase, sync_pass in passes:
                    result += await sync_pass(connection, client, address_book, progress)
        except SyncError as e:
            await emit(progress, SyncProgress(phase, error=e.user_message))
            raise

        await emit(progress, SyncProgress(phase, step="Sync complete", complete=True))
        logger.info(
            "Sync of connection %s finished: %d imported, %d exported, %d updated locally, "
            "%d updated remotely, %d conflicts, %d errors",
            connection.id,
            result.imported,
            result.exported,
            result.updated_locally,
            result.updated_remotely,
            result.conflicts,
            result.errors,
        )
        return result

    # Serialization

    async def render(self, contact: Contact) -> str:
        """Serialize a contact, embedding its photo from the blob store."""
        photo = None
        if contact.photo and self.photos is not None and not contact.photo.startswith(
            ("data:", "http://", "https://")
        ):
            photo = await self.photos.read_photo_as_data_uri(contact.photo)
        options = VCardOptions(
            version=self.settings.vcard_version,
            strip_markdown=self.settings.strip_markdown,
        )
        return contact_to_vcard(contact, options, photo=photo)

    async def _store_photo(self, contact: Contact) -> None:
        if self.photos is None or not contact.photo or not contact.photo.startswith("data:"):
            return
        ref = await self.photos.save_photo(contact.user_id, contact.id, contact.photo)
        if ref:
            contact.photo = ref
            await self.store.save_contact(contact)

    # Discovery

    async def _add_pending(self, connection: Connection, card: VCard, parsed: ParsedContact) -> bool:
        return await self.store.add_pending_import(
            PendingImport(
                connection_id=connection.id,
                uid=parsed.uid,
                href=card.url,
                vcard_data=card.data,
                display_name=parsed.display_name(),
                etag=card.etag or None,
            )
        )

    async def discover_new_contacts(
        self, user_id: str, progress: ProgressCallback | None = None
    ) -> DiscoveryResult:
        """Record remote vCards that have no local contact as pending imports.

        Pending imports whose UID vanished from the server, and is not mapped
        either, are removed.
        """
        connection = await self.connection_for(user_id)
        result = DiscoveryResult()

        async with self.lock_for(connection.id):
            try:
                async with self.session(connection) as (client, address_book):
                    cards = await self.retry(client.list_vcards, address_book)
                    mapped_uids = {m.uid for m in await self.store.list_mappings(connection.id)}
                    pending = await self.store.list_pending_imports(connection.id)
                    pending_uids = {p.uid for p in pending}
                    server_uids: set[str] = set()

                    for index, card in enumerate(cards, 1):
                        try:
                            parsed = parse_vcard(card.data)
                            await emit(
                                progress,
                                SyncProgress(
                                    SyncPhase.DISCOVER,
                                    "Scanning address book",
                                    index,
                                    len(cards),
                                    parsed.display_name(),
                                ),
                            )
                            if not parsed.uid:
                                logger.warning("vCard %s has no UID, skipping", card.url)
                                result.errors += 1
                                result.error_messages.append(f"{card.url}: missing UID")
                                continue
                            server_uids.add(parsed.uid)
                            if parsed.uid in mapped_uids or parsed.uid in pending_uids:
                                continue
                            if await self._add_pending(connection, card, parsed):
                                pending_uids.add(parsed.uid)
                                result.discovered += 1
                        except Exception as e:
                            logger.exception("Error processing vCard %s", card.url)
                            result.errors += 1
                            result.error_messages.append(f"{card.url}: {e}")

                    for item in pending:
                        if item.uid not in server_uids and item.uid not in mapped_uids:
                            logger.info("Removing pending import %s, gone from server", item.uid)
                            await self.store.delete_pending_import(item.id)
                            result.removed += 1
            except SyncError as e:
                await emit(progress, SyncProgress(SyncPhase.DISCOVER, error=e.user_message))
                raise

        await emit(progress, SyncProgress(SyncPhase.DISCOVER, step="Discovery complete", complete=True))
        logger.info(
            "Discovery for connection %s: %d new, %d removed, %d errors",
            connection.id,
            result.discovered,
            result.removed,
            result.errors,
        )
        return result

    # Pull

    async def sync_from_server(self, user_id: str, progress: ProgressCallback | None = None) -> SyncResult:
        """Apply remote changes to mapped contacts.

        Unmapped remote vCards become pending imports instead of local writes.
        """
        connection = await self.connection_for(user_id)
        async with self.lock_for(connection.id):
            return await self._run(connection, progress, (SyncPhase.PULL, self._pull))

    async def _pull(
        self,
        connection: Connection,
        client: CardDAVClient,
        address_book: AddressBook,
        progress: ProgressCallback | None,
    ) -> SyncResult:
        result = SyncResult()
        cards = await self.retry(client.list_vcards, address_book)
        mappings = {m.uid: m for m in await self.store.list_mappings(connection.id)}
        pending_uids = {p.uid for p in await self.store.list_pending_imports(connection.id)}

        for index, card in enumerate(cards, 1):
            try:
                parsed = parse_vcard(card.data)
                await emit(
                    progress,
                    SyncProgress(
                        SyncPhase.PULL, "Checking remote contacts", index, len(cards), parsed.display_name()
                    ),
                )
                if not parsed.uid:
                    logger.warning("vCard %s has no UID, skipping", card.url)
                    result.record_error(f"{card.url}: missing UID")
                    continue

                mapping = mappings.get(parsed.uid)
                if mapping is None:
                    if parsed.uid not in pending_uids and await self._add_pending(connection, card, parsed):
                        pending_uids.add(parsed.uid)
                        result.pending_imports += 1
                    continue

                if mapping.etag == card.etag:
                    continue

                if mapping.sync_status == SyncStatus.CONFLICT or _local_changed(mapping):
                    await self._record_conflict(mapping, parsed, card)
                    result.conflicts += 1
                else:
                    await self._apply_remote(mapping, parsed, card)
                    result.updated_locally += 1
            except Exception as e:
                logger.exception("Failed to pull vCard %s", card.url)
                result.record_error(f"{card.url}: {e}")

        return result

    async def _record_conflict(self, mapping: Mapping, parsed: ParsedContact, card: VCard) -> None:
        contact = await self.store.get_contact(mapping.contact_id, include_deleted=True)
        local_snapshot = json.dumps(contact.to_dict() if contact else {}, sort_keys=True)
        remote_snapshot = parsed.to_json()

        async with self.store.transaction():
            open_conflicts = await self.store.list_conflicts(mapping.id)
            if open_conflicts:
                # Still unresolved, refresh the remote side instead of stacking records
                conflict = open_conflicts[-1]
                conflict.local_version = local_snapshot
                conflict.remote_version = remote_snapshot
                await self.store.save_conflict(conflict)
            else:
                await self.store.add_conflict(
                    Conflict(
                        mapping_id=mapping.id,
                        local_version=local_snapshot,
                        remote_version=remote_snapshot,
                    )
                )

            # Adopt the remote identity so the same change is not detected again
            mapping.sync_status = SyncStatus.CONFLICT
            mapping.etag = card.etag or None
            mapping.href = card.url
            mapping.remote_version = hash_parsed_contact(parsed)
            mapping.last_remote_change = utcnow()
            await self.store.save_mapping(mapping)

        logger.info("Conflict detected for contact %s (UID %s)", mapping.contact_id, mapping.uid)

    async def _apply_remote(self, mapping: Mapping, parsed: ParsedContact, card: VCard) -> Contact:
        async with self.store.transaction():
            contact = await self.store.replace_contact_data(mapping.contact_id, parsed)
            _apply_extras(contact, parsed)
            await self.store.save_contact(contact)

            now = utcnow()
            mapping.etag = card.etag or None
            mapping.href = card.url
            mapping.sync_status = SyncStatus.SYNCED
            mapping.last_synced_at = now
            mapping.last_remote_change = now
            mapping.local_version = build_local_hash(contact)
            mapping.remote_version = hash_parsed_contact(parsed)
            await self.store.save_mapping(mapping)

        await self._store_photo(contact)
        logger.debug("Updated contact %s from %s", contact.id, card.url)
        return contact

    # Push

    async def sync_to_server(self, user_id: str, progress: ProgressCallback | None = None) -> SyncResult:
        """Send local changes, and export contacts that were never mapped."""
        connection = await self.connection_for(user_id)
        async with self.lock_for(connection.id):
            return await self._run(connection, progress, (SyncPhase.PUSH, self._push))

    async def bidirectional_sync(self, user_id: str, progress: ProgressCallback | None = None) -> SyncResult:
        """Pull fully, then push fully. Counts are summed over both passes."""
        connection = await self.connection_for(user_id)
        async with self.lock_for(connection.id):
            return await self._run(
                connection, progress, (SyncPhase.PULL, self._pull), (SyncPhase.PUSH, self._push)
            )

    async def _push(
        self,
        connection: Connection,
        client: CardDAVClient,
        address_book: AddressBook,
        progress: ProgressCallback | None,
    ) -> SyncResult:
        result = SyncResult()
        mappings = await self.store.list_mappings(connection.id)
        contacts = {c.id: c for c in await self.store.list_contacts(connection.user_id)}
        mapped_ids = {m.contact_id for m in mappings}
        mapped_hrefs = {m.href for m in mappings if m.href}

        changed = [m for m in mappings if m.sync_status != SyncStatus.CONFLICT and _local_changed(m)]
        unmapped = [c for c in contacts.values() if c.id not in mapped_ids and c.carddav_sync_enabled]
        total = len(changed) + len(unmapped)
        current = 0

        for mapping in changed:
            current += 1
            contact = contacts.get(mapping.contact_id)
            if contact is None or not contact.carddav_sync_enabled:
                logger.debug("Skipping mapping %s, contact deleted or excluded from sync", mapping.id)
                continue
            await emit(
                progress,
                SyncProgress(SyncPhase.PUSH, "Uploading changes", current, total, contact.display_name()),
            )
            try:
                first_export = not mapping.href
                await self.push_mapping(client, address_book, mapping, contact)
                mapped_hrefs.add(mapping.href)
                if first_export:
                    result.exported += 1
                else:
                    result.updated_remotely += 1
            except Exception as e:
                if is_precondition_failed(e):
                    logger.warning("Remote copy of contact %s changed since the last pull, not pushed", contact.id)
                else:
                    logger.exception("Failed to push contact %s", contact.id)
                result.record_error(f"{contact.display_name()}: {e}")

        for contact in unmapped:
            current += 1
            await emit(
                progress,
                SyncProgress(SyncPhase.PUSH, "Exporting new contacts", current, total, contact.display_name()),
            )
            try:
                await self.export_new_contact(connection, client, address_book, contact, mapped_hrefs)
                result.exported += 1
            except Exception as e:
                logger.exception("Failed to export contact %s", contact.id)
                result.record_error(f"{contact.display_name()}: {e}")

        return result

    def _mark_synced(self, mapping: Mapping, remote: VCard, contact: Contact) -> None:
        mapping.href = remote.url
        mapping.etag = remote.etag or None
        mapping.sync_status = SyncStatus.SYNCED
        mapping.last_synced_at = utcnow()
        mapping.local_version = build_local_hash(contact)

    async def push_mapping(
        self, client: CardDAVClient, address_book: AddressBook, mapping: Mapping, contact: Contact
    ) -> Mapping:
        """Upload a mapped contact: update when it has an href, create otherwise."""
        if not contact.uid:
            contact = copy.copy(contact)
            contact.uid = mapping.uid
        data = await self.render(contact)

        if mapping.href:
            remote = await self.retry(
                client.update_vcard, VCard(url=mapping.href, etag=mapping.etag or ""), data
            )
        else:
            remote = await self.retry(client.create_vcard, address_book, data, f"{mapping.uid}.vcf")

        self._mark_synced(mapping, remote, contact)
        await self.store.save_mapping(mapping)
        return mapping

    async def _set_uid(self, contact_id: str, uid: str) -> None:
        # Re-read so a concurrent soft delete is not undone by the save
        current = await self.store.get_contact(contact_id)
        if current is not None and current.uid != uid:
            current.uid = uid
            await self.store.save_contact(current)

    async def export_new_contact(
        self,
        connection: Connection,
        client: CardDAVClient,
        address_book: AddressBook,
        contact: Contact,
        mapped_hrefs: set[str],
    ) -> Mapping:
        """Create a remote vCard for an unmapped contact and map it.

        Args:
            connection: Connection the mapping belongs to
            client: Open CardDAV client
            address_book: Target address book
            contact: Contact without a mapping
            mapped_hrefs: Hrefs already mapped on the connection, updated in place

        Returns:
            The new mapping
        """
        if not contact.uid:
            contact.uid = str(uuid.uuid4())
            await self._set_uid(contact.id, contact.uid)

        data = await self.render(contact)
        created = await self.retry(client.create_vcard, address_book, data, f"{contact.uid}.vcf")
        created, uid = await self._reconcile_created(client, address_book, created, contact, mapped_hrefs)
        if uid != contact.uid:
            contact.uid = uid
            await self._set_uid(contact.id, uid)

        mapping = Mapping(connection_id=connection.id, contact_id=contact.id, uid=uid)
        self._mark_synced(mapping, created, contact)
        await self.store.save_mapping(mapping)
        mapped_hrefs.add(mapping.href)
        logger.debug("Exported contact %s to %s", contact.id, mapping.href)
        return mapping

    async def _reconcile_created(
        self,
        client: CardDAVClient,
        address_book: AddressBook,
        created: VCard,
        contact: Contact,
        mapped_hrefs: set[str],
    ) -> tuple[VCard, str]:
        """Recover the server's URL and UID when it rewrote a new resource.

        The address book is listed again and the new vCard is found by its URL
        or by its FN among unmapped resources. Failure is logged and the PUT
        response is kept.
        """
        requested = f"{contact.uid}.vcf"
        if created.etag and unquote(created.url).rstrip("/").endswith(requested):
            return created, contact.uid

        try:
            cards = await self.retry(client.list_vcards, address_book)
        except Exception as e:
            logger.warning("Could not re-read address book after creating %s: %s", created.url, e)
            return created, contact.uid

        full_name = format_full_name(contact)
        candidates = [c for c in cards if c.url not in mapped_hrefs]
        match = next((c for c in candidates if c.url == created.url), None)
        if match is None:
            match = next((c for c in candidates if _vcard_property(c.data, "FN") == full_name), None)
        if match is None:
            logger.warning("Created vCard for contact %s not found when re-reading the address book", contact.id)
            return created, contact.uid

        uid = _vcard_property(match.data, "UID") or contact.uid
        if match.url != created.url or uid != contact.uid:
            logger.info("Server rewrote new vCard %s to %s (UID %s)", created.url, match.url, uid)
        return VCard(url=match.url, etag=match.etag or created.etag, data=match.data), uid

    # Bulk import and export

    async def import_pending(
        self, user_id: str, uids: Iterable[str] | None = None, progress: ProgressCallback | None = None
    ) -> SyncResult:
        """Turn pending imports into local contacts with mappings.

        A soft-deleted contact with the same UID is restored instead of
        creating a duplicate.

        Args:
            user_id: Owner of the connection
            uids: UIDs to import, or None for every pending import

        Returns:
            Result with ``imported`` and per-item errors
        """
        connection = await self.connection_for(user_id, require_enabled=False)
        result = SyncResult()

        async with self.lock_for(connection.id):
            pending = await self.store.list_pending_imports(connection.id)
            if uids is not None:
                wanted = set(uids)
                pending = [p for p in pending if p.uid in wanted]
            known = {c.uid: c.id for c in await self.store.list_contacts(user_id) if c.uid}

            for index, item in enumerate(pending, 1):
                await emit(
                    progress,
                    SyncProgress(SyncPhase.IMPORT, "Importing contacts", index, len(pending), item.display_name),
                )
                try:
                    if await self._import_one(connection, item, known):
                        result.imported += 1
                except Exception as e:
                    logger.exception("Failed to import vCard %s", item.uid)
                    result.record_error(f"{item.display_name}: {e}")

        await emit(progress, SyncProgress(SyncPhase.IMPORT, step="Import complete", complete=True))
        return result

    async def _import_one(self, connection: Connection, item: PendingImport, known: dict[str, str]) -> Contact | None:
        parsed = parse_vcard(item.vcard_data)
        uid = parsed.uid = parsed.uid or item.uid

        if await self.store.get_mapping_by_uid(connection.id, uid):
            logger.info("UID %s is already mapped, dropping pending import", uid)
            await self.store.delete_pending_import(item.id)
            return None

        async with self.store.transaction():
            existing_id = known.get(uid)
            if existing_id is None:
                deleted = await self.store.find_deleted_contact_by_uid(connection.user_id, uid)
                existing_id = deleted.id if deleted else None

            if existing_id is not None:
                contact = await self.store.replace_contact_data(existing_id, parsed, restore=True)
                contact.groups = list(dict.fromkeys([*contact.groups, *parsed.categories]))
                _apply_extras(contact, parsed)
            else:
                contact = await self.store.create_contact(contact_from_parsed(connection.user_id, parsed))

            self._link_relationships(contact, parsed, known)
            await self.store.save_contact(contact)

            now = utcnow()
            await self.store.save_mapping(
                Mapping(
                    connection_id=connection.id,
                    contact_id=contact.id,
                    uid=uid,
                    href=item.href,
                    etag=item.etag,
                    sync_status=SyncStatus.SYNCED,
                    last_synced_at=now,
                    last_remote_change=now,
                    local_version=build_local_hash(contact),
                    remote_version=hash_parsed_contact(parsed),
                )
            )
            await self.store.delete_pending_import(item.id)

        known[uid] = contact.id
        await self._store_photo(contact)
        return contact

    def _link_relationships(self, contact: Contact, parsed: ParsedContact, known: dict[str, str]) -> None:
        linked = {r.related_contact_id for r in contact.relationships}
        known_ids = set(known.values())

        for edge in parsed.relationships:
            related_id = edge.get("personId")
            if related_id in known_ids and related_id != contact.id and related_id not in linked:
                contact.relationships.append(
                    Relationship(
                        related_contact_id=related_id,
                        relationship_type_id=edge.get("typeId"),
                        notes=edge.get("notes"),
                    )
                )
                linked.add(related_id)

        for related_uid in parsed.related_uids:
            related_id = known.get(related_uid)
            if related_id and related_id != contact.id and related_id not in linked:
                contact.relationships.append(Relationship(related_contact_id=related_id, related_uid=related_uid))
                linked.add(related_id)

    async def export_contacts(
        self, user_id: str, contact_ids: Iterable[str], progress: ProgressCallback | None = None
    ) -> SyncResult:
        """Export chosen contacts that have no mapping yet."""
        connection = await self.connection_for(user_id)
        export = functools.partial(self._export, contact_ids=list(contact_ids))
        async with self.lock_for(connection.id):
            return await self._run(connection, progress, (SyncPhase.EXPORT, export))

    async def _export(
        self,
        connection: Connection,
        client: CardDAVClient,
        address_book: AddressBook,
        progress: ProgressCallback | None,
        contact_ids: list[str],
    ) -> SyncResult:
        result = SyncResult()
        mappings = await self.store.list_mappings(connection.id)
        mapped_ids = {m.contact_id for m in mappings}
        mapped_hrefs = {m.href for m in mappings if m.href}

        for index, contact_id in enumerate(contact_ids, 1):
            contact = await self.store.get_contact(contact_id)
            if contact is None or contact.user_id != connection.user_id:
                result.record_error(f"Contact {contact_id} not found")
                continue
            if contact_id in mapped_ids:
                logger.debug("Contact %s is already exported", contact_id)
                continue
            await emit(
                progress,
                SyncProgress(SyncPhase.EXPORT, "Exporting contacts", index, len(contact_ids), contact.display_name()),
            )
            try:
                await self.export_new_contact(connection, client, address_book, contact, mapped_hrefs)
                mapped_ids.add(contact_id)
                result.exported += 1
            except Exception as e:
                logger.exception("Failed to export contact %s", contact_id)
                result.record_error(f"{contact.display_name()}: {e}")

        return result

    # Conflicts

    async def resolve_conflict(
        self,
        user_id: str,
        conflict_id: str,
        resolution: ConflictResolution | str,
        merged: ContactData | None = None,
    ) -> Conflict:
        """Settle a conflict. This is the only way out of the conflict state.

        ``keep_remote`` applies the remote snapshot and marks the mapping
        synced. ``keep_local`` and ``merged`` mark the mapping pending and
        push right away when sync is enabled.

        Args:
            user_id: Owner of the connection
            conflict_id: Conflict to resolve
            resolution: Which side wins
            merged: Contact data to keep, required for ``merged``

        Raises:
            ConflictNotFoundError: If the conflict does not exist or belongs
                to another user
            ValueError: If the conflict is already resolved, or ``merged``
                data is missing
        """
        resolution = ConflictResolution(resolution)
        if resolution is ConflictResolution.MERGED and merged is None:
            raise ValueError("Merged resolution requires merged contact data")

        connection = await self.connection_for(user_id, require_enabled=False)
        async with self.lock_for(connection.id):
            conflict = await self.store.get_conflict(conflict_id)
            mapping = await self.store.get_mapping(conflict.mapping_id) if conflict else None
            if conflict is None or mapping is None or mapping.connection_id != connection.id:
                raise ConflictNotFoundError(conflict_id)
            if conflict.is_resolved:
                raise ValueError("Conflict already resolved")

            now = utcnow()
            conflict.resolved_at = now
            conflict.resolution = resolution
            conflict.resolved_by = "user"
            contact = None

            async with self.store.transaction():
                if resolution is ConflictResolution.KEEP_REMOTE:
                    remote = ParsedContact.from_json(conflict.remote_version)
                    contact = await self.store.replace_contact_data(mapping.contact_id, remote)
                    mapping.sync_status = SyncStatus.SYNCED
                    mapping.last_synced_at = now
                    mapping.last_remote_change = now
                    mapping.local_version = build_local_hash(contact)
                else:
                    if resolution is ConflictResolution.MERGED:
                        await self.store.replace_contact_data(mapping.contact_id, merged)
                    mapping.sync_status = SyncStatus.PENDING
                    mapping.last_local_change = now

                await self.store.save_conflict(conflict)
                await self.store.save_mapping(mapping)

            if contact is not None:
                await self._store_photo(contact)

        logger.info("Resolved conflict %s with %s", conflict_id, resolution.value)

        if mapping.sync_status == SyncStatus.PENDING and connection.sync_enabled:
            try:
                await self.sync_to_server(user_id)
            except SyncError as e:
                logger.warning("Push after resolving conflict %s failed: %s", conflict_id, e)

        return conflict
