"""In-memory record and photo stores, used by tests and the command-line tool."""

from __future__ import annotations

import copy
import re
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from ..models import (
    CHILD_TYPES,
    VCARD_SCALAR_FIELDS,
    Conflict,
    Connection,
    Contact,
    ContactData,
    Mapping,
    PendingImport,
    new_id,
    utcnow,
)

_DATA_URI = re.compile(r"^data:image/([\w.+-]+);base64,", re.IGNORECASE)


@dataclass
class _State:
    connections: dict[str, Connection] = field(default_factory=dict)
    contacts: dict[str, Contact] = field(default_factory=dict)
    mappings: dict[str, Mapping] = field(default_factory=dict)
    pending_imports: dict[str, PendingImport] = field(default_factory=dict)
    conflicts: dict[str, Conflict] = field(default_factory=dict)


def _assign_child_ids(contact: ContactData) -> None:
    for kind in CHILD_TYPES:
        for child in getattr(contact, kind):
            if child.id is None:
                child.id = new_id()


class MemoryRecordStore:
    """Dict-backed ``RecordStore`` with snapshot rollback for transactions."""

    def __init__(self) -> None:
        self._state = _State()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        snapshot = copy.deepcopy(self._state)
        try:
            yield
        except BaseException:
            self._state = snapshot
            raise

    # Connections

    async def get_connection(self, user_id: str) -> Connection | None:
        for connection in self._state.connections.values():
            if connection.user_id == user_id:
                return copy.deepcopy(connection)
        return None

    async def list_connections(self) -> list[Connection]:
        return [copy.deepcopy(c) for c in self._state.connections.values()]

    async def save_connection(self, connection: Connection) -> None:
        for existing in self._state.connections.values():
            if existing.user_id == connection.user_id and existing.id != connection.id:
                raise ValueError(f"user {connection.user_id} already has a connection")
        self._state.connections[connection.id] = copy.deepcopy(connection)

    # Contacts

    def _loaded(self, contact: Contact) -> Contact:
        loaded = copy.deepcopy(contact)
        for rel in loaded.relationships:
            related = self._state.contacts.get(rel.related_contact_id)
            rel.related_uid = related.uid if related and not related.is_deleted else None
        return loaded

    async def get_contact(self, contact_id: str, include_deleted: bool = False) -> Contact | None:
        contact = self._state.contacts.get(contact_id)
        if contact is None or (contact.is_deleted and not include_deleted):
            return None
        return self._loaded(contact)

    async def list_contacts(self, user_id: str) -> list[Contact]:
        return [
            self._loaded(c)
            for c in self._state.contacts.values()
            if c.user_id == user_id and not c.is_deleted
        ]

    async def find_deleted_contact_by_uid(self, user_id: str, uid: str) -> Contact | None:
        for contact in self._state.contacts.values():
            if contact.user_id == user_id and contact.uid == uid and contact.is_deleted:
                return self._loaded(contact)
        return None

    async def create_contact(self, contact: Contact) -> Contact:
        stored = copy.deepcopy(contact)
        _assign_child_ids(stored)
        self._state.contacts[stored.id] = stored
        return self._loaded(stored)

    async def save_contact(self, contact: Contact) -> None:
        if contact.id not in self._state.contacts:
            raise KeyError(contact.id)
        stored = copy.deepcopy(contact)
        _assign_child_ids(stored)
        stored.updated_at = utcnow()
        self._state.contacts[stored.id] = stored

    async def soft_delete_contact(self, contact_id: str) -> None:
        contact = self._state.contacts[contact_id]
        contact.deleted_at = utcnow()

    async def replace_contact_data(
        self, contact_id: str, data: ContactData, restore: bool = False
    ) -> Contact:
        async with self.transaction():
            contact = self._state.contacts.get(contact_id)
            if contact is None:
                raise KeyError(contact_id)

            for name in VCARD_SCALAR_FIELDS:
                setattr(contact, name, copy.deepcopy(getattr(data, name)))
            contact.name = contact.name or ""
            if data.uid:
                contact.uid = data.uid

            for kind in CHILD_TYPES:
                children = copy.deepcopy(getattr(data, kind))
                for child in children:
                    child.id = None
                setattr(contact, kind, children)
            _assign_child_ids(contact)

            if restore:
                contact.deleted_at = None
            contact.updated_at = utcnow()
            return self._loaded(contact)

    # Mappings

    async def get_mapping(self, mapping_id: str) -> Mapping | None:
        mapping = self._state.mappings.get(mapping_id)
        return copy.deepcopy(mapping) if mapping else None

    async def get_mapping_for_contact(self, connection_id: str, contact_id: str) -> Mapping | None:
        for mapping in self._state.mappings.values():
            if mapping.connection_id == connection_id and mapping.contact_id == contact_id:
                return copy.deepcopy(mapping)
        return None

    async def get_mapping_by_uid(self, connection_id: str, uid: str) -> Mapping | None:
        for mapping in self._state.mappings.values():
            if mapping.connection_id == connection_id and mapping.uid == uid:
                return copy.deepcopy(mapping)
        return None

    async def list_mappings(self, connection_id: str) -> list[Mapping]:
        return [
            copy.deepcopy(m) for m in self._state.mappings.values() if m.connection_id == connection_id
        ]

    async def save_mapping(self, mapping: Mapping) -> None:
        for existing in self._state.mappings.values():
            if existing.id == mapping.id or existing.connection_id != mapping.connection_id:
                continue
            if existing.uid == mapping.uid:
                raise ValueError(f"UID {mapping.uid} is already mapped on this connection")
            if existing.contact_id == mapping.contact_id:
                raise ValueError(f"contact {mapping.contact_id} is already mapped on this connection")
        self._state.mappings[mapping.id] = copy.deepcopy(mapping)

    async def delete_mapping(self, mapping_id: str) -> None:
        self._state.mappings.pop(mapping_id, None)

    # Pending imports

    async def list_pending_imports(self, connection_id: str) -> list[PendingImport]:
        return [
            copy.deepcopy(p)
            for p in self._state.pending_imports.values()
            if p.connection_id == connection_id
        ]

    async def add_pending_import(self, pending: PendingImport) -> bool:
        for existing in self._state.pending_imports.values():
            if existing.connection_id == pending.connection_id and existing.uid == pending.uid:
                return False
        self._state.pending_imports[pending.id] = copy.deepcopy(pending)
        return True

    async def delete_pending_import(self, pending_id: str) -> None:
        self._state.pending_imports.pop(pending_id, None)

    # Conflicts

    async def add_conflict(self, conflict: Conflict) -> None:
        self._state.conflicts[conflict.id] = copy.deepcopy(conflict)

    async def get_conflict(self, conflict_id: str) -> Conflict | None:
        conflict = self._state.conflicts.get(conflict_id)
        return copy.deepcopy(conflict) if conflict else None

    async def list_conflicts(self, mapping_id: str, unresolved_only: bool = True) -> list[Conflict]:
        return [
            copy.deepcopy(c)
            for c in self._state.conflicts.values()
            if c.mapping_id == mapping_id and not (unresolved_only and c.is_resolved)
        ]

    async def save_conflict(self, conflict: Conflict) -> None:
        self._state.conflicts[conflict.id] = copy.deepcopy(conflict)


class MemoryPhotoStore:
    """Keeps photos as data URIs keyed by a generated file name."""

    def __init__(self) -> None:
        self.photos: dict[str, str] = {}

    async def read_photo_as_data_uri(self, ref: str) -> str | None:
        return self.photos.get(ref)

    async def save_photo(self, user_id: str, contact_id: str, data: str) -> str | None:
        m = _DATA_URI.match(data)
        if not m:
            return None
        ext = m.group(1).lower().replace("jpeg", "jpg")
        ref = f"{user_id}/{contact_id}.{ext}"
        self.photos[ref] = data
        return ref
