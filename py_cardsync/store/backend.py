"""Record store and photo store interfaces consumed by the sync engine."""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from typing import Protocol

from ..models import Conflict, Connection, Contact, ContactData, Mapping, PendingImport


class RecordStore(Protocol):
    """Persistent storage for contacts and sync bookkeeping.

    Contact lookups hide soft-deleted contacts unless asked otherwise.
    Returned records are detached copies; call the matching save method to
    persist changes.
    """

    def transaction(self) -> AbstractAsyncContextManager[None]:
        """Group writes atomically. Everything rolls back if the block raises."""
        ...

    # Connections

    async def get_connection(self, user_id: str) -> Connection | None:
        """Get the user's CardDAV connection (at most one per user)."""
        ...

    async def list_connections(self) -> list[Connection]:
        ...

    async def save_connection(self, connection: Connection) -> None:
        ...

    # Contacts

    async def get_contact(self, contact_id: str, include_deleted: bool = False) -> Contact | None:
        """Get a contact with children, groups and relationships loaded.

        Relationships carry the related contact's UID in ``related_uid``.
        """
        ...

    async def list_contacts(self, user_id: str) -> list[Contact]:
        """List the user's live contacts, fully loaded."""
        ...

    async def find_deleted_contact_by_uid(self, user_id: str, uid: str) -> Contact | None:
        ...

    async def create_contact(self, contact: Contact) -> Contact:
        ...

    async def save_contact(self, contact: Contact) -> None:
        """Persist scalar fields of an existing contact."""
        ...

    async def soft_delete_contact(self, contact_id: str) -> None:
        """Set ``deleted_at``; the contact disappears from default lookups."""
        ...

    async def replace_contact_data(
        self, contact_id: str, data: ContactData, restore: bool = False
    ) -> Contact:
        """Overwrite scalar fields and replace every child collection.

        Children are deleted and recreated from ``data`` in one atomic step.
        Groups and relationships are left alone.

        Args:
            contact_id: Contact to update
            data: New field values
            restore: Clear ``deleted_at`` as part of the same write

        Returns:
            The updated contact
        """
        ...

    # Mappings

    async def get_mapping(self, mapping_id: str) -> Mapping | None:
        ...

    async def get_mapping_for_contact(self, connection_id: str, contact_id: str) -> Mapping | None:
        ...

    async def get_mapping_by_uid(self, connection_id: str, uid: str) -> Mapping | None:
        ...

    async def list_mappings(self, connection_id: str) -> list[Mapping]:
        ...

    async def save_mapping(self, mapping: Mapping) -> None:
        """Insert or update a mapping.

        Raises:
            ValueError: If another mapping of the connection already uses the UID
        """
        ...

    async def delete_mapping(self, mapping_id: str) -> None:
        ...

    # Pending imports

    async def list_pending_imports(self, connection_id: str) -> list[PendingImport]:
        ...

    async def add_pending_import(self, pending: PendingImport) -> bool:
        """Insert a pending import. Returns False if (connection, uid) already exists."""
        ...

    async def delete_pending_import(self, pending_id: str) -> None:
        ...

    # Conflicts

    async def add_conflict(self, conflict: Conflict) -> None:
        ...

    async def get_conflict(self, conflict_id: str) -> Conflict | None:
        ...

    async def list_conflicts(self, mapping_id: str, unresolved_only: bool = True) -> list[Conflict]:
        ...

    async def save_conflict(self, conflict: Conflict) -> None:
        ...


class PhotoStore(Protocol):
    """Blob storage for contact photos."""

    async def read_photo_as_data_uri(self, ref: str) -> str | None:
        """Load a stored photo as a ``data:`` URI, or None if missing."""
        ...

    async def save_photo(self, user_id: str, contact_id: str, data: str) -> str | None:
        """Store a photo given as a data URI.

        Returns:
            Reference to keep in ``Contact.photo``, or None if nothing was stored
        """
        ...
