"""Exceptions raised by the sync engine."""

from __future__ import annotations

from ..retry import ErrorCategory


class SyncError(Exception):
    """A sync pass failed at the connection level.

    The message is the categorized user-facing text, never the raw error.
    """

    def __init__(self, category: ErrorCategory, user_message: str) -> None:
        super().__init__(user_message)
        self.category = category
        self.user_message = user_message


class ConnectionNotFoundError(LookupError):
    def __init__(self, user_id: str) -> None:
        super().__init__(f"CardDAV connection not found for user {user_id}")
        self.user_id = user_id


class SyncDisabledError(Exception):
    def __init__(self) -> None:
        super().__init__("Sync is disabled for this connection")


class NoAddressBookError(Exception):
    def __init__(self) -> None:
        super().__init__("No address books found")


class ConflictNotFoundError(LookupError):
    def __init__(self, conflict_id: str) -> None:
        super().__init__(f"Conflict {conflict_id} not found")
        self.conflict_id = conflict_id


class ContactNotFoundError(LookupError):
    def __init__(self, contact_id: str) -> None:
        super().__init__(f"Contact {contact_id} not found")
        self.contact_id = contact_id
