"""Bidirectional CardDAV synchronization."""

from .autoexport import auto_export_contact, auto_update_contact, delete_from_server
from .engine import SyncEngine, contact_from_parsed
from .errors import (
    ConflictNotFoundError,
    ConnectionNotFoundError,
    ContactNotFoundError,
    NoAddressBookError,
    SyncDisabledError,
    SyncError,
)
from .progress import ProgressRecorder, SyncPhase, SyncProgress
from .scheduler import run_scheduled_sync, should_sync_now

__all__ = [
    "ConflictNotFoundError",
    "ConnectionNotFoundError",
    "ContactNotFoundError",
    "NoAddressBookError",
    "ProgressRecorder",
    "SyncDisabledError",
    "SyncEngine",
    "SyncError",
    "SyncPhase",
    "SyncProgress",
    "auto_export_contact",
    "auto_update_contact",
    "contact_from_parsed",
    "delete_from_server",
    "run_scheduled_sync",
    "should_sync_now",
]
