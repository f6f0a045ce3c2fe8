"""CardDAV contact synchronization and a vCard 3.0/4.0 codec."""

from .carddav import AddressBook, CardDAVClient, VCard
from .config import Settings
from .models import (
    Conflict,
    ConflictResolution,
    Connection,
    Contact,
    Mapping,
    PendingImport,
    SyncResult,
    SyncStatus,
)
from .sync import SyncEngine, SyncError
from .vcard import contact_to_vcard, parse_vcard

__version__ = "0.1.0"

__all__ = [
    "AddressBook",
    "CardDAVClient",
    "Conflict",
    "ConflictResolution",
    "Connection",
    "Contact",
    "Mapping",
    "PendingImport",
    "Settings",
    "SyncEngine",
    "SyncError",
    "SyncResult",
    "SyncStatus",
    "VCard",
    "contact_to_vcard",
    "parse_vcard",
]
