"""Domain records shared by the codec, the store and the sync engine."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any


def new_id() -> str:
    """Generate a record identifier."""
    return uuid.uuid4().hex


def utcnow() -> datetime:
    """Current time, timezone aware."""
    return datetime.now(UTC)


class SyncStatus(str, Enum):
    """Lifecycle of a mapping between a local contact and a remote vCard."""

    PENDING = "pending"
    SYNCED = "synced"
    CONFLICT = "conflict"


class ConflictResolution(str, Enum):
    """How the user settled a conflict."""

    KEEP_LOCAL = "keep_local"
    KEEP_REMOTE = "keep_remote"
    MERGED = "merged"


# Multi-value child records. ``id`` is assigned by the store.


@dataclass
class ContactPhone:
    type: str
    number: str
    id: str | None = None


@dataclass
class ContactEmail:
    type: str
    email: str
    id: str | None = None


@dataclass
class ContactAddress:
    type: str
    street_line1: str | None = None
    street_line2: str | None = None
    locality: str | None = None
    region: str | None = None
    postal_code: str | None = None
    country: str | None = None
    id: str | None = None


@dataclass
class ContactUrl:
    type: str
    url: str
    id: str | None = None


@dataclass
class ContactIM:
    protocol: str
    handle: str
    id: str | None = None


@dataclass
class ContactLocation:
    type: str
    latitude: float
    longitude: float
    label: str | None = None
    id: str | None = None


@dataclass
class ContactCustomField:
    key: str
    value: str
    type: str | None = None
    id: str | None = None


@dataclass
class ImportantDate:
    title: str
    date: date
    id: str | None = None


@dataclass
class Relationship:
    """Directed edge from a contact to another contact."""

    related_contact_id: str
    relationship_type_id: str | None = None
    notes: str | None = None
    related_uid: str | None = None
    id: str | None = None


CHILD_TYPES: dict[str, type] = {
    "phone_numbers": ContactPhone,
    "emails": ContactEmail,
    "addresses": ContactAddress,
    "urls": ContactUrl,
    "im_handles": ContactIM,
    "locations": ContactLocation,
    "custom_fields": ContactCustomField,
    "important_dates": ImportantDate,
}

# Scalar contact fields that vCard data can overwrite.
VCARD_SCALAR_FIELDS = (
    "name",
    "surname",
    "second_last_name",
    "middle_name",
    "prefix",
    "suffix",
    "nickname",
    "organization",
    "job_title",
    "photo",
    "gender",
    "anniversary",
    "last_contact",
    "notes",
)


@dataclass
class ContactData:
    """Contact fields shared by local records and parsed vCards."""

    name: str = ""
    surname: str | None = None
    second_last_name: str | None = None
    middle_name: str | None = None
    prefix: str | None = None
    suffix: str | None = None
    nickname: str | None = None
    uid: str | None = None
    organization: str | None = None
    job_title: str | None = None
    photo: str | None = None
    gender: str | None = None
    notes: str | None = None
    anniversary: date | None = None
    last_contact: date | None = None
    phone_numbers: list[ContactPhone] = field(default_factory=list)
    emails: list[ContactEmail] = field(default_factory=list)
    addresses: list[ContactAddress] = field(default_factory=list)
    urls: list[ContactUrl] = field(default_factory=list)
    im_handles: list[ContactIM] = field(default_factory=list)
    locations: list[ContactLocation] = field(default_factory=list)
    custom_fields: list[ContactCustomField] = field(default_factory=list)
    important_dates: list[ImportantDate] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Plain dict with dates as ISO strings, suitable for JSON."""
        return _jsonable(asdict(self))


@dataclass
class Contact(ContactData):
    """A person owned by a user."""

    id: str = field(default_factory=new_id)
    user_id: str = ""
    groups: list[str] = field(default_factory=list)
    relationships: list[Relationship] = field(default_factory=list)
    contact_reminder_enabled: bool = False
    contact_reminder_interval: int | None = None
    contact_reminder_interval_unit: str | None = None
    carddav_sync_enabled: bool = True
    deleted_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def display_name(self) -> str:
        parts = [p for p in (self.name, self.surname) if p]
        return " ".join(parts) or self.nickname or "Unknown"


@dataclass
class Connection:
    """CardDAV credentials and sync settings for one user."""

    user_id: str
    server_url: str
    username: str
    password: str  # encrypted, see py_cardsync.encryption
    id: str = field(default_factory=new_id)
    provider: str | None = None
    sync_enabled: bool = True
    auto_export_new: bool = True
    auto_sync_interval: int = 43200  # seconds
    sync_token: str | None = None
    last_sync_at: datetime | None = None
    last_error: str | None = None
    last_error_at: datetime | None = None


@dataclass
class Mapping:
    """Link between a local contact and a remote vCard resource."""

    connection_id: str
    contact_id: str
    uid: str
    href: str = ""
    etag: str | None = None
    id: str = field(default_factory=new_id)
    last_synced_at: datetime | None = None
    last_local_change: datetime | None = None
    last_remote_change: datetime | None = None
    sync_status: SyncStatus = SyncStatus.SYNCED
    local_version: str | None = None
    remote_version: str | None = None

    @property
    def has_local_change(self) -> bool:
        """Local edits happened after the last successful sync."""
        return (
            self.last_local_change is not None
            and self.last_synced_at is not None
            and self.last_local_change > self.last_synced_at
        )


@dataclass
class PendingImport:
    """Remote vCard discovered on the server without a local contact yet."""

    connection_id: str
    uid: str
    href: str
    vcard_data: str
    display_name: str
    etag: str | None = None
    id: str = field(default_factory=new_id)
    discovered_at: datetime = field(default_factory=utcnow)


@dataclass
class Conflict:
    """Frozen local/remote snapshot pair awaiting a user decision."""

    mapping_id: str
    local_version: str  # JSON
    remote_version: str  # JSON
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    resolved_at: datetime | None = None
    resolution: ConflictResolution | None = None
    resolved_by: str | None = None

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None


@dataclass
class SyncResult:
    """Counters reported by a sync pass."""

    imported: int = 0
    exported: int = 0
    updated_locally: int = 0
    updated_remotely: int = 0
    conflicts: int = 0
    errors: int = 0
    pending_imports: int = 0
    error_messages: list[str] = field(default_factory=list)

    def record_error(self, message: str) -> None:
        self.errors += 1
        self.error_messages.append(message)

    def __add__(self, other: SyncResult) -> SyncResult:
        return SyncResult(
            imported=self.imported + other.imported,
            exported=self.exported + other.exported,
            updated_locally=self.updated_locally + other.updated_locally,
            updated_remotely=self.updated_remotely + other.updated_remotely,
            conflicts=self.conflicts + other.conflicts,
            errors=self.errors + other.errors,
            pending_imports=self.pending_imports + other.pending_imports,
            error_messages=[*self.error_messages, *other.error_messages],
        )


@dataclass
class DiscoveryResult:
    discovered: int = 0
    removed: int = 0
    errors: int = 0
    error_messages: list[str] = field(default_factory=list)


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


def child_from_dict(kind: str, data: dict[str, Any]) -> Any:
    """Rebuild a child record from its ``to_dict`` form."""
    cls = CHILD_TYPES[kind]
    known = {f.name for f in fields(cls)}
    values = {k: v for k, v in data.items() if k in known}
    if cls is ImportantDate and isinstance(values.get("date"), str):
        values["date"] = date.fromisoformat(values["date"][:10])
    return cls(**values)
