"""Content hashing used to detect local modification of a contact."""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, is_dataclass
from datetime import date, datetime
from typing import Any

from .models import CHILD_TYPES, ContactData

HASHED_SCALARS = (
    "name",
    "surname",
    "middle_name",
    "second_last_name",
    "prefix",
    "suffix",
    "nickname",
    "organization",
    "job_title",
    "gender",
    "anniversary",
    "notes",
    "photo",
    "last_contact",
)

# Field that orders child rows before the full canonical form breaks ties.
NATURAL_KEYS = ("number", "email", "url", "handle", "key", "title", "street_line1", "latitude")


def _normalize(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        value = asdict(value)
    if isinstance(value, dict):
        return {k: _normalize(v) for k, v in sorted(value.items())}
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _sort_key(row: dict[str, Any]) -> tuple[int, str]:
    for key in NATURAL_KEYS:
        if row.get(key) is not None:
            return (0, str(row[key]))
    return (1, "")


def _normalize_rows(rows: list[Any]) -> list[dict[str, Any]]:
    # Row ids are storage detail; a row re-created with a new id is the same data
    normalized = [{k: v for k, v in _normalize(row).items() if k != "id"} for row in rows]
    normalized.sort(key=lambda row: (_sort_key(row), _canonical(row)))
    return normalized


def build_local_hash(contact: ContactData) -> str:
    """Build a deterministic SHA-256 digest of a contact's synced content.

    Child rows drop their ids and are ordered by content, so neither storage
    order nor row ids change the digest.

    Args:
        contact: Local contact or parsed vCard

    Returns:
        Hex digest
    """
    data: dict[str, Any] = {name: _normalize(getattr(contact, name)) for name in HASHED_SCALARS}
    for collection in CHILD_TYPES:
        data[collection] = _normalize_rows(getattr(contact, collection) or [])

    return hashlib.sha256(_canonical(data).encode("utf-8")).hexdigest()


def hash_parsed_contact(parsed: ContactData) -> str:
    """Digest of a remote snapshot, comparable with ``build_local_hash``."""
    return build_local_hash(parsed)
