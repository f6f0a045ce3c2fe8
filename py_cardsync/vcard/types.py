"""vCard property and parsed-contact types."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any

from ..models import CHILD_TYPES, ContactData, child_from_dict
from .text import split_escaped, unescape_text

VERSION_3 = "3.0"
VERSION_4 = "4.0"

UNKNOWN_PROPERTIES_HEADER = "--- Unknown vCard Properties ---"


class PropertyKind(Enum):
    """Recognized vCard property names."""

    FN = "FN"
    N = "N"
    NICKNAME = "NICKNAME"
    UID = "UID"
    BDAY = "BDAY"
    ANNIVERSARY = "ANNIVERSARY"
    TEL = "TEL"
    EMAIL = "EMAIL"
    ADR = "ADR"
    URL = "URL"
    IMPP = "IMPP"
    GEO = "GEO"
    ORG = "ORG"
    TITLE = "TITLE"
    PHOTO = "PHOTO"
    GENDER = "GENDER"
    NOTE = "NOTE"
    CATEGORIES = "CATEGORIES"
    RELATED = "RELATED"

    # Standard properties kept as custom fields
    ROLE = "ROLE"
    LANG = "LANG"
    TZ = "TZ"
    KEY = "KEY"
    REV = "REV"
    PRODID = "PRODID"

    # Vendor extensions
    X_ABDATE = "X-ABDATE"
    X_ABLABEL = "X-ABLABEL"
    X_ABADR = "X-ABADR"
    X_ABRELATEDNAMES = "X-ABRELATEDNAMES"
    X_SOCIALPROFILE = "X-SOCIALPROFILE"
    X_ANNIVERSARY = "X-ANNIVERSARY"
    X_GENDER = "X-GENDER"

    # Our own round-trip extensions
    X_NAMETAG_SECOND_LASTNAME = "X-NAMETAG-SECOND-LASTNAME"
    X_NAMETAG_RELATIONSHIPS = "X-NAMETAG-RELATIONSHIPS"
    X_NAMETAG_CONTACT_REMINDER = "X-NAMETAG-CONTACT-REMINDER"
    X_NAMETAG_REMINDER_INTERVAL = "X-NAMETAG-REMINDER-INTERVAL"
    X_NAMETAG_LAST_CONTACT = "X-NAMETAG-LAST-CONTACT"

    # Any other X- property
    EXTENSION = "X-*"
    # Anything else
    UNKNOWN = "*"

    @classmethod
    def for_name(cls, name: str) -> PropertyKind:
        name = name.upper()
        try:
            kind = cls(name)
        except ValueError:
            return cls.EXTENSION if name.startswith("X-") else cls.UNKNOWN
        if kind in (cls.EXTENSION, cls.UNKNOWN):
            return cls.UNKNOWN
        return kind


PRESERVED_KINDS = frozenset(
    {
        PropertyKind.ROLE,
        PropertyKind.LANG,
        PropertyKind.TZ,
        PropertyKind.KEY,
        PropertyKind.REV,
        PropertyKind.PRODID,
    }
)


@dataclass
class VCardProperty:
    """One content line: ``[group.]NAME[;PARAM=value...]:value``.

    ``value`` is kept escaped; use ``text`` or ``components`` to read it.
    """

    name: str
    value: str
    group: str | None = None
    params: dict[str, list[str]] = field(default_factory=dict)
    raw_line: str = ""

    @property
    def kind(self) -> PropertyKind:
        return PropertyKind.for_name(self.name)

    @property
    def text(self) -> str:
        return unescape_text(self.value)

    def components(self, sep: str = ";") -> list[str]:
        return split_escaped(self.value, sep)

    def param(self, name: str) -> str | None:
        values = self.params.get(name.upper())
        return values[0] if values else None

    @property
    def types(self) -> list[str]:
        """TYPE parameter values, case preserved."""
        return self.params.get("TYPE", [])

    def first_type(self, default: str | None = None, ignore: tuple[str, ...] = ()) -> str | None:
        for value in self.types:
            if value.lower() not in ignore:
                return value
        return default

    def describe(self) -> str:
        """Human-readable form used in the unknown-properties notes block."""
        prefix = f"{self.group}." if self.group else ""
        params = ";".join(f"{k}={','.join(v)}" for k, v in self.params.items())
        params = f";{params}" if params else ""
        return f"{prefix}{self.name}{params}: {self.text}"


@dataclass
class ParsedContact(ContactData):
    """Contact data decoded from a vCard, ready to be written to the store."""

    version: str = VERSION_3
    categories: list[str] = field(default_factory=list)
    related_uids: list[str] = field(default_factory=list)
    # Edges from X-NAMETAG-RELATIONSHIPS, as {"personId", "typeId", "notes"} dicts
    relationships: list[dict[str, Any]] = field(default_factory=list)
    contact_reminder_enabled: bool | None = None
    contact_reminder_interval: int | None = None
    contact_reminder_interval_unit: str | None = None
    unknown_properties: list[VCardProperty] = field(default_factory=list)
    raw_vcard: str = ""

    def display_name(self) -> str:
        """Name shown for a pending import."""
        parts = [p for p in (self.prefix, self.name, self.middle_name, self.surname) if p]
        if parts:
            return " ".join(parts)
        return self.nickname or self.organization or "Unknown"

    def to_json(self) -> str:
        """Snapshot used for conflict records."""
        data = self.to_dict()
        data["categories"] = list(self.categories)
        return json.dumps(data, sort_keys=True)

    @classmethod
    def from_json(cls, text: str) -> ParsedContact:
        """Rebuild a snapshot produced by ``to_json`` (or ``Contact.to_dict``)."""
        data = json.loads(text)
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ParsedContact:
        parsed = cls()
        for name in (
            "name",
            "surname",
            "second_last_name",
            "middle_name",
            "prefix",
            "suffix",
            "nickname",
            "uid",
            "organization",
            "job_title",
            "photo",
            "gender",
            "notes",
        ):
            if name in data:
                setattr(parsed, name, data[name])
        parsed.name = parsed.name or ""
        for name in ("anniversary", "last_contact"):
            if data.get(name):
                setattr(parsed, name, date.fromisoformat(data[name][:10]))
        for kind in CHILD_TYPES:
            rows = data.get(kind) or []
            setattr(parsed, kind, [child_from_dict(kind, row) for row in rows])
        parsed.categories = list(data.get("categories") or data.get("groups") or [])
        return parsed
