"""Contact to vCard 3.0 / 4.0 serialization."""

from __future__ import annotations

import json
import re
import uuid
from dataclasses import dataclass

from ..models import Contact
from .dates import format_vcard_date
from .text import escape_text, fold_line, strip_markdown
from .types import VERSION_3, VERSION_4, PropertyKind

_DATA_URI = re.compile(r"^data:(image/[\w.+-]+);base64,(.+)$", re.DOTALL)
_PARAM_SPECIAL = re.compile(r'[;:,"\s]')

# Standard properties that were imported as custom fields and can go back as-is.
# REV and PRODID describe the previous producer and are dropped.
_STANDARD_CUSTOM = {"ROLE", "TZ", "KEY"}
_SKIPPED_CUSTOM = {"REV", "PRODID"}
_CUSTOM_KINDS = {PropertyKind.EXTENSION, PropertyKind.X_ABRELATEDNAMES}


@dataclass
class VCardOptions:
    """Options for ``contact_to_vcard``."""

    version: str = VERSION_3
    include_nametag: bool = True
    include_relationships: bool = True
    include_photo: bool = True
    include_custom_fields: bool = True
    strip_markdown: bool = False


def format_full_name(contact: Contact) -> str:
    """FN: prefix, given, middle, surname, second surname, suffix.

    Falls back to the nickname, then to ``Unknown``.
    """
    parts = [
        p
        for p in (
            contact.prefix,
            contact.name,
            contact.middle_name,
            contact.surname,
            contact.second_last_name,
            contact.suffix,
        )
        if p
    ]
    if not parts and contact.nickname:
        parts.append(contact.nickname)
    return " ".join(parts) or "Unknown"


def _param_value(value: str) -> str:
    if _PARAM_SPECIAL.search(value):
        return '"' + value.replace('"', "'") + '"'
    return value


def format_types(types: list[str], version: str) -> str:
    """TYPE parameter value.

    v4 quotes multiple values (``TYPE="work,voice"``), v3 joins them unquoted
    (``TYPE=WORK,VOICE``).
    """
    values = [t.strip() for t in types if t.strip()]
    if version == VERSION_4:
        values = [v.lower() for v in values]
        if len(values) > 1:
            return '"' + ",".join(values) + '"'
        return _param_value(values[0]) if values else ""
    return ",".join(_param_value(v.upper()) for v in values)


class _Builder:
    def __init__(self, version: str) -> None:
        self.version = version
        self.lines: list[str] = []
        self.item = 0

    def add(self, name: str, value: str, params: dict[str, str] | None = None, group: str | None = None) -> None:
        """Append a line. ``value`` must already be escaped."""
        line = f"{group}.{name}" if group else name
        for key, param in (params or {}).items():
            if param:
                line += f";{key}={param}"
        self.lines.append(f"{line}:{value}")

    def add_text(self, name: str, value: str, params: dict[str, str] | None = None, group: str | None = None) -> None:
        self.add(name, escape_text(value), params, group)

    def add_labelled(self, name: str, value: str, label: str, params: dict[str, str] | None = None) -> None:
        """Apple item group: ``itemN.NAME:value`` plus ``itemN.X-ABLabel:label``."""
        self.item += 1
        group = f"item{self.item}"
        self.add(name, value, params, group)
        self.add_text("X-ABLabel", label, group=group)

    def types(self, *types: str) -> dict[str, str]:
        return {"TYPE": format_types(list(types), self.version)}

    def render(self) -> str:
        folded = [part for line in self.lines for part in fold_line(line)]
        return "\r\n".join(folded) + "\r\n"


def _photo_lines(builder: _Builder, photo: str) -> None:
    m = _DATA_URI.match(photo)
    if m:
        if builder.version == VERSION_4:
            builder.add("PHOTO", photo)
        else:
            image_type = m.group(1).split("/", 1)[1].upper()
            builder.add("PHOTO", m.group(2), {"ENCODING": "b", "TYPE": image_type})
        return
    if photo.startswith(("http://", "https://")):
        params = {"VALUE": "uri"} if builder.version == VERSION_3 else None
        builder.add("PHOTO", photo, params)


def contact_to_vcard(
    contact: Contact,
    options: VCardOptions | None = None,
    photo: str | None = None,
) -> str:
    """Serialize a contact.

    Args:
        contact: Contact with children, groups and relationships loaded
        options: Output options (version 3.0 by default)
        photo: Resolved photo (URL or data URI) overriding ``contact.photo``,
            for photos kept in the blob store

    Returns:
        CRLF-terminated vCard text with lines folded at 75 characters
    """
    opts = options or VCardOptions()
    v4 = opts.version == VERSION_4
    b = _Builder(opts.version)

    b.add("BEGIN", "VCARD")
    b.add("VERSION", opts.version)
    b.add_text("UID", contact.uid or str(uuid.uuid4()))
    b.add_text("FN", format_full_name(contact))

    family = contact.surname or ""
    if not v4 and contact.second_last_name:
        family = " ".join(p for p in (contact.surname, contact.second_last_name) if p)
    components = [family, contact.name, contact.middle_name, contact.prefix, contact.suffix]
    b.add("N", ";".join(escape_text(c or "") for c in components))

    if contact.nickname:
        b.add_text("NICKNAME", contact.nickname)

    birthday = next((d for d in contact.important_dates if d.title.lower() == "birthday"), None)
    if birthday:
        b.add("BDAY", format_vcard_date(birthday.date, opts.version))

    for item in contact.important_dates:
        if item is birthday:
            continue
        value = format_vcard_date(item.date, opts.version)
        b.add_labelled("X-ABDATE", value, item.title, {"VALUE": "date-and-or-time"} if v4 else None)
        # A TYPE value cannot hold a comma
        if "," not in item.title:
            name = "ANNIVERSARY" if v4 else "X-ANNIVERSARY"
            b.add(name, value, b.types(item.title))

    if contact.last_contact:
        value = format_vcard_date(contact.last_contact, opts.version)
        if v4:
            b.add("ANNIVERSARY", value, b.types("LAST-CONTACT"))
        else:
            b.add("X-NAMETAG-LAST-CONTACT", value)

    for phone in contact.phone_numbers:
        type_ = phone.type.upper()
        if not v4 and type_ == "MOBILE":
            type_ = "CELL"
        b.add_text("TEL", phone.number, b.types(type_))

    for email in contact.emails:
        b.add_text("EMAIL", email.email, b.types(email.type))

    for addr in contact.addresses:
        street = "\n".join(p for p in (addr.street_line1, addr.street_line2) if p)
        parts = ["", "", street, addr.locality, addr.region, addr.postal_code, addr.country]
        b.add("ADR", ";".join(escape_text(p or "") for p in parts), b.types(addr.type))

    for url in contact.urls:
        b.add_labelled("URL", escape_text(url.url), url.type)

    for im in contact.im_handles:
        b.add_labelled("IMPP", f"{im.protocol.lower()}:{escape_text(im.handle)}", im.protocol)

    seen_locations = set()
    for loc in contact.locations:
        key = (loc.latitude, loc.longitude, loc.type)
        if key in seen_locations:
            continue
        seen_locations.add(key)
        value = f"geo:{loc.latitude},{loc.longitude}" if v4 else f"{loc.latitude};{loc.longitude}"
        b.add_labelled("GEO", value, loc.type)

    if contact.organization:
        b.add_text("ORG", contact.organization)
    if contact.job_title:
        b.add_text("TITLE", contact.job_title)

    photo = photo or contact.photo
    if opts.include_photo and photo:
        _photo_lines(b, photo)

    if contact.gender:
        b.add_text("GENDER" if v4 else "X-GENDER", contact.gender)

    if contact.notes:
        notes = strip_markdown(contact.notes) if opts.strip_markdown else contact.notes
        b.add_text("NOTE", notes)

    if contact.groups:
        b.add("CATEGORIES", ",".join(escape_text(g) for g in contact.groups))

    if opts.include_relationships:
        for rel in contact.relationships:
            uid = rel.related_uid
            if uid:
                b.add("RELATED", uid if uid.startswith("urn:") else f"urn:uuid:{uid}")

    if opts.include_custom_fields:
        _custom_field_lines(b, contact)

    if opts.include_nametag:
        _nametag_lines(b, contact)

    b.add("END", "VCARD")
    return b.render()


def _custom_field_lines(b: _Builder, contact: Contact) -> None:
    seen = set()
    for custom in contact.custom_fields:
        key = custom.key.upper()
        if key in _SKIPPED_CUSTOM:
            continue
        if key not in _STANDARD_CUSTOM and not key.startswith("X-"):
            key = f"X-{key}"
        # Names the parser reads into dedicated fields would not come back as custom fields
        if key.startswith("X-") and PropertyKind.for_name(key) not in _CUSTOM_KINDS:
            continue
        dedup = (key, custom.value)
        if dedup in seen:
            continue
        seen.add(dedup)

        if key == "X-ABRELATEDNAMES" and custom.type:
            b.add_labelled(key, escape_text(custom.value), custom.type)
        else:
            params = {"TYPE": _param_value(custom.type)} if custom.type else None
            b.add_text(key, custom.value, params)


def _nametag_lines(b: _Builder, contact: Contact) -> None:
    if contact.relationships:
        edges = [
            {
                "personId": r.related_contact_id,
                "typeId": r.relationship_type_id,
                "notes": r.notes,
            }
            for r in contact.relationships
        ]
        b.add_text("X-NAMETAG-RELATIONSHIPS", json.dumps(edges, separators=(",", ":")))

    if contact.second_last_name:
        b.add_text("X-NAMETAG-SECOND-LASTNAME", contact.second_last_name)

    if contact.contact_reminder_enabled:
        b.add("X-NAMETAG-CONTACT-REMINDER", "enabled")
        if contact.contact_reminder_interval and contact.contact_reminder_interval_unit:
            b.add_text(
                "X-NAMETAG-REMINDER-INTERVAL",
                f"{contact.contact_reminder_interval} {contact.contact_reminder_interval_unit}",
            )


def contacts_to_vcards(contacts: list[Contact], options: VCardOptions | None = None) -> str:
    """Concatenate several contacts into one .vcf document."""
    return "".join(contact_to_vcard(c, options) for c in contacts)
