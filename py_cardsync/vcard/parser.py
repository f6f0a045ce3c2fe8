"""vCard 3.0 / 4.0 parser with Apple, Google and Android extensions."""

from __future__ import annotations

import json
import logging
import re
from collections import defaultdict
from datetime import date
from urllib.parse import urlparse

from ..models import (
    ContactAddress,
    ContactCustomField,
    ContactEmail,
    ContactIM,
    ContactLocation,
    ContactPhone,
    ContactUrl,
    ImportantDate,
)
from .dates import parse_vcard_date
from .text import find_unquoted, split_respecting_quotes, unfold_lines
from .types import (
    PRESERVED_KINDS,
    UNKNOWN_PROPERTIES_HEADER,
    VERSION_3,
    VERSION_4,
    ParsedContact,
    PropertyKind,
    VCardProperty,
)

logger = logging.getLogger(__name__)

_VERSION = re.compile(r"^VERSION:([\d.]+)", re.MULTILINE | re.IGNORECASE)
_APPLE_LABEL = re.compile(r"^_\$!<(.+)>!\$_$")
_GEO_URI = re.compile(r"geo:\s*([-+\d.]+)\s*,\s*([-+\d.]+)", re.IGNORECASE)
_GEO_V3 = re.compile(r"^\s*([-+\d.]+)\s*[;,]\s*([-+\d.]+)\s*$")

ItemGroups = dict[str, list[VCardProperty]]


def detect_version(text: str) -> str:
    """``VERSION:4.0`` selects v4; anything else, including no VERSION, is v3."""
    m = _VERSION.search(text)
    if m and m.group(1) == VERSION_4:
        return VERSION_4
    return VERSION_3


def parse_parameters(params: str) -> dict[str, list[str]]:
    """Parse ``;``-separated parameters.

    TYPE values are merged whether given comma separated (``TYPE=HOME,WORK``,
    ``TYPE="work,voice"``) or repeated (``TYPE=INTERNET;TYPE=HOME``). v2.1 style
    bare values (``TEL;CELL``) count as TYPE.
    """
    result: dict[str, list[str]] = {}
    for pair in split_respecting_quotes(params, ";"):
        key, sep, value = pair.partition("=")
        if not sep:
            key, value = "TYPE", key
        key = key.strip().upper()
        value = value.strip()
        if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
            value = value[1:-1]

        if key == "TYPE":
            values = [v.strip() for v in value.split(",") if v.strip()]
            result.setdefault("TYPE", []).extend(values)
        else:
            result.setdefault(key, []).append(value)
    return result


def parse_property_line(line: str) -> VCardProperty | None:
    """Split a content line into group, name, parameters and raw value.

    Returns None for lines without a colon separator.
    """
    colon = find_unquoted(line, ":")
    if colon == -1:
        return None

    head, value = line[:colon], line[colon + 1 :]
    semicolon = head.find(";")
    name_part = head if semicolon == -1 else head[:semicolon]
    params = "" if semicolon == -1 else head[semicolon + 1 :]

    group = None
    if "." in name_part:
        group, name_part = name_part.split(".", 1)

    name = name_part.strip().upper()
    if not name:
        return None
    return VCardProperty(
        name=name,
        value=value,
        group=group or None,
        params=parse_parameters(params),
        raw_line=line,
    )


def parse_properties(text: str) -> list[VCardProperty]:
    """Unfold and parse every content line, skipping BEGIN, END and VERSION."""
    properties = []
    for line in unfold_lines(text):
        upper = line.upper()
        if upper in ("BEGIN:VCARD", "END:VCARD") or upper.startswith("VERSION:"):
            continue
        prop = parse_property_line(line)
        if prop is None:
            logger.debug("Skipping malformed vCard line: %r", line[:80])
            continue
        properties.append(prop)
    return properties


def associate_item_groups(properties: list[VCardProperty]) -> ItemGroups:
    groups: ItemGroups = defaultdict(list)
    for prop in properties:
        if prop.group:
            groups[prop.group].append(prop)
    return dict(groups)


def decode_apple_label(label: str) -> str:
    """``_$!<HomePage>!$_`` -> ``HomePage``. Plain labels are returned unchanged."""
    m = _APPLE_LABEL.match(label)
    return m.group(1) if m else label


def item_group_label(prop: VCardProperty, groups: ItemGroups) -> str | None:
    if not prop.group:
        return None
    for member in groups.get(prop.group, []):
        if member.kind is PropertyKind.X_ABLABEL:
            return decode_apple_label(member.text)
    return None


def parse_impp(value: str) -> tuple[str, str] | None:
    protocol, sep, handle = value.partition(":")
    if not sep or not protocol:
        return None
    return protocol, handle


def parse_geo(value: str) -> tuple[float, float] | None:
    """Parse ``geo:lat,lon`` (v4) or ``lat;lon`` (v3)."""
    m = _GEO_URI.search(value) or _GEO_V3.match(value)
    if not m:
        return None
    try:
        return float(m.group(1)), float(m.group(2))
    except ValueError:
        return None


def parse_social_profile(value: str) -> tuple[str, str]:
    """Map an Apple X-SOCIALPROFILE URL to (protocol, handle)."""
    host = urlparse(value).hostname
    if not host:
        return "social", value
    if host.startswith("www."):
        host = host[4:]
    return host.split(".")[0], value


def _photo_value(prop: VCardProperty) -> str:
    value = prop.value.strip()
    if value.startswith(("http://", "https://", "data:")):
        return value

    encoding = (prop.param("ENCODING") or "").lower()
    if encoding in ("b", "base64"):
        image_type = prop.first_type()
        mime = f"image/{image_type.lower()}" if image_type else "image/jpeg"
        data = re.sub(r"\s", "", value)
        return f"data:{mime};base64,{data}"
    return value


class _Parser:
    """Applies parsed properties to a ParsedContact."""

    def __init__(self, data: ParsedContact, groups: ItemGroups) -> None:
        self.data = data
        self.groups = groups
        self.formatted_name: str | None = None
        self.has_n = False
        # Dates from labelled X-ABDATE items, and the TYPE-tagged anniversaries
        # that may repeat them
        self.labelled_dates: set[date] = set()
        self.typed_dates: list[ImportantDate] = []

    def label(self, prop: VCardProperty) -> str | None:
        return item_group_label(prop, self.groups)

    def add_date(self, title: str, prop: VCardProperty) -> ImportantDate | None:
        omit_year = prop.param("X-APPLE-OMIT-YEAR") is not None
        value = parse_vcard_date(prop.text, omit_year=omit_year)
        if value is None:
            return None
        item = ImportantDate(title=title, date=value)
        self.data.important_dates.append(item)
        return item

    def apply(self, prop: VCardProperty) -> bool:
        """Apply one property. Returns False when the property is not understood."""
        data = self.data
        kind = prop.kind

        if kind is PropertyKind.FN:
            self.formatted_name = prop.text
        elif kind is PropertyKind.N:
            self.has_n = True
            parts = prop.components() + [""] * 5
            data.surname = parts[0] or None
            data.name = parts[1] or data.name
            data.middle_name = parts[2] or None
            data.prefix = parts[3] or None
            data.suffix = parts[4] or None
        elif kind is PropertyKind.NICKNAME:
            nicknames = [n.strip() for n in prop.components(",")]
            data.nickname = nicknames[0] or None
        elif kind is PropertyKind.UID:
            data.uid = prop.text.strip() or None
        elif kind is PropertyKind.BDAY:
            self.add_date("Birthday", prop)
        elif kind in (PropertyKind.ANNIVERSARY, PropertyKind.X_ANNIVERSARY):
            type_ = prop.first_type()
            if type_ and type_.upper() == "LAST-CONTACT":
                data.last_contact = parse_vcard_date(prop.text)
            else:
                item = self.add_date(type_.lower() if type_ else "Anniversary", prop)
                if item is not None:
                    self.typed_dates.append(item)
        elif kind is PropertyKind.X_NAMETAG_LAST_CONTACT:
            data.last_contact = parse_vcard_date(prop.text)
        elif kind is PropertyKind.X_ABDATE:
            item = self.add_date(self.label(prop) or "Important Date", prop)
            if item is not None and prop.group:
                self.labelled_dates.add(item.date)
        elif kind is PropertyKind.TEL:
            type_ = (self.label(prop) or prop.first_type("other", ignore=("voice", "pref"))).lower()
            if type_ == "cell":
                type_ = "mobile"
            data.phone_numbers.append(ContactPhone(type=type_, number=prop.text))
        elif kind is PropertyKind.EMAIL:
            type_ = self.label(prop) or prop.first_type("other", ignore=("internet", "pref"))
            data.emails.append(ContactEmail(type=type_.lower(), email=prop.text))
        elif kind is PropertyKind.ADR:
            parts = prop.components() + [""] * 7
            street = parts[2].split("\n")
            type_ = self.label(prop) or prop.first_type("other", ignore=("pref",))
            data.addresses.append(
                ContactAddress(
                    type=type_.lower(),
                    street_line1=street[0] or None,
                    street_line2=street[1] if len(street) > 1 and street[1] else None,
                    locality=parts[3] or None,
                    region=parts[4] or None,
                    postal_code=parts[5] or None,
                    country=parts[6] or None,
                )
            )
        elif kind is PropertyKind.URL:
            type_ = self.label(prop) or prop.first_type() or "personal"
            data.urls.append(ContactUrl(type=type_, url=prop.text))
        elif kind is PropertyKind.IMPP:
            parsed = parse_impp(prop.text)
            if parsed:
                protocol, handle = parsed
                data.im_handles.append(ContactIM(protocol=self.label(prop) or protocol, handle=handle))
        elif kind is PropertyKind.X_SOCIALPROFILE:
            protocol, handle = parse_social_profile(prop.text)
            data.im_handles.append(ContactIM(protocol=prop.first_type(protocol), handle=handle))
        elif kind is PropertyKind.GEO:
            coords = parse_geo(prop.value)
            if coords:
                type_ = self.label(prop) or prop.first_type() or "other"
                data.locations.append(
                    ContactLocation(type=type_, latitude=coords[0], longitude=coords[1])
                )
        elif kind is PropertyKind.ORG:
            data.organization = prop.components()[0] or None
        elif kind is PropertyKind.TITLE:
            data.job_title = prop.text or None
        elif kind is PropertyKind.PHOTO:
            data.photo = _photo_value(prop) or None
        elif kind in (PropertyKind.GENDER, PropertyKind.X_GENDER):
            data.gender = prop.text or None
        elif kind is PropertyKind.NOTE:
            data.notes = prop.text
        elif kind is PropertyKind.CATEGORIES:
            data.categories = [c.strip() for c in prop.components(",") if c.strip()]
        elif kind is PropertyKind.RELATED:
            uid = prop.text.strip()
            if uid.lower().startswith("urn:uuid:"):
                uid = uid[len("urn:uuid:") :]
            data.related_uids.append(uid)
        elif kind is PropertyKind.X_ABRELATEDNAMES:
            data.custom_fields.append(
                ContactCustomField(key=prop.name, value=prop.text, type=self.label(prop))
            )
        elif kind in (PropertyKind.X_ABLABEL, PropertyKind.X_ABADR):
            pass
        elif kind is PropertyKind.X_NAMETAG_SECOND_LASTNAME:
            data.second_last_name = prop.text or None
        elif kind is PropertyKind.X_NAMETAG_RELATIONSHIPS:
            self.apply_relationships(prop)
        elif kind is PropertyKind.X_NAMETAG_CONTACT_REMINDER:
            data.contact_reminder_enabled = prop.text.strip().lower() == "enabled"
        elif kind is PropertyKind.X_NAMETAG_REMINDER_INTERVAL:
            amount, _, unit = prop.text.strip().partition(" ")
            if amount.isdigit() and unit:
                data.contact_reminder_interval = int(amount)
                data.contact_reminder_interval_unit = unit.strip()
        elif kind in PRESERVED_KINDS:
            data.custom_fields.append(ContactCustomField(key=prop.name, value=prop.text))
        elif kind is PropertyKind.EXTENSION:
            data.custom_fields.append(
                ContactCustomField(key=prop.name, value=prop.text, type=prop.first_type())
            )
        else:
            return False
        return True

    def apply_relationships(self, prop: VCardProperty) -> None:
        try:
            edges = json.loads(prop.text)
        except ValueError:
            logger.warning("Ignoring malformed X-NAMETAG-RELATIONSHIPS value")
            return
        if isinstance(edges, list):
            self.data.relationships = [e for e in edges if isinstance(e, dict)]

    def finish(self) -> None:
        data = self.data

        if not data.name and self.formatted_name:
            fn = self.formatted_name.strip()
            named = any((data.surname, data.middle_name, data.prefix, data.suffix))
            if not named and fn != data.nickname and fn != "Unknown":
                data.name = fn

        # v3 writes "surname second-surname" into the family component
        second = data.second_last_name
        if second and data.surname and data.surname.endswith(" " + second):
            data.surname = data.surname[: -(len(second) + 1)].strip() or None

        # The same date may arrive as X-ABDATE and X-ANNIVERSARY. The labelled
        # copy wins; the TYPE copy loses titles with commas.
        duplicates = [d for d in self.typed_dates if d.date in self.labelled_dates]
        seen = set()
        unique = []
        for item in data.important_dates:
            if any(item is d for d in duplicates):
                continue
            key = (item.title.casefold(), item.date)
            if key not in seen:
                seen.add(key)
                unique.append(item)
        data.important_dates = unique


def format_unknown_properties(properties: list[VCardProperty]) -> str:
    lines = [UNKNOWN_PROPERTIES_HEADER]
    lines.extend(prop.describe() for prop in properties)
    return "\n".join(lines)


def parse_vcard(text: str) -> ParsedContact:
    """Decode one vCard.

    Malformed lines are skipped. The result may lack a ``uid``; callers
    must check for it before using the contact for sync.

    Args:
        text: vCard text

    Returns:
        Parsed contact, with unhandled properties appended to ``notes``
    """
    version = detect_version(text)
    properties = parse_properties(text)
    groups = associate_item_groups(properties)

    data = ParsedContact(version=version, raw_vcard=text)
    parser = _Parser(data, groups)
    for prop in properties:
        if not parser.apply(prop):
            data.unknown_properties.append(prop)
    parser.finish()

    if data.unknown_properties:
        block = format_unknown_properties(data.unknown_properties)
        data.notes = f"{data.notes}\n\n{block}" if data.notes else block

    return data


def split_vcards(text: str) -> list[str]:
    """Split a multi-contact .vcf file into individual vCards."""
    cards = []
    current: list[str] = []
    for line in re.split(r"\r?\n", text):
        upper = line.strip().upper()
        if upper == "BEGIN:VCARD":
            current = [line]
        elif upper == "END:VCARD" and current:
            current.append(line)
            cards.append("\r\n".join(current))
            current = []
        elif current:
            current.append(line)
    return cards
