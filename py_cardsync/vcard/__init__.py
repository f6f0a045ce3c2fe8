"""vCard 3.0 / 4.0 codec."""

from .dates import UNKNOWN_YEAR, format_vcard_date, parse_vcard_date
from .generator import VCardOptions, contact_to_vcard, contacts_to_vcards, format_full_name
from .parser import detect_version, parse_vcard, split_vcards
from .types import VERSION_3, VERSION_4, ParsedContact, PropertyKind, VCardProperty

encode = contact_to_vcard
decode = parse_vcard

__all__ = [
    "UNKNOWN_YEAR",
    "VERSION_3",
    "VERSION_4",
    "ParsedContact",
    "PropertyKind",
    "VCardOptions",
    "VCardProperty",
    "contact_to_vcard",
    "contacts_to_vcards",
    "decode",
    "detect_version",
    "encode",
    "format_full_name",
    "format_vcard_date",
    "parse_vcard",
    "parse_vcard_date",
    "split_vcards",
]
