"""CardDAV types and vCard support.

CardDAV is defined in RFC 6352.
"""

from __future__ import annotations

from dataclasses import dataclass

import vobject

VCARD_CONTENT_TYPE = "text/vcard; charset=utf-8"


@dataclass
class AddressBook:
    """CardDAV address book collection."""

    url: str
    display_name: str = ""
    description: str = ""
    sync_token: str = ""


@dataclass
class VCard:
    """A vCard resource on the server."""

    url: str
    etag: str = ""
    data: str = ""


def validate_address_object(vcard_data: str) -> str:
    """Validate a vCard object.

    Args:
        vcard_data: vCard data as string

    Returns:
        UID from the vCard

    Raises:
        ValueError: If validation fails
    """
    try:
        vcard = vobject.readOne(vcard_data)
    except Exception as e:
        raise ValueError(f"invalid vCard object: {e}") from e

    if vcard.name != "VCARD":
        raise ValueError(f"invalid vCard object: expected VCARD, got {vcard.name}")

    # Get UID
    if not hasattr(vcard, "uid"):
        raise ValueError("invalid vCard object: vCard must have a UID property")

    return str(vcard.uid.value)
