"""CardDAV client support for py-cardsync."""

from .carddav import (
    VCARD_CONTENT_TYPE,
    AddressBook,
    VCard,
    validate_address_object,
)
from .client import CardDAVClient, build_http_client, delete_vcard_direct, test_connection

__all__ = [
    "VCARD_CONTENT_TYPE",
    "AddressBook",
    "CardDAVClient",
    "VCard",
    "build_http_client",
    "delete_vcard_direct",
    "test_connection",
    "validate_address_object",
]
