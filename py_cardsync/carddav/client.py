"""CardDAV client for remote address books."""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING
from urllib.parse import quote, urljoin

import httpx

from ..config import Settings
from ..encryption import decrypt_password
from ..internal import Client as InternalClient
from ..internal import Depth, HTTPError, PropFind
from ..internal import elements as elem
from .carddav import VCARD_CONTENT_TYPE, AddressBook, VCard, validate_address_object

if TYPE_CHECKING:
    from ..models import Connection

logger = logging.getLogger(__name__)

_ABSOLUTE_URL = re.compile(r"^https?://", re.IGNORECASE)

WELL_KNOWN_CARDDAV = "/.well-known/carddav"

ADDRESSBOOK_PROPFIND = PropFind(
    prop=elem.Prop.of(
        elem.RESOURCE_TYPE,
        elem.DISPLAY_NAME,
        elem.ADDRESSBOOK_DESCRIPTION,
        elem.SYNC_TOKEN,
    )
)


def build_http_client(username: str, password: str, settings: Settings) -> httpx.AsyncClient:
    """HTTP client with Basic auth that follows redirects."""
    return httpx.AsyncClient(
        auth=httpx.BasicAuth(username, password),
        timeout=settings.http_timeout,
        follow_redirects=True,
    )


class CardDAVClient:
    """Client for a CardDAV server (RFC 6352)."""

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        endpoint: str = "",
        debug_logging: bool = False,
    ):
        """Initialize CardDAV client.

        Args:
            http_client: HTTP client to use, carrying the credentials
            endpoint: CardDAV server URL
            debug_logging: Log request and response bodies
        """
        self.internal_client = InternalClient(http_client, endpoint, debug_logging)

    @classmethod
    def from_connection(cls, connection: Connection, settings: Settings | None = None) -> CardDAVClient:
        """Build a client for a stored connection, decrypting its password."""
        settings = settings or Settings()
        password = decrypt_password(connection.password, settings.secret_key)
        http_client = build_http_client(connection.username, password, settings)
        return cls(http_client, connection.server_url, debug_logging=settings.debug)

    async def __aenter__(self) -> CardDAVClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def absolute_url(self, href: str) -> str:
        """Resolve an href from the server against the server origin."""
        if _ABSOLUTE_URL.match(href):
            return href
        path = href if href.startswith("/") else f"/{href}"
        return f"{self.internal_client.origin}{path}"

    async def _principal_at(self, path: str) -> str | None:
        propfind = PropFind(prop=elem.Prop.of(elem.CURRENT_USER_PRINCIPAL))
        resp = await self.internal_client.propfind_flat(path, propfind)

        principal_elem = resp.prop(elem.CURRENT_USER_PRINCIPAL)
        if principal_elem is None:
            return None
        principal = elem.CurrentUserPrincipal.from_xml(principal_elem)
        if principal.unauthenticated:
            raise HTTPError(401, Exception("carddav: unauthenticated"))
        if principal.href:
            return principal.href.url.path
        return None

    async def find_current_user_principal(self) -> str:
        """Find the current user's principal path.

        Tries the configured URL first, then ``/.well-known/carddav``. When
        neither advertises a principal the configured path is used as is.

        Returns:
            Principal path
        """
        try:
            principal = await self._principal_at("")
        except (HTTPError, ValueError) as e:
            if isinstance(e, HTTPError) and e.code in (401, 403):
                raise
            logger.debug("current-user-principal lookup failed on endpoint: %s", e)
            principal = None

        if principal is None:
            try:
                principal = await self._principal_at(WELL_KNOWN_CARDDAV)
            except (HTTPError, ValueError) as e:
                if isinstance(e, HTTPError) and e.code in (401, 403):
                    raise
                logger.debug("current-user-principal lookup failed on %s: %s", WELL_KNOWN_CARDDAV, e)

        return principal or self.internal_client.endpoint.path

    async def find_address_book_home_set(self, principal: str) -> str:
        """Find the collection holding the principal's address books."""
        propfind = PropFind(prop=elem.Prop.of(elem.ADDRESSBOOK_HOME_SET))
        resp = await self.internal_client.propfind_flat(principal, propfind)
        return elem.first_href(resp.prop(elem.ADDRESSBOOK_HOME_SET)) or principal

    async def discover_address_books(self) -> list[AddressBook]:
        """Discover the principal's address book collections.

        Returns:
            Address books with absolute URLs
        """
        principal = await self.find_current_user_principal()
        home_set = await self.find_address_book_home_set(principal)
        ms = await self.internal_client.propfind(home_set, Depth.ONE, ADDRESSBOOK_PROPFIND)

        books = []
        for resp in ms.responses:
            path, err = resp.path()
            if err:
                logger.debug("Skipping address book candidate: %s", err)
                continue

            res_type_elem = resp.prop(elem.RESOURCE_TYPE)
            if res_type_elem is None:
                continue
            if not elem.ResourceType.from_xml(res_type_elem).is_type(elem.ADDRESSBOOK):
                continue

            books.append(
                AddressBook(
                    url=self.absolute_url(path),
                    display_name=resp.prop_text(elem.DISPLAY_NAME),
                    description=resp.prop_text(elem.ADDRESSBOOK_DESCRIPTION),
                    sync_token=resp.prop_text(elem.SYNC_TOKEN),
                )
            )

        logger.debug("Discovered %d address book(s) under %s", len(books), home_set)
        return books

    async def list_vcards(self, address_book: AddressBook) -> list[VCard]:
        """Fetch every vCard in an address book with an addressbook-query REPORT."""
        query = elem.addressbook_query(elem.Prop.of(elem.GET_ETAG, elem.ADDRESS_DATA))
        ms = await self.internal_client.report(address_book.url, Depth.ONE, query)

        cards = []
        for resp in ms.responses:
            path, err = resp.path()
            if err:
                logger.warning("Skipping vCard in REPORT response: %s", err)
                continue
            data = resp.prop_text(elem.ADDRESS_DATA)
            if not data:
                # The collection itself, or a resource without address data
                continue
            cards.append(
                VCard(
                    url=self.absolute_url(path),
                    etag=resp.prop_text(elem.GET_ETAG),
                    data=data,
                )
            )
        return cards

    async def fetch_etag(self, url: str) -> str:
        """Read ``getetag`` of a single resource."""
        resp = await self.internal_client.propfind_flat(url, PropFind(prop=elem.Prop.of(elem.GET_ETAG)))
        return resp.prop_text(elem.GET_ETAG)

    async def _etag_after_write(self, resp: httpx.Response, url: str) -> str:
        etag = resp.headers.get("ETag")
        if etag:
            return etag
        try:
            return await self.fetch_etag(url)
        except (HTTPError, ValueError) as e:
            logger.warning("Could not read ETag of %s after write: %s", url, e)
            return ""

    async def create_vcard(self, address_book: AddressBook, vcard_data: str, filename: str) -> VCard:
        """Create a new vCard resource.

        Some servers rewrite the resource path, so the returned URL comes from
        the ``Location`` header or the final response URL, never from the
        requested filename alone.

        Args:
            address_book: Target address book
            vcard_data: vCard text
            filename: Requested resource name, e.g. ``<uid>.vcf``

        Returns:
            The created resource

        Raises:
            ValueError: If the vCard is not valid
            HTTPError: If the server refuses the PUT (412 if it already exists)
        """
        validate_address_object(vcard_data)

        collection = address_book.url if address_book.url.endswith("/") else address_book.url + "/"
        target = urljoin(collection, quote(filename))
        resp = await self.internal_client.request(
            "PUT",
            target,
            content=vcard_data.encode("utf-8"),
            headers={"Content-Type": VCARD_CONTENT_TYPE, "If-None-Match": "*"},
        )

        location = resp.headers.get("Location")
        url = self.absolute_url(location) if location else str(resp.url)
        etag = await self._etag_after_write(resp, url)
        return VCard(url=url, etag=etag, data=vcard_data)

    async def update_vcard(self, existing: VCard, vcard_data: str) -> VCard:
        """Replace a vCard, guarded by ``If-Match`` on the known etag.

        Raises:
            HTTPError: 412 when the remote copy changed since ``existing.etag``
        """
        validate_address_object(vcard_data)

        url = self.absolute_url(existing.url)
        headers = {"Content-Type": VCARD_CONTENT_TYPE}
        if existing.etag:
            headers["If-Match"] = existing.etag
        resp = await self.internal_client.request(
            "PUT", url, content=vcard_data.encode("utf-8"), headers=headers
        )

        etag = await self._etag_after_write(resp, url)
        return VCard(url=url, etag=etag, data=vcard_data)

    async def delete_vcard(self, existing: VCard) -> None:
        """Delete a vCard, with ``If-Match`` when the etag is known."""
        headers = {}
        if existing.etag:
            headers["If-Match"] = existing.etag
        await self.internal_client.request("DELETE", self.absolute_url(existing.url), headers=headers)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.internal_client.close()


async def delete_vcard_direct(
    connection: Connection, url: str, etag: str | None = None, settings: Settings | None = None
) -> None:
    """Delete a vCard by URL without running discovery."""
    async with CardDAVClient.from_connection(connection, settings) as client:
        await client.delete_vcard(VCard(url=url, etag=etag or ""))


async def test_connection(
    server_url: str, username: str, password: str, settings: Settings | None = None
) -> bool:
    """Check that the credentials work and at least discovery succeeds.

    Args:
        server_url: CardDAV server URL
        username: Account name
        password: Plain-text password

    Returns:
        True if address book discovery succeeded
    """
    settings = settings or Settings()
    http_client = build_http_client(username, password, settings)
    async with CardDAVClient(http_client, server_url, debug_logging=settings.debug) as client:
        try:
            await client.discover_address_books()
        except (HTTPError, ValueError, httpx.HTTPError) as e:
            logger.error("CardDAV connection test failed: %s", e)
            return False
    return True


# Keep pytest from collecting the helper when tests import it by name.
test_connection.__test__ = False  # type: ignore[attr-defined]
