"""WebDAV and CardDAV XML elements used by the client."""

from __future__ import annotations

from dataclasses import dataclass, field
from urllib.parse import ParseResult as URL, urlparse

from lxml import etree

from .internal import HrefError, HTTPError

# WebDAV namespace
NAMESPACE = "DAV:"
CARDDAV_NAMESPACE = "urn:ietf:params:xml:ns:carddav"
NS = {"D": NAMESPACE, "C": CARDDAV_NAMESPACE}

# Common XML names
RESOURCE_TYPE = "{DAV:}resourcetype"
DISPLAY_NAME = "{DAV:}displayname"
GET_ETAG = "{DAV:}getetag"
SYNC_TOKEN = "{DAV:}sync-token"
CURRENT_USER_PRINCIPAL = "{DAV:}current-user-principal"

# CardDAV names (RFC 6352)
ADDRESSBOOK = f"{{{CARDDAV_NAMESPACE}}}addressbook"
ADDRESSBOOK_HOME_SET = f"{{{CARDDAV_NAMESPACE}}}addressbook-home-set"
ADDRESSBOOK_DESCRIPTION = f"{{{CARDDAV_NAMESPACE}}}addressbook-description"
ADDRESSBOOK_QUERY = f"{{{CARDDAV_NAMESPACE}}}addressbook-query"
ADDRESS_DATA = f"{{{CARDDAV_NAMESPACE}}}address-data"


@dataclass
class Status:
    """HTTP status for WebDAV responses."""

    code: int
    text: str = ""

    @staticmethod
    def from_string(s: str) -> Status:
        """Unmarshal status from text."""
        if not s:
            return Status(code=0)

        parts = s.split(" ", 2)
        if len(parts) < 2:
            raise ValueError(f"webdav: invalid HTTP status {s!r}: expected 3 fields")

        try:
            code = int(parts[1])
        except ValueError as e:
            raise ValueError(
                f"webdav: invalid HTTP status {s!r}: failed to parse code: {e}"
            ) from e

        return Status(code=code, text=parts[2] if len(parts) == 3 else "")

    def err(self) -> Exception | None:
        """Convert status to error if not OK."""
        if self.code == 200:
            return None
        return HTTPError(self.code)


@dataclass
class Href:
    """WebDAV href element."""

    url: URL

    def __str__(self) -> str:
        return self.url.geturl()

    @staticmethod
    def from_string(s: str) -> Href:
        """Parse href from string."""
        return Href(url=urlparse(s.strip()))


@dataclass
class Prop:
    """WebDAV prop element."""

    raw: list[etree._Element] = field(default_factory=list)

    def to_xml(self) -> etree._Element:
        """Convert to XML element."""
        prop = etree.Element(f"{{{NAMESPACE}}}prop")
        for elem in self.raw:
            prop.append(elem)
        return prop

    @staticmethod
    def from_xml(element: etree._Element) -> Prop:
        """Parse from XML element."""
        return Prop(raw=list(element))

    @staticmethod
    def of(*tags: str) -> Prop:
        """Build a prop element requesting the given property names."""
        return Prop(raw=[etree.Element(tag) for tag in tags])

    def get(self, tag: str) -> etree._Element | None:
        """Get a property by tag name."""
        for elem in self.raw:
            if elem.tag == tag:
                return elem
        return None


@dataclass
class PropStat:
    """WebDAV propstat element."""

    prop: Prop
    status: Status
    response_description: str = ""

    @staticmethod
    def from_xml(element: etree._Element) -> PropStat:
        """Parse from XML element."""
        prop_el = element.find(f"{{{NAMESPACE}}}prop")
        prop = Prop.from_xml(prop_el) if prop_el is not None else Prop()

        status_el = element.find(f"{{{NAMESPACE}}}status")
        status_text = status_el.text if status_el is not None and status_el.text else ""
        status = Status.from_string(status_text.strip())

        desc_el = element.find(f"{{{NAMESPACE}}}responsedescription")
        desc = desc_el.text if desc_el is not None and desc_el.text else ""

        return PropStat(prop=prop, status=status, response_description=desc)


@dataclass
class Response:
    """WebDAV response element."""

    hrefs: list[Href] = field(default_factory=list)
    propstats: list[PropStat] = field(default_factory=list)
    response_description: str = ""
    status: Status | None = None

    @staticmethod
    def from_xml(element: etree._Element) -> Response:
        """Parse from XML element."""
        hrefs = []
        for href_el in element.findall(f"{{{NAMESPACE}}}href"):
            if href_el.text:
                hrefs.append(Href.from_string(href_el.text))

        propstats = []
        for ps_el in element.findall(f"{{{NAMESPACE}}}propstat"):
            propstats.append(PropStat.from_xml(ps_el))

        desc_el = element.find(f"{{{NAMESPACE}}}responsedescription")
        desc = desc_el.text if desc_el is not None and desc_el.text else ""

        status_el = element.find(f"{{{NAMESPACE}}}status")
        status = None
        if status_el is not None and status_el.text:
            status = Status.from_string(status_el.text.strip())

        return Response(
            hrefs=hrefs,
            propstats=propstats,
            response_description=desc,
            status=status,
        )

    def err(self) -> Exception | None:
        """Get error from response if any."""
        if self.status is None or self.status.code // 100 == 2:
            return None

        err: Exception | None = None
        if self.response_description:
            err = Exception(self.response_description)

        http_err = HTTPError(self.status.code, err)
        if len(self.hrefs) == 1:
            return HrefError(self.hrefs[0].url, http_err)
        return http_err

    def path(self) -> tuple[str, Exception | None]:
        """Get path from response."""
        err = self.err()
        path = ""
        if len(self.hrefs) == 1:
            path = self.hrefs[0].url.path
        elif err is None:
            err = ValueError(
                f"webdav: malformed response: expected exactly one href element, got {len(self.hrefs)}"
            )
        return path, err

    def prop(self, tag: str) -> etree._Element | None:
        """Find a property among the successful propstats."""
        for propstat in self.propstats:
            if propstat.status.code and propstat.status.code // 100 != 2:
                continue
            elem = propstat.prop.get(tag)
            if elem is not None:
                return elem
        return None

    def prop_text(self, tag: str) -> str:
        """Text content of a property, or an empty string."""
        elem = self.prop(tag)
        if elem is None or elem.text is None:
            return ""
        return elem.text


@dataclass
class MultiStatus:
    """WebDAV multistatus response."""

    responses: list[Response] = field(default_factory=list)
    response_description: str = ""
    sync_token: str = ""

    @staticmethod
    def from_xml(element: etree._Element) -> MultiStatus:
        """Parse from XML element."""
        responses = []
        for resp_el in element.findall(f"{{{NAMESPACE}}}response"):
            responses.append(Response.from_xml(resp_el))

        response_desc_el = element.find(f"{{{NAMESPACE}}}responsedescription")
        response_desc = (
            response_desc_el.text
            if response_desc_el is not None and response_desc_el.text
            else ""
        )

        sync_token_el = element.find(f"{{{NAMESPACE}}}sync-token")
        sync_token = sync_token_el.text if sync_token_el is not None and sync_token_el.text else ""

        return MultiStatus(
            responses=responses,
            response_description=response_desc,
            sync_token=sync_token,
        )


@dataclass
class PropFind:
    """WebDAV PROPFIND request."""

    prop: Prop | None = None
    allprop: bool = False

    def to_xml(self) -> etree._Element:
        """Convert to XML element."""
        pf = etree.Element(f"{{{NAMESPACE}}}propfind", nsmap={"D": NAMESPACE, "C": CARDDAV_NAMESPACE})

        if self.prop:
            pf.append(self.prop.to_xml())
        elif self.allprop:
            etree.SubElement(pf, f"{{{NAMESPACE}}}allprop")

        return pf


@dataclass
class ResourceType:
    """WebDAV resourcetype property."""

    types: list[str] = field(default_factory=list)

    def is_type(self, tag: str) -> bool:
        """Check if resource has a specific type."""
        return tag in self.types

    @staticmethod
    def from_xml(element: etree._Element) -> ResourceType:
        """Parse from XML element."""
        types = [child.tag for child in element if isinstance(child.tag, str)]
        return ResourceType(types=types)


@dataclass
class CurrentUserPrincipal:
    """WebDAV current-user-principal property."""

    href: Href | None = None
    unauthenticated: bool = False

    @staticmethod
    def from_xml(element: etree._Element) -> CurrentUserPrincipal:
        """Parse from XML element."""
        if element.find(f"{{{NAMESPACE}}}unauthenticated") is not None:
            return CurrentUserPrincipal(unauthenticated=True)
        href_el = element.find(f"{{{NAMESPACE}}}href")
        if href_el is not None and href_el.text:
            return CurrentUserPrincipal(href=Href.from_string(href_el.text))
        return CurrentUserPrincipal()


def first_href(element: etree._Element | None) -> str | None:
    """Return the text of the first DAV:href child of a property element."""
    if element is None:
        return None
    href_el = element.find(f"{{{NAMESPACE}}}href")
    if href_el is None or not href_el.text:
        return None
    return href_el.text.strip()


def addressbook_query(prop: Prop) -> etree._Element:
    """Build an addressbook-query REPORT body matching every address object."""
    root = etree.Element(ADDRESSBOOK_QUERY, nsmap={"D": NAMESPACE, "C": CARDDAV_NAMESPACE})
    root.append(prop.to_xml())
    flt = etree.SubElement(root, f"{{{CARDDAV_NAMESPACE}}}filter")
    # An empty prop-filter on FN matches every card that has one (all valid vCards).
    etree.SubElement(flt, f"{{{CARDDAV_NAMESPACE}}}prop-filter", name="FN")
    return root
