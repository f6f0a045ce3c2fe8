"""Internal client utilities for WebDAV."""

from __future__ import annotations

import re
from urllib.parse import urljoin, urlparse, urlunparse

import httpx
from lxml import etree

from .. import debug
from .elements import MultiStatus, PropFind, Response
from .internal import Depth, HTTPError, depth_to_string

_ABSOLUTE_URL = re.compile(r"^https?://", re.IGNORECASE)


class Client:
    """WebDAV HTTP client."""

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        endpoint: str = "",
        debug_logging: bool = False,
    ):
        """Initialize client.

        Args:
            http_client: HTTP client to use (creates default if None)
            endpoint: Base endpoint URL
            debug_logging: Log every request and response body
        """
        self.http_client = http_client or httpx.AsyncClient()
        self.endpoint = urlparse(endpoint)
        self.debug_logging = debug_logging

        # Ensure path ends with /
        if not self.endpoint.path:
            self.endpoint = self.endpoint._replace(path="/")

    @property
    def origin(self) -> str:
        """Scheme and authority of the endpoint, e.g. ``https://dav.example.com``."""
        return urlunparse((self.endpoint.scheme, self.endpoint.netloc, "", "", "", ""))

    def resolve_href(self, path: str) -> str:
        """Resolve a path relative to the endpoint.

        Absolute URLs are returned unchanged, absolute paths are joined to the
        server origin and anything else is resolved against the endpoint.

        Args:
            path: Path to resolve

        Returns:
            Full URL
        """
        if _ABSOLUTE_URL.match(path):
            return path
        if path.startswith("/"):
            return f"{self.origin}{path}"
        return urljoin(self.endpoint.geturl(), path)

    async def request(
        self,
        method: str,
        path: str,
        content: bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Make an HTTP request.

        Args:
            method: HTTP method
            path: Request path
            content: Request body
            headers: Request headers

        Returns:
            HTTP response

        Raises:
            HTTPError: If the server answers with a non-2xx status
        """
        url = self.resolve_href(path)
        req_headers = headers or {}
        if self.debug_logging:
            debug.log_request(method, url, req_headers, content)

        resp = await self.http_client.request(method, url, content=content, headers=req_headers)

        if self.debug_logging:
            debug.log_response(resp.status_code, dict(resp.headers), resp.content)

        if resp.status_code // 100 != 2:
            content_type = resp.headers.get("content-type", "text/plain")

            wrapped_err: Exception | None = None
            if content_type.startswith("text/") or "xml" in content_type:
                text = resp.text[:1024].strip()
                if text:
                    if len(resp.text) > 1024:
                        text += " […]"
                    wrapped_err = Exception(text)

            raise HTTPError(resp.status_code, wrapped_err)

        return resp

    async def xml_request(
        self, method: str, path: str, xml_obj: etree._Element, headers: dict[str, str] | None = None
    ) -> httpx.Response:
        """Make an XML HTTP request.

        Args:
            method: HTTP method
            path: Request path
            xml_obj: XML object to send
            headers: Additional request headers

        Returns:
            HTTP response
        """
        xml_bytes = etree.tostring(
            xml_obj, encoding="utf-8", xml_declaration=True, pretty_print=False
        )

        req_headers = headers or {}
        req_headers["Content-Type"] = "application/xml; charset=utf-8"

        return await self.request(method, path, content=xml_bytes, headers=req_headers)

    async def do_multistatus(
        self, method: str, path: str, xml_obj: etree._Element, depth: Depth
    ) -> MultiStatus:
        """Perform a request expecting a multistatus response.

        Args:
            method: HTTP method
            path: Request path
            xml_obj: XML request body
            depth: Depth header value

        Returns:
            Parsed multistatus response
        """
        headers = {"Depth": depth_to_string(depth)}
        resp = await self.xml_request(method, path, xml_obj, headers=headers)

        if resp.status_code != 207:  # Multi-Status
            raise ValueError(f"HTTP multi-status request failed: {resp.status_code}")

        try:
            xml_elem = etree.fromstring(resp.content)
        except etree.XMLSyntaxError as e:
            raise ValueError(f"webdav: failed to parse multistatus body: {e}") from e
        return MultiStatus.from_xml(xml_elem)

    async def propfind(self, path: str, depth: Depth, propfind: PropFind) -> MultiStatus:
        """Perform a PROPFIND request.

        Args:
            path: Resource path
            depth: Depth header value
            propfind: PROPFIND request

        Returns:
            Multistatus response
        """
        return await self.do_multistatus("PROPFIND", path, propfind.to_xml(), depth)

    async def propfind_flat(self, path: str, propfind: PropFind) -> Response:
        """Perform a PROPFIND request with depth 0.

        Args:
            path: Resource path
            propfind: PROPFIND request

        Returns:
            Single response
        """
        ms = await self.propfind(path, Depth.ZERO, propfind)

        if len(ms.responses) != 1:
            raise ValueError(f"PROPFIND with Depth: 0 returned {len(ms.responses)} responses")

        return ms.responses[0]

    async def report(self, path: str, depth: Depth, body: etree._Element) -> MultiStatus:
        """Perform a REPORT request.

        Args:
            path: Collection path
            depth: Depth header value
            body: REPORT body

        Returns:
            Multistatus response
        """
        return await self.do_multistatus("REPORT", path, body, depth)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.http_client.aclose()
