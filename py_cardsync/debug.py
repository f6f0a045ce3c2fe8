"""Debug logging utilities for CardDAV traffic."""

from __future__ import annotations

import logging
from typing import Any

from lxml import etree

logger = logging.getLogger("py_cardsync.http")

# Request/response headers worth printing; everything else is noise.
REQUEST_HEADERS = [
    "Content-Type",
    "Content-Length",
    "Depth",
    "If-Match",
    "If-None-Match",
    "Authorization",
]
RESPONSE_HEADERS = ["Content-Type", "Content-Length", "ETag", "Location", "DAV"]

BODY_PREVIEW_BYTES = 200


def format_xml(xml_bytes: bytes | str) -> str:
    """Format XML with proper indentation.

    Args:
        xml_bytes: XML content as bytes or string

    Returns:
        Pretty-formatted XML string
    """
    if isinstance(xml_bytes, str):
        xml_bytes = xml_bytes.encode("utf-8")
    try:
        parser = etree.XMLParser(remove_blank_text=True)
        root = etree.fromstring(xml_bytes, parser)
    except etree.XMLSyntaxError:
        return xml_bytes.decode("utf-8", errors="replace")
    return etree.tostring(root, pretty_print=True, encoding="unicode")


def is_xml_content(content_type: str | None) -> bool:
    """Check if content type is XML."""
    if not content_type:
        return False
    return "xml" in content_type.lower()


def _header(headers: dict[str, Any], name: str) -> Any:
    return headers.get(name.lower(), headers.get(name))


def _log_body(content_type: str, body: bytes) -> None:
    if is_xml_content(content_type):
        for line in format_xml(body).split("\n"):
            if line.strip():
                logger.debug("  %s", line)
        return

    preview = body[:BODY_PREVIEW_BYTES].decode("utf-8", errors="replace")
    logger.debug("  [%d bytes] %s", len(body), preview)
    if len(body) > BODY_PREVIEW_BYTES:
        logger.debug("  ... (%d more bytes)", len(body) - BODY_PREVIEW_BYTES)


def log_request(method: str, url: str, headers: dict[str, str], body: bytes | None) -> None:
    """Log an outgoing HTTP request.

    Args:
        method: HTTP method
        url: Request URL
        headers: Request headers
        body: Request body (if any)
    """
    logger.debug(">>> %s %s", method, url)
    for header in REQUEST_HEADERS:
        value = _header(headers, header)
        if value:
            if header == "Authorization":
                value = "[REDACTED]"
            logger.debug("  %s: %s", header, value)
    if body:
        _log_body(_header(headers, "Content-Type") or "", body)


def log_response(status_code: int, headers: dict[str, Any], body: bytes | None) -> None:
    """Log an incoming HTTP response.

    Args:
        status_code: HTTP status code
        headers: Response headers
        body: Response body (if any)
    """
    logger.debug("<<< %s", status_code)
    for header in RESPONSE_HEADERS:
        value = _header(headers, header)
        if value:
            logger.debug("  %s: %s", header, value)
    if body:
        _log_body(_header(headers, "Content-Type") or "", body)


def setup_debug_logging() -> None:
    """Configure debug logging for CardDAV requests and sync progress."""
    root = logging.getLogger("py_cardsync")
    root.setLevel(logging.DEBUG)

    handler = logging.StreamHandler()
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root.addHandler(handler)

    # Prevent propagation to avoid duplicate logs
    root.propagate = False
