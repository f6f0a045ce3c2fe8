"""Server URL validation.

CardDAV server URLs are user supplied, so before connecting we make sure they
use HTTP(S) and do not point at loopback, private or link-local addresses,
either literally or through DNS.
"""

from __future__ import annotations

import asyncio
import ipaddress
import socket
from urllib.parse import urlparse

INTERNAL_ADDRESS = "Internal addresses are not allowed"


class InvalidServerURL(ValueError):
    """The server URL is malformed or targets an internal address."""


def is_private_ip(host: str) -> bool:
    """Check whether an IP literal is loopback, private, link-local or unspecified.

    Hostnames that are not IP literals return False.
    """
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return False
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return ip.is_private or ip.is_loopback or ip.is_link_local or ip.is_unspecified


async def _resolve(host: str, port: int) -> list[str]:
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    return [info[4][0] for info in infos]


async def validate_server_url(url: str, allow_private: bool = False) -> None:
    """Validate a CardDAV server URL.

    Args:
        url: URL entered by the user
        allow_private: Skip the internal address checks (self-hosted setups)

    Raises:
        InvalidServerURL: If the URL is unusable or targets an internal address
    """
    try:
        parsed = urlparse(url)
        port = parsed.port
    except ValueError as e:
        raise InvalidServerURL("Invalid URL format") from e

    if parsed.scheme not in ("http", "https"):
        raise InvalidServerURL("Only HTTP and HTTPS protocols are allowed")

    host = (parsed.hostname or "").lower()
    if not host:
        raise InvalidServerURL("Invalid URL format")

    if allow_private:
        return

    if host == "localhost" or host.endswith(".localhost"):
        raise InvalidServerURL(INTERNAL_ADDRESS)

    try:
        ipaddress.ip_address(host)
    except ValueError:
        pass
    else:
        if is_private_ip(host):
            raise InvalidServerURL(INTERNAL_ADDRESS)
        return

    try:
        addresses = await _resolve(host, port or (443 if parsed.scheme == "https" else 80))
    except OSError as e:
        raise InvalidServerURL("Could not resolve server hostname") from e

    if any(is_private_ip(address) for address in addresses):
        raise InvalidServerURL(INTERNAL_ADDRESS)
