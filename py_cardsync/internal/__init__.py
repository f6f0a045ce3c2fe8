"""Internal WebDAV plumbing shared by the CardDAV client."""

from . import elements
from .client import Client
from .elements import (
    CurrentUserPrincipal,
    Href,
    MultiStatus,
    Prop,
    PropFind,
    PropStat,
    ResourceType,
    Response,
    Status,
)
from .internal import (
    Depth,
    HrefError,
    HTTPError,
    depth_to_string,
    is_not_found,
    is_precondition_failed,
)

__all__ = [
    "elements",
    "Client",
    "CurrentUserPrincipal",
    "Href",
    "MultiStatus",
    "Prop",
    "PropFind",
    "PropStat",
    "ResourceType",
    "Response",
    "Status",
    "Depth",
    "HrefError",
    "HTTPError",
    "depth_to_string",
    "is_not_found",
    "is_precondition_failed",
]
