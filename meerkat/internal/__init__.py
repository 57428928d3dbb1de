"""WebDAV building blocks shared by the CardDAV handler."""

from .elements import (
    CurrentUserPrincipal,
    GetContentLength,
    GetContentType,
    GetETag,
    GetLastModified,
    Href,
    MultiStatus,
    Prop,
    PropFind,
    PropStat,
    ResourceType,
    Response,
    Status,
)
from .internal import Depth, HTTPError, http_errorf, parse_depth

__all__ = [
    "CurrentUserPrincipal",
    "Depth",
    "GetContentLength",
    "GetContentType",
    "GetETag",
    "GetLastModified",
    "HTTPError",
    "Href",
    "MultiStatus",
    "Prop",
    "PropFind",
    "PropStat",
    "ResourceType",
    "Response",
    "Status",
    "http_errorf",
    "parse_depth",
]
