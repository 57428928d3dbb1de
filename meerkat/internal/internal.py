"""Low-level helpers for the WebDAV layer."""

from __future__ import annotations

from enum import IntEnum
from http import HTTPStatus


class Depth(IntEnum):
    """Depth indicates whether a request applies to the resource's members.

    Defined in RFC 4918 section 10.2.
    """

    ZERO = 0  # Request applies only to the resource
    ONE = 1  # Request applies to resource and its internal members only
    INFINITY = -1  # Request applies to resource and all of its members


def parse_depth(s: str) -> Depth:
    """Parse a Depth header."""
    if s == "0":
        return Depth.ZERO
    elif s == "1":
        return Depth.ONE
    elif s == "infinity":
        return Depth.INFINITY
    else:
        raise HTTPError(400, Exception("webdav: invalid Depth value"))


class HTTPError(Exception):
    """HTTP error with status code."""

    def __init__(self, code: int, err: Exception | None = None):
        self.code = code
        self.err = err
        super().__init__(str(self))

    def __str__(self) -> str:
        try:
            text = HTTPStatus(self.code).phrase
        except ValueError:
            text = "Unknown"

        s = f"{self.code} {text}"
        if self.err:
            return f"{s}: {self.err}"
        return s


def http_errorf(code: int, format_str: str, *args: object) -> HTTPError:
    """Create an HTTPError with a formatted message."""
    return HTTPError(code, Exception(format_str % args if args else format_str))
