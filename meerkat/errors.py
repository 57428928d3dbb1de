"""Error kinds raised by the contact core.

Each kind carries the HTTP status the surfaces answer with and a stable
machine-readable code for the JSON error body.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any


class MeerkatError(Exception):
    """Base class for errors surfaced to API clients."""

    status = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str = "", details: dict[str, Any] | None = None):
        self.message = message or self.__class__.__name__
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Render the JSON error envelope."""
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            error["details"] = self.details
        return {"error": error, "timestamp": datetime.now(UTC).isoformat()}


class Unauthorized(MeerkatError):
    status = 401
    code = "UNAUTHORIZED"


class Forbidden(MeerkatError):
    status = 403
    code = "FORBIDDEN"


class NotFound(MeerkatError):
    status = 404
    code = "NOT_FOUND"


class PreconditionFailed(MeerkatError):
    status = 412
    code = "PRECONDITION_FAILED"


class InvalidInput(MeerkatError):
    status = 400
    code = "INVALID_INPUT"


class Conflict(MeerkatError):
    status = 409
    code = "CONFLICT"


class NotSupported(MeerkatError):
    status = 501
    code = "NOT_SUPPORTED"


class UnsupportedFormat(MeerkatError):
    status = 400
    code = "UNSUPPORTED_FORMAT"


class RemoteFetchFailed(MeerkatError):
    status = 502
    code = "EXTERNAL_SERVICE_ERROR"


class Internal(MeerkatError):
    status = 500
    code = "INTERNAL_ERROR"
