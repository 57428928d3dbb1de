"""JSON endpoints of the contact import API."""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from starlette.datastructures import UploadFile
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from ..auth import authenticate_bearer
from ..errors import InvalidInput, MeerkatError
from ..store import ContactStore
from .models import KIND_CSV, KIND_VCF, ColumnMapping, RowImportAction
from .parsers import MAX_CSV_SIZE, MAX_VCF_SIZE
from .service import ImportService

logger = logging.getLogger("meerkat.importer")

Endpoint = Callable[[Request], Awaitable[Response]]


def error_response(err: MeerkatError) -> JSONResponse:
    return JSONResponse(err.to_dict(), status_code=err.status)


async def read_upload(request: Request, max_size: int) -> tuple[str, bytes]:
    """Read the ``file`` part of a multipart upload.

    At most ``max_size + 1`` bytes are read so that an oversized file is
    detected without buffering all of it.

    Returns:
        Tuple of (filename, content)
    """
    async with request.form() as form:
        upload = form.get("file")
        if not isinstance(upload, UploadFile):
            raise InvalidInput("No file uploaded", {"field": "file"})
        data = await upload.read(max_size + 1)
        return upload.filename or "", data


async def read_json(request: Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise InvalidInput(f"Invalid JSON body: {e}") from e
    if not isinstance(body, dict):
        raise InvalidInput("JSON body must be an object")
    return body


def _session_id(body: dict[str, Any]) -> str:
    session_id = body.get("session_id")
    if not isinstance(session_id, str) or not session_id:
        raise InvalidInput("session_id is required", {"field": "session_id"})
    return session_id


def _list(body: dict[str, Any], key: str) -> list[Any]:
    value = body.get(key)
    if not isinstance(value, list):
        raise InvalidInput(f"{key} must be a list", {"field": key})
    return value


class ImportAPI:
    """Starlette endpoints wrapping ``ImportService``.

    Every endpoint requires a bearer token and answers errors with the JSON
    error envelope.
    """

    def __init__(self, service: ImportService, store: ContactStore):
        self.service = service
        self.store = store

    def routes(self) -> list[Route]:
        return [
            Route("/import/csv", self._guard(self.upload_csv), methods=["POST"]),
            Route("/import/csv/preview", self._guard(self.preview_csv), methods=["POST"]),
            Route("/import/csv/confirm", self._guard(self.confirm_csv), methods=["POST"]),
            Route("/import/vcf", self._guard(self.upload_vcf), methods=["POST"]),
            Route("/import/vcf/confirm", self._guard(self.confirm_vcf), methods=["POST"]),
        ]

    def _guard(self, endpoint: Endpoint) -> Endpoint:
        async def wrapped(request: Request) -> Response:
            try:
                await authenticate_bearer(request, self.store)
                return await endpoint(request)
            except MeerkatError as e:
                if e.status >= 500:
                    logger.error(f"{request.method} {request.url.path} failed: {e.message}")
                return error_response(e)

        return wrapped

    async def upload_csv(self, request: Request) -> Response:
        filename, data = await read_upload(request, MAX_CSV_SIZE)
        resp = await self.service.upload_csv(request.state.user, filename, data)
        return JSONResponse(resp.to_dict())

    async def preview_csv(self, request: Request) -> Response:
        body = await read_json(request)
        mappings = [ColumnMapping.from_dict(m) for m in _list(body, "mappings")]
        resp = await self.service.preview_csv(request.state.user, _session_id(body), mappings)
        return JSONResponse(resp.to_dict())

    async def upload_vcf(self, request: Request) -> Response:
        filename, data = await read_upload(request, MAX_VCF_SIZE)
        resp = await self.service.upload_vcf(request.state.user, filename, data)
        return JSONResponse(resp.to_dict())

    async def confirm_csv(self, request: Request) -> Response:
        return await self._confirm(request, KIND_CSV)

    async def confirm_vcf(self, request: Request) -> Response:
        return await self._confirm(request, KIND_VCF)

    async def _confirm(self, request: Request, kind: str) -> Response:
        body = await read_json(request)
        actions = [RowImportAction.from_dict(a) for a in _list(body, "actions")]
        result = await self.service.confirm(request.state.user, kind, _session_id(body), actions)
        return JSONResponse(result.to_dict())
