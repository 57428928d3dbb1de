"""Request authentication for the CardDAV and import surfaces."""

from __future__ import annotations

import base64
import binascii

from starlette.concurrency import run_in_threadpool
from starlette.requests import Request

from .errors import Unauthorized
from .models import User
from .store import ContactStore

BASIC_REALM = "CardDAV"


def parse_basic_credentials(header: str) -> tuple[str, str] | None:
    """Decode an ``Authorization: Basic`` header into (login, password)."""
    scheme, _, encoded = header.strip().partition(" ")
    if scheme.lower() != "basic" or not encoded:
        return None
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    login, sep, password = decoded.partition(":")
    if not sep:
        return None
    return login, password


async def authenticate_basic(request: Request, store: ContactStore) -> User:
    """Authenticate a CardDAV request with HTTP Basic credentials.

    The login may be the username or the e-mail address.

    Raises:
        Unauthorized: If credentials are missing or wrong
    """
    creds = parse_basic_credentials(request.headers.get("authorization", ""))
    if creds is None:
        raise Unauthorized("authentication required")

    user = await run_in_threadpool(store.authenticate, *creds)
    if user is None:
        raise Unauthorized("invalid credentials")
    request.state.user = user
    return user


async def authenticate_bearer(request: Request, store: ContactStore) -> User:
    """Authenticate an import API request with a bearer token.

    Raises:
        Unauthorized: If the token is missing or unknown
    """
    scheme, _, token = request.headers.get("authorization", "").strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthorized("bearer token required")

    user = await run_in_threadpool(store.user_for_token, token.strip())
    if user is None:
        raise Unauthorized("invalid token")
    request.state.user = user
    return user
