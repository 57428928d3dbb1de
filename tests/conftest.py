"""Shared fixtures for the Meerkat tests."""

from __future__ import annotations

import base64
import struct
import zlib
from io import BytesIO

import httpx
import pytest
from PIL import Image
from starlette.testclient import TestClient

from meerkat.config import Config
from meerkat.fetch import ImageFetcher
from meerkat.photos import PhotoStore
from meerkat.server import create_app
from meerkat.store import ContactStore


class FakeResolver:
    """Resolver returning canned addresses and recording every lookup."""

    def __init__(self, answers: dict[str, list[str]]):
        self.answers = answers
        self.calls: list[str] = []

    async def __call__(self, host: str, port: int) -> list[str]:
        self.calls.append(host)
        if host in self.answers:
            return self.answers[host]
        # IP literals resolve to themselves
        if host.replace(".", "").isdigit() or ":" in host:
            return [host]
        raise OSError(f"unknown host {host}")


def _make_png(width: int = 200, height: int = 160, color: tuple[int, int, int] = (200, 30, 30)) -> bytes:
    buf = BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format="PNG")
    return buf.getvalue()


def _png_chunk(kind: bytes, data: bytes) -> bytes:
    return struct.pack(">I", len(data)) + kind + data + struct.pack(">I", zlib.crc32(kind + data))


def _oversized_png(width: int = 20000, height: int = 10000) -> bytes:
    """A PNG whose header declares the given size but carries no pixels."""
    header = struct.pack(">IIBBBBB", width, height, 8, 2, 0, 0, 0)
    return (
        b"\x89PNG\r\n\x1a\n"
        + _png_chunk(b"IHDR", header)
        + _png_chunk(b"IDAT", b"")
        + _png_chunk(b"IEND", b"")
    )


def _basic_auth(login: str, password: str) -> dict[str, str]:
    token = base64.b64encode(f"{login}:{password}".encode()).decode("ascii")
    return {"Authorization": f"Basic {token}"}


@pytest.fixture
def store(tmp_path):
    store = ContactStore(f"sqlite:///{tmp_path / 'meerkat.db'}")
    store.create_schema()
    yield store
    store.dispose()


@pytest.fixture
def photos(tmp_path):
    return PhotoStore(tmp_path / "photos")


@pytest.fixture
def alice(store):
    return store.create_user("alice", "alice@example.org", "alice-password")


@pytest.fixture
def bob(store):
    return store.create_user("bob", "bob@example.org", "bob-password")


@pytest.fixture
def resolver():
    return FakeResolver({"photos.example.com": ["93.184.216.34"]})


@pytest.fixture
def client(tmp_path, store, photos, resolver):
    """TestClient over an app whose fetcher never touches the network."""

    def refuse(request: httpx.Request) -> httpx.Response:
        raise AssertionError(f"unexpected outbound request to {request.url}")

    fetcher = ImageFetcher(resolver=resolver, transport=httpx.MockTransport(refuse))
    config = Config(database_path=str(tmp_path / "meerkat.db"), photo_dir=str(tmp_path / "photos"))
    app = create_app(config, store=store, photos=photos, fetcher=fetcher)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def make_png():
    """Factory for in-memory PNG images."""
    return _make_png


@pytest.fixture
def basic_auth():
    """Factory for HTTP Basic Authorization headers."""
    return _basic_auth


@pytest.fixture
def fake_resolver():
    """The FakeResolver class, for tests that need their own answers."""
    return FakeResolver


@pytest.fixture
def oversized_png():
    """PNG bytes declaring 20000x10000 pixels, past Pillow's decompression limit."""
    return _oversized_png()
