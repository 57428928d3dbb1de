"""Meerkat ASGI application."""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterator

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import RedirectResponse, Response
from starlette.routing import Route

from .carddav import Handler, StoreCardDAVBackend
from .carddav.backend import PREFIX
from .config import Config
from .fetch import ImageFetcher
from .importer import ImportAPI, ImportService
from .photos import PhotoStore
from .store import ContactStore

logger = logging.getLogger("meerkat")

CARDDAV_METHODS = [
    "GET",
    "HEAD",
    "PUT",
    "DELETE",
    "OPTIONS",
    "PROPFIND",
    "PROPPATCH",
    "MKCOL",
    "REPORT",
]


async def well_known_carddav(request: Request) -> Response:
    return RedirectResponse(PREFIX, status_code=308)


def create_app(
    config: Config | None = None,
    *,
    store: ContactStore | None = None,
    photos: PhotoStore | None = None,
    fetcher: ImageFetcher | None = None,
) -> Starlette:
    """Create the Meerkat application.

    Collaborators not passed in are built from ``config``; the schema is
    created if it does not exist yet.

    Args:
        config: Server configuration (defaults from the environment)
        store: Contact store
        photos: Photo store
        fetcher: Remote image fetcher

    Returns:
        Starlette application
    """
    config = config or Config()
    store = store or ContactStore(config.database_url)
    photos = photos or PhotoStore(config.photo_dir)
    owns_fetcher = fetcher is None
    fetcher = fetcher or ImageFetcher()
    store.create_schema()

    backend = StoreCardDAVBackend(store, photos, fetcher)
    handler = Handler(store, backend, debug=config.debug)
    importer = ImportService(store, photos, fetcher)

    async def carddav_handler(request: Request) -> Response:
        return await handler.handle(request)

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        yield
        if owns_fetcher:
            await fetcher.aclose()

    routes = [
        Route("/.well-known/carddav", well_known_carddav, methods=["GET", "HEAD", "PROPFIND", "OPTIONS"]),
        Route("/carddav", carddav_handler, methods=CARDDAV_METHODS),
        Route("/carddav/{path:path}", carddav_handler, methods=CARDDAV_METHODS),
        *ImportAPI(importer, store).routes(),
    ]

    app = Starlette(debug=config.debug, routes=routes, lifespan=lifespan)
    app.state.store = store
    app.state.photos = photos
    app.state.importer = importer
    logger.debug(f"Application created (database {config.database_url}, photos in {config.photo_dir})")
    return app
