"""Meerkat: personal CRM core with a CardDAV address book and contact import."""

from .config import Config
from .photos import PhotoStore
from .server import create_app
from .store import ContactStore

__version__ = "0.1.0"

__all__ = [
    "Config",
    "ContactStore",
    "PhotoStore",
    "create_app",
]
