"""Runtime configuration read from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, field


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes")


@dataclass
class Config:
    """Configuration for the Meerkat server.

    Defaults come from MEERKAT_* environment variables; the command-line
    tool overrides individual values from its flags.
    """

    database_path: str = field(default_factory=lambda: os.getenv("MEERKAT_DATABASE_PATH", "meerkat.db"))
    photo_dir: str = field(default_factory=lambda: os.getenv("MEERKAT_PHOTO_DIR", "photos"))
    host: str = field(default_factory=lambda: os.getenv("MEERKAT_HOST", "127.0.0.1"))
    port: int = field(default_factory=lambda: int(os.getenv("MEERKAT_PORT", "8080")))
    debug: bool = field(default_factory=lambda: _env_flag("MEERKAT_DEBUG"))

    @property
    def database_url(self) -> str:
        """SQLAlchemy URL for the configured SQLite file."""
        if self.database_path == ":memory:":
            return "sqlite://"
        return f"sqlite:///{self.database_path}"
