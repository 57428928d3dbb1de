"""Meerkat server command-line tool."""

import argparse
import logging
import sys
from pathlib import Path


def main() -> None:
    """Main entry point for the Meerkat server."""
    parser = argparse.ArgumentParser(
        description="Meerkat CRM CardDAV and import server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Start server with the database and photos in the current directory
  meerkat-server

  # Start server on a specific port with an explicit database
  meerkat-server --port 8080 --db /var/lib/meerkat/meerkat.db --photo-dir /var/lib/meerkat/photos

Endpoints:
  - CardDAV: http://localhost:PORT/.well-known/carddav
  - Import:  http://localhost:PORT/import/csv, /import/vcf

Defaults are read from MEERKAT_DATABASE_PATH, MEERKAT_PHOTO_DIR,
MEERKAT_HOST, MEERKAT_PORT and MEERKAT_DEBUG.
        """,
    )
    parser.add_argument("--addr", help="listening address (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, help="listening port (default: 8080)")
    parser.add_argument("--db", help="SQLite database file (default: meerkat.db)")
    parser.add_argument("--photo-dir", help="directory for contact photos (default: photos)")
    parser.add_argument(
        "--debug",
        action="store_true",
        help="enable debug logging (logs request/response bodies with formatted XML)",
    )

    args = parser.parse_args()

    from meerkat.config import Config

    config = Config()
    if args.addr:
        config.host = args.addr
    if args.port:
        config.port = args.port
    if args.db:
        config.database_path = args.db
    if args.photo_dir:
        config.photo_dir = args.photo_dir
    if args.debug:
        config.debug = True

    db_parent = Path(config.database_path).resolve().parent
    if config.database_path != ":memory:" and not db_parent.is_dir():
        print(f"Error: database directory does not exist: {db_parent}", file=sys.stderr)
        sys.exit(1)

    if config.debug:
        from meerkat.debug import setup_debug_logging

        setup_debug_logging()
    else:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    from meerkat.server import create_app

    app = create_app(config)

    import uvicorn

    print(f"Meerkat server listening on {config.host}:{config.port}")
    print(f"Database: {config.database_path}")
    print(f"Photos:   {Path(config.photo_dir).resolve()}")
    print(f"CardDAV:  http://{config.host}:{config.port}/.well-known/carddav")

    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level="debug" if config.debug else "info",
    )


if __name__ == "__main__":
    main()
