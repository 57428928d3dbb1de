"""Debug logging utilities for the Meerkat server."""

from __future__ import annotations

import logging
from typing import Any

from lxml import etree

logger = logging.getLogger("meerkat")


def format_xml(xml_bytes: bytes | str) -> str:
    """Format XML with proper indentation.

    Args:
        xml_bytes: XML content as bytes or string

    Returns:
        Pretty-formatted XML string, or the input unchanged if it does not parse
    """
    if isinstance(xml_bytes, str):
        xml_bytes = xml_bytes.encode("utf-8")
    try:
        parser = etree.XMLParser(remove_blank_text=True)
        root = etree.fromstring(xml_bytes, parser)
    except etree.XMLSyntaxError:
        return xml_bytes.decode("utf-8", errors="replace")
    return etree.tostring(root, pretty_print=True, encoding="unicode")


def is_xml_content(content_type: str | None) -> bool:
    """Check if content type is XML."""
    if not content_type:
        return False
    return any(t in content_type.lower() for t in ("application/xml", "text/xml"))


def _log_body(title: str, content_type: str, body: bytes) -> None:
    logger.info("-" * 80)
    logger.info(title)
    if is_xml_content(content_type):
        for line in format_xml(body).split("\n"):
            if line.strip():
                logger.info(f"  {line}")
        return

    # vCards and JSON are logged as a size-capped preview
    preview = body[:200].decode("utf-8", errors="replace")
    logger.info(f"  [{len(body)} bytes] {preview}")
    if len(body) > 200:
        logger.info(f"  ... ({len(body) - 200} more bytes)")


def log_request(method: str, path: str, headers: dict[str, str], body: bytes | None) -> None:
    """Log an incoming HTTP request.

    Args:
        method: HTTP method
        path: Request path
        headers: Request headers
        body: Request body (if any)
    """
    logger.info("=" * 80)
    logger.info(f">>> INCOMING REQUEST: {method} {path}")
    logger.info("-" * 80)

    interesting_headers = [
        "Content-Type",
        "Content-Length",
        "Depth",
        "If-Match",
        "If-None-Match",
        "Authorization",
    ]

    logger.info("Headers:")
    for header in interesting_headers:
        value = headers.get(header.lower(), headers.get(header))
        if value:
            if header == "Authorization":
                value = "[REDACTED]"
            logger.info(f"  {header}: {value}")

    if body:
        _log_body("Request Body:", headers.get("content-type", ""), body)

    logger.info("=" * 80)


def log_response(status_code: int, headers: dict[str, Any], body: bytes | None) -> None:
    """Log an outgoing HTTP response.

    Args:
        status_code: HTTP status code
        headers: Response headers
        body: Response body (if any)
    """
    logger.info("=" * 80)
    logger.info(f"<<< OUTGOING RESPONSE: {status_code}")
    logger.info("-" * 80)

    interesting_headers = ["Content-Type", "Content-Length", "ETag", "DAV", "Allow", "Location"]

    logger.info("Headers:")
    for header in interesting_headers:
        value = headers.get(header.lower(), headers.get(header))
        if value:
            logger.info(f"  {header}: {value}")

    if body:
        _log_body("Response Body:", headers.get("content-type", ""), body)

    logger.info("=" * 80)
    logger.info("")


def setup_debug_logging() -> None:
    """Configure debug logging for the whole meerkat logger hierarchy."""
    logger.setLevel(logging.DEBUG)

    handler = logging.StreamHandler()
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter("%(message)s"))

    logger.addHandler(handler)
    logger.propagate = False
