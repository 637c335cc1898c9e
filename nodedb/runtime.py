"""
Process-level helpers for NodeDB.

- setup_logging: Root logger configuration (text or JSON)
- new_guid / normalize_guid: Identifier generation and normalization
- hostname / current_user: Identity used for master-host checks and
  version archive comments
- escape_key / unescape_key: Filesystem-safe rendering of primary keys
"""

from __future__ import annotations

import base64
import getpass
import logging
import socket
import time
import uuid
from urllib.parse import quote, unquote

import json_log_formatter

from .config import Settings

GUID_LENGTH = 24
GUID_STRING_LENGTH = 36


def setup_logging(settings: Settings) -> None:
    """Configure logging based on configuration.

    Args:
        settings: NodeDB settings
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    if settings.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("psycopg").setLevel(logging.WARNING)
    logging.getLogger("pymysql").setLevel(logging.WARNING)
    logging.getLogger("redis").setLevel(logging.WARNING)


def new_guid() -> str:
    """Generate a new 24-character base64 GUID."""
    return base64.b64encode(uuid.uuid4().bytes).decode("ascii")


def normalize_guid(value: object) -> str:
    """Return the 24-character base64 form of a GUID.

    Accepts the base64 form (returned unchanged) or the 36-character
    hyphenated form. Anything else is returned as ``str(value)`` so the
    type predicate can report it.
    """
    text = str(value)
    if len(text) == GUID_STRING_LENGTH:
        try:
            return base64.b64encode(uuid.UUID(text).bytes).decode("ascii")
        except ValueError:
            return text
    return text


def guid_to_string(value: str) -> str:
    """Return the 36-character hyphenated form of a base64 GUID."""
    return str(uuid.UUID(bytes=base64.b64decode(value)))


def hostname() -> str:
    """Name of the current host."""
    return socket.gethostname()


def current_user() -> str:
    """Login name of the current user, for archive comments."""
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


def now() -> float:
    """Current time as epoch seconds."""
    return time.time()


def escape_key(key: object) -> str:
    """Render a primary key as a filesystem-safe file name."""
    return quote(str(key), safe="")


def unescape_key(name: str) -> str:
    """Inverse of ``escape_key``."""
    return unquote(name)
