"""
Configuration for NodeDB.

Settings are loaded from environment variables (prefix ``NODEDB_``) via
pydantic-settings. Loading of ``.rc`` overlay files is left to the host
application, which can pass keyword overrides to ``Settings(...)``.

Invariants:
    - All settings have sensible defaults for local development
    - Derived paths (flatfile_root, sqlite_root, text_index_path) resolve
      relative to ``home`` when not set explicitly
    - Secrets are never logged or exposed in error messages
    - Per-entity overrides never mutate the process-wide Settings

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep field names stable; entities reference them in override maps
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Mapping

from pydantic import Field
from pydantic_settings import BaseSettings

from .errors import InvalidArgument

logger = logging.getLogger(__name__)

_SECRET_FIELDS = frozenset({"db_pass"})


class Settings(BaseSettings):
    """NodeDB configuration loaded from environment.

    Example:
        >>> settings = Settings(home="/tmp/nodedb")
        >>> settings.sqlite_path
        PosixPath('/tmp/nodedb/sqlite')
        >>> settings.for_entity({"db_host": "replica"}).db_host
        'replica'
    """

    # Filesystem roots
    home: str = Field(default="~/.nodedb", description="Base directory for local stores")
    flatfile_root: str | None = Field(default=None, description="Root for flatfile stores")
    sqlite_root: str | None = Field(default=None, description="Directory for SQLite databases")
    scratch_root: str = Field(default="/tmp", description="Temp directory for atomic writes")

    # Flatfile master host; writes are refused on any other host
    flatfile_host: str | None = Field(default=None, description="Only host allowed to write flatfiles")

    # SQL credentials
    db_host: str = Field(default="localhost", description="Database server host")
    db_port: int | None = Field(default=None, description="Database server port")
    db_user: str = Field(default="nodedb", description="Database user")
    db_pass: str | None = Field(default=None, description="Database password")
    storage: str = Field(default="auto", description="Default backing store (auto, none, sqlite, postgresql, mysql)")
    sqlite_busy_timeout_ms: int = Field(default=5000, description="SQLite busy timeout")
    reconnect_delay: float = Field(default=1.0, description="Seconds to wait before reconnecting")

    # Cache
    redis_url: str | None = Field(default=None, description="Redis URL for the object cache")
    cache_ttl: int = Field(default=300, description="Cache entry TTL in seconds (0=disabled)")

    # Version archive
    archive_backend: str = Field(default="local", description="Version archive backend (local, rcs)")
    archive_dir: str = Field(default="RCS", description="Archive directory name beside each flatfile")
    rcs_bindir: str = Field(default="/usr/bin", description="Directory holding co/ci/rlog")

    # Full-text index
    text_index_path: str | None = Field(default=None, description="SQLite file for full-text indexes")

    # Observability
    log_level: str = Field(default="INFO", description="Log level")
    log_format: str = Field(default="text", description="Log format (text, json)")

    model_config = {"env_prefix": "NODEDB_"}

    @property
    def home_path(self) -> Path:
        """Expanded home directory."""
        return Path(os.path.expanduser(self.home))

    @property
    def flatfile_path(self) -> Path:
        """Flatfile root, defaulting to ``<home>/yaml``."""
        if self.flatfile_root:
            return Path(os.path.expanduser(self.flatfile_root))
        return self.home_path / "yaml"

    @property
    def sqlite_path(self) -> Path:
        """SQLite root, defaulting to ``<home>/sqlite``."""
        if self.sqlite_root:
            return Path(os.path.expanduser(self.sqlite_root))
        return self.home_path / "sqlite"

    @property
    def scratch_path(self) -> Path:
        """Scratch directory used for temp files."""
        return Path(os.path.expanduser(self.scratch_root))

    @property
    def text_index_file(self) -> Path:
        """Full-text index database, defaulting to ``<sqlite_root>/textindex.db``."""
        if self.text_index_path:
            return Path(os.path.expanduser(self.text_index_path))
        return self.sqlite_path / "textindex.db"

    def get(self, key: str) -> Any:
        """Return a setting by name.

        Raises:
            InvalidArgument: If no such setting exists
        """
        if key not in type(self).model_fields:
            raise InvalidArgument(f"Unknown setting '{key}'", details={"key": key})
        return getattr(self, key)

    def for_entity(self, overrides: Mapping[str, Any] | None) -> Settings:
        """Return settings with per-entity overrides applied.

        Args:
            overrides: Map of setting name to value

        Returns:
            A new Settings instance (self when there is nothing to override)
        """
        if not overrides:
            return self
        unknown = [k for k in overrides if k not in type(self).model_fields]
        if unknown:
            raise InvalidArgument(
                f"Unknown setting override(s): {', '.join(sorted(unknown))}",
                details={"keys": sorted(unknown)},
            )
        return self.model_copy(update=dict(overrides))

    def validate_settings(self) -> list[str]:
        """Validate configuration and return list of errors."""
        errors = []

        if self.storage not in ("auto", "none", "sqlite", "postgresql", "mysql"):
            errors.append(f"Invalid storage: {self.storage}")

        if self.archive_backend not in ("local", "rcs"):
            errors.append(f"Invalid archive_backend: {self.archive_backend}")

        if self.cache_ttl < 0:
            errors.append("cache_ttl must be >= 0")

        if self.reconnect_delay < 0:
            errors.append("reconnect_delay must be >= 0")

        if self.log_format not in ("text", "json"):
            errors.append(f"Invalid log_format: {self.log_format}")

        return errors

    def log_config(self) -> None:
        """Log current configuration (excluding secrets)."""
        shown = {
            key: ("***" if key in _SECRET_FIELDS and value else value)
            for key, value in self.model_dump().items()
        }
        logger.info("NodeDB configuration", extra=shown)


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the process-wide settings, loading from environment on first use."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Reset process-wide settings (for testing)."""
    global _settings
    _settings = None
