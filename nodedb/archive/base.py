"""
Base protocol for the NodeDB version archive.

Versioned flatfile entities keep a revision history of every object file.
The engine checks out before writing, checks in after writing, and reverts
a working file to an older revision on request.

Invariants:
    - Revisions are numbered ``1.1``, ``1.2``, ... in check-in order
    - Check-in of unchanged content does not create a revision
    - Removing an object never deletes its history
    - Archive data lives in a directory (``archive_dir``) beside the
      working files; the flatfile id walk skips it

How to change safely:
    - Protocol changes require updating all implementations
    - Never renumber existing revisions
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..config import Settings

logger = logging.getLogger(__name__)

FIRST_REVISION = "1.1"
ARCHIVE_SUFFIX = ",v"


def next_revision(current: Optional[str]) -> str:
    """Revision number following ``current``."""
    if current is None:
        return FIRST_REVISION
    major, minor = current.split(".", 1)
    return f"{major}.{int(minor) + 1}"


def revision_sort_key(revision: str) -> tuple[int, ...]:
    return tuple(int(part) for part in revision.split("."))


@runtime_checkable
class VersionArchive(Protocol):
    """Protocol for version archive backends."""

    archive_dir: str

    @abstractmethod
    def checkout(self, path: Path) -> None:
        """Lock ``path`` for editing, materializing the head revision if needed."""
        ...

    @abstractmethod
    def checkin(self, path: Path, comment: str) -> Optional[str]:
        """Record the working file as a new revision.

        Returns:
            New revision number, or None when content is unchanged
        """
        ...

    @abstractmethod
    def revisions(self, path: Path) -> list[str]:
        """All revision numbers of ``path``, oldest first."""
        ...

    @abstractmethod
    def head(self, path: Path) -> str:
        """Latest revision number of ``path``.

        Raises:
            VersionArchiveError: If ``path`` has no history
        """
        ...

    @abstractmethod
    def log(self, path: Path) -> str:
        """Human-readable revision log."""
        ...

    @abstractmethod
    def revert(self, path: Path, version: Optional[str] = None) -> None:
        """Overwrite the working file with ``version`` (default: head)."""
        ...

    @abstractmethod
    def has_history(self, path: Path) -> bool:
        ...


def create_archive(settings: "Settings") -> VersionArchive:
    """Factory function to create a version archive from configuration.

    Raises:
        ValueError: If the backend is not supported
    """
    if settings.archive_backend == "rcs":
        from .rcs import RcsArchive

        return RcsArchive(bindir=settings.rcs_bindir, archive_dir=settings.archive_dir)
    if settings.archive_backend == "local":
        from .local import LocalArchive

        return LocalArchive(archive_dir=settings.archive_dir)
    raise ValueError(f"Unsupported archive backend: {settings.archive_backend}")
