"""
Version archives for NodeDB flatfiles.

- base: VersionArchive protocol and create_archive factory
- local: gzip + checksum history directories, no external binaries
- rcs: RCS command-line tools
"""

from .base import VersionArchive, create_archive, next_revision
from .local import LocalArchive
from .rcs import RcsArchive

__all__ = ["LocalArchive", "RcsArchive", "VersionArchive", "create_archive", "next_revision"]
