"""
Local version archive for NodeDB flatfiles.

Keeps revision history without external binaries. Each working file
``<dir>/<name>`` has a history directory ``<dir>/<archive_dir>/<name>,v/``:

    manifest.json:
        {"revisions": [{"revision": "1.1", "timestamp": ..., "author": ...,
                        "comment": ..., "checksum": "sha256:...",
                        "size": ...}, ...]}
    1.1.gz, 1.2.gz, ...:
        gzip-compressed file content of each revision

Invariants:
    - Revision content is verified against its checksum on every read
    - The manifest is replaced atomically (temp file + rename)
    - Check-in of content identical to the head creates no revision
"""

from __future__ import annotations

import gzip
import hashlib
import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from ..errors import VersionArchiveError
from ..runtime import current_user, now
from .base import ARCHIVE_SUFFIX, next_revision

logger = logging.getLogger(__name__)

MANIFEST = "manifest.json"


class LocalArchive:
    """Directory-based implementation of the VersionArchive protocol.

    Example:
        >>> archive = LocalArchive()
        >>> archive.checkin(Path("/data/yaml/myapp/Person/abc"), "first")
        '1.1'
        >>> archive.revisions(Path("/data/yaml/myapp/Person/abc"))
        ['1.1']
    """

    def __init__(self, archive_dir: str = "RCS") -> None:
        self.archive_dir = archive_dir

    def _history_dir(self, path: Path) -> Path:
        return path.parent / self.archive_dir / f"{path.name}{ARCHIVE_SUFFIX}"

    def _read_manifest(self, path: Path) -> dict[str, Any]:
        manifest = self._history_dir(path) / MANIFEST
        if not manifest.exists():
            return {"revisions": []}
        try:
            return json.loads(manifest.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise VersionArchiveError(f"Unreadable archive manifest: {exc}", str(path)) from exc

    def _write_manifest(self, path: Path, data: dict[str, Any]) -> None:
        history = self._history_dir(path)
        fd, tmp = tempfile.mkstemp(dir=history, prefix=".manifest.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2)
            os.replace(tmp, history / MANIFEST)
        except OSError as exc:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise VersionArchiveError(f"Cannot write archive manifest: {exc}", str(path)) from exc

    @staticmethod
    def _compute_checksum(data: bytes) -> str:
        """Compute SHA-256 checksum of data."""
        return f"sha256:{hashlib.sha256(data).hexdigest()}"

    def has_history(self, path: Path) -> bool:
        return bool(self._read_manifest(path)["revisions"])

    def checkout(self, path: Path) -> None:
        if path.exists() or not self.has_history(path):
            return
        self.revert(path)

    def checkin(self, path: Path, comment: str) -> Optional[str]:
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise VersionArchiveError(f"Cannot read working file: {exc}", str(path)) from exc

        manifest = self._read_manifest(path)
        revisions = manifest["revisions"]
        checksum = self._compute_checksum(data)
        if revisions and revisions[-1]["checksum"] == checksum:
            logger.debug(f"Unchanged, no new revision: {path}")
            return None

        revision = next_revision(revisions[-1]["revision"] if revisions else None)
        history = self._history_dir(path)
        try:
            history.mkdir(parents=True, exist_ok=True)
            with gzip.open(history / f"{revision}.gz", "wb") as handle:
                handle.write(data)
        except OSError as exc:
            raise VersionArchiveError(f"Cannot store revision {revision}: {exc}", str(path)) from exc

        revisions.append(
            {
                "revision": revision,
                "timestamp": now(),
                "author": current_user(),
                "comment": comment,
                "checksum": checksum,
                "size": len(data),
            }
        )
        self._write_manifest(path, manifest)
        logger.info(
            f"Checked in {path.name} revision {revision}",
            extra={"path": str(path), "revision": revision},
        )
        return revision

    def revisions(self, path: Path) -> list[str]:
        return [entry["revision"] for entry in self._read_manifest(path)["revisions"]]

    def head(self, path: Path) -> str:
        revisions = self.revisions(path)
        if not revisions:
            raise VersionArchiveError("No revision history", str(path))
        return revisions[-1]

    def read(self, path: Path, version: Optional[str] = None) -> bytes:
        """Content of ``version`` (default: head), checksum-verified."""
        manifest = self._read_manifest(path)
        entries = {entry["revision"]: entry for entry in manifest["revisions"]}
        revision = version or self.head(path)
        entry = entries.get(revision)
        if entry is None:
            raise VersionArchiveError(f"No such revision {revision}", str(path))
        try:
            with gzip.open(self._history_dir(path) / f"{revision}.gz", "rb") as handle:
                data = handle.read()
        except OSError as exc:
            raise VersionArchiveError(f"Cannot read revision {revision}: {exc}", str(path)) from exc
        if self._compute_checksum(data) != entry["checksum"]:
            raise VersionArchiveError(f"Checksum mismatch in revision {revision}", str(path))
        return data

    def revert(self, path: Path, version: Optional[str] = None) -> None:
        data = self.read(path, version)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.replace(tmp, path)
        except OSError as exc:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise VersionArchiveError(f"Cannot revert working file: {exc}", str(path)) from exc

    def log(self, path: Path) -> str:
        lines = [f"Working file: {path}", f"head: {self.head(path)}"]
        for entry in reversed(self._read_manifest(path)["revisions"]):
            stamp = datetime.fromtimestamp(entry["timestamp"], tz=timezone.utc)
            lines.append("----------------------------")
            lines.append(f"revision {entry['revision']}")
            lines.append(f"date: {stamp:%Y/%m/%d %H:%M:%S};  author: {entry['author']};  size: {entry['size']}")
            lines.append(entry["comment"])
        lines.append("=" * 77)
        return "\n".join(lines) + "\n"
