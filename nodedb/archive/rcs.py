"""
RCS version archive for NodeDB flatfiles.

Shells out to the RCS tools (``co``, ``ci``, ``rlog``) found in
``rcs_bindir``. The RCS file of ``<dir>/<name>`` is
``<dir>/<archive_dir>/<name>,v``.

Invariants:
    - Every RCS command gets explicit working-file and RCS-file paths
    - A non-zero exit status raises VersionArchiveError carrying stderr
    - Working files are checked in with ``-u`` so a read-only copy remains
"""

from __future__ import annotations

import logging
import re
import subprocess
from pathlib import Path
from typing import Optional

from ..errors import VersionArchiveError
from .base import ARCHIVE_SUFFIX, revision_sort_key

logger = logging.getLogger(__name__)

_REVISION_RE = re.compile(r"^revision (\d+(?:\.\d+)+)", re.MULTILINE)
_HEAD_RE = re.compile(r"^head: (\d+(?:\.\d+)+)", re.MULTILINE)


class RcsArchive:
    """RCS implementation of the VersionArchive protocol."""

    def __init__(self, bindir: str = "/usr/bin", archive_dir: str = "RCS") -> None:
        """Initialize the archive.

        Args:
            bindir: Directory holding co, ci and rlog
            archive_dir: Name of the RCS directory beside working files
        """
        self.bindir = Path(bindir)
        self.archive_dir = archive_dir

    def _rcs_file(self, path: Path) -> Path:
        return path.parent / self.archive_dir / f"{path.name}{ARCHIVE_SUFFIX}"

    def _run(self, command: str, args: list[str], path: Path) -> subprocess.CompletedProcess:
        argv = [str(self.bindir / command), *args]
        logger.debug(f"Running {' '.join(argv)}")
        try:
            result = subprocess.run(
                argv,
                cwd=str(path.parent),
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as exc:
            raise VersionArchiveError(f"Cannot run {command}: {exc}", str(path)) from exc
        if result.returncode != 0:
            raise VersionArchiveError(
                f"{command} failed ({result.returncode}): {result.stderr.strip()}",
                str(path),
            )
        return result

    def has_history(self, path: Path) -> bool:
        return self._rcs_file(path).exists()

    def checkout(self, path: Path) -> None:
        if not self.has_history(path):
            return
        self._run("co", ["-q", "-f", "-l", str(path), str(self._rcs_file(path))], path)

    def checkin(self, path: Path, comment: str) -> Optional[str]:
        rcs_file = self._rcs_file(path)
        rcs_file.parent.mkdir(parents=True, exist_ok=True)
        before = self.head(path) if rcs_file.exists() else None
        self._run(
            "ci",
            ["-u", f"-m{comment}", f"-t-{path.name}", str(path), str(rcs_file)],
            path,
        )
        after = self.head(path)
        if after == before:
            return None
        logger.info(
            f"Checked in {path.name} revision {after}",
            extra={"path": str(path), "revision": after},
        )
        return after

    def revisions(self, path: Path) -> list[str]:
        if not self.has_history(path):
            return []
        output = self._run("rlog", [str(path), str(self._rcs_file(path))], path).stdout
        return sorted(_REVISION_RE.findall(output), key=revision_sort_key)

    def head(self, path: Path) -> str:
        if not self.has_history(path):
            raise VersionArchiveError("No revision history", str(path))
        output = self._run("rlog", ["-h", str(path), str(self._rcs_file(path))], path).stdout
        match = _HEAD_RE.search(output)
        if match is None:
            raise VersionArchiveError("Cannot determine head revision", str(path))
        return match.group(1)

    def log(self, path: Path) -> str:
        if not self.has_history(path):
            raise VersionArchiveError("No revision history", str(path))
        return self._run("rlog", [str(path), str(self._rcs_file(path))], path).stdout

    def revert(self, path: Path, version: Optional[str] = None) -> None:
        if not self.has_history(path):
            raise VersionArchiveError("No revision history", str(path))
        revision = version or self.head(path)
        self._run("co", ["-q", "-f", f"-r{revision}", str(path), str(self._rcs_file(path))], path)
