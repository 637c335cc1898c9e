"""
Flatfile store for NodeDB.

One file per object: ``<flatfile_path>/<entity name segments>/<escaped id>``,
holding a YAML or JSON document of the object's attributes.

Invariants:
    - Writes go to a temp file in ``scratch_path`` first and are then moved
      into place; readers never observe a partial document
    - Ids are URI-escaped into file names and unescaped on the id walk
    - The id walk lists regular files of the entity directory only, skipping
      dotfiles, editor backups (``~``), archive files (``,v``) and the
      archive directory
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

import yaml

from ..errors import DataConversionFailed, FileAccessError, InvalidArgument, ObjectNotFound
from ..schema.entity import EntityDef, FlatfileFormat
from ..runtime import escape_key, unescape_key

if TYPE_CHECKING:
    from ..config import Settings

logger = logging.getLogger(__name__)

SKIPPED_SUFFIXES = (",v", "~")


def dump_yaml(data: Any) -> str:
    return yaml.safe_dump(data, default_flow_style=False, sort_keys=False, allow_unicode=True)


def dump_json(data: Any) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False) + "\n"


def load_yaml(text: str, source: Optional[str] = None) -> Any:
    """Parse a YAML document.

    Raises:
        InvalidArgument: If ``text`` is empty
        DataConversionFailed: If ``text`` is not valid YAML
    """
    if not text or not text.strip():
        raise InvalidArgument("Empty YAML document")
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise DataConversionFailed(f"Invalid YAML: {exc}", source=source) from exc


def load_json(text: str, source: Optional[str] = None) -> Any:
    """Parse a JSON document.

    Raises:
        InvalidArgument: If ``text`` is empty
        DataConversionFailed: If ``text`` is not valid JSON
    """
    if not text or not text.strip():
        raise InvalidArgument("Empty JSON document")
    try:
        return json.loads(text)
    except ValueError as exc:
        raise DataConversionFailed(f"Invalid JSON: {exc}", source=source) from exc


class FlatfileDriver:
    """Reads and writes one-file-per-object documents."""

    def __init__(self, settings: "Settings", archive_dir: str = "RCS") -> None:
        self.settings = settings
        self.archive_dir = archive_dir

    def base_path(self, entity: EntityDef) -> Path:
        return self.settings.flatfile_path.joinpath(*entity.path_segments)

    def path(self, entity: EntityDef, key: Any) -> Path:
        return self.base_path(entity) / escape_key(str(key))

    # -- documents ----------------------------------------------------------

    @staticmethod
    def serialize(entity: EntityDef, data: dict[str, Any]) -> str:
        if entity.options.flatfile == FlatfileFormat.JSON:
            return dump_json(data)
        return dump_yaml(data)

    @staticmethod
    def deserialize(entity: EntityDef, text: str, source: Optional[str] = None) -> dict[str, Any]:
        if entity.options.flatfile == FlatfileFormat.JSON:
            data = load_json(text, source)
        else:
            data = load_yaml(text, source)
        if not isinstance(data, dict):
            raise DataConversionFailed(
                f"Expected a mapping in {source or 'document'}, got {type(data).__name__}",
                source=source,
            )
        return data

    # -- file operations ----------------------------------------------------

    def exists(self, entity: EntityDef, key: Any) -> bool:
        return self.path(entity, key).is_file()

    def read(self, entity: EntityDef, key: Any) -> dict[str, Any]:
        """Load the document of one object.

        Raises:
            ObjectNotFound: If the object has no file
            FileAccessError: If the file cannot be read
        """
        path = self.path(entity, key)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise ObjectNotFound(f"{entity.name} {key} not found", entity=entity.name, key=key) from None
        except OSError as exc:
            raise FileAccessError(f"Cannot read {path}: {exc}", path=str(path)) from exc
        return self.deserialize(entity, text, str(path))

    def write(self, entity: EntityDef, key: Any, data: dict[str, Any]) -> Path:
        """Atomically replace the document of one object.

        Raises:
            FileAccessError: If the file cannot be written
        """
        path = self.path(entity, key)
        text = self.serialize(entity, data)
        tmp: Optional[str] = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            self.settings.scratch_path.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.settings.scratch_path, prefix=".nodedb.")
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(text)
            shutil.move(tmp, path)
        except OSError as exc:
            if tmp is not None and os.path.exists(tmp):
                os.unlink(tmp)
            raise FileAccessError(f"Cannot write {path}: {exc}", path=str(path)) from exc
        logger.debug(f"Wrote {path}", extra={"entity": entity.name, "path": str(path)})
        return path

    def unlink(self, entity: EntityDef, key: Any) -> bool:
        """Remove the document of one object; False if it did not exist."""
        path = self.path(entity, key)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise FileAccessError(f"Cannot remove {path}: {exc}", path=str(path)) from exc
        return True

    def ids(self, entity: EntityDef) -> list[str]:
        """Ids of all stored objects, sorted."""
        base = self.base_path(entity)
        if not base.is_dir():
            return []
        ids = []
        for child in base.iterdir():
            name = child.name
            if name.startswith(".") or name.endswith(SKIPPED_SUFFIXES) or name == self.archive_dir:
                continue
            if child.is_file():
                ids.append(unescape_key(name))
        return sorted(ids)
