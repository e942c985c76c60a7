"""Artifact persistence backends for the baseline store."""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


class ArtifactStorage(Protocol):
    def write_bytes(self, rel_path: str, data: bytes) -> None: ...
    def read_bytes(self, rel_path: str) -> bytes: ...
    def exists(self, rel_path: str) -> bool: ...
    def delete(self, rel_path: str) -> bool: ...
    def delete_tree(self, rel_dir: str) -> int: ...
    def list_dirs(self) -> list[str]: ...
    def size(self) -> int: ...
    def resolve(self, rel_path: str) -> str: ...


class FileSystemStorage:
    """Stores artifacts under a root directory.

    Writes go to a temporary file in the destination directory and are moved
    into place with ``os.replace``, so readers see either the old or the new
    content, never a partial file.
    """

    def __init__(self, root: Path):
        self.root = Path(root)

    def _path(self, rel_path: str) -> Path:
        return self.root / rel_path

    def write_bytes(self, rel_path: str, data: bytes) -> None:
        dest = self._path(rel_path)
        dest.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=dest.parent, prefix=f".{dest.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, dest)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def read_bytes(self, rel_path: str) -> bytes:
        return self._path(rel_path).read_bytes()

    def exists(self, rel_path: str) -> bool:
        return self._path(rel_path).is_file()

    def delete(self, rel_path: str) -> bool:
        path = self._path(rel_path)
        if path.is_file():
            path.unlink()
            return True
        return False

    def delete_tree(self, rel_dir: str) -> int:
        path = self._path(rel_dir)
        if not path.is_dir():
            return 0
        count = sum(1 for p in path.rglob("*.png") if p.is_file())
        shutil.rmtree(path)
        return count

    def list_dirs(self) -> list[str]:
        if not self.root.exists():
            return []
        return [p.name for p in self.root.iterdir() if p.is_dir()]

    def size(self) -> int:
        if not self.root.exists():
            return 0
        return sum(p.stat().st_size for p in self.root.rglob("*") if p.is_file())

    def resolve(self, rel_path: str) -> str:
        return str(self._path(rel_path))
