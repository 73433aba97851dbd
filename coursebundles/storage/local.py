"""Filesystem storage for extracted bundles."""

from __future__ import annotations

import logging
import re
import shutil
from pathlib import Path
from typing import List, Optional

from coursebundles.bundles.models import ContentUnitRef
from coursebundles.errors import StorageError

from .archive import ArchiveLimits, extract_archive
from .base import KIND_PREFIXES, StoredBundle, storage_path_for

logger = logging.getLogger(__name__)

__all__ = ["LocalStorageBackend"]

_VERSION_DIR_RE = re.compile(r"^v\d+$")


class LocalStorageBackend:
    """Stores each bundle version as an extracted directory under ``base_path``."""

    def __init__(
        self,
        base_path: Path | str = "./uploads/bundles",
        *,
        public_base: str = "/uploads/bundles",
        limits: ArchiveLimits | None = None,
    ) -> None:
        self.base_path = Path(base_path).expanduser().resolve()
        self.public_base = public_base.rstrip("/")
        self.limits = limits or ArchiveLimits()

    def _resolve(self, storage_path: str, *parts: str) -> Optional[Path]:
        candidate = self.base_path.joinpath(storage_path, *parts).resolve()
        try:
            candidate.relative_to(self.base_path)
        except ValueError:
            return None
        if candidate == self.base_path:
            return None
        return candidate

    def store(
        self, content_unit: ContentUnitRef, version: int, archive_bytes: bytes
    ) -> StoredBundle:
        storage_path = storage_path_for(content_unit, version)
        full_path = self._resolve(storage_path)
        if full_path is None:
            raise StorageError(f"invalid storage path {storage_path!r}")
        if full_path.exists():
            # Leftovers from an upload that never produced a bundle row.
            logger.warning("replacing stale bundle directory %s", full_path)
            shutil.rmtree(full_path, ignore_errors=True)
        try:
            full_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"cannot create bundle directory: {exc}") from exc
        extract_archive(archive_bytes, full_path, limits=self.limits)
        return StoredBundle(storage_path=storage_path, size_bytes=len(archive_bytes))

    def delete(self, storage_path: str) -> None:
        full_path = self._resolve(storage_path)
        if full_path is None:
            raise StorageError(f"refusing to delete outside storage: {storage_path!r}")
        if not full_path.exists():
            return
        try:
            shutil.rmtree(full_path)
        except FileNotFoundError:
            return
        except OSError as exc:
            raise StorageError(f"failed to delete {storage_path}: {exc}") from exc

    def public_url(self, storage_path: str) -> str:
        return f"{self.public_base}/{storage_path.strip('/')}"

    def _resolve_file(self, storage_path: str, name: str) -> Optional[Path]:
        root = self._resolve(storage_path)
        path = self._resolve(storage_path, name)
        if root is None or path is None:
            return None
        try:
            path.relative_to(root)
        except ValueError:
            return None
        return path

    def entrypoint_exists(self, storage_path: str, entrypoint: str) -> bool:
        path = self._resolve_file(storage_path, entrypoint)
        return path is not None and path.is_file()

    def read_file(self, storage_path: str, name: str) -> Optional[bytes]:
        path = self._resolve_file(storage_path, name)
        if path is None or not path.is_file():
            return None
        try:
            return path.read_bytes()
        except OSError:
            return None

    def list_storage_paths(self) -> List[str]:
        if not self.base_path.exists():
            return []
        prefixes = {p for p in KIND_PREFIXES.values() if p}
        paths: List[str] = []
        for prefix in KIND_PREFIXES.values():
            namespace = self.base_path / prefix if prefix else self.base_path
            if not namespace.is_dir():
                continue
            for unit_dir in namespace.iterdir():
                if not unit_dir.is_dir() or (not prefix and unit_dir.name in prefixes):
                    continue
                for version_dir in unit_dir.iterdir():
                    if version_dir.is_dir() and _VERSION_DIR_RE.match(version_dir.name):
                        paths.append(version_dir.relative_to(self.base_path).as_posix())
        return sorted(paths)

    def age_seconds(self, storage_path: str, now: float) -> float | None:
        path = self._resolve(storage_path)
        if path is None or not path.exists():
            return None
        return max(0.0, now - path.stat().st_mtime)
