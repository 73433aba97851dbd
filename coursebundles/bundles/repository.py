from __future__ import annotations

import copy
import dataclasses
import fcntl
import hashlib
import json
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Protocol

from coursebundles.config import Settings
from coursebundles.errors import Conflict

from .models import Bundle, ContentUnitRef

__all__ = [
    "BundleRepository",
    "FileBundleRepository",
    "InMemoryBundleRepository",
    "build_repository",
]


class BundleRepository(Protocol):
    def save(self, bundle: Bundle) -> None: ...

    def find_by_id(self, bundle_id: str) -> Optional[Bundle]: ...

    def find_by_content_unit(self, content_unit: ContentUnitRef) -> List[Bundle]: ...

    def find_active_by_content_unit(
        self, content_unit: ContentUnitRef
    ) -> Optional[Bundle]: ...

    def get_next_version(self, content_unit: ContentUnitRef) -> int: ...

    def deactivate_all_for_content_unit(self, content_unit: ContentUnitRef) -> None: ...

    def delete(self, bundle_id: str) -> None: ...

    def lock_content_unit(self, content_unit: ContentUnitRef) -> Any: ...

    def unit_of_work(self) -> Any: ...


def _check_unique_version(bundle: Bundle, others: List[Bundle]) -> None:
    for other in others:
        if other.id != bundle.id and other.version == bundle.version:
            raise Conflict(
                f"version {bundle.version} already exists for {bundle.content_unit.key}"
            )


def _newest_first(bundles: List[Bundle]) -> List[Bundle]:
    return sorted(bundles, key=lambda b: b.version, reverse=True)


class InMemoryBundleRepository:
    """Thread-safe repository kept in process memory.

    Stored bundles are never mutated in place, so a unit of work can restore
    a shallow snapshot of the index when it fails.
    """

    def __init__(self) -> None:
        self._records: Dict[str, Bundle] = {}
        self._lock = threading.RLock()

    def _for_unit(self, content_unit: ContentUnitRef) -> List[Bundle]:
        return [b for b in self._records.values() if b.content_unit == content_unit]

    def save(self, bundle: Bundle) -> None:
        with self._lock:
            _check_unique_version(bundle, self._for_unit(bundle.content_unit))
            self._records[bundle.id] = copy.deepcopy(bundle)

    def find_by_id(self, bundle_id: str) -> Optional[Bundle]:
        with self._lock:
            record = self._records.get(bundle_id)
            return copy.deepcopy(record) if record else None

    def find_by_content_unit(self, content_unit: ContentUnitRef) -> List[Bundle]:
        with self._lock:
            return [copy.deepcopy(b) for b in _newest_first(self._for_unit(content_unit))]

    def find_active_by_content_unit(
        self, content_unit: ContentUnitRef
    ) -> Optional[Bundle]:
        with self._lock:
            for bundle in _newest_first(self._for_unit(content_unit)):
                if bundle.is_active:
                    return copy.deepcopy(bundle)
            return None

    def get_next_version(self, content_unit: ContentUnitRef) -> int:
        with self._lock:
            versions = [b.version for b in self._for_unit(content_unit)]
            return max(versions, default=0) + 1

    def deactivate_all_for_content_unit(self, content_unit: ContentUnitRef) -> None:
        with self._lock:
            for bundle in self._for_unit(content_unit):
                if bundle.is_active:
                    self._records[bundle.id] = dataclasses.replace(bundle, is_active=False)

    def delete(self, bundle_id: str) -> None:
        with self._lock:
            self._records.pop(bundle_id, None)

    @contextmanager
    def lock_content_unit(self, content_unit: ContentUnitRef) -> Iterator[None]:
        # Single process; the service's keyed locks already serialize units.
        yield

    @contextmanager
    def unit_of_work(self) -> Iterator[None]:
        with self._lock:
            snapshot = dict(self._records)
            try:
                yield
            except BaseException:
                self._records = snapshot
                raise


@contextmanager
def _file_lock(lock_file: Path) -> Iterator[None]:
    lock_file.parent.mkdir(parents=True, exist_ok=True)
    with lock_file.open("a+") as handle:
        fcntl.flock(handle, fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(handle, fcntl.LOCK_UN)


def _write_json_atomic(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(content, encoding="utf-8")
    tmp_path.replace(path)


class FileBundleRepository:
    """Bundle rows in a single JSON document guarded by a lock file.

    Each mutation rewrites the document atomically; inside a unit of work the
    changes accumulate in memory and land in one write on commit.
    """

    def __init__(self, root: Path | str):
        self.root = Path(root).expanduser().resolve()
        self.data_path = self.root / "bundles.json"
        self.lock_path = self.root / ".bundles.lock"
        self._thread_lock = threading.RLock()
        self._depth = 0
        self._pending: Optional[Dict[str, Dict[str, Any]]] = None

    @contextmanager
    def _locked(self) -> Iterator[None]:
        with self._thread_lock:
            self._depth += 1
            try:
                if self._depth == 1:
                    with _file_lock(self.lock_path):
                        yield
                else:
                    yield
            finally:
                self._depth -= 1

    def _read_file(self) -> Dict[str, Dict[str, Any]]:
        if not self.data_path.exists():
            return {}
        data = json.loads(self.data_path.read_text(encoding="utf-8") or "{}")
        rows = data.get("bundles", []) if isinstance(data, dict) else []
        return {str(row["id"]): row for row in rows if isinstance(row, dict)}

    def _write_file(self, records: Dict[str, Dict[str, Any]]) -> None:
        rows = sorted(records.values(), key=lambda r: (r["kind"], r["content_unit_id"], r["version"]))
        _write_json_atomic(self.data_path, json.dumps({"bundles": rows}, indent=2))

    def _load(self) -> Dict[str, Dict[str, Any]]:
        if self._pending is not None:
            return self._pending
        return self._read_file()

    def _commit(self, records: Dict[str, Dict[str, Any]]) -> None:
        if self._pending is None:
            self._write_file(records)

    def _for_unit(
        self, records: Dict[str, Dict[str, Any]], content_unit: ContentUnitRef
    ) -> List[Bundle]:
        return [
            Bundle.from_dict(row)
            for row in records.values()
            if row.get("content_unit_id") == content_unit.id
            and row.get("kind") == content_unit.kind.value
        ]

    def save(self, bundle: Bundle) -> None:
        with self._locked():
            records = self._load()
            _check_unique_version(bundle, self._for_unit(records, bundle.content_unit))
            records[bundle.id] = bundle.to_dict()
            self._commit(records)

    def find_by_id(self, bundle_id: str) -> Optional[Bundle]:
        with self._locked():
            row = self._load().get(bundle_id)
            return Bundle.from_dict(row) if row else None

    def find_by_content_unit(self, content_unit: ContentUnitRef) -> List[Bundle]:
        with self._locked():
            return _newest_first(self._for_unit(self._load(), content_unit))

    def find_active_by_content_unit(
        self, content_unit: ContentUnitRef
    ) -> Optional[Bundle]:
        for bundle in self.find_by_content_unit(content_unit):
            if bundle.is_active:
                return bundle
        return None

    def get_next_version(self, content_unit: ContentUnitRef) -> int:
        with self._locked():
            versions = [b.version for b in self._for_unit(self._load(), content_unit)]
            return max(versions, default=0) + 1

    def deactivate_all_for_content_unit(self, content_unit: ContentUnitRef) -> None:
        with self._locked():
            records = self._load()
            for row in records.values():
                if (
                    row.get("content_unit_id") == content_unit.id
                    and row.get("kind") == content_unit.kind.value
                ):
                    row["is_active"] = False
            self._commit(records)

    def delete(self, bundle_id: str) -> None:
        with self._locked():
            records = self._load()
            if records.pop(bundle_id, None) is not None:
                self._commit(records)

    @contextmanager
    def lock_content_unit(self, content_unit: ContentUnitRef) -> Iterator[None]:
        """Hold an exclusive lock for one content unit across processes."""

        digest = hashlib.sha1(content_unit.key.encode("utf-8")).hexdigest()
        with _file_lock(self.root / ".locks" / f"{digest}.lock"):
            yield

    @contextmanager
    def unit_of_work(self) -> Iterator[None]:
        with self._locked():
            if self._pending is not None:
                yield
                return
            self._pending = self._read_file()
            try:
                yield
                self._write_file(self._pending)
            finally:
                self._pending = None


def build_repository(settings: Settings) -> BundleRepository:
    backend = settings.repository_backend
    if backend == "file":
        return FileBundleRepository(settings.data_dir)
    if backend != "memory":
        raise RuntimeError(f"Unsupported BUNDLE_REPOSITORY '{backend}'")
    return InMemoryBundleRepository()
