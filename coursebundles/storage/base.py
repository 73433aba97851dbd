from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol

from coursebundles.bundles.models import ContentUnitKind, ContentUnitRef
from coursebundles.errors import ValidationError

__all__ = [
    "KIND_PREFIXES",
    "RESERVED_SEGMENTS",
    "StorageBackend",
    "StoredBundle",
    "storage_path_for",
]

# Lessons keep the historical un-prefixed layout.
KIND_PREFIXES: Dict[ContentUnitKind, str] = {
    ContentUnitKind.LESSON: "",
    ContentUnitKind.SECTION: "sections",
}

SAFE_SEGMENT_RE = re.compile(r"^[A-Za-z0-9._-]+$")

# Un-prefixed ids must not shadow another kind's namespace.
RESERVED_SEGMENTS = frozenset(p for p in KIND_PREFIXES.values() if p)


@dataclass(frozen=True)
class StoredBundle:
    storage_path: str
    size_bytes: int


def storage_path_for(content_unit: ContentUnitRef, version: int) -> str:
    """Return the namespaced storage path for one bundle version."""

    unit_id = content_unit.id
    if not SAFE_SEGMENT_RE.match(unit_id) or unit_id in {".", ".."}:
        raise ValidationError(f"content unit id is not storage safe: {unit_id!r}")
    if version < 1:
        raise ValidationError(f"bundle version must be >= 1, got {version}")
    prefix = KIND_PREFIXES[content_unit.kind]
    if not prefix and unit_id in RESERVED_SEGMENTS:
        raise ValidationError(f"content unit id is reserved: {unit_id!r}")
    parts = [p for p in (prefix, unit_id, f"v{version}") if p]
    return "/".join(parts)


class StorageBackend(Protocol):
    def store(
        self, content_unit: ContentUnitRef, version: int, archive_bytes: bytes
    ) -> StoredBundle: ...

    def delete(self, storage_path: str) -> None: ...

    def public_url(self, storage_path: str) -> str: ...

    def entrypoint_exists(self, storage_path: str, entrypoint: str) -> bool: ...

    def read_file(self, storage_path: str, name: str) -> Optional[bytes]: ...

    def list_storage_paths(self) -> List[str]: ...
