from __future__ import annotations

import logging
import time
from typing import List

from coursebundles.bundles.repository import BundleRepository
from coursebundles.bundles.models import Bundle, ContentUnitKind, ContentUnitRef
from coursebundles.errors import StorageError
from coursebundles.storage.base import KIND_PREFIXES, StorageBackend

logger = logging.getLogger(__name__)


def _content_unit_for(storage_path: str) -> ContentUnitRef | None:
    parts = storage_path.split("/")
    for kind, prefix in KIND_PREFIXES.items():
        if prefix and len(parts) == 3 and parts[0] == prefix:
            return ContentUnitRef(id=parts[1], kind=kind)
    if len(parts) == 2:
        return ContentUnitRef(id=parts[0], kind=ContentUnitKind.LESSON)
    return None


def _is_referenced(
    storage_path: str, unit: ContentUnitRef, repository: BundleRepository
) -> bool:
    bundles: List[Bundle] = repository.find_by_content_unit(unit)
    return any(b.storage_path == storage_path for b in bundles)


def sweep_orphaned_bundles(
    storage: StorageBackend,
    repository: BundleRepository,
    *,
    min_age_minutes: int = 60,
) -> List[str]:
    """Delete stored bundle directories that no bundle row points at.

    Directories younger than ``min_age_minutes`` are skipped so an upload that
    is still between extraction and save is left alone (only enforced when the
    backend can report an age). Returns the deleted storage paths.
    """

    now = time.time()
    deleted: List[str] = []
    try:
        storage_paths = storage.list_storage_paths()
    except StorageError:
        logger.exception("could not list bundle storage for orphan sweep")
        return deleted

    for storage_path in storage_paths:
        unit = _content_unit_for(storage_path)
        if unit is None or _is_referenced(storage_path, unit, repository):
            continue
        age_seconds = getattr(storage, "age_seconds", None)
        if callable(age_seconds):
            age = age_seconds(storage_path, now)
            if age is not None and age < min_age_minutes * 60:
                continue
        try:
            storage.delete(storage_path)
        except StorageError:
            logger.exception("failed to remove orphaned bundle %s", storage_path)
            continue
        logger.info("removed orphaned bundle directory %s", storage_path)
        deleted.append(storage_path)
    return deleted


__all__ = ["sweep_orphaned_bundles"]
