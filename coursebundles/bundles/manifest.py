"""Best-effort reading of the optional bundle manifest."""

from __future__ import annotations

import json
import logging
from typing import Dict, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from coursebundles.errors import StorageError
from coursebundles.storage.base import StorageBackend

from .models import BundleManifest, ContentUnitKind

logger = logging.getLogger(__name__)

LEGACY_MANIFEST_NAME = "lesson.json"

MANIFEST_NAMES: Dict[ContentUnitKind, str] = {
    ContentUnitKind.LESSON: "lesson.json",
    ContentUnitKind.SECTION: "section.json",
}


def manifest_candidates(kind: ContentUnitKind) -> Tuple[str, ...]:
    primary = MANIFEST_NAMES[kind]
    if primary == LEGACY_MANIFEST_NAME:
        return (primary,)
    return (primary, LEGACY_MANIFEST_NAME)


def parse_manifest(raw: bytes) -> Optional[BundleManifest]:
    try:
        payload = json.loads(raw.decode("utf-8-sig"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(payload, dict):
        return None
    try:
        return BundleManifest.model_validate(payload)
    except PydanticValidationError:
        return None


def read_manifest(
    storage: StorageBackend, storage_path: str, kind: ContentUnitKind
) -> Optional[BundleManifest]:
    """Return the first readable manifest for ``kind``, or None.

    A missing or broken manifest never fails the upload.
    """

    for name in manifest_candidates(kind):
        try:
            raw = storage.read_file(storage_path, name)
        except StorageError:
            logger.warning("could not read %s from %s", name, storage_path)
            continue
        if raw is None:
            continue
        manifest = parse_manifest(raw)
        if manifest is not None:
            return manifest
        logger.info("ignoring invalid %s in %s", name, storage_path)
    return None


__all__ = [
    "LEGACY_MANIFEST_NAME",
    "MANIFEST_NAMES",
    "manifest_candidates",
    "parse_manifest",
    "read_manifest",
]
