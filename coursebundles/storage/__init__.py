"""Storage backends for extracted bundles."""

from __future__ import annotations

from coursebundles.config import Settings

from .archive import ArchiveLimits, extract_archive, is_zip_archive
from .base import KIND_PREFIXES, StorageBackend, StoredBundle, storage_path_for
from .local import LocalStorageBackend

__all__ = [
    "ArchiveLimits",
    "KIND_PREFIXES",
    "LocalStorageBackend",
    "StorageBackend",
    "StoredBundle",
    "build_storage_backend",
    "extract_archive",
    "is_zip_archive",
    "storage_path_for",
]


def build_storage_backend(settings: Settings) -> StorageBackend:
    limits = ArchiveLimits.from_settings(settings)
    backend = settings.storage_backend
    if backend == "s3":
        from .s3 import S3StorageBackend

        return S3StorageBackend(
            settings.s3_bucket or "",
            prefix=settings.s3_prefix,
            public_base=settings.public_base,
            limits=limits,
        )
    if backend != "fs":
        raise RuntimeError(f"Unsupported BUNDLE_STORAGE_BACKEND '{backend}'")
    return LocalStorageBackend(
        settings.base_path,
        public_base=settings.public_base or "/uploads/bundles",
        limits=limits,
    )
