"""Configuration helpers for bundle storage and upload limits."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Any


__all__ = [
    "Settings",
    "coerce_boolish",
    "env_bool",
    "get_settings",
    "reset_settings_cache",
]


def env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _str_env(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


@dataclass(frozen=True)
class Settings:
    base_path: str = "./uploads/bundles"
    public_base: str | None = None
    storage_backend: str = "fs"
    repository_backend: str = "memory"
    data_dir: str = "data/bundles"
    serve_static: bool = True
    max_bundle_bytes: int = 50_000_000
    max_zip_files: int = 2000
    max_zip_uncompressed_bytes: int = 500_000_000
    max_zip_ratio: float = 200.0
    upload_workers: int = 4
    upload_queue: int = 16
    orphan_sweep_minutes: int = 0
    orphan_grace_minutes: int = 60
    s3_bucket: str | None = None
    s3_prefix: str = "bundles"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""

    return Settings(
        base_path=_str_env("BUNDLES_BASE_PATH", "./uploads/bundles"),
        public_base=os.getenv("BUNDLES_PUBLIC_BASE") or None,
        storage_backend=_str_env("BUNDLE_STORAGE_BACKEND", "fs").lower(),
        repository_backend=_str_env("BUNDLE_REPOSITORY", "memory").lower(),
        data_dir=_str_env("BUNDLES_DATA_DIR", "data/bundles"),
        serve_static=env_bool("BUNDLE_SERVE_STATIC", True),
        max_bundle_bytes=_int_env("MAX_BUNDLE_BYTES", 50_000_000),
        max_zip_files=_int_env("MAX_ZIP_FILES", 2000),
        max_zip_uncompressed_bytes=_int_env("MAX_ZIP_UNCOMPRESSED_BYTES", 500_000_000),
        max_zip_ratio=_float_env("MAX_ZIP_RATIO", 200.0),
        upload_workers=max(1, _int_env("BUNDLE_UPLOAD_WORKERS", 4)),
        upload_queue=max(1, _int_env("BUNDLE_UPLOAD_QUEUE", 16)),
        orphan_sweep_minutes=_int_env("BUNDLE_ORPHAN_SWEEP_MINUTES", 0),
        orphan_grace_minutes=_int_env("BUNDLE_ORPHAN_GRACE_MINUTES", 60),
        s3_bucket=os.getenv("S3_BUCKET") or None,
        s3_prefix=_str_env("S3_PREFIX", "bundles").strip("/"),
    )


def reset_settings_cache() -> None:
    """Clear cached settings (primarily for tests)."""

    get_settings.cache_clear()


_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def coerce_boolish(value: Any) -> bool | None:
    """Attempt to coerce *value* into a boolean."""

    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
    return None
