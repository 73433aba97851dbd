from __future__ import annotations

import logging
import mimetypes
import os
import posixpath
import re
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from coursebundles.bundles.models import ContentUnitRef
from coursebundles.config import env_bool
from coursebundles.errors import StorageError

from .archive import ArchiveLimits, extract_archive
from .base import KIND_PREFIXES, StoredBundle, storage_path_for

__all__ = ["S3StorageBackend"]

logger = logging.getLogger(__name__)

_CLIENT = None
_CLIENT_LOCK = threading.Lock()
_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}
_DELETE_BATCH = 1000


def _client():
    global _CLIENT
    if _CLIENT is not None:
        return _CLIENT
    with _CLIENT_LOCK:
        if _CLIENT is not None:
            return _CLIENT
        endpoint = os.getenv("S3_ENDPOINT")
        region = os.getenv("S3_REGION", "us-east-1")
        access_key = os.getenv("S3_ACCESS_KEY")
        secret_key = os.getenv("S3_SECRET_KEY")
        force_path_style = env_bool("S3_FORCE_PATH_STYLE", False)

        session_kwargs: Dict[str, Any] = {}
        if access_key and secret_key:
            session_kwargs["aws_access_key_id"] = access_key
            session_kwargs["aws_secret_access_key"] = secret_key

        client_kwargs: Dict[str, Any] = {}
        if endpoint:
            client_kwargs["endpoint_url"] = endpoint

        addressing = {"addressing_style": "path" if force_path_style else "auto"}
        client = boto3.client(
            "s3",
            region_name=region,
            config=Config(signature_version="s3v4", s3=addressing),
            **session_kwargs,
            **client_kwargs,
        )
        _CLIENT = client
        return client


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def _safe_relative(name: str) -> Optional[str]:
    cleaned = name.replace("\\", "/").strip()
    if not cleaned or cleaned.startswith("/"):
        return None
    normalized = posixpath.normpath(cleaned)
    if normalized in {".", ".."} or normalized.startswith("../"):
        return None
    return normalized


class S3StorageBackend:
    """Object-storage adapter; bundles live under ``{prefix}/{storage_path}/``."""

    def __init__(
        self,
        bucket: str,
        *,
        prefix: str = "bundles",
        public_base: str | None = None,
        client: Any | None = None,
        limits: ArchiveLimits | None = None,
    ) -> None:
        if not bucket:
            raise RuntimeError("S3_BUCKET is not configured")
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self.public_base = (
            public_base or f"https://{bucket}.s3.amazonaws.com/{self.prefix}"
        ).rstrip("/")
        self._client_override = client
        self.limits = limits or ArchiveLimits()

    @property
    def client(self):
        return self._client_override if self._client_override is not None else _client()

    def _key(self, storage_path: str, name: str | None = None) -> str:
        parts = [p for p in (self.prefix, storage_path.strip("/"), name) if p]
        return "/".join(parts)

    def _iter_keys(self, prefix: str) -> List[str]:
        keys: List[str] = []
        kwargs: Dict[str, Any] = {"Bucket": self.bucket, "Prefix": prefix}
        while True:
            page = self.client.list_objects_v2(**kwargs)
            keys.extend(obj["Key"] for obj in page.get("Contents", []) or [])
            token = page.get("NextContinuationToken")
            if not page.get("IsTruncated") or not token:
                return keys
            kwargs["ContinuationToken"] = token

    def store(
        self, content_unit: ContentUnitRef, version: int, archive_bytes: bytes
    ) -> StoredBundle:
        storage_path = storage_path_for(content_unit, version)
        self.delete(storage_path)
        with tempfile.TemporaryDirectory(prefix="bundle-extract-") as tmpdir:
            staging = Path(tmpdir) / "bundle"
            result = extract_archive(archive_bytes, staging, limits=self.limits)
            try:
                for relative in result.files:
                    content_type = (
                        mimetypes.guess_type(relative)[0] or "application/octet-stream"
                    )
                    with (staging / relative).open("rb") as body:
                        self.client.put_object(
                            Bucket=self.bucket,
                            Key=self._key(storage_path, Path(relative).as_posix()),
                            Body=body,
                            ContentType=content_type,
                        )
            except (BotoCoreError, ClientError, OSError) as exc:
                logger.warning("upload of %s failed, removing partial objects", storage_path)
                try:
                    self.delete(storage_path)
                except StorageError:
                    logger.exception("cleanup of %s failed", storage_path)
                raise StorageError(f"failed to upload bundle {storage_path}: {exc}") from exc
        return StoredBundle(storage_path=storage_path, size_bytes=len(archive_bytes))

    def delete(self, storage_path: str) -> None:
        if not _safe_relative(storage_path):
            raise StorageError(f"refusing to delete outside storage: {storage_path!r}")
        try:
            keys = self._iter_keys(self._key(storage_path) + "/")
            for start in range(0, len(keys), _DELETE_BATCH):
                batch = keys[start : start + _DELETE_BATCH]
                self.client.delete_objects(
                    Bucket=self.bucket,
                    Delete={"Objects": [{"Key": key} for key in batch], "Quiet": True},
                )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"failed to delete {storage_path}: {exc}") from exc

    def public_url(self, storage_path: str) -> str:
        return f"{self.public_base}/{storage_path.strip('/')}"

    def entrypoint_exists(self, storage_path: str, entrypoint: str) -> bool:
        relative = _safe_relative(entrypoint)
        if relative is None:
            return False
        try:
            self.client.head_object(
                Bucket=self.bucket, Key=self._key(storage_path, relative)
            )
        except ClientError as exc:
            if _error_code(exc) in _MISSING_CODES:
                return False
            raise StorageError(f"failed to check entrypoint: {exc}") from exc
        except BotoCoreError as exc:
            raise StorageError(f"failed to check entrypoint: {exc}") from exc
        return True

    def read_file(self, storage_path: str, name: str) -> Optional[bytes]:
        relative = _safe_relative(name)
        if relative is None:
            return None
        try:
            response = self.client.get_object(
                Bucket=self.bucket, Key=self._key(storage_path, relative)
            )
        except ClientError as exc:
            if _error_code(exc) in _MISSING_CODES:
                return None
            raise StorageError(f"failed to read {name}: {exc}") from exc
        except BotoCoreError as exc:
            raise StorageError(f"failed to read {name}: {exc}") from exc
        return response["Body"].read()

    def list_storage_paths(self) -> List[str]:
        root = f"{self.prefix}/" if self.prefix else ""
        namespaces = "|".join(re.escape(p) for p in KIND_PREFIXES.values() if p)
        pattern = re.compile(rf"^(?:(?:{namespaces})/)?[^/]+/v\d+(?=/)")
        found: Set[str] = set()
        try:
            keys = self._iter_keys(root)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"failed to list bundles: {exc}") from exc
        for key in keys:
            match = pattern.match(key[len(root) :])
            if match:
                found.add(match.group(0))
        return sorted(found)
