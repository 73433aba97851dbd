"""Safe ZIP extraction for uploaded bundles.

Every entry is resolved against the target directory before anything is
written. A single entry that lands outside the target (``../`` segments,
absolute paths, drive letters, backslash tricks or symlink entries) aborts the
whole extraction, and every file and directory written by the call is removed
again. The same cleanup happens for corrupt archives, limit violations and
write failures, so callers never see a half-extracted bundle.
"""

from __future__ import annotations

import io
import logging
import re
import shutil
import zipfile
import zlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from coursebundles.config import Settings
from coursebundles.errors import ArchiveTooLarge, ExtractionError, PathTraversalError

__all__ = [
    "ArchiveLimits",
    "ExtractionResult",
    "ZIP_MAGIC",
    "extract_archive",
    "is_zip_archive",
]

logger = logging.getLogger(__name__)

ZIP_MAGIC = b"PK\x03\x04"
_CHUNK_SIZE = 1 << 20
_DRIVE_RE = re.compile(r"^[A-Za-z]:")
_SYMLINK_MODE = 0o120000
_DECODE_ERRORS = (
    zipfile.BadZipFile,
    zipfile.LargeZipFile,
    zlib.error,
    EOFError,
    NotImplementedError,
    RuntimeError,
    UnicodeDecodeError,
)


@dataclass(frozen=True)
class ArchiveLimits:
    max_files: int = 2000
    max_uncompressed_bytes: int = 500_000_000
    max_ratio: float = 200.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "ArchiveLimits":
        return cls(
            max_files=settings.max_zip_files,
            max_uncompressed_bytes=settings.max_zip_uncompressed_bytes,
            max_ratio=settings.max_zip_ratio,
        )


@dataclass
class ExtractionResult:
    files: List[str] = field(default_factory=list)
    bytes_written: int = 0


def is_zip_archive(data: bytes) -> bool:
    """Return True when ``data`` starts with a local file header."""

    return len(data) >= 4 and data[:4] == ZIP_MAGIC


def _is_symlink(info: zipfile.ZipInfo) -> bool:
    unix_mode = (info.external_attr >> 16) & 0xFFFF
    return (unix_mode & 0o170000) == _SYMLINK_MODE


def _resolve_entry(root: Path, info: zipfile.ZipInfo) -> Path:
    name = info.filename
    if not name or not name.strip() or "\x00" in name:
        raise PathTraversalError(f"invalid archive entry name: {name!r}")
    normalized = name.replace("\\", "/")
    if normalized.startswith("/") or _DRIVE_RE.match(normalized):
        raise PathTraversalError(f"absolute path in archive: {name!r}")
    if _is_symlink(info):
        raise PathTraversalError(f"symlink entry in archive: {name!r}")
    candidate = (root / normalized).resolve()
    try:
        candidate.relative_to(root)
    except ValueError:
        raise PathTraversalError(f"archive entry escapes target: {name!r}") from None
    return candidate


def _check_limits(members: List[zipfile.ZipInfo], limits: ArchiveLimits) -> None:
    if len(members) > limits.max_files:
        raise ArchiveTooLarge(f"too many entries in archive ({len(members)})")
    files = [m for m in members if not m.is_dir()]
    uncompressed_sum = sum(m.file_size for m in files)
    compressed_sum = sum(m.compress_size for m in files)
    if uncompressed_sum > limits.max_uncompressed_bytes:
        raise ArchiveTooLarge("archive expands beyond the allowed size")
    if compressed_sum == 0 and uncompressed_sum > 0:
        raise ArchiveTooLarge("archive compression ratio too high")
    if compressed_sum > 0 and uncompressed_sum / compressed_sum > limits.max_ratio:
        raise ArchiveTooLarge("archive compression ratio too high")


class _Extraction:
    """Book-keeping for one extraction so failures can be rolled back."""

    def __init__(self, root: Path, limits: ArchiveLimits) -> None:
        self.root = root
        self.limits = limits
        self.root_existed = root.exists()
        self.created_dirs: List[Path] = []
        self.files: List[Path] = []
        self.bytes_written = 0

    def ensure_dir(self, path: Path) -> None:
        missing: List[Path] = []
        current = path
        while current != self.root and not current.exists():
            missing.append(current)
            current = current.parent
        path.mkdir(parents=True, exist_ok=True)
        self.created_dirs.extend(reversed(missing))

    def write_entry(self, zf: zipfile.ZipFile, info: zipfile.ZipInfo, dest: Path) -> None:
        self.ensure_dir(dest.parent)
        self.files.append(dest)
        with zf.open(info) as src, dest.open("wb") as out:
            while True:
                chunk = src.read(_CHUNK_SIZE)
                if not chunk:
                    break
                self.bytes_written += len(chunk)
                if self.bytes_written > self.limits.max_uncompressed_bytes:
                    raise ArchiveTooLarge("archive expands beyond the allowed size")
                out.write(chunk)
        logger.debug("extracted %s (%d bytes)", info.filename, info.file_size)

    def rollback(self) -> None:
        if not self.root_existed:
            shutil.rmtree(self.root, ignore_errors=True)
            return
        for path in reversed(self.files):
            try:
                path.unlink(missing_ok=True)
            except OSError:
                logger.warning("could not remove partial file %s", path)
        for directory in reversed(self.created_dirs):
            try:
                directory.rmdir()
            except OSError:
                logger.warning("could not remove partial directory %s", directory)

    def result(self) -> ExtractionResult:
        return ExtractionResult(
            files=[str(p.relative_to(self.root)) for p in self.files],
            bytes_written=self.bytes_written,
        )


def extract_archive(
    archive_bytes: bytes,
    target_dir: Path | str,
    *,
    limits: ArchiveLimits | None = None,
) -> ExtractionResult:
    """Extract ``archive_bytes`` into ``target_dir`` entry by entry.

    Raises :class:`PathTraversalError` when an entry would escape the target,
    :class:`ArchiveTooLarge` when a size or count limit is exceeded and
    :class:`ExtractionError` for corrupt archives or write failures. Nothing
    written by this call survives a failure.
    """

    root = Path(target_dir).resolve()
    job = _Extraction(root, limits or ArchiveLimits())
    try:
        root.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(io.BytesIO(archive_bytes)) as zf:
            members = zf.infolist()
            _check_limits(members, job.limits)
            for info in members:
                dest = _resolve_entry(root, info)
                if info.filename.endswith("/"):
                    job.ensure_dir(dest)
                    continue
                job.write_entry(zf, info, dest)
    except PathTraversalError as exc:
        logger.warning("rejected archive for %s: %s", root, exc)
        job.rollback()
        raise
    except ExtractionError:
        job.rollback()
        raise
    except _DECODE_ERRORS as exc:
        job.rollback()
        raise ExtractionError(f"invalid archive: {exc}") from exc
    except OSError as exc:
        job.rollback()
        raise ExtractionError(f"failed to write bundle files: {exc}") from exc
    return job.result()
