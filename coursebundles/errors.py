"""Error taxonomy for the bundle lifecycle."""

from __future__ import annotations

__all__ = [
    "ArchiveTooLarge",
    "BundleError",
    "Conflict",
    "EntrypointNotFound",
    "ExtractionError",
    "NotFound",
    "PathTraversalError",
    "StorageError",
    "ValidationError",
]


class BundleError(Exception):
    """Base class; ``status_code`` is the HTTP status the API answers with."""

    status_code = 500


class ValidationError(BundleError):
    status_code = 400


class NotFound(BundleError):
    status_code = 404


class Conflict(BundleError):
    status_code = 409


class ExtractionError(BundleError):
    status_code = 400


class PathTraversalError(ExtractionError):
    """An archive entry resolved outside the extraction directory."""


class ArchiveTooLarge(ExtractionError):
    status_code = 413


class EntrypointNotFound(BundleError):
    status_code = 422

    def __init__(self, entrypoint: str) -> None:
        super().__init__(f"entrypoint not found in bundle: {entrypoint}")
        self.entrypoint = entrypoint


class StorageError(BundleError):
    status_code = 502
