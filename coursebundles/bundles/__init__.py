"""Versioned static content bundles for lessons and sections."""

from .models import Bundle, BundleManifest, ContentUnitKind, ContentUnitRef

__all__ = ["Bundle", "BundleManifest", "ContentUnitKind", "ContentUnitRef"]
