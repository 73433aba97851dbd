from __future__ import annotations

import logging
from contextlib import contextmanager
from functools import lru_cache
from typing import Iterator, List, Optional

from coursebundles.config import get_settings
from coursebundles.errors import EntrypointNotFound, NotFound, StorageError, ValidationError
from coursebundles.jobs import KeyedLocks
from coursebundles.metrics import metrics_subscriber
from coursebundles.storage import build_storage_backend
from coursebundles.storage.base import StorageBackend
from coursebundles.telemetry.events import (
    BUNDLE_ACTIVATED,
    BUNDLE_CREATED,
    BUNDLE_DEACTIVATED,
    BUNDLE_DELETED,
    BundleEventPublisher,
    bundle_payload,
    log_subscriber,
)

from .manifest import read_manifest
from .models import Bundle, ContentUnitRef, resolve_entrypoint
from .repository import BundleRepository, build_repository

logger = logging.getLogger(__name__)

__all__ = ["BundleService", "get_bundle_service"]


class BundleService:
    """Create, activate and delete bundles for lessons and sections.

    Owns the rules no single entity or repository call can enforce: at most
    one active bundle per content unit, gap-free version numbers under
    concurrent uploads, and no metadata row for a bundle whose files are
    unusable.
    """

    def __init__(
        self,
        repository: BundleRepository,
        storage: StorageBackend,
        *,
        publisher: BundleEventPublisher | None = None,
        locks: KeyedLocks | None = None,
    ) -> None:
        self.repository = repository
        self.storage = storage
        self.publisher = publisher or BundleEventPublisher()
        self._locks = locks or KeyedLocks()

    @contextmanager
    def _unit_locked(self, content_unit: ContentUnitRef) -> Iterator[None]:
        with self._locks.hold(content_unit.key):
            with self.repository.lock_content_unit(content_unit):
                yield

    # Commands
    def create_bundle(
        self,
        content_unit: ContentUnitRef,
        archive_bytes: bytes,
        entrypoint: str | None = None,
        activate_immediately: bool = False,
    ) -> Bundle:
        if not archive_bytes:
            raise ValidationError("bundle archive is empty")

        with self._unit_locked(content_unit):
            version = self.repository.get_next_version(content_unit)
            stored = self.storage.store(content_unit, version, archive_bytes)
            try:
                manifest = read_manifest(self.storage, stored.storage_path, content_unit.kind)
                resolved = resolve_entrypoint(entrypoint, manifest)
                if not self.storage.entrypoint_exists(stored.storage_path, resolved):
                    raise EntrypointNotFound(resolved)
                bundle = Bundle.create(
                    content_unit,
                    version,
                    stored.storage_path,
                    manifest,
                    resolved,
                    size_bytes=stored.size_bytes,
                )
                self.repository.save(bundle)
            except Exception:
                self._discard(stored.storage_path)
                raise

        logger.info(
            "created bundle %s v%d for %s", bundle.id, bundle.version, content_unit.key
        )
        self.publisher.publish(BUNDLE_CREATED, bundle_payload(bundle))

        if activate_immediately:
            bundle = self.activate_bundle(bundle.id)
        return bundle

    def activate_bundle(self, bundle_id: str) -> Bundle:
        bundle = self.get_bundle(bundle_id)
        if bundle.is_active:
            return bundle

        content_unit = bundle.content_unit
        previous: Optional[Bundle] = None
        changed = False
        with self._unit_locked(content_unit):
            with self.repository.unit_of_work():
                bundle = self.get_bundle(bundle_id)
                if not bundle.is_active:
                    previous = self.repository.find_active_by_content_unit(content_unit)
                    self.repository.deactivate_all_for_content_unit(content_unit)
                    bundle.activate()
                    self.repository.save(bundle)
                    changed = True

        if changed:
            logger.info(
                "activated bundle %s v%d for %s", bundle.id, bundle.version, content_unit.key
            )
            if previous is not None and previous.id != bundle.id:
                previous.deactivate()
                self.publisher.publish(BUNDLE_DEACTIVATED, bundle_payload(previous))
            self.publisher.publish(BUNDLE_ACTIVATED, bundle_payload(bundle))
        return bundle

    def delete_bundle(self, bundle_id: str) -> None:
        content_unit = self.get_bundle(bundle_id).content_unit
        with self._unit_locked(content_unit):
            bundle = self.get_bundle(bundle_id)
            bundle.ensure_deletable()
            try:
                self.storage.delete(bundle.storage_path)
            except (StorageError, OSError):
                logger.exception(
                    "failed to delete storage for bundle %s at %s",
                    bundle.id,
                    bundle.storage_path,
                )
            self.repository.delete(bundle.id)

        logger.info("deleted bundle %s v%d for %s", bundle.id, bundle.version, content_unit.key)
        self.publisher.publish(BUNDLE_DELETED, bundle_payload(bundle))

    # Queries
    def get_bundle(self, bundle_id: str) -> Bundle:
        bundle = self.repository.find_by_id(bundle_id)
        if bundle is None:
            raise NotFound(f"bundle not found: {bundle_id}")
        return bundle

    def list_bundles(self, content_unit: ContentUnitRef) -> List[Bundle]:
        return self.repository.find_by_content_unit(content_unit)

    def get_active_bundle(self, content_unit: ContentUnitRef) -> Optional[Bundle]:
        return self.repository.find_active_by_content_unit(content_unit)

    def bundle_url(self, bundle: Bundle) -> str:
        return self.storage.public_url(bundle.storage_path)

    def _discard(self, storage_path: str) -> None:
        try:
            self.storage.delete(storage_path)
        except (StorageError, OSError):
            logger.exception("failed to remove orphaned bundle files at %s", storage_path)


@lru_cache(maxsize=1)
def get_bundle_service() -> BundleService:
    settings = get_settings()
    publisher = BundleEventPublisher()
    publisher.subscribe(log_subscriber)
    publisher.subscribe(metrics_subscriber)
    return BundleService(
        build_repository(settings),
        build_storage_backend(settings),
        publisher=publisher,
    )
