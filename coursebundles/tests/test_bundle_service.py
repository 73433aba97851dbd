from __future__ import annotations

import json
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from coursebundles.bundles.models import ContentUnitRef
from coursebundles.bundles.repository import FileBundleRepository
from coursebundles.bundles.service import BundleService
from coursebundles.errors import (
    Conflict,
    EntrypointNotFound,
    NotFound,
    PathTraversalError,
    StorageError,
    ValidationError,
)
from coursebundles.telemetry.events import (
    BUNDLE_ACTIVATED,
    BUNDLE_CREATED,
    BUNDLE_DEACTIVATED,
    BUNDLE_DELETED,
    BundleEventPublisher,
)

LESSON = ContentUnitRef.of("lesson-1", "lesson")
SECTION = ContentUnitRef.of("sec-1", "section")


def _names(events):
    return [name for name, _payload in events]


def test_create_stores_files_and_records_inactive_bundle(service, storage, make_zip, events):
    bundle = service.create_bundle(LESSON, make_zip())

    assert bundle.version == 1
    assert bundle.is_active is False
    assert bundle.entrypoint == "index.html"
    assert bundle.storage_path == "lesson-1/v1"
    assert bundle.size_bytes > 0
    assert (storage.base_path / "lesson-1" / "v1" / "index.html").is_file()
    assert service.get_bundle(bundle.id) == bundle
    assert service.bundle_url(bundle) == "/uploads/bundles/lesson-1/v1"
    assert events == [
        (
            BUNDLE_CREATED,
            {
                "bundleId": bundle.id,
                "contentUnitId": "lesson-1",
                "kind": "lesson",
                "version": 1,
                "ts": events[0][1]["ts"],
            },
        )
    ]


def test_versions_increase_without_gaps(service, make_zip):
    versions = [service.create_bundle(LESSON, make_zip()).version for _ in range(3)]
    other = service.create_bundle(SECTION, make_zip())

    assert versions == [1, 2, 3]
    assert other.version == 1
    assert other.storage_path == "sections/sec-1/v1"


def test_manifest_supplies_entrypoint(service, make_zip):
    archive = make_zip(
        {
            "start.html": "x",
            "section.json": json.dumps({"sectionId": "sec-1", "entrypoint": "start.html"}),
        }
    )

    bundle = service.create_bundle(SECTION, archive)

    assert bundle.entrypoint == "start.html"
    assert bundle.manifest is not None and bundle.manifest.section_id == "sec-1"


def test_explicit_entrypoint_wins_over_manifest(service, make_zip):
    archive = make_zip(
        {"a.html": "a", "b.html": "b", "lesson.json": json.dumps({"entrypoint": "a.html"})}
    )

    bundle = service.create_bundle(LESSON, archive, entrypoint="b.html")

    assert bundle.entrypoint == "b.html"


def test_missing_entrypoint_leaves_no_trace(service, storage, make_zip, events):
    with pytest.raises(EntrypointNotFound) as excinfo:
        service.create_bundle(LESSON, make_zip({"other.html": "x"}))

    assert excinfo.value.entrypoint == "index.html"
    assert service.list_bundles(LESSON) == []
    assert not (storage.base_path / "lesson-1" / "v1").exists()
    assert events == []
    assert service.create_bundle(LESSON, make_zip()).version == 1


def test_rejected_archive_does_not_consume_version(service, storage, make_zip):
    with pytest.raises(PathTraversalError):
        service.create_bundle(LESSON, make_zip({"index.html": "x", "../../x.html": "x"}))

    assert service.list_bundles(LESSON) == []
    assert service.create_bundle(LESSON, make_zip()).version == 1


def test_empty_archive_is_rejected(service):
    with pytest.raises(ValidationError):
        service.create_bundle(LESSON, b"")


def test_create_and_activate_immediately(service, make_zip, events):
    first = service.create_bundle(LESSON, make_zip(), activate_immediately=True)
    second = service.create_bundle(LESSON, make_zip(), activate_immediately=True)

    assert second.is_active is True
    assert service.get_active_bundle(LESSON).id == second.id
    assert service.get_bundle(first.id).is_active is False
    assert _names(events) == [
        BUNDLE_CREATED,
        BUNDLE_ACTIVATED,
        BUNDLE_CREATED,
        BUNDLE_DEACTIVATED,
        BUNDLE_ACTIVATED,
    ]
    assert events[3][1]["bundleId"] == first.id


def test_activation_switches_the_single_active_bundle(service, make_zip):
    bundles = [service.create_bundle(LESSON, make_zip()) for _ in range(3)]

    service.activate_bundle(bundles[0].id)
    service.activate_bundle(bundles[2].id)

    active = [b for b in service.list_bundles(LESSON) if b.is_active]
    assert [b.id for b in active] == [bundles[2].id]


def test_activating_active_bundle_is_a_no_op(service, make_zip, events):
    bundle = service.create_bundle(LESSON, make_zip(), activate_immediately=True)
    events.clear()

    again = service.activate_bundle(bundle.id)

    assert again.is_active is True
    assert events == []


def test_activation_is_scoped_to_content_unit(service, make_zip):
    lesson = service.create_bundle(LESSON, make_zip(), activate_immediately=True)
    section = service.create_bundle(SECTION, make_zip(), activate_immediately=True)

    assert service.get_active_bundle(LESSON).id == lesson.id
    assert service.get_active_bundle(SECTION).id == section.id


def test_unknown_bundle_is_not_found(service):
    with pytest.raises(NotFound):
        service.get_bundle("nope")
    with pytest.raises(NotFound):
        service.activate_bundle("nope")
    with pytest.raises(NotFound):
        service.delete_bundle("nope")


def test_active_bundle_cannot_be_deleted(service, storage, make_zip):
    bundle = service.create_bundle(LESSON, make_zip(), activate_immediately=True)

    with pytest.raises(Conflict):
        service.delete_bundle(bundle.id)

    assert (storage.base_path / bundle.storage_path).exists()
    assert service.get_bundle(bundle.id).is_active


def test_delete_removes_files_and_row(service, storage, make_zip, events):
    bundle = service.create_bundle(LESSON, make_zip())

    service.delete_bundle(bundle.id)

    assert not (storage.base_path / bundle.storage_path).exists()
    assert service.list_bundles(LESSON) == []
    assert _names(events)[-1] == BUNDLE_DELETED


def test_delete_survives_storage_failure(service, make_zip, monkeypatch, caplog):
    bundle = service.create_bundle(LESSON, make_zip())

    def broken_delete(storage_path):
        raise StorageError("disk on fire")

    monkeypatch.setattr(service.storage, "delete", broken_delete)

    with caplog.at_level("ERROR"):
        service.delete_bundle(bundle.id)

    assert service.list_bundles(LESSON) == []
    assert "failed to delete storage for bundle" in caplog.text


def test_failing_subscriber_does_not_break_commands(storage, repository, make_zip, caplog):
    publisher = BundleEventPublisher()

    def explode(event, payload):
        raise RuntimeError("subscriber down")

    publisher.subscribe(explode)
    service = BundleService(repository, storage, publisher=publisher)

    with caplog.at_level("ERROR"):
        bundle = service.create_bundle(LESSON, make_zip(), activate_immediately=True)

    assert bundle.is_active
    assert "bundle event subscriber failed" in caplog.text


def test_concurrent_uploads_get_distinct_versions(service, make_zip):
    archive = make_zip()
    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _i: service.create_bundle(LESSON, archive), range(8)))

    assert sorted(b.version for b in results) == list(range(1, 9))
    assert len({b.storage_path for b in results}) == 8


def test_concurrent_activations_leave_one_active(service, make_zip):
    bundles = [service.create_bundle(LESSON, make_zip()) for _ in range(6)]
    barrier = threading.Barrier(len(bundles))

    def activate(bundle_id):
        barrier.wait()
        return service.activate_bundle(bundle_id)

    with ThreadPoolExecutor(max_workers=len(bundles)) as pool:
        list(pool.map(activate, [b.id for b in bundles]))

    active = [b for b in service.list_bundles(LESSON) if b.is_active]
    assert len(active) == 1


def test_works_with_file_repository(tmp_path, storage, make_zip):
    service = BundleService(FileBundleRepository(tmp_path / "data"), storage)
    first = service.create_bundle(LESSON, make_zip(), activate_immediately=True)
    second = service.create_bundle(LESSON, make_zip(), activate_immediately=True)

    reopened = BundleService(FileBundleRepository(tmp_path / "data"), storage)
    assert reopened.get_active_bundle(LESSON).id == second.id
    assert reopened.get_bundle(first.id).is_active is False


def test_activate_then_roll_back(service, make_zip):
    v1 = service.create_bundle(LESSON, make_zip())
    service.activate_bundle(v1.id)
    v2 = service.create_bundle(LESSON, make_zip())
    assert v2.is_active is False

    service.activate_bundle(v2.id)
    assert service.get_active_bundle(LESSON).id == v2.id
    assert service.get_bundle(v1.id).is_active is False

    service.activate_bundle(v1.id)
    assert service.get_active_bundle(LESSON).id == v1.id
    assert service.get_bundle(v2.id).is_active is False
    assert service.repository.get_next_version(LESSON) == 3


def test_services_sharing_file_repository_do_not_reuse_versions(tmp_path, storage, make_zip):
    # Separate repository instances and keyed locks stand in for separate workers.
    workers = [
        BundleService(FileBundleRepository(tmp_path / "data"), storage) for _ in range(4)
    ]
    archive = make_zip()
    barrier = threading.Barrier(8)

    def upload(i):
        barrier.wait()
        return workers[i % len(workers)].create_bundle(LESSON, archive)

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(upload, range(8)))

    assert sorted(b.version for b in results) == list(range(1, 9))
    for bundle in workers[0].list_bundles(LESSON):
        assert storage.entrypoint_exists(bundle.storage_path, bundle.entrypoint)
