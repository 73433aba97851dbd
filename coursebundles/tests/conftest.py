"""Shared pytest fixtures for bundle tests."""

from __future__ import annotations

import io
import zipfile
from typing import Callable, Dict

import pytest
from fastapi.testclient import TestClient

from coursebundles.app import app
from coursebundles.bundles.repository import InMemoryBundleRepository
from coursebundles.bundles.service import BundleService, get_bundle_service
from coursebundles.config import reset_settings_cache
from coursebundles.jobs import BundleWorkerPool, get_worker_pool
from coursebundles.storage import LocalStorageBackend
from coursebundles.telemetry.events import BundleEventPublisher

ZipFactory = Callable[..., bytes]


def build_zip(files: Dict[str, bytes | str]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name, content in files.items():
            zf.writestr(name, content)
    return buffer.getvalue()


@pytest.fixture(autouse=True)
def _fresh_settings():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def make_zip() -> ZipFactory:
    def _make(files: Dict[str, bytes | str] | None = None) -> bytes:
        return build_zip(files or {"index.html": "<html><body>hi</body></html>"})

    return _make


@pytest.fixture
def storage(tmp_path) -> LocalStorageBackend:
    return LocalStorageBackend(tmp_path / "bundles")


@pytest.fixture
def repository() -> InMemoryBundleRepository:
    return InMemoryBundleRepository()


@pytest.fixture
def events():
    return []


@pytest.fixture
def service(storage, repository, events) -> BundleService:
    publisher = BundleEventPublisher()
    publisher.subscribe(lambda event, payload: events.append((event, payload)))
    return BundleService(repository, storage, publisher=publisher)


@pytest.fixture
def bundle_client(service):
    pool = BundleWorkerPool(max_workers=2, max_pending=4)
    app.dependency_overrides[get_bundle_service] = lambda: service
    app.dependency_overrides[get_worker_pool] = lambda: pool
    client = TestClient(app)
    yield client, service
    app.dependency_overrides.pop(get_bundle_service, None)
    app.dependency_overrides.pop(get_worker_pool, None)
    pool.shutdown()
