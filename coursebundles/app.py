from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from coursebundles.api.health import health as _health_handler
from coursebundles.bundles.service import get_bundle_service
from coursebundles.config import get_settings
from coursebundles.jobs import get_worker_pool
from coursebundles.metrics import MetricsMiddleware, metrics_app
from coursebundles.retention.sweeper import sweep_orphaned_bundles

from .routes.bundles import router as bundles_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    sweep_task: Optional[asyncio.Task] = None
    settings = get_settings()

    if settings.orphan_sweep_minutes > 0:

        async def _loop() -> None:
            while True:
                try:
                    service = get_bundle_service()
                    await asyncio.to_thread(
                        sweep_orphaned_bundles,
                        service.storage,
                        service.repository,
                        min_age_minutes=settings.orphan_grace_minutes,
                    )
                except Exception:
                    logger.exception("orphan bundle sweep failed")
                finally:
                    await asyncio.sleep(settings.orphan_sweep_minutes * 60)

        sweep_task = asyncio.create_task(_loop())

    try:
        yield
    finally:
        if sweep_task:
            sweep_task.cancel()
            try:
                await sweep_task
            except asyncio.CancelledError:
                pass
        get_worker_pool().shutdown(wait=False)
        get_worker_pool.cache_clear()


app = FastAPI(title="coursebundles", lifespan=lifespan)

allow = os.getenv("CORS_ALLOW_ORIGINS", "http://localhost,http://127.0.0.1").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in allow if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(MetricsMiddleware)

app.include_router(bundles_router)
app.add_api_route(
    "/health",
    _health_handler,
    methods=["GET"],
    response_model=None,
    tags=["health"],
)


_metrics_router = APIRouter()


@_metrics_router.get("/metrics", include_in_schema=False)
async def _metrics_endpoint(request: Request):
    return await metrics_app(request)


app.include_router(_metrics_router)


def _mount_bundle_files(app: FastAPI) -> None:
    settings = get_settings()
    if settings.storage_backend != "fs" or not settings.serve_static:
        return
    mount_path = (settings.public_base or "/uploads/bundles").rstrip("/")
    if not mount_path.startswith("/"):
        # absolute URL: files are served by someone else
        return
    app.mount(
        mount_path,
        StaticFiles(directory=settings.base_path, check_dir=False),
        name="bundle-files",
    )


_mount_bundle_files(app)

__all__ = ["app", "lifespan"]
