import platform
import time
from typing import Any, Dict

from coursebundles.config import get_settings
from coursebundles.metrics import BUILD_VERSION, GIT_SHA


async def health() -> Dict[str, Any]:
    settings = get_settings()
    return {
        "status": "ok",
        "version": BUILD_VERSION,
        "git": GIT_SHA,
        "ts": time.time(),
        "env": {
            "storage_backend": settings.storage_backend,
            "repository": settings.repository_backend,
        },
        "runtime": {
            "python": platform.python_version(),
        },
    }
