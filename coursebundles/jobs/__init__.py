"""Bounded worker pool and per-key locks for bundle uploads."""

from __future__ import annotations

import asyncio
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from functools import lru_cache
from typing import Any, Callable, Dict, Iterator, TypeVar

from coursebundles.config import get_settings

__all__ = ["BundleWorkerPool", "KeyedLocks", "PoolSaturated", "get_worker_pool"]

T = TypeVar("T")


class PoolSaturated(Exception):
    """Raised when the upload queue is full."""


class KeyedLocks:
    """One mutex per key, created on demand and dropped when idle."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._users: Dict[str, int] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._users[key] = self._users.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._users[key] -= 1
                if self._users[key] == 0:
                    self._users.pop(key, None)
                    self._locks.pop(key, None)


class BundleWorkerPool:
    """Thread pool with a cap on accepted-but-unfinished jobs."""

    def __init__(self, max_workers: int = 4, max_pending: int = 16) -> None:
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, max_workers), thread_name_prefix="bundle-upload"
        )
        self._slots = threading.BoundedSemaphore(max(1, max_pending))

    def submit(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> "Future[T]":
        if not self._slots.acquire(blocking=False):
            raise PoolSaturated("too many bundle uploads in progress")
        try:
            future = self._executor.submit(fn, *args, **kwargs)
        except BaseException:
            self._slots.release()
            raise
        future.add_done_callback(lambda _f: self._slots.release())
        return future

    async def run(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await asyncio.wrap_future(self.submit(fn, *args, **kwargs))

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


@lru_cache(maxsize=1)
def get_worker_pool() -> BundleWorkerPool:
    settings = get_settings()
    return BundleWorkerPool(settings.upload_workers, settings.upload_queue)
