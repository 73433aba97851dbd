from __future__ import annotations

import asyncio
import threading
import time

import pytest

from coursebundles.jobs import BundleWorkerPool, KeyedLocks, PoolSaturated


def test_keyed_locks_serialize_same_key_and_clean_up():
    locks = KeyedLocks()
    order = []
    inside = threading.Event()
    release = threading.Event()

    def first():
        with locks.hold("lesson:1"):
            inside.set()
            release.wait(2)
            order.append("first")

    def second():
        with locks.hold("lesson:1"):
            order.append("second")

    t1 = threading.Thread(target=first)
    t1.start()
    inside.wait(2)
    t2 = threading.Thread(target=second)
    t2.start()
    with locks.hold("lesson:2"):
        order.append("other")
    release.set()
    t1.join(2)
    t2.join(2)

    assert order == ["other", "first", "second"]
    assert locks._locks == {}


def _submit_eventually(pool, fn, timeout=2.0):
    deadline = time.monotonic() + timeout
    while True:
        try:
            return pool.submit(fn)
        except PoolSaturated:
            if time.monotonic() > deadline:
                raise
            time.sleep(0.01)


def test_pool_rejects_when_queue_is_full():
    pool = BundleWorkerPool(max_workers=1, max_pending=1)
    gate = threading.Event()
    try:
        running = pool.submit(gate.wait, 2)
        with pytest.raises(PoolSaturated):
            pool.submit(lambda: None)
        gate.set()
        running.result(timeout=2)

        assert _submit_eventually(pool, lambda: "ok").result(timeout=2) == "ok"
    finally:
        gate.set()
        pool.shutdown()


def test_pool_run_returns_result_and_propagates_errors():
    pool = BundleWorkerPool(max_workers=2, max_pending=2)

    def fail():
        raise ValueError("bad")

    async def scenario():
        assert await pool.run(lambda a, b: a + b, 2, 3) == 5
        with pytest.raises(ValueError):
            await pool.run(fail)

    try:
        asyncio.run(scenario())
    finally:
        pool.shutdown()
