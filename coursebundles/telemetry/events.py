"""Lifecycle notifications for bundle changes."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, List, Mapping, MutableMapping

BundleEventSubscriber = Callable[[str, Mapping[str, object]], None]

BUNDLE_CREATED = "bundle.created"
BUNDLE_ACTIVATED = "bundle.activated"
BUNDLE_DEACTIVATED = "bundle.deactivated"
BUNDLE_DELETED = "bundle.deleted"

_logger = logging.getLogger("coursebundles.telemetry.events")


def _now_ms() -> int:
    return int(time.time() * 1000)


class BundleEventPublisher:
    """Fan-out of lifecycle events to registered subscribers.

    Subscribers run synchronously after the change has been committed; a
    failing subscriber is logged and never affects the caller.
    """

    def __init__(self) -> None:
        self._subscribers: List[BundleEventSubscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, subscriber: BundleEventSubscriber) -> Callable[[], None]:
        if not callable(subscriber):
            raise TypeError("subscriber must be callable")
        with self._lock:
            self._subscribers.append(subscriber)

        def _unsubscribe() -> None:
            with self._lock:
                if subscriber in self._subscribers:
                    self._subscribers.remove(subscriber)

        return _unsubscribe

    def publish(self, event: str, payload: MutableMapping[str, object]) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        if not subscribers:
            _logger.debug("no subscribers for event %s", event)
            return
        payload.setdefault("ts", _now_ms())
        for subscriber in subscribers:
            try:
                subscriber(event, dict(payload))
            except Exception:
                _logger.exception("bundle event subscriber failed for %s", event)


def bundle_payload(bundle) -> Dict[str, object]:
    return {
        "bundleId": bundle.id,
        "contentUnitId": bundle.content_unit.id,
        "kind": bundle.content_unit.kind.value,
        "version": bundle.version,
    }


def log_subscriber(event: str, payload: Mapping[str, object]) -> None:
    _logger.info("%s %s", event, dict(payload))


__all__ = [
    "BUNDLE_ACTIVATED",
    "BUNDLE_CREATED",
    "BUNDLE_DEACTIVATED",
    "BUNDLE_DELETED",
    "BundleEventPublisher",
    "BundleEventSubscriber",
    "bundle_payload",
    "log_subscriber",
]
