from __future__ import annotations

import pytest

from coursebundles.metrics import BUNDLE_EVENTS, metrics_subscriber
from coursebundles.telemetry.events import BUNDLE_CREATED, BundleEventPublisher


def test_publish_fans_out_with_timestamp():
    publisher = BundleEventPublisher()
    seen = []
    publisher.subscribe(lambda event, payload: seen.append((event, payload)))

    publisher.publish(BUNDLE_CREATED, {"bundleId": "b1"})

    assert seen[0][0] == BUNDLE_CREATED
    assert seen[0][1]["bundleId"] == "b1"
    assert isinstance(seen[0][1]["ts"], int)


def test_unsubscribe_stops_delivery():
    publisher = BundleEventPublisher()
    seen = []
    unsubscribe = publisher.subscribe(lambda event, payload: seen.append(event))

    unsubscribe()
    unsubscribe()
    publisher.publish(BUNDLE_CREATED, {})

    assert seen == []


def test_subscribers_get_independent_payloads():
    publisher = BundleEventPublisher()
    seen = []

    def mutate(event, payload):
        payload["bundleId"] = "changed"

    publisher.subscribe(mutate)
    publisher.subscribe(lambda event, payload: seen.append(payload["bundleId"]))

    publisher.publish(BUNDLE_CREATED, {"bundleId": "b1"})

    assert seen == ["b1"]


def test_subscribe_requires_callable():
    with pytest.raises(TypeError):
        BundleEventPublisher().subscribe("not callable")  # type: ignore[arg-type]


def test_metrics_subscriber_counts_by_kind():
    counter = BUNDLE_EVENTS.labels(event=BUNDLE_CREATED, kind="section")
    before = counter._value.get()

    metrics_subscriber(BUNDLE_CREATED, {"kind": "section"})

    assert counter._value.get() == before + 1
