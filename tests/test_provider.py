import queue
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from hpametrics.metric_store import (
    CollectedMetric,
    CustomMetricInfo,
    ExternalMetricInfo,
    ExternalMetricValue,
    GroupResource,
    MetricIdentifier,
    MetricSourceType,
    MetricStore,
    MetricValue,
    NamespacedName,
    ObjectReference,
    Selector,
)
from hpametrics.provider import (
    CollectorScheduler,
    HPAProvider,
    MetricCollection,
    MetricNotFoundError,
    ResourceReference,
)

POD_INFO = CustomMetricInfo(
    group_resource=GroupResource(resource="pods"), namespaced=True, metric="rps"
)


class FakeCollector:
    def __init__(self, metrics=None, error=None, interval=timedelta(seconds=60)):
        self.metrics = metrics or []
        self.error = error
        self.interval = interval
        self.calls = 0

    def get_metrics(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.metrics


def pod_metric(value=1):
    return CollectedMetric(
        type=MetricSourceType.PODS,
        custom=MetricValue(
            metric=MetricIdentifier(name="rps", selector={}),
            value=value,
            described_object=ObjectReference(
                kind="Pod", namespace="default", name="pod-1", api_version="v1"
            ),
        ),
    )


def external_metric():
    return CollectedMetric(
        type=MetricSourceType.EXTERNAL,
        namespace="default",
        external=ExternalMetricValue(
            metric_name="queue-length", value=5, metric_labels={"application": "some-app"}
        ),
    )


def fresh_store():
    return MetricStore(lambda: datetime.now(timezone.utc) + timedelta(minutes=15))


def wait_until(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def drain(sink):
    while True:
        try:
            sink.get_nowait()
        except queue.Empty:
            return


def test_scheduler_runs_collector_and_sends_values():
    sink = queue.Queue()
    scheduler = CollectorScheduler(sink)
    ref = ResourceReference(name="hpa1", namespace="default")
    metric = pod_metric()
    try:
        scheduler.add(ref, "pods/rps", FakeCollector(metrics=[metric]))
        collection = sink.get(timeout=2)
        assert collection.values == [metric]
        assert collection.error is None
        assert scheduler.references() == {ref}
    finally:
        scheduler.stop()


def test_scheduler_reports_collector_errors():
    sink = queue.Queue()
    scheduler = CollectorScheduler(sink)
    error = RuntimeError("boom")
    try:
        scheduler.add(ResourceReference("hpa1", "default"), "pods/rps", FakeCollector(error=error))
        collection = sink.get(timeout=2)
        assert collection.error is error
        assert collection.values == []
    finally:
        scheduler.stop()


def test_scheduler_remove_stops_collectors():
    sink = queue.Queue()
    scheduler = CollectorScheduler(sink)
    ref = ResourceReference("hpa1", "default")
    collector = FakeCollector(interval=timedelta(milliseconds=10))
    scheduler.add(ref, "pods/rps", collector)
    assert wait_until(lambda: collector.calls >= 2)

    scheduler.remove(ref)
    assert scheduler.references() == set()

    time.sleep(0.1)
    calls = collector.calls
    time.sleep(0.1)
    assert collector.calls == calls


def test_scheduler_add_replaces_collector_of_same_type():
    sink = queue.Queue()
    scheduler = CollectorScheduler(sink)
    ref = ResourceReference("hpa1", "default")
    first = FakeCollector(interval=timedelta(milliseconds=10))
    second = FakeCollector(interval=timedelta(milliseconds=10))
    try:
        scheduler.add(ref, "pods/rps", first)
        assert wait_until(lambda: first.calls >= 1)
        scheduler.add(ref, "pods/rps", second)
        assert scheduler.references() == {ref}

        time.sleep(0.1)
        calls = first.calls
        time.sleep(0.1)
        assert first.calls == calls
        assert second.calls > 0
    finally:
        scheduler.stop()
    drain(sink)


def test_scheduler_keeps_resources_apart():
    scheduler = CollectorScheduler(queue.Queue())
    one = ResourceReference("hpa1", "default")
    two = ResourceReference("hpa2", "default")
    try:
        scheduler.add(one, "pods/rps", FakeCollector())
        scheduler.add(two, "pods/rps", FakeCollector())
        scheduler.remove(one)
        assert scheduler.references() == {two}
    finally:
        scheduler.stop()
    assert scheduler.references() == set()


def test_handle_collection_stores_custom_metric():
    provider = HPAProvider(fresh_store())
    metric = pod_metric()
    provider.handle_collection(MetricCollection(values=[metric]))

    found = provider.get_metric_by_name(
        NamespacedName(namespace="default", name="pod-1"), POD_INFO, Selector.everything()
    )
    assert found == metric.custom
    assert provider.collection_successes == 1
    assert provider.collection_errors == 0
    assert provider.list_all_metrics() == [POD_INFO]
    assert provider.get_metric_by_selector(
        "default", Selector.everything(), POD_INFO, Selector.everything()
    ) == [metric.custom]


def test_handle_collection_counts_errors_and_still_stores_values():
    provider = HPAProvider(fresh_store())
    metric = external_metric()
    provider.handle_collection(MetricCollection(values=[metric], error=RuntimeError("x")))

    assert provider.collection_errors == 1
    assert provider.collection_successes == 0
    assert provider.list_all_external_metrics() == [ExternalMetricInfo(metric="queue-length")]
    assert provider.get_external_metric(
        "default", Selector.everything(), ExternalMetricInfo(metric="queue-length")
    ) == [metric.external]


def test_external_metric_selector_filters_labels():
    provider = HPAProvider(fresh_store())
    provider.handle_collection(MetricCollection(values=[external_metric()]))
    result = provider.get_external_metric(
        "default",
        Selector.from_set({"application": "other-app"}),
        ExternalMetricInfo(metric="queue-length"),
    )
    assert result == []


def test_get_metric_by_name_raises_when_missing():
    provider = HPAProvider(fresh_store())
    with pytest.raises(MetricNotFoundError) as info:
        provider.get_metric_by_name(
            NamespacedName(namespace="default", name="pod-1"), POD_INFO, Selector.everything()
        )
    assert info.value.metric == "rps"
    assert info.value.name == "pod-1"
    assert "rps" in str(info.value)


def test_collect_metrics_consumes_sink_until_stopped():
    provider = HPAProvider(fresh_store())
    stop = threading.Event()
    worker = threading.Thread(target=provider.collect_metrics, args=(stop,), daemon=True)
    worker.start()
    try:
        provider.metric_sink.put(MetricCollection(values=[pod_metric()]))
        assert wait_until(lambda: provider.list_all_metrics() == [POD_INFO])
    finally:
        stop.set()
        worker.join(2)
    assert not worker.is_alive()
    assert provider.collection_successes == 1


def test_collect_metrics_removes_expired_metrics():
    store = MetricStore(lambda: datetime.now(timezone.utc) - timedelta(hours=1))
    provider = HPAProvider(store)
    provider.gc_interval = timedelta(milliseconds=10)
    provider.handle_collection(MetricCollection(values=[pod_metric(), external_metric()]))
    assert len(provider.list_all_metrics()) == 1

    stop = threading.Event()
    worker = threading.Thread(target=provider.collect_metrics, args=(stop,), daemon=True)
    worker.start()
    try:
        assert wait_until(
            lambda: provider.list_all_metrics() == []
            and provider.list_all_external_metrics() == []
        )
    finally:
        stop.set()
        worker.join(2)
    assert not worker.is_alive()


def test_scheduler_feeds_provider_end_to_end():
    provider = HPAProvider(fresh_store())
    scheduler = CollectorScheduler(provider.metric_sink)
    stop = threading.Event()
    worker = threading.Thread(target=provider.collect_metrics, args=(stop,), daemon=True)
    worker.start()
    try:
        scheduler.add(
            ResourceReference("hpa1", "default"), "pods/rps", FakeCollector(metrics=[pod_metric(7)])
        )
        assert wait_until(lambda: provider.list_all_metrics() == [POD_INFO])
        found = provider.get_metric_by_name(
            NamespacedName(namespace="default", name="pod-1"), POD_INFO, Selector.everything()
        )
        assert found.value == 7
    finally:
        scheduler.stop()
        stop.set()
        worker.join(2)
    assert not worker.is_alive()