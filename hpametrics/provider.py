"""Scheduling of metric collectors and the provider serving their results."""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Iterable, Protocol

from hpametrics.metric_store import (
    CollectedMetric,
    CustomMetricInfo,
    ExternalMetricInfo,
    ExternalMetricValue,
    GroupResource,
    MetricSourceType,
    MetricStore,
    MetricValue,
    NamespacedName,
    Selector,
    hash_label_map,
)

logger = logging.getLogger(__name__)

# How long the collection loop waits for new data before checking whether
# it has to stop or run the garbage collection.
_POLL_SECONDS = 0.05


class MetricNotFoundError(LookupError):
    """Raised when a requested custom metric is not in the store."""

    def __init__(self, group_resource: GroupResource, metric: str, name: str) -> None:
        self.group_resource = group_resource
        self.metric = metric
        self.name = name
        resource = group_resource.resource
        if group_resource.group:
            resource = f"{resource}.{group_resource.group}"
        super().__init__(f"the server could not find the metric {metric} for {resource} {name}")


@dataclass(frozen=True)
class ResourceReference:
    """Identifies the HPA a set of collectors belongs to."""

    name: str
    namespace: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass
class MetricCollection:
    """The result of one run of a collector."""

    values: list[CollectedMetric] = field(default_factory=list)
    error: Exception | None = None


class _Collector(Protocol):
    interval: timedelta | float

    def get_metrics(self) -> Iterable[CollectedMetric]: ...


def _seconds(interval: timedelta | float) -> float:
    if isinstance(interval, timedelta):
        return interval.total_seconds()
    return float(interval)


def _run_collector(
    collector: _Collector, sink: "queue.Queue[MetricCollection]", stop: threading.Event
) -> None:
    """Run a collector at its interval until ``stop`` is set."""
    while True:
        try:
            collection = MetricCollection(values=list(collector.get_metrics() or []))
        except Exception as exc:  # a failing collector must not end its runner
            collection = MetricCollection(error=exc)
        sink.put(collection)

        if stop.wait(_seconds(collector.interval)):
            logger.info("stopping collector runner...")
            return


class CollectorScheduler:
    """Keeps track of running collectors and stops those that are removed."""

    def __init__(self, metric_sink: "queue.Queue[MetricCollection]") -> None:
        self.metric_sink = metric_sink
        self._table: dict[ResourceReference, dict[str, threading.Event]] = {}
        self._lock = threading.Lock()

    def add(self, resource_ref: ResourceReference, type_name: str, collector: _Collector) -> None:
        """Start a collector, replacing one of the same type for the same resource."""
        with self._lock:
            collectors = self._table.setdefault(resource_ref, {})
            previous = collectors.get(type_name)
            if previous is not None:
                previous.set()

            stop = threading.Event()
            collectors[type_name] = stop
            threading.Thread(
                target=_run_collector,
                args=(collector, self.metric_sink, stop),
                name=f"collector-{resource_ref}-{type_name}",
                daemon=True,
            ).start()

    def remove(self, resource_ref: ResourceReference) -> None:
        """Stop and forget every collector of a resource."""
        with self._lock:
            collectors = self._table.pop(resource_ref, {})
            for stop in collectors.values():
                stop.set()

    def references(self) -> set[ResourceReference]:
        """The resources that currently have collectors scheduled."""
        with self._lock:
            return set(self._table)

    def stop(self) -> None:
        """Stop every scheduled collector."""
        with self._lock:
            for collectors in self._table.values():
                for stop in collectors.values():
                    stop.set()
            self._table.clear()


def _describe(value: CollectedMetric) -> str | None:
    if value.type in (MetricSourceType.OBJECT, MetricSourceType.PODS):
        custom: MetricValue = value.custom
        obj = custom.described_object
        return (
            f"Collected new custom metric '{custom.metric.name}' ({custom.value}) "
            f"for {obj.kind} {obj.namespace}/{obj.name}"
        )
    if value.type == MetricSourceType.EXTERNAL:
        external: ExternalMetricValue = value.external
        return (
            f"Collected new external metric '{value.namespace}/{external.metric_name}' "
            f"({external.value}) [{hash_label_map(external.metric_labels)}]"
        )
    return None


class HPAProvider:
    """Feeds collected metrics into a store and answers metric queries from it."""

    def __init__(self, metric_store: MetricStore) -> None:
        self.metric_store = metric_store
        self.metric_sink: "queue.Queue[MetricCollection]" = queue.Queue()
        self.gc_interval = timedelta(minutes=10)
        self.collection_successes = 0
        self.collection_errors = 0

    def handle_collection(self, collection: MetricCollection) -> None:
        """Count a collection as success or failure and store its values."""
        if collection.error is not None:
            logger.error("Failed to collect metrics: %s", collection.error)
            self.collection_errors += 1
        else:
            self.collection_successes += 1

        logger.info("Collected %d new metric(s)", len(collection.values))
        for value in collection.values:
            message = _describe(value)
            if message:
                logger.info(message)
            self.metric_store.insert(value)

    def collect_metrics(self, stop_event: threading.Event) -> None:
        """Store incoming collections and expire old metrics until stopped."""
        next_gc = time.monotonic() + self.gc_interval.total_seconds()
        while not stop_event.is_set():
            try:
                collection = self.metric_sink.get(timeout=_POLL_SECONDS)
            except queue.Empty:
                pass
            else:
                self.handle_collection(collection)

            if time.monotonic() >= next_gc:
                self.metric_store.remove_expired()
                next_gc = time.monotonic() + self.gc_interval.total_seconds()
        logger.info("Stopped metrics collection.")

    def get_metric_by_name(
        self, name: NamespacedName, info: CustomMetricInfo, metric_selector: Selector
    ) -> MetricValue:
        """Return the custom metric of a named object."""
        metric = self.metric_store.get_metrics_by_name(name, info, metric_selector)
        if metric is None:
            raise MetricNotFoundError(info.group_resource, info.metric, name.name)
        return metric

    def get_metric_by_selector(
        self,
        namespace: str,
        selector: Selector,
        info: CustomMetricInfo,
        metric_selector: Selector,
    ) -> list[MetricValue]:
        """Return the custom metrics of a namespace matching a label selector."""
        return self.metric_store.get_metrics_by_selector(namespace, selector, info)

    def list_all_metrics(self) -> list[CustomMetricInfo]:
        """List every custom metric available."""
        return self.metric_store.list_all_metrics()

    def get_external_metric(
        self, namespace: str, metric_selector: Selector, info: ExternalMetricInfo
    ) -> list[ExternalMetricValue]:
        """Return the external metrics of a namespace matching a label selector."""
        return self.metric_store.get_external_metric(namespace, metric_selector, info)

    def list_all_external_metrics(self) -> list[ExternalMetricInfo]:
        """List every external metric available."""
        return self.metric_store.list_all_external_metrics()