"""In-memory store of the custom and external metrics collected for HPAs."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Mapping


class MetricSourceType(str, Enum):
    """The kind of metric source an HPA metric refers to."""

    OBJECT = "Object"
    PODS = "Pods"
    RESOURCE = "Resource"
    CONTAINER_RESOURCE = "ContainerResource"
    EXTERNAL = "External"


@dataclass(frozen=True)
class GroupResource:
    """An API group together with a resource name."""

    group: str = ""
    resource: str = ""


@dataclass
class ObjectReference:
    """Reference to the object a custom metric describes."""

    kind: str = ""
    namespace: str = ""
    name: str = ""
    api_version: str = ""


@dataclass(frozen=True)
class NamespacedName:
    """Name of an object together with its namespace."""

    namespace: str = ""
    name: str = ""


@dataclass
class MetricIdentifier:
    """Name of a metric and the match labels of its selector, if any."""

    name: str = ""
    selector: dict[str, str] | None = None


@dataclass
class MetricValue:
    """A custom metric value for a described object."""

    metric: MetricIdentifier = field(default_factory=MetricIdentifier)
    value: Any = 0
    described_object: ObjectReference = field(default_factory=ObjectReference)
    timestamp: datetime | None = None


@dataclass
class ExternalMetricValue:
    """An external metric value with its labels."""

    metric_name: str = ""
    value: Any = 0
    metric_labels: dict[str, str] = field(default_factory=dict)
    timestamp: datetime | None = None


@dataclass
class CollectedMetric:
    """A metric as delivered by a collector."""

    type: MetricSourceType | None = None
    namespace: str = ""
    custom: MetricValue = field(default_factory=MetricValue)
    external: ExternalMetricValue = field(default_factory=ExternalMetricValue)


@dataclass(frozen=True)
class CustomMetricInfo:
    """Describes a custom metric that the store can serve."""

    group_resource: GroupResource = GroupResource()
    namespaced: bool = False
    metric: str = ""


@dataclass(frozen=True)
class ExternalMetricInfo:
    """Describes an external metric that the store can serve."""

    metric: str = ""


@dataclass(frozen=True)
class Selector:
    """A label selector made of key=value equality requirements."""

    requirements: tuple[tuple[str, str], ...] = ()

    @classmethod
    def everything(cls) -> "Selector":
        """A selector that matches every label set."""
        return cls()

    @classmethod
    def from_set(cls, labels: Mapping[str, str]) -> "Selector":
        """A selector that requires every given label to be present and equal."""
        return cls(tuple(sorted(labels.items())))

    def matches(self, labels: Mapping[str, str]) -> bool:
        """Whether the label set meets all requirements."""
        return all(key in labels and labels[key] == value for key, value in self.requirements)


def parse_group_version(api_version: str) -> tuple[str, str]:
    """Split an API version such as ``apps/v1`` into group and version."""
    if not api_version or api_version == "/":
        return "", ""
    slashes = api_version.count("/")
    if slashes == 0:
        return "", api_version
    if slashes == 1:
        group, version = api_version.split("/")
        return group, version
    raise ValueError(f"unexpected GroupVersion string: {api_version}")


def hash_label_map(labels: Mapping[str, str] | None) -> str:
    """A stable string form of a label map: sorted ``k=v`` pairs joined by commas."""
    return ",".join(sorted(f"{key}={value}" for key, value in (labels or {}).items()))


def parse_hash_label_map(value: str) -> dict[str, str]:
    """Turn the output of :func:`hash_label_map` back into a label map."""
    labels: dict[str, str] = {}
    if not value:
        return labels
    for key_value in value.split(","):
        parts = key_value.split("=")
        if len(parts) < 2:
            raise ValueError(f"invalid label pair: {key_value!r}")
        labels[parts[0]] = parts[1]
    return labels


# Kinds whose group/resource is known, with the group used when the
# API version of the described object cannot be parsed.
_KIND_RESOURCES = {
    "Ingress": ("ingresses", "networking.k8s.io"),
    "RouteGroup": ("routegroups", "zalando.org"),
    "ScalingSchedule": ("scalingschedules", "zalando.org"),
    "ClusterScalingSchedule": ("clusterscalingschedules", "zalando.org"),
}


def _group_resource(reference: ObjectReference) -> GroupResource:
    if reference.kind == "Pod":
        return GroupResource(resource="pods")
    known = _KIND_RESOURCES.get(reference.kind)
    if known is None:
        return GroupResource()
    resource, group = known
    try:
        group, _ = parse_group_version(reference.api_version)
    except ValueError:
        pass
    return GroupResource(group=group, resource=resource)


@dataclass
class _Stored:
    value: Any
    ttl: datetime


class MetricStore:
    """Thread-safe in-memory store of metrics with per-value expiry."""

    def __init__(self, ttl_calculator: Callable[[], datetime]) -> None:
        # metric -> group resource -> namespace -> object -> labels hash -> metric
        self._custom: dict[str, dict[GroupResource, dict[str, dict[str, dict[str, _Stored]]]]] = {}
        # namespace -> metric -> labels hash -> metric
        self._external: dict[str, dict[str, dict[str, _Stored]]] = {}
        self._ttl_calculator = ttl_calculator
        self._lock = threading.RLock()

    def insert(self, value: CollectedMetric) -> None:
        """Store a collected metric, replacing any value with the same key."""
        if value.type in (MetricSourceType.OBJECT, MetricSourceType.PODS):
            self._insert_custom(value.custom)
        elif value.type == MetricSourceType.EXTERNAL:
            self._insert_external(value.namespace, value.external)

    def _insert_custom(self, value: MetricValue) -> None:
        with self._lock:
            group_resource = _group_resource(value.described_object)
            selector = value.metric.selector
            labels_key = hash_label_map(selector) if selector is not None else ""
            stored = _Stored(value=value, ttl=self._ttl_calculator())
            (
                self._custom.setdefault(value.metric.name, {})
                .setdefault(group_resource, {})
                .setdefault(value.described_object.namespace, {})
                .setdefault(value.described_object.name, {})
            )[labels_key] = stored

    def _insert_external(self, namespace: str, metric: ExternalMetricValue) -> None:
        with self._lock:
            stored = _Stored(value=metric, ttl=self._ttl_calculator())
            labels_key = hash_label_map(metric.metric_labels)
            self._external.setdefault(namespace, {}).setdefault(metric.metric_name, {})[
                labels_key
            ] = stored

    def get_metrics_by_selector(
        self, namespace: str, selector: Selector, info: CustomMetricInfo
    ) -> list[MetricValue]:
        """Return the custom metrics whose selector labels match ``selector``."""
        with self._lock:
            namespaces = self._custom.get(info.metric, {}).get(info.group_resource)
            if namespaces is None:
                return []

            if not info.namespaced:
                return [
                    stored.value
                    for objects in namespaces.values()
                    for by_labels in objects.values()
                    for stored in by_labels.values()
                    if selector.matches(stored.value.metric.selector or {})
                ]

            objects = namespaces.get(namespace)
            if objects is None:
                return []
            return [
                stored.value
                for by_labels in objects.values()
                for stored in by_labels.values()
                if stored.value.metric.selector is not None
                and selector.matches(stored.value.metric.selector)
            ]

    def get_metrics_by_name(
        self, name: NamespacedName, info: CustomMetricInfo, selector: Selector
    ) -> MetricValue | None:
        """Return the custom metric of a named object, or None if there is none."""
        with self._lock:
            namespaces = self._custom.get(info.metric, {}).get(info.group_resource)
            if namespaces is None:
                return None

            if not info.namespaced:
                candidates = [
                    objects[name.name] for objects in namespaces.values() if name.name in objects
                ]
            else:
                objects = namespaces.get(name.namespace, {})
                candidates = [objects[name.name]] if name.name in objects else []

            for by_labels in candidates:
                for labels_key, stored in by_labels.items():
                    if selector.matches(parse_hash_label_map(labels_key)):
                        return stored.value
            return None

    def list_all_metrics(self) -> list[CustomMetricInfo]:
        """List every custom metric per group resource and namespace."""
        with self._lock:
            return [
                CustomMetricInfo(
                    group_resource=group_resource,
                    namespaced=namespace != "",
                    metric=metric,
                )
                for metric, groups in self._custom.items()
                for group_resource, namespaces in groups.items()
                for namespace in namespaces
            ]

    def get_external_metric(
        self, namespace: str, selector: Selector, info: ExternalMetricInfo
    ) -> list[ExternalMetricValue]:
        """Return the external metrics of a namespace whose labels match ``selector``."""
        with self._lock:
            by_labels = self._external.get(namespace, {}).get(info.metric, {})
            return [
                stored.value
                for stored in by_labels.values()
                if selector.matches(stored.value.metric_labels)
            ]

    def list_all_external_metrics(self) -> list[ExternalMetricInfo]:
        """List every external metric, once per namespace it occurs in."""
        with self._lock:
            return [
                ExternalMetricInfo(metric=metric)
                for metrics in self._external.values()
                for metric in metrics
            ]

    def remove_expired(self) -> None:
        """Drop every metric whose TTL lies in the past, and empty branches."""
        with self._lock:
            for metric, groups in list(self._custom.items()):
                for group, namespaces in list(groups.items()):
                    for namespace, objects in list(namespaces.items()):
                        for obj, by_labels in list(objects.items()):
                            _drop_expired(by_labels)
                            if not by_labels:
                                del objects[obj]
                        if not objects:
                            del namespaces[namespace]
                    if not namespaces:
                        del groups[group]
                if not groups:
                    del self._custom[metric]

            for namespace, metrics in list(self._external.items()):
                for metric, by_labels in list(metrics.items()):
                    _drop_expired(by_labels)
                    if not by_labels:
                        del metrics[metric]
                if not metrics:
                    del self._external[namespace]


def _drop_expired(by_labels: dict[str, _Stored]) -> None:
    for key, stored in list(by_labels.items()):
        now = datetime.now(stored.ttl.tzinfo)
        if stored.ttl < now:
            del by_labels[key]