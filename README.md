# hpametrics

Building blocks for feeding custom and external metrics to horizontal pod
autoscalers (HPAs) and for time-based scaling schedules: two HTTP metric
clients, an in-memory metric store, a background collector scheduler with a
provider that answers metric lookups, and a controller for scaling schedules.

## Modules

### `hpametrics.nakadi`

`NakadiClient(endpoint, session=None)` reads
`/subscriptions/<id>/stats?show_time_lag=true` from a Nakadi endpoint with a
`requests.Session` (a new one if none is given).

- `consumer_lag_seconds(subscription_id)` – the highest consumer lag over all
  partitions of all event types.
- `unconsumed_events(subscription_id)` – the sum of unconsumed events over all
  partitions.

A status other than 200, a body that is not JSON, or a response without event
types raises `NakadiError`.

### `hpametrics.zmon`

`ZMONClient(endpoint, session=None).query(check_id, key, tags, aggregators, duration)`
posts a KairosDB query for the metric `zmon.check.<check_id>` to
`<endpoint>/api/v1/datapoints/query` and returns a list of `DataPoint(time, value)`
with `time` as a UTC `datetime`. A non-empty `key` is added as a tag and as a
group-by; `aggregators` must be among `avg`, `count`, `last`, `max`, `min`,
`sum` and `diff`. An empty answer gives an empty list. Invalid aggregators,
a status other than 200, an unreadable body or a value that is not a
`[timestamp, value]` pair raise `ZMONError`.

`duration_to_sampling(duration)` turns a `timedelta` into a
`Sampling(value, unit)` in the largest unit (years down to milliseconds) the
duration fills at least once, rounded to the nearest whole unit; anything
below one millisecond becomes `Sampling(0, "milliseconds")`.

### `hpametrics.metric_store`

`MetricStore(ttl_calculator)` is a thread-safe in-memory store. Each inserted
value gets the expiry time returned by `ttl_calculator()`.

- `insert(collected_metric)` – stores a `CollectedMetric` of type
  `MetricSourceType.OBJECT` or `PODS` (a custom `MetricValue`) or `EXTERNAL`
  (an `ExternalMetricValue` kept per namespace). A newer value with the same
  key replaces the older one; other types are ignored.
- `get_metrics_by_name(name, info, selector)` – the custom metric of a
  `NamespacedName`, or `None`.
- `get_metrics_by_selector(namespace, selector, info)` – a list of custom
  metrics whose selector labels match.
- `get_external_metric(namespace, selector, info)` – a list of external
  metrics whose labels match.
- `list_all_metrics()` / `list_all_external_metrics()` – `CustomMetricInfo` /
  `ExternalMetricInfo` entries for everything stored.
- `remove_expired()` – drops values whose expiry time has passed.

Custom metrics of kind `Pod`, `Ingress`, `RouteGroup`, `ScalingSchedule` and
`ClusterScalingSchedule` are filed under their `GroupResource`; other kinds
under an empty one. `Selector.everything()` and `Selector.from_set(labels)`
build equality selectors. `hash_label_map`, `parse_hash_label_map` and
`parse_group_version` are available as helpers.

### `hpametrics.provider`

- `CollectorScheduler(metric_sink)` runs collectors in daemon threads, one per
  `ResourceReference` and metric type name. A collector is any object with a
  `get_metrics()` method and an `interval` (a `timedelta` or seconds). Every
  run puts a `MetricCollection(values, error)` on the `metric_sink` queue.
  `add` replaces a collector of the same type, `remove` stops all collectors
  of a resource, `references()` lists the scheduled resources and `stop()`
  stops everything.
- `HPAProvider(metric_store)` owns a `metric_sink` queue.
  `collect_metrics(stop_event)` consumes collections from it until the event is
  set, storing their values and calling `remove_expired()` every
  `gc_interval` (ten minutes by default); `handle_collection` does this for a
  single collection and counts `collection_successes` and `collection_errors`.
  The lookup methods `get_metric_by_name` (raises `MetricNotFoundError`),
  `get_metric_by_selector`, `get_external_metric`, `list_all_metrics` and
  `list_all_external_metrics` answer from the store.

### `hpametrics.scheduling`

- `Schedule`, `SchedulePeriod`, `ScheduleType` (`Repeating`, `OneTime`),
  `ScheduleDay`, `ScalingScheduleSpec` and `ScalingSchedule` (namespaced or,
  with `cluster=True`, cluster wide) describe scaling schedules.
- `schedule_start_end(now, schedule, default_time_zone)` returns the start and
  end of a schedule; the end is at least start plus the schedule's duration.
  Bad dates raise `InvalidScheduleDateError`, bad start times
  `InvalidScheduleStartTimeError`, both subclasses of `ScheduleError`.
- `between(timestamp, start, end)` tests the half-open interval `[start, end)`.
- `highest_active_schedule(hpa, active_schedules)` finds the highest replica
  count the active schedules ask of a `HorizontalPodAutoscaler`.
- `Controller(scaler, now, default_scaling_window, default_time_zone, hpa_tolerance)`:
  `active_schedules(spec)` lists the schedules active now, ramp window
  included; `active_scheduled_scaling(schedules)` maps each active schedule to
  its highest value; `update_status(schedules)` sets each schedule's `active`
  flag and returns those that changed; `adjust_scaling(schedules, hpas)` and
  `adjust_hpa_scaling(hpa, active)` call `scaler.scale(hpa, replicas)` when
  the scheduled replica count lies above the current one by no more than the
  tolerance, and record an entry in `controller.events`.

Time zones are loaded with `zoneinfo`, so a system time zone database must be
available.

## What the package does not do

There is no command and no server: nothing here serves the Kubernetes custom
or external metrics APIs, talks to a Kubernetes cluster, discovers HPAs or
scaling schedules, or exports its own counters. Collectors, the HPAs and
schedules handed to the controller, and the scaler that changes replica counts
are supplied by the caller. Metrics live in memory only.

## Installation

```
pip install hpametrics
```

## Examples

```python
import requests
from hpametrics.nakadi import NakadiClient

client = NakadiClient("https://nakadi.example.com", requests.Session())
lag = client.consumer_lag_seconds("my-subscription")
backlog = client.unconsumed_events("my-subscription")
```

```python
from datetime import timedelta
from hpametrics.zmon import ZMONClient

client = ZMONClient("https://zmon.example.com")
for point in client.query(1, "my-key", {}, ["max"], timedelta(hours=1)):
    print(point.time, point.value)
```

```python
from datetime import datetime, timedelta, timezone
from hpametrics.metric_store import (
    CollectedMetric, ExternalMetricInfo, ExternalMetricValue,
    MetricSourceType, MetricStore, Selector,
)

store = MetricStore(lambda: datetime.now(timezone.utc) + timedelta(minutes=15))
store.insert(CollectedMetric(
    type=MetricSourceType.EXTERNAL,
    external=ExternalMetricValue(metric_name="queue-length", value=3,
                                 metric_labels={"app": "shop"}),
))
found = store.get_external_metric("", Selector.from_set({"app": "shop"}),
                                  ExternalMetricInfo(metric="queue-length"))
store.remove_expired()
```

```python
from datetime import datetime, timezone
from hpametrics.scheduling import Schedule, ScheduleType, schedule_start_end, between

schedule = Schedule(type=ScheduleType.ONE_TIME, date="2009-11-10T23:00:00+01:00",
                    duration_minutes=15)
now = datetime.now(timezone.utc)
start, end = schedule_start_end(now, schedule, "Europe/Berlin")
print(between(now, start, end))
```

## Running the tests

```
pip install "hpametrics[test]"
pytest
```