"""Client for querying ZMON check data from its KairosDB data service."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, Mapping

import requests

# Aggregators that KairosDB accepts in queries.
VALID_AGGREGATORS = frozenset({"avg", "count", "last", "max", "min", "sum", "diff"})

# Maximum number of data points ZMON returns.
QUERY_LIMIT = 10000

_NS_PER_MS = 1_000_000
_NS_PER_SECOND = 1000 * _NS_PER_MS
_NS_PER_MINUTE = 60 * _NS_PER_SECOND
_NS_PER_HOUR = 60 * _NS_PER_MINUTE
_NS_PER_DAY = 24 * _NS_PER_HOUR

_UNITS = (
    ("years", 365 * _NS_PER_DAY),
    ("months", 30 * _NS_PER_DAY),
    ("weeks", 7 * _NS_PER_DAY),
    ("days", _NS_PER_DAY),
    ("hours", _NS_PER_HOUR),
    ("minutes", _NS_PER_MINUTE),
    ("seconds", _NS_PER_SECOND),
    ("milliseconds", _NS_PER_MS),
)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class ZMONError(Exception):
    """Raised when a ZMON query is invalid or its answer unusable."""


@dataclass(frozen=True)
class DataPoint:
    """A single data point returned from a query."""

    time: datetime
    value: float


@dataclass(frozen=True)
class Sampling:
    """A relative time span in the form KairosDB expects."""

    value: int
    unit: str


def _nanoseconds(duration: timedelta) -> int:
    return (duration.days * 86400 + duration.seconds) * _NS_PER_SECOND + duration.microseconds * 1000


def duration_to_sampling(duration: timedelta) -> Sampling:
    """Express a duration in the largest unit it fills at least once, rounded."""
    ns = _nanoseconds(duration)
    for unit, size in _UNITS:
        if ns // size >= 1:
            quotient, remainder = divmod(ns, size)
            if remainder * 2 >= size:
                quotient += 1
            return Sampling(value=quotient, unit=unit)
    return Sampling(value=0, unit="milliseconds")


class ZMONClient:
    """Queries check results stored in ZMON's KairosDB."""

    def __init__(self, endpoint: str, session: requests.Session | None = None) -> None:
        self.endpoint = endpoint
        self.session = session if session is not None else requests.Session()

    def _build_query(
        self,
        check_id: int,
        key: str,
        tags: Mapping[str, str] | None,
        aggregators: Iterable[str] | None,
        duration: timedelta,
    ) -> dict:
        sampling = asdict(duration_to_sampling(duration))

        aggregator_entries = []
        for name in aggregators or ():
            if name not in VALID_AGGREGATORS:
                raise ZMONError(f"invalid aggregator '{name}'")
            aggregator_entries.append({"name": name, "sampling": dict(sampling)})

        metric = {
            "name": f"zmon.check.{check_id}",
            "limit": QUERY_LIMIT,
            "tags": {k: [v] for k, v in (tags or {}).items()},
            "group_by": [],
            "aggregators": aggregator_entries,
        }
        if key:
            metric["tags"]["key"] = [key]
            metric["group_by"].append({"name": "tag", "tags": ["key"]})

        return {"start_relative": sampling, "metrics": [metric]}

    def query(
        self,
        check_id: int,
        key: str,
        tags: Mapping[str, str] | None,
        aggregators: Iterable[str] | None,
        duration: timedelta,
    ) -> list[DataPoint]:
        """Query the data points of a check over the given time span."""
        body = self._build_query(check_id, key, tags, aggregators, duration)
        url = self.endpoint + "/api/v1/datapoints/query"
        response = self.session.post(
            url,
            data=json.dumps(body),
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
                "X-Attribution": f"kube-metrics-adapter/{check_id}",
            },
        )

        if response.status_code != 200:
            raise ZMONError(
                f"[kariosdb query] unexpected response code: {response.status_code}"
            )

        try:
            result = json.loads(response.text)
        except ValueError as exc:
            raise ZMONError(f"[kariosdb query] invalid response body: {exc}") from exc

        queries = result.get("queries") or []
        if not queries:
            return []
        results = queries[0].get("results") or []
        if not results:
            return []

        points = []
        for value in results[0].get("values") or []:
            if len(value) != 2:
                raise ZMONError("[kariosdb query] unexpected response data")
            timestamp, measured = value
            points.append(
                DataPoint(
                    time=_EPOCH + timedelta(milliseconds=int(timestamp)),
                    value=float(measured),
                )
            )
        return points