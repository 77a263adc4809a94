"""Client for the subscription statistics of the Nakadi event bus."""

from __future__ import annotations

import json
from typing import Any
from urllib.parse import parse_qs, urlencode, urlsplit, urlunsplit

import requests


class NakadiError(Exception):
    """Raised when the Nakadi API returns an unusable answer."""


class NakadiClient:
    """Reads consumer lag and unconsumed events of Nakadi subscriptions."""

    def __init__(self, endpoint: str, session: requests.Session | None = None) -> None:
        self.endpoint = endpoint
        self.session = session if session is not None else requests.Session()

    def consumer_lag_seconds(self, subscription_id: str) -> int:
        """Return the highest consumer lag in seconds over all partitions."""
        return max(
            (
                int(partition.get("consumer_lag_seconds", 0))
                for partition in self._partitions(subscription_id)
            ),
            default=0,
        )

    def unconsumed_events(self, subscription_id: str) -> int:
        """Return the number of unconsumed events summed over all partitions."""
        return sum(
            int(partition.get("unconsumed_events", 0))
            for partition in self._partitions(subscription_id)
        )

    def _partitions(self, subscription_id: str) -> list[dict[str, Any]]:
        return [
            partition
            for event_type in self._stats(subscription_id)
            for partition in event_type.get("partitions") or []
        ]

    def _stats_url(self, subscription_id: str) -> str:
        parts = urlsplit(self.endpoint)
        query = parse_qs(parts.query, keep_blank_values=True)
        query["show_time_lag"] = ["true"]
        encoded = urlencode(sorted(query.items()), doseq=True)
        path = f"/subscriptions/{subscription_id}/stats"
        return urlunsplit((parts.scheme, parts.netloc, path, encoded, parts.fragment))

    def _stats(self, subscription_id: str) -> list[dict[str, Any]]:
        """Fetch the per event-type statistics of a subscription."""
        response = self.session.get(self._stats_url(subscription_id))
        body = response.text

        if response.status_code != 200:
            raise NakadiError(
                f"[nakadi stats] unexpected response code: {response.status_code} ({body})"
            )

        try:
            result = json.loads(body)
        except ValueError as exc:
            raise NakadiError(f"[nakadi stats] invalid response body: {exc}") from exc

        items = result.get("items") if isinstance(result, dict) else None
        if not items:
            raise NakadiError("expected at least 1 event-type, 0 returned")
        return items