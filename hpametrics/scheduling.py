"""Time based scaling schedules and the controller that acts on them."""

from __future__ import annotations

import logging
import math
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Iterable, Mapping, Protocol
from zoneinfo import ZoneInfo

from hpametrics.metric_store import MetricSourceType

logger = logging.getLogger(__name__)

# Number of schedules or HPAs handled at the same time.
_CONCURRENCY = 10

# The moment a schedule starts and ends when none of its days is today.
_ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)

_CLOCK = re.compile(r"^(\d{1,2}):(\d{2})$")
_RFC3339 = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})[Tt](\d{2}):(\d{2}):(\d{2})(\.\d+)?([Zz]|[+-]\d{2}:\d{2})$"
)


class ScheduleError(Exception):
    """Raised when a schedule cannot be evaluated."""


class InvalidScheduleDateError(ScheduleError):
    """Raised when a schedule date is not a valid RFC 3339 date."""

    def __init__(self) -> None:
        super().__init__("could not parse the specified schedule date, format is not RFC3339")


class InvalidScheduleStartTimeError(ScheduleError):
    """Raised when a schedule period start time is not in HH:MM form."""

    def __init__(self) -> None:
        super().__init__(
            "could not parse the specified schedule period start time, format is not HH:MM"
        )


class ScheduleType(str, Enum):
    """Whether a schedule repeats weekly or happens once."""

    REPEATING = "Repeating"
    ONE_TIME = "OneTime"


class ScheduleDay(str, Enum):
    """A day of the week on which a repeating schedule is active."""

    SUNDAY = "Sun"
    MONDAY = "Mon"
    TUESDAY = "Tue"
    WEDNESDAY = "Wed"
    THURSDAY = "Thu"
    FRIDAY = "Fri"
    SATURDAY = "Sat"

    @property
    def weekday(self) -> int:
        """The day as numbered by :meth:`datetime.weekday`."""
        return _WEEKDAYS[self]


_WEEKDAYS = {
    ScheduleDay.MONDAY: 0,
    ScheduleDay.TUESDAY: 1,
    ScheduleDay.WEDNESDAY: 2,
    ScheduleDay.THURSDAY: 3,
    ScheduleDay.FRIDAY: 4,
    ScheduleDay.SATURDAY: 5,
    ScheduleDay.SUNDAY: 6,
}


@dataclass
class SchedulePeriod:
    """The days and time of day of a repeating schedule."""

    days: list[ScheduleDay] = field(default_factory=list)
    start_time: str = ""
    end_time: str = ""
    timezone: str = ""


@dataclass
class Schedule:
    """A single period during which a scaling value applies."""

    type: ScheduleType
    duration_minutes: int = 0
    value: int = 0
    date: str | None = None
    end_date: str | None = None
    period: SchedulePeriod | None = None

    def duration(self) -> timedelta:
        """The length of the schedule."""
        return timedelta(minutes=self.duration_minutes)


@dataclass
class ScalingScheduleSpec:
    """The schedules of a scaling schedule and its ramp window."""

    schedules: list[Schedule] = field(default_factory=list)
    scaling_window_duration_minutes: int | None = None


@dataclass
class ScalingSchedule:
    """A namespaced or cluster wide scaling schedule with its status."""

    name: str
    spec: ScalingScheduleSpec = field(default_factory=ScalingScheduleSpec)
    namespace: str = ""
    cluster: bool = False
    active: bool = False

    @property
    def kind(self) -> str:
        return "ClusterScalingSchedule" if self.cluster else "ScalingSchedule"

    def identifier(self) -> str:
        """The key under which the schedule's value is looked up."""
        if self.cluster:
            return self.name
        return f"{self.namespace}/{self.name}"


@dataclass
class ScheduleMetric:
    """An HPA metric, as far as scheduled scaling is concerned."""

    type: MetricSourceType
    kind: str = ""
    name: str = ""
    api_version: str = ""
    average_value: float | None = None


@dataclass
class HorizontalPodAutoscaler:
    """The parts of an HPA that scheduled scaling reads."""

    name: str
    namespace: str = ""
    scale_target_kind: str = ""
    scale_target_name: str = ""
    scale_target_api_version: str = ""
    max_replicas: int = 0
    current_replicas: int = 0
    metrics: list[ScheduleMetric] = field(default_factory=list)

    @property
    def target_reference(self) -> str:
        return f"{self.scale_target_kind}/{self.namespace}/{self.scale_target_name}"


class _TargetScaler(Protocol):
    def scale(self, hpa: HorizontalPodAutoscaler, replicas: int) -> None: ...


def _parse_clock(value: str) -> tuple[int, int] | None:
    match = _CLOCK.match(value)
    if match is None:
        return None
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        return None
    return hour, minute


def _parse_rfc3339(value: str | None) -> datetime:
    match = _RFC3339.match(value or "")
    if match is None:
        raise InvalidScheduleDateError()
    year, month, day, hour, minute, second = (int(match.group(i)) for i in range(1, 7))
    fraction = match.group(7)
    microsecond = int(fraction[1:7].ljust(6, "0")) if fraction else 0
    offset = match.group(8)
    if offset in ("Z", "z"):
        tz = timezone.utc
    else:
        sign = -1 if offset[0] == "-" else 1
        delta = timedelta(hours=int(offset[1:3]), minutes=int(offset[4:6]))
        try:
            tz = timezone(sign * delta)
        except ValueError as exc:
            raise InvalidScheduleDateError() from exc
    try:
        return datetime(year, month, day, hour, minute, second, microsecond, tzinfo=tz)
    except ValueError as exc:
        raise InvalidScheduleDateError() from exc


def _load_location(name: str, default_time_zone: str) -> ZoneInfo:
    if name:
        try:
            return ZoneInfo(name)
        except (ValueError, OSError, KeyError):
            pass
    try:
        return ZoneInfo(default_time_zone)
    except (ValueError, OSError, KeyError) as exc:
        raise ScheduleError(f"unexpected error loading default location: {exc}") from exc


def schedule_start_end(
    now: datetime, schedule: Schedule, default_time_zone: str
) -> tuple[datetime, datetime]:
    """Return when a schedule starts and ends relative to ``now``."""
    start = end = _ZERO_TIME

    if schedule.type == ScheduleType.REPEATING:
        period = schedule.period
        if period is None:
            raise ScheduleError("repeating schedule without a period")
        location = _load_location(period.timezone, default_time_zone)
        local_now = now.astimezone(location)
        for day in period.days:
            if ScheduleDay(day).weekday != local_now.weekday():
                continue
            clock = _parse_clock(period.start_time)
            if clock is None:
                raise InvalidScheduleStartTimeError()
            start = datetime(
                local_now.year, local_now.month, local_now.day, *clock, tzinfo=location
            )
            if not period.end_time:
                end = start
            else:
                end_clock = _parse_clock(period.end_time)
                if end_clock is None:
                    raise InvalidScheduleDateError()
                end = datetime(
                    local_now.year, local_now.month, local_now.day, *end_clock, tzinfo=location
                )
    elif schedule.type == ScheduleType.ONE_TIME:
        start = _parse_rfc3339(schedule.date)
        end = _parse_rfc3339(schedule.end_date) if schedule.end_date else start

    # The schedule lasts until its end or for its duration, whichever is longer.
    if start + schedule.duration() > end:
        end = start + schedule.duration()

    return start, end


def between(timestamp: datetime, start: datetime, end: datetime) -> bool:
    """Whether ``timestamp`` lies in the half-open interval [start, end)."""
    if timestamp < start:
        return False
    return timestamp < end


def _shift(moment: datetime, delta: timedelta) -> datetime:
    try:
        return moment + delta
    except OverflowError:
        return _ZERO_TIME if delta < timedelta(0) else datetime.max.replace(tzinfo=timezone.utc)


def _target_value(average_value: float) -> int:
    milli = math.ceil(average_value * 1000)
    return milli // 1000 if milli >= 0 else -((-milli) // 1000)


def highest_active_schedule(
    hpa: HorizontalPodAutoscaler, active_schedules: Mapping[str, int]
) -> tuple[int, ScheduleMetric | None]:
    """Return the highest replica count the active schedules ask of an HPA."""
    highest_expected = 0
    highest_object: ScheduleMetric | None = None
    for metric in hpa.metrics:
        if metric.type != MetricSourceType.OBJECT:
            continue
        if metric.kind not in ("ClusterScalingSchedule", "ScalingSchedule"):
            continue
        if metric.average_value is None:
            continue
        target = _target_value(metric.average_value)
        if target == 0:
            continue

        if metric.kind == "ScalingSchedule":
            value = active_schedules.get(f"{hpa.namespace}/{metric.name}", 0)
        else:
            value = active_schedules.get(metric.name, 0)

        expected = math.ceil(value / target)
        if expected > highest_expected:
            highest_expected = expected
            highest_object = metric

    return highest_expected, highest_object


class Controller:
    """Keeps schedule statuses current and nudges HPAs towards scheduled scale."""

    def __init__(
        self,
        scaler: _TargetScaler | None,
        now: Callable[[], datetime] | None,
        default_scaling_window: timedelta,
        default_time_zone: str,
        hpa_tolerance: float,
    ) -> None:
        self.scaler = scaler
        self.now = now if now is not None else (lambda: datetime.now(timezone.utc))
        self.default_scaling_window = default_scaling_window
        self.default_time_zone = default_time_zone
        self.hpa_tolerance = hpa_tolerance
        # (hpa, event type, reason, message) of every recorded event.
        self.events: list[tuple[HorizontalPodAutoscaler, str, str, str]] = []

    def active_schedules(self, spec: ScalingScheduleSpec) -> list[Schedule]:
        """Return the schedules of a spec that are active now, ramp window included."""
        window = self.default_scaling_window
        if spec.scaling_window_duration_minutes is not None:
            window = timedelta(minutes=spec.scaling_window_duration_minutes)
        if window < timedelta(0):
            raise ScheduleError(f"scaling window duration cannot be negative: {window}")

        active = []
        for schedule in spec.schedules:
            start, end = schedule_start_end(self.now(), schedule, self.default_time_zone)
            if between(self.now(), _shift(start, -window), _shift(end, window)):
                active.append(schedule)
        return active

    def active_scheduled_scaling(self, schedules: Iterable[ScalingSchedule]) -> dict[str, int]:
        """Map each active scaling schedule to the highest value it currently has."""
        current: dict[str, int] = {}
        for schedule in schedules:
            try:
                active = self.active_schedules(schedule.spec)
            except ScheduleError as exc:
                logger.error(
                    "Failed to check for active schedules in ScalingSchedule %s: %s",
                    schedule.identifier(),
                    exc,
                )
                continue
            if not active:
                continue
            current[schedule.identifier()] = max(0, *(s.value for s in active))
        return current

    def adjust_hpa_scaling(
        self, hpa: HorizontalPodAutoscaler, active_schedules: Mapping[str, int]
    ) -> None:
        """Scale the target of an HPA up when the scheduled value is within tolerance."""
        current = hpa.current_replicas
        if current == 0:
            return

        highest_expected, highest_object = highest_active_schedule(hpa, active_schedules)
        highest_expected = min(highest_expected, hpa.max_replicas)

        change = 0.0
        if highest_expected > current:
            change = (highest_expected - current) / current

        if not (0 < change <= self.hpa_tolerance) or highest_object is None:
            return
        if self.scaler is None:
            logger.error("No scaler configured to scale target %s", hpa.target_reference)
            return

        try:
            self.scaler.scale(hpa, highest_expected)
        except Exception as exc:
            logger.error(
                "Failed to scale target %s for HPA %s/%s: %s",
                hpa.target_reference,
                hpa.namespace,
                hpa.name,
                exc,
            )
            return

        schedule_ref = highest_object.name
        if highest_object.kind == "ScalingSchedule":
            schedule_ref = f"{hpa.namespace}/{schedule_ref}"

        message = (
            f"Scaling schedule '{highest_object.kind}' adjusted replicas "
            f"{current} -> {highest_expected} based on metric: {schedule_ref}"
        )
        self.events.append((hpa, "Normal", "ScalingAdjusted", message))

    def adjust_scaling(
        self, schedules: Iterable[ScalingSchedule], hpas: Iterable[HorizontalPodAutoscaler]
    ) -> None:
        """Adjust the scaling of every HPA to the currently active schedules."""
        active = self.active_scheduled_scaling(schedules)
        with ThreadPoolExecutor(max_workers=_CONCURRENCY) as pool:
            futures = [pool.submit(self.adjust_hpa_scaling, hpa, active) for hpa in hpas]
        for future in futures:
            future.result()

    def _update_one(self, schedule: ScalingSchedule) -> bool:
        try:
            active = bool(self.active_schedules(schedule.spec))
        except ScheduleError as exc:
            logger.error(
                "Failed to check for active schedules in %s %s: %s",
                schedule.kind,
                schedule.identifier(),
                exc,
            )
            return False

        if active == schedule.active:
            return False
        schedule.active = active
        logger.info(
            "Marked %s %s as %s",
            schedule.kind,
            schedule.identifier(),
            "active" if active else "inactive",
        )
        return True

    def update_status(self, schedules: Iterable[ScalingSchedule]) -> list[ScalingSchedule]:
        """Set the active flag of each schedule; return the ones that changed."""
        items = list(schedules)
        with ThreadPoolExecutor(max_workers=_CONCURRENCY) as pool:
            changed = list(pool.map(self._update_one, items))
        return [schedule for schedule, was_changed in zip(items, changed) if was_changed]