"""
Business Calendar
==================

Working-hour windows per weekday, holidays and a timezone.

All arithmetic is performed on UTC instants derived from the local window
bounds of each day, so a DST shift inside a window counts the minutes that
really elapsed. Days are walked one at a time; budgets are never consumed
minute by minute.
"""

import datetime as dt
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from helpdesk_sla.config import HolidayRecurrence
from helpdesk_sla.core.exceptions import ConfigurationException, ValidationException

MINUTES_PER_DAY = 24 * 60

# Consecutive days without working time before giving up (about ten years)
MAX_IDLE_DAYS = 3660

Window = Tuple[datetime, datetime]


def as_utc(instant: datetime) -> datetime:
    """Normalize an instant to UTC; naive values are taken to be UTC already."""
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


def parse_clock(value: str) -> int:
    """Parse "HH:MM" (or "24:00") into minutes since midnight."""
    try:
        hours, minutes = value.split(":")
        hours, minutes = int(hours), int(minutes)
    except (AttributeError, ValueError):
        raise ValueError(f"invalid time '{value}', expected HH:MM")

    if not 0 <= minutes < 60 or not 0 <= hours <= 24 or (hours == 24 and minutes):
        raise ValueError(f"invalid time '{value}', expected HH:MM")
    return hours * 60 + minutes


class WorkingInterval(BaseModel):
    """A half-open local working window [start, end) within one day."""

    model_config = ConfigDict(frozen=True)

    start: str = Field(description="Local start time, HH:MM")
    end: str = Field(description="Local end time, HH:MM (24:00 allowed)")

    @model_validator(mode="after")
    def validate_bounds(self) -> "WorkingInterval":
        if self.start_minute >= self.end_minute:
            raise ValueError(f"interval start {self.start} must be before end {self.end}")
        return self

    @property
    def start_minute(self) -> int:
        return parse_clock(self.start)

    @property
    def end_minute(self) -> int:
        return parse_clock(self.end)

    @property
    def duration_minutes(self) -> int:
        return self.end_minute - self.start_minute


class Holiday(BaseModel):
    """A non-working local date, optionally recurring."""

    model_config = ConfigDict(frozen=True)

    date: dt.date
    recurrence: HolidayRecurrence = HolidayRecurrence.NONE
    name: Optional[str] = None

    def matches(self, day: date) -> bool:
        """
        Check whether a local date falls on this holiday.

        yearly matches month and day in any year, monthly matches the
        day-of-month in any month, none matches the exact date only.
        """
        if self.recurrence == HolidayRecurrence.YEARLY:
            return (day.month, day.day) == (self.date.month, self.date.day)
        if self.recurrence == HolidayRecurrence.MONTHLY:
            return day.day == self.date.day
        return day == self.date


class BusinessCalendar(BaseModel):
    """
    Business calendar used to compute SLA deadlines.

    working_hours maps a weekday (Monday = 0) to its local working windows;
    weekdays without an entry are non-working.
    """

    id: str
    name: str = ""
    timezone: str = "UTC"
    working_hours: Dict[int, List[WorkingInterval]] = Field(default_factory=dict)
    holidays: List[Holiday] = Field(default_factory=list)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"unknown timezone '{v}'")
        return v

    @field_validator("working_hours")
    @classmethod
    def validate_working_hours(
        cls,
        v: Dict[int, List[WorkingInterval]]
    ) -> Dict[int, List[WorkingInterval]]:
        normalized = {}
        for weekday, intervals in v.items():
            if not 0 <= weekday <= 6:
                raise ValueError(f"weekday must be 0..6, got {weekday}")

            ordered = sorted(intervals, key=lambda interval: interval.start_minute)
            for previous, current in zip(ordered, ordered[1:]):
                if current.start_minute < previous.end_minute:
                    raise ValueError(
                        f"overlapping intervals on weekday {weekday}: "
                        f"{previous.start}-{previous.end} and {current.start}-{current.end}"
                    )
            if ordered:
                normalized[weekday] = ordered
        return normalized

    @model_validator(mode="after")
    def validate_has_working_time(self) -> "BusinessCalendar":
        if not any(self.working_hours.values()):
            raise ValueError("calendar has no working time on any weekday")
        return self

    @classmethod
    def from_config(cls, data: dict) -> "BusinessCalendar":
        """
        Build a calendar from raw configuration.

        Raises:
            ConfigurationException: on any invalid field (bad timezone,
                malformed holiday date, overlapping or empty windows)
        """
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationException(
                f"Invalid business calendar '{data.get('id', '?')}'",
                {"errors": e.errors(include_url=False, include_context=False, include_input=False)}
            ) from e

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    # ========== Queries ==========

    def is_holiday(self, day: date) -> bool:
        return any(holiday.matches(day) for holiday in self.holidays)

    def is_working_instant(self, instant: datetime) -> bool:
        """Check whether an instant falls inside a working window."""
        instant = as_utc(instant)
        local_day = instant.astimezone(self.zone).date()
        return any(start <= instant < end for start, end in self._windows_on(local_day))

    def next_working_instant(self, instant: datetime) -> datetime:
        """
        Return the instant itself when it is working time, otherwise the
        start of the next working window.
        """
        instant = as_utc(instant)
        day = instant.astimezone(self.zone).date()

        for offset in range(MAX_IDLE_DAYS + 1):
            for start, end in self._windows_on(day + timedelta(days=offset)):
                if end > instant:
                    return max(start, instant)

        raise self._no_working_time(instant)

    def add_business_minutes(self, start: datetime, minutes: float) -> datetime:
        """
        Advance start by the given amount of working time.

        A start outside working time is first snapped to the next window.
        The result may sit exactly on a window end when the budget runs out
        there.

        Raises:
            ValidationException: if minutes is negative
            ConfigurationException: if no working time exists for MAX_IDLE_DAYS,
                or the budget runs past the last representable date
        """
        if minutes < 0:
            raise ValidationException(
                "Business minutes must not be negative",
                {"minutes": minutes}
            )

        try:
            return self._consume(as_utc(start), timedelta(minutes=minutes))
        except OverflowError as e:
            raise ConfigurationException(
                f"Calendar '{self.id}' cannot fit {minutes} business minutes before year {date.max.year}",
                {"calendar_id": self.id, "start": as_utc(start).isoformat(), "minutes": minutes}
            ) from e

    def _consume(self, start: datetime, remaining: timedelta) -> datetime:
        cursor = start
        day = cursor.astimezone(self.zone).date()
        idle_days = 0

        while True:
            consumed_today = False
            for window_start, window_end in self._windows_on(day):
                if window_end <= cursor:
                    continue

                begin = max(window_start, cursor)
                available = window_end - begin
                if remaining <= available:
                    return begin + remaining

                remaining -= available
                cursor = window_end
                consumed_today = True

            idle_days = 0 if consumed_today else idle_days + 1
            if idle_days > MAX_IDLE_DAYS:
                raise self._no_working_time(start)
            day += timedelta(days=1)

    def business_minutes_between(self, start: datetime, end: datetime) -> float:
        """Working minutes elapsed in [start, end); 0 when end <= start."""
        start, end = as_utc(start), as_utc(end)
        if end <= start:
            return 0.0

        total = timedelta()
        day = start.astimezone(self.zone).date()
        last_day = end.astimezone(self.zone).date()
        while day <= last_day:
            for window_start, window_end in self._windows_on(day):
                overlap = min(window_end, end) - max(window_start, start)
                if overlap > timedelta():
                    total += overlap
            day += timedelta(days=1)

        return total.total_seconds() / 60

    # ========== Internals ==========

    def _windows_on(self, day: date) -> List[Window]:
        """UTC windows of a local date, in order; empty on holidays."""
        if self.is_holiday(day):
            return []

        windows = []
        for interval in self.working_hours.get(day.weekday(), []):
            start = self._local_to_utc(day, interval.start_minute)
            end = self._local_to_utc(day, interval.end_minute)
            # A window swallowed by a DST gap has no real duration
            if end > start:
                windows.append((start, end))
        return windows

    def _local_to_utc(self, day: date, minute_of_day: int) -> datetime:
        day += timedelta(days=minute_of_day // MINUTES_PER_DAY)
        minute_of_day %= MINUTES_PER_DAY
        local = datetime.combine(
            day,
            time(minute_of_day // 60, minute_of_day % 60),
            tzinfo=self.zone
        )
        return local.astimezone(timezone.utc)

    def _no_working_time(self, instant: datetime) -> ConfigurationException:
        return ConfigurationException(
            f"Business calendar '{self.id}' has no working time "
            f"within {MAX_IDLE_DAYS} days",
            {"calendar_id": self.id, "from": instant.isoformat()}
        )
