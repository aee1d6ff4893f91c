"""
Business-calendar-aware send time scheduling.

Finds the earliest timestamp at or after a base time that satisfies the
enabled constraints: working days, the business-hours window (shortened
during observance periods such as Ramadan), holidays and prayer times.
The search only ever moves forward and is bounded by a maximum number of
day advances.
"""

from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

import structlog

from followup_engine.core.config import Settings, get_settings
from followup_engine.core.exceptions import SchedulingError
from followup_engine.models.sequence import FollowUpSequence, Step
from followup_engine.services.external import CalendarProvider

logger = structlog.get_logger(__name__)

WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


@dataclass(frozen=True)
class ScheduleConstraints:
    """Constraint flags for a scheduling request."""
    respect_business_hours: bool = False
    avoid_weekends: bool = False
    avoid_holidays: bool = False
    avoid_prayer_times: bool = False
    observe_observance_periods: bool = False
    preferred_hours: Tuple[int, ...] = field(default_factory=tuple)

    @property
    def any_enabled(self) -> bool:
        return any((
            self.respect_business_hours,
            self.avoid_weekends,
            self.avoid_holidays,
            self.avoid_prayer_times,
            bool(self.preferred_hours),
        ))

    @classmethod
    def all_enabled(cls, preferred_hours: Iterable[int] = ()) -> "ScheduleConstraints":
        return cls(
            respect_business_hours=True,
            avoid_weekends=True,
            avoid_holidays=True,
            avoid_prayer_times=True,
            observe_observance_periods=True,
            preferred_hours=tuple(sorted(set(preferred_hours))),
        )

    @classmethod
    def for_sequence(
        cls,
        sequence: FollowUpSequence,
        step: Optional[Step] = None,
        preferred_hours: Iterable[int] = (),
    ) -> "ScheduleConstraints":
        """Derive constraints from sequence flags and, if given, the step's settings."""
        business_hours = sequence.uae_business_hours_only
        holidays = sequence.respect_holidays
        prayer_times = sequence.uae_business_hours_only
        if step is not None:
            business_hours = business_hours and step.uae_settings.respect_business_hours
            holidays = holidays and step.uae_settings.respect_holidays
            prayer_times = step.uae_settings.honor_prayer_times

        return cls(
            respect_business_hours=business_hours,
            avoid_weekends=business_hours,
            avoid_holidays=holidays,
            avoid_prayer_times=prayer_times,
            observe_observance_periods=business_hours,
            preferred_hours=tuple(sorted(set(preferred_hours))) if business_hours else (),
        )


NO_CONSTRAINTS = ScheduleConstraints()
BUSINESS_CONSTRAINTS = ScheduleConstraints.all_enabled()
# Regular follow-ups prefer late morning sends
STANDARD_CONSTRAINTS = ScheduleConstraints.all_enabled(preferred_hours=(10, 11))
# Urgent follow-ups accept a wider set of hours
URGENT_CONSTRAINTS = ScheduleConstraints.all_enabled(preferred_hours=(9, 10, 11, 13, 14))


class StaticCalendar:
    """
    Calendar provider backed by configured holiday dates, daily prayer times
    and observance periods.
    """

    def __init__(
        self,
        holidays: Iterable[date] = (),
        prayer_times: Optional[Dict[str, str]] = None,
        prayer_buffer_minutes: int = 15,
        observance_periods: Iterable[Sequence[date]] = (),
    ):
        self.holidays = set(holidays)
        self.prayer_times = {
            name: time.fromisoformat(value) for name, value in (prayer_times or {}).items()
        }
        self.prayer_buffer = timedelta(minutes=prayer_buffer_minutes)
        self.observance_periods: List[Tuple[date, date]] = []
        for period in observance_periods:
            start, end = period[0], period[1]
            if start > end:
                raise ValueError(f"Observance period starts after it ends: {start} > {end}")
            self.observance_periods.append((start, end))

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "StaticCalendar":
        settings = settings or get_settings()
        return cls(
            holidays=settings.holidays,
            prayer_times=settings.prayer_times,
            prayer_buffer_minutes=settings.prayer_buffer_minutes,
            observance_periods=settings.observance_periods,
        )

    def is_holiday(self, day: date) -> bool:
        return day in self.holidays

    def prayer_windows(self, day: date) -> List[Tuple[time, time]]:
        day_start = datetime.combine(day, time.min)
        day_end = datetime.combine(day, time.max)
        windows = []
        for prayer_time in self.prayer_times.values():
            moment = datetime.combine(day, prayer_time)
            start = max(moment - self.prayer_buffer, day_start)
            end = min(moment + self.prayer_buffer, day_end)
            windows.append((start.time(), end.time()))
        return sorted(windows)

    def is_observance_period(self, day: date) -> bool:
        return any(start <= day <= end for start, end in self.observance_periods)


class BusinessHoursScheduler:
    """
    Computes the earliest valid send time for a follow-up.

    Pure and synchronous: the only collaborator is a read-only calendar.
    """

    def __init__(
        self,
        calendar: Optional[CalendarProvider] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.calendar = calendar or StaticCalendar.from_settings(settings)
        self.timezone = ZoneInfo(settings.timezone)
        self.working_days = frozenset(settings.working_days)
        self.business_hours = (time(settings.business_start_hour), _hour_to_time(settings.business_end_hour))
        self.observance_hours = (time(settings.observance_start_hour), _hour_to_time(settings.observance_end_hour))
        self.max_day_advances = settings.max_day_advances

    def business_window(self, day: date, constraints: ScheduleConstraints) -> Tuple[time, time]:
        """Business-hours window for a day, shortened during observance periods."""
        if constraints.observe_observance_periods and self.calendar.is_observance_period(day):
            return self.observance_hours
        return self.business_hours

    def next_available_send_time(
        self,
        base_time: datetime,
        constraints: ScheduleConstraints = BUSINESS_CONSTRAINTS,
    ) -> datetime:
        """
        Return the earliest timestamp >= base_time satisfying every enabled constraint.

        Args:
            base_time: Earliest acceptable send time. Naive values are taken
                as business-local time.
            constraints: Constraint flags to enforce

        Returns:
            Valid send time in the same timezone as base_time

        Raises:
            SchedulingError: If no slot is found within the day-advance bound
        """
        if not constraints.any_enabled:
            return base_time

        candidate = self._to_local(base_time)
        day_advances = 0

        while True:
            day = candidate.date()
            window_start, window_end = self.business_window(day, constraints)

            if (constraints.avoid_weekends or constraints.respect_business_hours) \
                    and candidate.weekday() not in self.working_days:
                candidate, day_advances = self._advance_day(candidate, constraints, day_advances, base_time)
                continue

            if constraints.respect_business_hours:
                if candidate.time() < window_start:
                    candidate = self._at(candidate, day, window_start)
                elif candidate.time() >= window_end:
                    candidate, day_advances = self._advance_day(candidate, constraints, day_advances, base_time)
                    continue

            if constraints.preferred_hours:
                aligned = self._align_to_preferred_hour(candidate, constraints, window_start, window_end)
                if aligned is None:
                    candidate, day_advances = self._advance_day(candidate, constraints, day_advances, base_time)
                    continue
                candidate = aligned

            if constraints.avoid_holidays and self.calendar.is_holiday(day):
                candidate, day_advances = self._advance_day(candidate, constraints, day_advances, base_time)
                continue

            if constraints.avoid_prayer_times:
                limit = window_end if constraints.respect_business_hours else None
                cleared = self._clear_prayer_windows(candidate, limit)
                if cleared is None:
                    candidate, day_advances = self._advance_day(candidate, constraints, day_advances, base_time)
                    continue
                if cleared != candidate:
                    # Re-check preferred hours for the new slot
                    candidate = cleared
                    continue

            result = self._from_local(candidate, base_time)
            if day_advances:
                logger.debug(
                    "Send time adjusted",
                    base_time=base_time.isoformat(),
                    scheduled_time=result.isoformat(),
                    day_advances=day_advances,
                )
            return result

    def is_valid_send_time(
        self,
        timestamp: datetime,
        constraints: ScheduleConstraints = BUSINESS_CONSTRAINTS,
    ) -> Tuple[bool, List[str]]:
        """
        Check a timestamp against the constraints.

        Returns:
            Tuple of (is_valid, reasons) where reasons names every violation
        """
        local = self._to_local(timestamp)
        day = local.date()
        reasons: List[str] = []
        window_start, window_end = self.business_window(day, constraints)

        if (constraints.avoid_weekends or constraints.respect_business_hours) \
                and local.weekday() not in self.working_days:
            reasons.append(f"Non-working day ({WEEKDAY_NAMES[local.weekday()]})")

        if constraints.respect_business_hours and not window_start <= local.time() < window_end:
            reasons.append(
                f"Outside business hours ({window_start.strftime('%H:%M')}-{window_end.strftime('%H:%M')})"
            )

        if constraints.preferred_hours and local.hour not in constraints.preferred_hours:
            reasons.append("Outside preferred send hours")

        if constraints.avoid_holidays and self.calendar.is_holiday(day):
            reasons.append("Holiday")

        if constraints.avoid_prayer_times and self._in_prayer_window(local):
            reasons.append("Conflicts with prayer time")

        return not reasons, reasons

    def _advance_day(
        self,
        candidate: datetime,
        constraints: ScheduleConstraints,
        day_advances: int,
        base_time: datetime,
    ) -> Tuple[datetime, int]:
        day_advances += 1
        if day_advances > self.max_day_advances:
            logger.warning(
                "No valid send slot found",
                base_time=base_time.isoformat(),
                day_advances=day_advances - 1,
            )
            raise SchedulingError(
                f"No valid send slot within {self.max_day_advances} days of {base_time.isoformat()}",
                base_time=base_time,
                day_advances=day_advances - 1,
            )
        next_day = candidate.date() + timedelta(days=1)
        window_start, _ = self.business_window(next_day, constraints)
        return self._at(candidate, next_day, window_start), day_advances

    def _align_to_preferred_hour(
        self,
        candidate: datetime,
        constraints: ScheduleConstraints,
        window_start: time,
        window_end: time,
    ) -> Optional[datetime]:
        if candidate.hour in constraints.preferred_hours:
            return candidate
        for hour in constraints.preferred_hours:
            if hour <= candidate.hour:
                continue
            slot = time(hour)
            if constraints.respect_business_hours and not window_start <= slot < window_end:
                continue
            return self._at(candidate, candidate.date(), slot)
        return None

    def _clear_prayer_windows(self, candidate: datetime, limit: Optional[time]) -> Optional[datetime]:
        day = candidate.date()
        windows = self.calendar.prayer_windows(day)
        moved = candidate
        changed = True
        while changed:
            changed = False
            for start, end in windows:
                if self._at(moved, day, start) <= moved < self._at(moved, day, end):
                    moved = self._at(moved, day, end)
                    changed = True
        if moved.time() == time.max:
            return None
        if limit is not None and moved.time() >= limit:
            return None
        return moved

    def _in_prayer_window(self, local: datetime) -> bool:
        return any(
            start <= local.time() < end for start, end in self.calendar.prayer_windows(local.date())
        )

    def _to_local(self, timestamp: datetime) -> datetime:
        if timestamp.tzinfo is None:
            return timestamp
        return timestamp.astimezone(self.timezone)

    @staticmethod
    def _from_local(local: datetime, base_time: datetime) -> datetime:
        if base_time.tzinfo is None:
            return local
        return local.astimezone(base_time.tzinfo)

    @staticmethod
    def _at(reference: datetime, day: date, at: time) -> datetime:
        return datetime.combine(day, at, tzinfo=reference.tzinfo)


def _hour_to_time(hour: int) -> time:
    return time.max if hour >= 24 else time(hour)


def with_preferred_hours(constraints: ScheduleConstraints, hours: Iterable[int]) -> ScheduleConstraints:
    """Copy of the constraints with a different preferred-hours set."""
    return replace(constraints, preferred_hours=tuple(sorted(set(hours))))
