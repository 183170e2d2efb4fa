"""Shift calendar used to gate production.

A working week starts on Monday and has ``days_per_week`` working days.
Every working day runs ``shift_count`` back-to-back shifts of equal length,
the first one starting at ``first_shift_start`` (hhmm). Only the last shift
of a day may run past midnight.

A shift that is already running may still be started late, as long as we
are inside its grace window (``grace_fraction`` of the shift length). Past
that point the shift is skipped and production waits for the next one.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Tuple

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

DAYS_PER_WEEK_MIN = 1
DAYS_PER_WEEK_MAX = 7
SHIFT_COUNT_MIN = 1
SHIFT_COUNT_MAX = 288
FIRST_SHIFT_START_MIN = 0
FIRST_SHIFT_START_MAX = 2400
SHIFT_LENGTH_MINUTES_MIN = 5
SHIFT_LENGTH_MINUTES_MAX = 24 * 60
GRACE_FRACTION_MIN = 0.0
GRACE_FRACTION_MAX = 1.0

MINUTES_PER_DAY = 24 * 60


@dataclass(frozen=True)
class ShiftConfig:
    """Validated shift parameters. Raises ConfigurationError when invalid."""

    days_per_week: int
    shift_count: int
    first_shift_start: int  # hhmm, e.g. 600 for 06:00
    shift_length_minutes: int
    grace_fraction: float = 0.5

    def __post_init__(self):
        if not DAYS_PER_WEEK_MIN <= self.days_per_week <= DAYS_PER_WEEK_MAX:
            raise ConfigurationError(
                f"The days per week must be between {DAYS_PER_WEEK_MIN} and "
                f"{DAYS_PER_WEEK_MAX}, got {self.days_per_week}."
            )
        if not SHIFT_COUNT_MIN <= self.shift_count <= SHIFT_COUNT_MAX:
            raise ConfigurationError(
                f"The shift count must be between {SHIFT_COUNT_MIN} and "
                f"{SHIFT_COUNT_MAX}, got {self.shift_count}."
            )
        if (
            not FIRST_SHIFT_START_MIN <= self.first_shift_start <= FIRST_SHIFT_START_MAX
            or self.first_shift_start % 100 > 59
        ):
            raise ConfigurationError(
                f"The start of the first shift must be between {FIRST_SHIFT_START_MIN:04d} "
                f"and {FIRST_SHIFT_START_MAX:04d} in hhmm format, got {self.first_shift_start}."
            )
        if not SHIFT_LENGTH_MINUTES_MIN <= self.shift_length_minutes <= SHIFT_LENGTH_MINUTES_MAX:
            raise ConfigurationError(
                f"The shift length in minutes must be between {SHIFT_LENGTH_MINUTES_MIN} and "
                f"{SHIFT_LENGTH_MINUTES_MAX}, got {self.shift_length_minutes}."
            )
        if not GRACE_FRACTION_MIN <= self.grace_fraction <= GRACE_FRACTION_MAX:
            raise ConfigurationError(
                f"The grace fraction must be between {GRACE_FRACTION_MIN} and "
                f"{GRACE_FRACTION_MAX}, got {self.grace_fraction}."
            )
        if self.shift_count * self.shift_length_minutes > MINUTES_PER_DAY:
            raise ConfigurationError(
                "The total length of all shifts is longer than a day. "
                "Adjust shift length and/or shift count."
            )
        # the last shift must start before midnight, only it may overflow
        last_shift_start = (
            self.first_shift_start_minutes
            + (self.shift_count - 1) * self.shift_length_minutes
        )
        if self.shift_count > 1 and last_shift_start >= MINUTES_PER_DAY:
            raise ConfigurationError(
                "Only the last shift is allowed to overflow into the next day. "
                "Adjust shift count and/or shift length."
            )

    @property
    def first_shift_start_minutes(self) -> int:
        return (self.first_shift_start // 100) * 60 + self.first_shift_start % 100

    @property
    def grace_minutes(self) -> int:
        return int(self.shift_length_minutes * self.grace_fraction)

    @property
    def total_shift_minutes(self) -> int:
        return self.shift_count * self.shift_length_minutes

    @property
    def overflows_to_next_day(self) -> bool:
        return self.first_shift_start_minutes + self.total_shift_minutes > MINUTES_PER_DAY


@dataclass(frozen=True)
class ShiftDecision:
    """Result of a calendar lookup.

    ``active_shift`` 0 means no shift may start now, wait for
    ``next_boundary``. Otherwise ``next_boundary`` is ``now`` and
    ``shift_end`` is the nominal end of the admitted shift.
    """

    active_shift: int
    next_boundary: datetime
    shift_end: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.active_shift != 0


class ShiftSchedule:
    """Pure calendar function over a ShiftConfig."""

    def __init__(self, config: ShiftConfig):
        self.config = config
        self._first_shift_start = timedelta(minutes=config.first_shift_start_minutes)
        self._shift_length = timedelta(minutes=config.shift_length_minutes)
        self._day_shift_length = timedelta(minutes=config.total_shift_minutes)
        self._grace = timedelta(minutes=config.grace_minutes)
        self._overflow = config.overflows_to_next_day
        logger.debug(
            f"Shift schedule: {config.shift_count} shift(s) of {config.shift_length_minutes} min "
            f"starting {config.first_shift_start:04d}, {config.days_per_week} day(s)/week, "
            f"grace {config.grace_minutes} min, overflow={self._overflow}"
        )

    def current_shift(self, now: Optional[datetime] = None) -> Tuple[int, datetime]:
        """Return ``(active_shift, next_boundary)`` for ``now``."""
        decision = self.evaluate(now)
        return decision.active_shift, decision.next_boundary

    def is_working_day(self, day: datetime) -> bool:
        weekday = day.isoweekday()  # Monday=1 .. Sunday=7
        return self.config.days_per_week == 7 or weekday <= self.config.days_per_week

    def evaluate(self, now: Optional[datetime] = None) -> ShiftDecision:
        if now is None:
            now = datetime.now()
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        yesterday = today - timedelta(days=1)
        tomorrow = today + timedelta(days=1)

        if self.is_working_day(now):
            first_start = today + self._first_shift_start
            last_should_start = first_start + self._day_shift_length - self._shift_length + self._grace
            yesterday_last_start = (
                yesterday + self._first_shift_start + self._day_shift_length - self._shift_length
            )
            yesterday_last_should_start = yesterday_last_start + self._grace

            if now < first_start:
                if self._overflow and now <= yesterday_last_should_start:
                    # late admission into yesterday's last shift
                    return ShiftDecision(
                        self.config.shift_count, now, yesterday_last_start + self._shift_length
                    )
                return ShiftDecision(0, first_start)

            if now > last_should_start:
                return ShiftDecision(0, tomorrow + self._first_shift_start)

            for i in range(self.config.shift_count):
                shift_start = first_start + i * self._shift_length
                shift_end = shift_start + self._shift_length
                if shift_start <= now < shift_end:
                    if now <= shift_start + self._grace:
                        return ShiftDecision(i + 1, now, shift_end)
                    return ShiftDecision(0, shift_end)

            # only reachable with a full grace window at the very end of the last shift
            return ShiftDecision(0, tomorrow + self._first_shift_start)

        if now.isoweekday() == 7:
            days_till_monday = 1
        else:
            days_till_monday = 8 - now.isoweekday()
        return ShiftDecision(0, today + timedelta(days=days_till_monday) + self._first_shift_start)
