"""
Time window matcher.

Pattern values are either an "HH:MM-HH:MM" window, which may wrap past
midnight, or a named token. Times are evaluated in UTC unless the pattern
metadata carries a "utcOffsetMinutes" entry.
"""

import re
import logging
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Callable, Dict, Tuple, Union

from models.pattern import Pattern, PatternType
from models.transaction import Transaction
from services.categorization.errors import PatternConfigurationError
from services.categorization.matchers.base import PatternMatcher

logger = logging.getLogger(__name__)

TIME_WINDOW_FORMAT = re.compile(r'^\s*(\d{1,2}):(\d{2})\s*-\s*(\d{1,2}):(\d{2})\s*$')
MINUTES_PER_DAY = 24 * 60

NAMED_PERIODS: Dict[str, Callable[[datetime], bool]] = {
    'weekend': lambda moment: moment.weekday() >= 5,
    'weekday': lambda moment: moment.weekday() < 5,
    'morning': lambda moment: 6 <= moment.hour <= 11,
    'afternoon': lambda moment: 12 <= moment.hour <= 16,
    'evening': lambda moment: 17 <= moment.hour <= 20,
    'night': lambda moment: moment.hour >= 21 or moment.hour <= 5,
    'monday': lambda moment: moment.weekday() == 0,
    'tuesday': lambda moment: moment.weekday() == 1,
    'wednesday': lambda moment: moment.weekday() == 2,
    'thursday': lambda moment: moment.weekday() == 3,
    'friday': lambda moment: moment.weekday() == 4,
    'saturday': lambda moment: moment.weekday() == 5,
    'sunday': lambda moment: moment.weekday() == 6,
}

TimeSpec = Union[str, Tuple[int, int]]


@lru_cache(maxsize=512)
def parse_time_value(value: str) -> TimeSpec:
    """
    Parse a time pattern value.

    Returns:
        The lowercased token name for named periods, or (start_minute, end_minute)
        for clock windows

    Raises:
        ValueError: If the value is neither a known token nor a valid window
    """
    token = value.strip().lower()
    if token in NAMED_PERIODS:
        return token

    match = TIME_WINDOW_FORMAT.match(token)
    if not match:
        raise ValueError(f"Expected 'HH:MM-HH:MM' or one of {sorted(NAMED_PERIODS)}, got '{value}'")

    start_hour, start_minute, end_hour, end_minute = (int(part) for part in match.groups())
    for hour, minute in ((start_hour, start_minute), (end_hour, end_minute)):
        if hour > 23 or minute > 59:
            raise ValueError(f"Invalid clock time {hour:02d}:{minute:02d} in '{value}'")

    start = start_hour * 60 + start_minute
    end = end_hour * 60 + end_minute
    if start == end:
        raise ValueError(f"Time window '{value}' is empty")
    return start, end


def in_window(minute_of_day: int, start: int, end: int) -> bool:
    """Inclusive window check; start > end means the window wraps past midnight."""
    if start <= end:
        return start <= minute_of_day <= end
    return minute_of_day >= start or minute_of_day <= end


def local_time(pattern: Pattern, transaction: Transaction) -> datetime:
    """Transaction time shifted by the pattern's "utcOffsetMinutes" metadata, if any."""
    offset = pattern.metadata.get('utcOffsetMinutes', 0)
    try:
        offset_minutes = int(offset)
    except (TypeError, ValueError) as e:
        raise PatternConfigurationError(
            f"utcOffsetMinutes must be an integer, got {offset!r}",
            pattern_id=str(pattern.pattern_id)
        ) from e
    return transaction.occurred_at + timedelta(minutes=offset_minutes)


class TimeWindowMatcher(PatternMatcher):
    """Matches transactions whose timestamp falls in a clock window or named period."""

    @property
    def pattern_type(self) -> PatternType:
        return PatternType.TIME

    def _spec(self, pattern: Pattern) -> TimeSpec:
        try:
            return parse_time_value(pattern.value)
        except ValueError as e:
            raise PatternConfigurationError(str(e), pattern_id=str(pattern.pattern_id)) from e

    def validate(self, pattern: Pattern) -> None:
        self._spec(pattern)

    def match(self, pattern: Pattern, transaction: Transaction) -> float:
        spec = self._spec(pattern)
        moment = local_time(pattern, transaction)

        if isinstance(spec, str):
            return 1.0 if NAMED_PERIODS[spec](moment) else 0.0

        start, end = spec
        return 1.0 if in_window(moment.hour * 60 + moment.minute, start, end) else 0.0
