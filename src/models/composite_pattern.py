"""
Composite pattern building blocks.

A composite pattern combines other patterns of the same category with a
boolean operator and may add conditions on the transaction itself. The
composite is stored as a regular Pattern of type COMPOSITE; this module holds
the operator and the condition model it carries.
"""

import re
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator, ConfigDict
from typing_extensions import Self

DEFAULT_COMPOSITE_WEIGHT = 1.5

CLOCK_TIME_FORMAT = re.compile(r'^(\d{1,2}):(\d{2})$')

WEEKDAYS = ('monday', 'tuesday', 'wednesday', 'thursday', 'friday', 'saturday', 'sunday')


class CompositeOperator(str, Enum):
    AND = "AND"  # every component matched
    OR = "OR"    # at least one component matched
    NOT = "NOT"  # no component matched


def clock_minutes(value: str) -> int:
    """Minutes since midnight for an "H:MM" or "HH:MM" clock time."""
    match = CLOCK_TIME_FORMAT.match(value.strip())
    if not match:
        raise ValueError(f"Expected HH:MM, got '{value}'")
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ValueError(f"Invalid clock time '{value}'")
    return hour * 60 + minute


class TimeRange(BaseModel):
    """Inclusive clock window; end before start wraps past midnight."""
    start: str
    end: str

    model_config = ConfigDict(extra='forbid', frozen=True)

    @field_validator('start', 'end')
    @classmethod
    def check_clock_time(cls, v: str) -> str:
        clock_minutes(v)
        return v.strip()

    @property
    def minutes(self) -> Tuple[int, int]:
        return clock_minutes(self.start), clock_minutes(self.end)


class CompositeConditions(BaseModel):
    """
    Extra requirements a transaction must meet before the components are consulted.

    Amount bounds apply to the magnitude of the transaction amount, so
    "minAmount": 20 means spending or income of at least 20.
    """
    min_amount: Optional[Decimal] = Field(default=None, alias="minAmount", gt=0)
    max_amount: Optional[Decimal] = Field(default=None, alias="maxAmount", gt=0)
    days_of_week: List[str] = Field(default_factory=list, alias="daysOfWeek")
    time_ranges: List[TimeRange] = Field(default_factory=list, alias="timeRanges")
    merchant_blacklist: List[str] = Field(default_factory=list, alias="merchantBlacklist")

    model_config = ConfigDict(populate_by_name=True, extra='forbid')

    @field_validator('min_amount', 'max_amount', mode='before')
    @classmethod
    def coerce_amount(cls, v):
        if isinstance(v, float):
            return Decimal(str(v))
        return v

    @field_validator('days_of_week')
    @classmethod
    def check_days(cls, v: List[str]) -> List[str]:
        days = [day.strip().lower() for day in v]
        unknown = [day for day in days if day not in WEEKDAYS]
        if unknown:
            raise ValueError(f"Unknown day names: {unknown}")
        return days

    @model_validator(mode='after')
    def check_amount_bounds(self) -> Self:
        if self.min_amount is not None and self.max_amount is not None and self.min_amount >= self.max_amount:
            raise ValueError(
                f"minAmount ({self.min_amount}) must be less than maxAmount ({self.max_amount})"
            )
        return self

    @property
    def is_empty(self) -> bool:
        return (
            self.min_amount is None
            and self.max_amount is None
            and not self.days_of_week
            and not self.time_ranges
            and not self.merchant_blacklist
        )
