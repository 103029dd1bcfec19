"""
Categorization pattern models.

A pattern is a stored rule (type + value + weight) that votes for exactly one
category when it matches a transaction. Usage statistics live on the pattern
and are mutated through the learning feedback path only.
"""

import uuid
import logging
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator, ConfigDict
from typing_extensions import Self

from models.composite_pattern import CompositeConditions, CompositeOperator, DEFAULT_COMPOSITE_WEIGHT

logger = logging.getLogger(__name__)

# Constants
MIN_CONFIDENCE_WEIGHT = 0.1
MAX_CONFIDENCE_WEIGHT = 5.0
DEFAULT_CONFIDENCE_WEIGHT = 1.0
POOR_PERFORMANCE_MIN_USAGE = 20
POOR_PERFORMANCE_SUCCESS_RATE = 0.3
TIMESTAMP_ERROR_MESSAGE = "Timestamp must be a positive integer representing milliseconds since epoch"


def current_timestamp_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


class PatternType(str, Enum):
    """Kind of matcher a pattern is evaluated by."""
    MERCHANT = "merchant"          # Normalized merchant name, exact or fuzzy
    KEYWORD = "keyword"            # Word-boundary token in merchant/description
    REGEX = "regex"                # Regular expression against raw text
    AMOUNT_RANGE = "amount_range"  # "min-max", bounds inclusive
    TIME = "time"                  # "HH:MM-HH:MM" or a named token such as "weekend"
    COMPOSITE = "composite"        # AND/OR/NOT over component patterns of the same category


class Pattern(BaseModel):
    """
    A weighted categorization rule.

    success_rate is always derived from usage_count and success_count and is
    never persisted on its own.

    Composite patterns carry their operator as value and list the patterns
    they combine in component_ids. correction_count counts user corrections
    behind a learned candidate that is not active yet.
    """
    pattern_id: uuid.UUID = Field(default_factory=uuid.uuid4, alias="patternId")
    category_id: uuid.UUID = Field(alias="categoryId")
    pattern_type: PatternType = Field(alias="patternType")
    value: str = Field(min_length=1, max_length=500)
    confidence_weight: float = Field(
        default=DEFAULT_CONFIDENCE_WEIGHT,
        alias="confidenceWeight",
        ge=MIN_CONFIDENCE_WEIGHT,
        le=MAX_CONFIDENCE_WEIGHT
    )
    active: bool = True
    user_created: bool = Field(default=False, alias="userCreated")
    usage_count: int = Field(default=0, alias="usageCount", ge=0)
    success_count: int = Field(default=0, alias="successCount", ge=0)
    correction_count: int = Field(default=0, alias="correctionCount", ge=0)
    component_ids: List[uuid.UUID] = Field(default_factory=list, alias="componentIds")
    conditions: Optional[CompositeConditions] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: int = Field(default_factory=current_timestamp_ms, alias="createdAt")
    updated_at: int = Field(default_factory=current_timestamp_ms, alias="updatedAt")

    model_config = ConfigDict(
        populate_by_name=True,
        json_encoders={
            uuid.UUID: str
        },
        use_enum_values=False
    )

    @field_validator('value')
    @classmethod
    def strip_value(cls, v: str) -> str:
        stripped = v.strip()
        if not stripped:
            raise ValueError("Pattern value cannot be blank")
        return stripped

    @field_validator('created_at', 'updated_at')
    @classmethod
    def check_positive_timestamp(cls, v: int) -> int:
        if v < 0:
            raise ValueError(TIMESTAMP_ERROR_MESSAGE)
        return v

    @model_validator(mode='after')
    def check_counts(self) -> Self:
        if self.success_count > self.usage_count:
            raise ValueError(
                f"success_count ({self.success_count}) cannot exceed usage_count ({self.usage_count})"
            )
        return self

    @model_validator(mode='after')
    def check_composite_shape(self) -> Self:
        if self.pattern_type != PatternType.COMPOSITE:
            if self.component_ids or self.conditions is not None:
                raise ValueError("Only composite patterns can have components or conditions")
            return self

        try:
            self.value = CompositeOperator(self.value.upper()).value
        except ValueError:
            raise ValueError(
                f"Composite operator must be one of {[op.value for op in CompositeOperator]}, got '{self.value}'"
            )
        if not self.component_ids:
            raise ValueError("Composite pattern needs at least one component")
        if len(set(self.component_ids)) != len(self.component_ids):
            raise ValueError("Composite pattern lists a component more than once")
        if self.pattern_id in self.component_ids:
            raise ValueError("Composite pattern cannot contain itself")
        return self

    @property
    def is_composite(self) -> bool:
        return self.pattern_type == PatternType.COMPOSITE

    @property
    def operator(self) -> Optional[CompositeOperator]:
        return CompositeOperator(self.value) if self.is_composite else None

    @property
    def success_rate(self) -> float:
        """Fraction of uses that were confirmed correct, 0.0 when unused."""
        if self.usage_count == 0:
            return 0.0
        return self.success_count / self.usage_count

    @property
    def cache_scope(self) -> str:
        return str(self.category_id)

    def record_usage(self, successful: bool) -> None:
        """Apply one outcome to the in-memory counters."""
        self.usage_count += 1
        if successful:
            self.success_count += 1
        self.updated_at = current_timestamp_ms()

    def is_poor_performer(self) -> bool:
        """
        True when the pattern has enough history to judge and keeps being rejected.
        User-created patterns are never auto-deactivated.
        """
        return (
            not self.user_created
            and self.usage_count >= POOR_PERFORMANCE_MIN_USAGE
            and self.success_rate < POOR_PERFORMANCE_SUCCESS_RATE
        )

    def adjusted_weight(self, delta: float) -> float:
        """Return the weight shifted by delta and clamped to the allowed bounds."""
        new_weight = round(self.confidence_weight + delta, 3)
        return max(MIN_CONFIDENCE_WEIGHT, min(MAX_CONFIDENCE_WEIGHT, new_weight))

    def to_dynamodb_item(self) -> Dict[str, Any]:
        """Serializes Pattern to a flat dictionary for DynamoDB."""
        item = self.model_dump(mode='python', by_alias=True, exclude_none=True)

        item['patternId'] = str(self.pattern_id)
        item['categoryId'] = str(self.category_id)
        item['patternType'] = self.pattern_type.value
        # DynamoDB rejects float, numbers go through Decimal
        item['confidenceWeight'] = Decimal(str(self.confidence_weight))
        item['active'] = self.active
        if self.component_ids:
            item['componentIds'] = [str(component_id) for component_id in self.component_ids]
        else:
            item.pop('componentIds', None)
        return item

    @classmethod
    def from_dynamodb_item(cls, data: Dict[str, Any]) -> "Pattern":
        """Deserializes a dictionary from DynamoDB to a Pattern instance."""
        converted_data = data.copy()

        for int_field in ('usageCount', 'successCount', 'correctionCount', 'createdAt', 'updatedAt'):
            if isinstance(converted_data.get(int_field), Decimal):
                converted_data[int_field] = int(converted_data[int_field])

        if isinstance(converted_data.get('confidenceWeight'), Decimal):
            converted_data['confidenceWeight'] = float(converted_data['confidenceWeight'])

        # Cache bookkeeping attributes are not part of the model
        converted_data.pop('successRate', None)

        return cls.model_validate(converted_data)


class PatternCreate(BaseModel):
    """
    Input DTO for creating a pattern.

    Without an explicit weight, composites start at DEFAULT_COMPOSITE_WEIGHT
    and everything else at DEFAULT_CONFIDENCE_WEIGHT.
    """
    category_id: uuid.UUID = Field(alias="categoryId")
    pattern_type: PatternType = Field(alias="patternType")
    value: str = Field(min_length=1, max_length=500)
    confidence_weight: Optional[float] = Field(
        default=None,
        alias="confidenceWeight",
        ge=MIN_CONFIDENCE_WEIGHT,
        le=MAX_CONFIDENCE_WEIGHT
    )
    user_created: bool = Field(default=False, alias="userCreated")
    component_ids: List[uuid.UUID] = Field(default_factory=list, alias="componentIds")
    conditions: Optional[CompositeConditions] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)

    def to_pattern(self, pattern_id: Optional[uuid.UUID] = None) -> Pattern:
        weight = self.confidence_weight
        if weight is None:
            weight = (
                DEFAULT_COMPOSITE_WEIGHT if self.pattern_type == PatternType.COMPOSITE
                else DEFAULT_CONFIDENCE_WEIGHT
            )
        return Pattern(
            pattern_id=pattern_id or uuid.uuid4(),
            category_id=self.category_id,
            pattern_type=self.pattern_type,
            value=self.value,
            confidence_weight=weight,
            user_created=self.user_created,
            component_ids=self.component_ids,
            conditions=self.conditions,
            metadata=self.metadata,
        )
