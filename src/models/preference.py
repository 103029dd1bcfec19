"""
User merchant preference model.

A preference records that corrections for a merchant keep pointing at one
category. It is consulted before any pattern is evaluated.
"""

import uuid
from decimal import Decimal
from typing import Any, Dict

from pydantic import BaseModel, Field, ConfigDict

from models.pattern import current_timestamp_ms

PREFERENCE_WEIGHT_SCALE = 10.0


class UserPreference(BaseModel):
    """Merchant key (normalized merchant name) -> preferred category."""
    merchant_key: str = Field(alias="merchantKey", min_length=1, max_length=500)
    category_id: uuid.UUID = Field(alias="categoryId")
    preference_weight: int = Field(default=1, alias="preferenceWeight", ge=1)
    usage_count: int = Field(default=1, alias="usageCount", ge=0)
    created_at: int = Field(default_factory=current_timestamp_ms, alias="createdAt")
    updated_at: int = Field(default_factory=current_timestamp_ms, alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True)

    def confidence(self, boost: float) -> float:
        """min(1.0, min(1.0, preference_weight / 10) + boost)"""
        base = min(self.preference_weight / PREFERENCE_WEIGHT_SCALE, 1.0)
        return min(base + boost, 1.0)

    def to_dynamodb_item(self) -> Dict[str, Any]:
        item = self.model_dump(mode='python', by_alias=True)
        item['categoryId'] = str(self.category_id)
        return item

    @classmethod
    def from_dynamodb_item(cls, data: Dict[str, Any]) -> "UserPreference":
        converted_data = data.copy()
        for int_field in ('preferenceWeight', 'usageCount', 'createdAt', 'updatedAt'):
            if isinstance(converted_data.get(int_field), Decimal):
                converted_data[int_field] = int(converted_data[int_field])
        return cls.model_validate(converted_data)
