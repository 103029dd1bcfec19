from pydantic import BaseModel, Field, field_validator
from typing import Optional, Dict, Any
from uuid import UUID, uuid4
from datetime import datetime, timezone
from decimal import Decimal
from pydantic import ConfigDict
import logging

logger = logging.getLogger(__name__)


class Category(BaseModel):
    """A spending category that patterns vote for."""
    category_id: UUID = Field(default_factory=uuid4, alias="categoryId")
    name: str = Field(min_length=1, max_length=100)
    icon: Optional[str] = None
    color: Optional[str] = None
    description: Optional[str] = Field(default=None, max_length=500)
    created_at: int = Field(
        default_factory=lambda: int(datetime.now(timezone.utc).timestamp() * 1000),
        alias="createdAt"
    )
    updated_at: int = Field(
        default_factory=lambda: int(datetime.now(timezone.utc).timestamp() * 1000),
        alias="updatedAt"
    )

    model_config = ConfigDict(
        populate_by_name=True,
        json_encoders={
            UUID: str
        }
    )

    @field_validator('name')
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v.strip():
            raise ValueError('Category name cannot be blank')
        return v.strip()

    @field_validator('color')
    @classmethod
    def validate_color(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not (v.startswith('#') and len(v) in (4, 7)):
            raise ValueError('Color must be a hex value such as #1a2b3c')
        return v

    def update_category_details(self, update_data: 'CategoryUpdate') -> bool:
        """
        Updates the category with data from a CategoryUpdate DTO.
        Returns True if any fields were changed, False otherwise.
        """
        updated_fields = False
        update_dict = update_data.model_dump(exclude_unset=True, exclude_none=True, by_alias=False)

        for key, value in update_dict.items():
            if key not in ("category_id", "created_at") and getattr(self, key) != value:
                setattr(self, key, value)
                updated_fields = True

        if updated_fields:
            self.updated_at = int(datetime.now(timezone.utc).timestamp() * 1000)
        return updated_fields

    def to_dynamodb_item(self) -> Dict[str, Any]:
        """Serializes Category to a flat dictionary for DynamoDB."""
        item = self.model_dump(mode='python', by_alias=True, exclude_none=True)
        item['categoryId'] = str(self.category_id)
        return item

    @classmethod
    def from_dynamodb_item(cls, data: Dict[str, Any]) -> "Category":
        """Deserializes a dictionary from DynamoDB to a Category instance."""
        converted_data = data.copy()
        for int_field in ('createdAt', 'updatedAt'):
            if isinstance(converted_data.get(int_field), Decimal):
                converted_data[int_field] = int(converted_data[int_field])
        return cls.model_validate(converted_data)


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    icon: Optional[str] = None
    color: Optional[str] = None
    description: Optional[str] = Field(default=None, max_length=500)

    model_config = ConfigDict(populate_by_name=True)
