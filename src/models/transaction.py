import uuid
from typing import Dict, Any, Optional
from datetime import datetime, timezone
import logging
from decimal import Decimal

from pydantic import BaseModel, Field, field_validator, ConfigDict

logger = logging.getLogger(__name__)


class Transaction(BaseModel):
    """
    A financial transaction as handed to the categorization engine.

    Consumed read-only: the engine never mutates or persists it.
    """
    transaction_id: str = Field(default_factory=lambda: str(uuid.uuid4()), alias="transactionId")
    merchant_name: Optional[str] = Field(default=None, alias="merchantName", max_length=500)
    description: str = Field(default="", max_length=1000)
    amount: Decimal
    currency: str = Field(default="USD", min_length=3, max_length=3)
    date: int  # milliseconds since epoch, UTC

    model_config = ConfigDict(
        populate_by_name=True,
        frozen=True,
        json_encoders={
            Decimal: str
        }
    )

    @field_validator('date')
    @classmethod
    def check_positive_timestamp(cls, v: int) -> int:
        if v < 0:
            raise ValueError("Timestamp must be a positive integer representing milliseconds since epoch")
        return v

    @field_validator('amount', mode='before')
    @classmethod
    def coerce_amount(cls, v: Any) -> Any:
        # floats pick up binary noise, go through str
        if isinstance(v, float):
            return Decimal(str(v))
        return v

    @field_validator('currency')
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()

    @property
    def occurred_at(self) -> datetime:
        return datetime.fromtimestamp(self.date / 1000, tz=timezone.utc)

    @property
    def text(self) -> str:
        """Merchant and description joined, the haystack for keyword and regex patterns."""
        parts = [part for part in (self.merchant_name, self.description) if part]
        return " ".join(parts)

    @property
    def merchant_text(self) -> str:
        """Merchant name, falling back to the description when the feed has none."""
        return self.merchant_name or self.description or ""

    @classmethod
    def from_datetime(cls, occurred_at: datetime, **kwargs: Any) -> "Transaction":
        if occurred_at.tzinfo is None:
            occurred_at = occurred_at.replace(tzinfo=timezone.utc)
        return cls(date=int(occurred_at.timestamp() * 1000), **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        data = self.model_dump(by_alias=True, exclude_none=True)
        data['amount'] = str(self.amount)
        return data
