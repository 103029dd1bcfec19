"""
Categorization result models.

MatchResult is one pattern evaluation; CategorizationResult is the engine's
answer for one transaction. Neither is persisted by the engine.
"""

import uuid
from typing import Optional, List, Dict, Any
from enum import Enum

from pydantic import BaseModel, Field, ConfigDict

from models.pattern import Pattern
from models.preference import UserPreference


class CategorizationStatus(str, Enum):
    MATCHED = "matched"
    NO_MATCH = "no_match"
    ERROR = "error"
    TIMEOUT = "timeout"


class MatchResult(BaseModel):
    """Outcome of evaluating a single pattern against a single transaction."""
    pattern: Pattern
    matched: bool
    contribution: float = Field(default=0.0, ge=0.0, le=1.0)
    elapsed_ms: float = Field(default=0.0, alias="elapsedMs", ge=0.0)
    error: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def weighted_score(self) -> float:
        if not self.matched:
            return 0.0
        return self.pattern.confidence_weight * self.contribution

    @classmethod
    def no_match(cls, pattern: Pattern, elapsed_ms: float = 0.0, error: Optional[str] = None) -> "MatchResult":
        return cls(pattern=pattern, matched=False, contribution=0.0, elapsed_ms=elapsed_ms, error=error)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'patternId': str(self.pattern.pattern_id),
            'categoryId': str(self.pattern.category_id),
            'patternType': self.pattern.pattern_type.value,
            'matched': self.matched,
            'contribution': round(self.contribution, 4),
            'elapsedMs': round(self.elapsed_ms, 3),
            'error': self.error,
        }


class CategoryScore(BaseModel):
    """A category with its aggregate confidence, used for alternatives."""
    category_id: uuid.UUID = Field(alias="categoryId")
    confidence: float = Field(ge=0.0, le=1.0)
    raw_score: float = Field(default=0.0, alias="rawScore", ge=0.0)
    max_weight: float = Field(default=0.0, alias="maxWeight")
    max_usage_count: int = Field(default=0, alias="maxUsageCount")

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class CategorizationResult(BaseModel):
    """The engine's suggestion for one transaction."""
    transaction_id: str = Field(alias="transactionId")
    status: CategorizationStatus
    category_id: Optional[uuid.UUID] = Field(default=None, alias="categoryId")
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    match_results: List[MatchResult] = Field(default_factory=list, alias="matchResults")
    alternatives: List[CategoryScore] = Field(default_factory=list)
    processing_time_ms: float = Field(default=0.0, alias="processingTimeMs", ge=0.0)
    error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True, use_enum_values=False)

    @property
    def is_matched(self) -> bool:
        return self.status == CategorizationStatus.MATCHED

    @property
    def contributing_pattern_ids(self) -> List[uuid.UUID]:
        return [m.pattern.pattern_id for m in self.match_results]

    @classmethod
    def no_match(cls, transaction_id: str, processing_time_ms: float = 0.0,
                 metadata: Optional[Dict[str, Any]] = None) -> "CategorizationResult":
        return cls(
            transaction_id=transaction_id,
            status=CategorizationStatus.NO_MATCH,
            processing_time_ms=processing_time_ms,
            metadata=metadata or {},
        )

    @classmethod
    def from_user_preference(cls, transaction_id: str, preference: UserPreference,
                             confidence: float) -> "CategorizationResult":
        return cls(
            transaction_id=transaction_id,
            status=CategorizationStatus.MATCHED,
            category_id=preference.category_id,
            confidence=confidence,
            metadata={
                'source': 'user_preference',
                'merchantKey': preference.merchant_key,
                'preferenceWeight': preference.preference_weight,
            },
        )

    @classmethod
    def error_result(cls, transaction_id: str, reason: str,
                     processing_time_ms: float = 0.0) -> "CategorizationResult":
        return cls(
            transaction_id=transaction_id,
            status=CategorizationStatus.ERROR,
            error=reason,
            processing_time_ms=processing_time_ms,
        )

    @classmethod
    def timeout(cls, transaction_id: str, processing_time_ms: float = 0.0,
                reason: str = "categorization timed out") -> "CategorizationResult":
        return cls(
            transaction_id=transaction_id,
            status=CategorizationStatus.TIMEOUT,
            error=reason,
            processing_time_ms=processing_time_ms,
        )

    def without_timing(self) -> Dict[str, Any]:
        """Comparable view that ignores wall-clock measurements."""
        data = self.to_dict()
        data.pop('processingTimeMs')
        for match in data['matchResults']:
            match.pop('elapsedMs')
        return data

    def to_dict(self) -> Dict[str, Any]:
        return {
            'transactionId': self.transaction_id,
            'status': self.status.value,
            'categoryId': str(self.category_id) if self.category_id else None,
            'confidence': round(self.confidence, 4),
            'matchResults': [m.to_dict() for m in self.match_results],
            'alternatives': [
                {'categoryId': str(a.category_id), 'confidence': round(a.confidence, 4)}
                for a in self.alternatives
            ],
            'processingTimeMs': round(self.processing_time_ms, 3),
            'error': self.error,
            'metadata': self.metadata,
        }
