"""
Models package for the transaction categorization engine.
"""

from .transaction import Transaction

from .category import (
    Category,
    CategoryUpdate
)

from .composite_pattern import (
    CompositeOperator,
    CompositeConditions,
    TimeRange
)

from .pattern import (
    Pattern,
    PatternType,
    PatternCreate
)

from .preference import UserPreference

from .categorization import (
    CategorizationStatus,
    CategorizationResult,
    CategoryScore,
    MatchResult
)

__all__ = [
    'Transaction',
    'Category',
    'CategoryUpdate',
    'CompositeOperator',
    'CompositeConditions',
    'TimeRange',
    'Pattern',
    'PatternType',
    'PatternCreate',
    'UserPreference',
    'CategorizationStatus',
    'CategorizationResult',
    'CategoryScore',
    'MatchResult',
]
