"""
Pattern-based transaction categorization.

Public API:
    - CategorizationEngine: categorizes one transaction within a time budget
    - ConcurrentProcessor: ordered batch categorization on the shared worker pool
    - PatternCache: two-tier cache of active patterns with scoped invalidation
    - PatternLearner: records outcomes, learns merchant and keyword patterns
      and user preferences from corrections, merges near-duplicate patterns
    - CategorizationConfig / DEFAULT_CONFIG: engine configuration
"""

from services.categorization.config import (
    CategorizationConfig,
    DEFAULT_CONFIG,
    MatchingConfig,
    ScoringConfig,
    CacheConfig,
    CircuitBreakerConfig,
    ProcessingConfig,
    LearningConfig,
)
from services.categorization.errors import (
    CategorizationError,
    PatternConfigurationError,
    CategorizationTimeoutError,
    CacheUnavailableError,
    CircuitOpenError,
    EngineConfigurationError,
)
from services.categorization.normalizer import TextNormalizer
from services.categorization.fuzzy import FuzzyMatcher, levenshtein_distance, similarity
from services.categorization.matchers import MatcherRegistry, CompositeMatcher
from services.categorization.scorer import ConfidenceScorer
from services.categorization.circuit_breaker import CircuitBreaker, CircuitState
from services.categorization.pattern_cache import PatternCache, SharedCacheTier
from services.categorization.engine import CategorizationEngine
from services.categorization.concurrent_processor import (
    ConcurrentProcessor,
    BatchStats,
    WorkerPool,
    initialize_worker_pool,
    get_worker_pool,
    shutdown_worker_pool,
)
from services.categorization.learning import PatternLearner, LearningResult, extract_keywords

__all__ = [
    'CategorizationConfig',
    'DEFAULT_CONFIG',
    'MatchingConfig',
    'ScoringConfig',
    'CacheConfig',
    'CircuitBreakerConfig',
    'ProcessingConfig',
    'LearningConfig',
    'CategorizationError',
    'PatternConfigurationError',
    'CategorizationTimeoutError',
    'CacheUnavailableError',
    'CircuitOpenError',
    'EngineConfigurationError',
    'TextNormalizer',
    'FuzzyMatcher',
    'levenshtein_distance',
    'similarity',
    'MatcherRegistry',
    'CompositeMatcher',
    'ConfidenceScorer',
    'CircuitBreaker',
    'CircuitState',
    'PatternCache',
    'SharedCacheTier',
    'CategorizationEngine',
    'ConcurrentProcessor',
    'BatchStats',
    'WorkerPool',
    'initialize_worker_pool',
    'get_worker_pool',
    'shutdown_worker_pool',
    'PatternLearner',
    'LearningResult',
    'extract_keywords',
]
