"""
Configuration classes for the categorization engine.

Centralizes the thresholds, timeouts and pool sizes used by matching,
scoring, caching and batch processing.
"""

import os
import logging
from dataclasses import dataclass
from typing import Optional, Callable, TypeVar

from services.categorization.errors import EngineConfigurationError

logger = logging.getLogger(__name__)

T = TypeVar('T')

ENV_PREFIX = "CATEGORIZATION_"


@dataclass
class MatchingConfig:
    """Configuration for text matching."""

    fuzzy_threshold: float = 0.85
    """Minimum similarity for a merchant pattern to count as a fuzzy match."""

    normalization_cache_size: int = 1000
    """Maximum number of raw strings whose normalized form is kept."""

    def __post_init__(self):
        if not 0.0 < self.fuzzy_threshold <= 1.0:
            raise ValueError(f"fuzzy_threshold must be in (0, 1], got {self.fuzzy_threshold}")
        if self.normalization_cache_size < 1:
            raise ValueError(
                f"normalization_cache_size must be positive, got {self.normalization_cache_size}"
            )


@dataclass
class ScoringConfig:
    """Configuration for confidence aggregation."""

    min_confidence: float = 0.3
    """Categories below this confidence are not suggested."""

    normalization_weight: float = 3.0
    """
    Weighted score that maps to full confidence.

    Per-category confidence is min(1.0, sum(weight * contribution) / normalization_weight),
    so a single default-weight exact match gives 0.33 and a weight 3.0 match gives 1.0.
    """

    max_alternatives: int = 3
    """Number of runner-up categories returned with a result."""

    check_user_preferences: bool = True
    """Consult the merchant -> category preference before evaluating patterns."""

    user_preference_boost: float = 0.15
    """
    Added to a preference's base confidence min(1.0, preference_weight / 10).
    Preference results are not subject to min_confidence.
    """

    def __post_init__(self):
        if not 0.0 <= self.min_confidence <= 1.0:
            raise ValueError(f"min_confidence must be in [0, 1], got {self.min_confidence}")
        if self.normalization_weight <= 0:
            raise ValueError(f"normalization_weight must be positive, got {self.normalization_weight}")
        if self.max_alternatives < 0:
            raise ValueError(f"max_alternatives cannot be negative, got {self.max_alternatives}")
        if not 0.0 <= self.user_preference_boost <= 1.0:
            raise ValueError(f"user_preference_boost must be in [0, 1], got {self.user_preference_boost}")


@dataclass
class CacheConfig:
    """Configuration for the two-tier pattern cache."""

    namespace: str = "cat:pattern"
    """Partition owned by this cache in the shared tier. Nothing outside it is touched."""

    key_version: str = "v1"

    memory_ttl_seconds: float = 300.0
    """In-process entries are refreshed from the shared tier after this long."""

    shared_ttl_seconds: int = 86400
    """Shared entries expire after this long."""

    preference_ttl_factor: int = 2
    """User preferences change rarely and are kept this many times longer in both tiers."""

    def __post_init__(self):
        if not self.namespace:
            raise ValueError("namespace cannot be empty")
        if self.memory_ttl_seconds <= 0 or self.shared_ttl_seconds <= 0:
            raise ValueError("Cache TTLs must be positive")
        if self.preference_ttl_factor < 1:
            raise ValueError(f"preference_ttl_factor must be at least 1, got {self.preference_ttl_factor}")


@dataclass
class CircuitBreakerConfig:
    """Configuration for the breaker guarding the shared cache tier."""

    failure_threshold: int = 5
    """Consecutive failures that open the circuit."""

    cooldown_seconds: float = 30.0
    """Time the circuit stays open before a trial call is allowed."""

    half_open_max_calls: int = 1
    """Trial calls allowed while half open."""

    def __post_init__(self):
        if self.failure_threshold < 1:
            raise ValueError(f"failure_threshold must be at least 1, got {self.failure_threshold}")
        if self.cooldown_seconds <= 0:
            raise ValueError(f"cooldown_seconds must be positive, got {self.cooldown_seconds}")
        if self.half_open_max_calls < 1:
            raise ValueError(f"half_open_max_calls must be at least 1, got {self.half_open_max_calls}")


@dataclass
class ProcessingConfig:
    """Configuration for single-item and batch processing."""

    item_timeout_ms: float = 25.0
    """Budget for categorizing one transaction."""

    small_batch_threshold: int = 50
    """Batches up to this size are submitted directly without throttled submission."""

    resource_pool_size: int = 5
    """Size of the shared backend resource pool (e.g. store connections)."""

    max_workers: int = 4
    """Upper bound on worker threads, further capped by resource_pool_size - 1."""

    batch_timeout_seconds: float = 30.0
    """Wall-clock budget for a whole batch."""

    def __post_init__(self):
        if self.item_timeout_ms <= 0:
            raise ValueError(f"item_timeout_ms must be positive, got {self.item_timeout_ms}")
        if self.small_batch_threshold < 1:
            raise ValueError(f"small_batch_threshold must be positive, got {self.small_batch_threshold}")
        if self.max_workers < 1:
            raise ValueError(f"max_workers must be positive, got {self.max_workers}")
        if self.batch_timeout_seconds <= 0:
            raise ValueError(f"batch_timeout_seconds must be positive, got {self.batch_timeout_seconds}")

    @property
    def worker_count(self) -> int:
        """Workers actually started, always leaving one pool unit for coordination."""
        return worker_count_for(self.resource_pool_size, self.max_workers)


def worker_count_for(resource_pool_size: int, requested: int) -> int:
    if resource_pool_size < 2:
        raise EngineConfigurationError(
            f"resource_pool_size must be at least 2 to reserve a coordination slot, got {resource_pool_size}"
        )
    if requested < 1:
        raise EngineConfigurationError(f"Worker count must be positive, got {requested}")
    return min(requested, resource_pool_size - 1)


@dataclass
class LearningConfig:
    """Configuration for feedback-driven weight adjustments."""

    strengthen_delta: float = 0.15
    user_created_strengthen_delta: float = 0.20
    weaken_delta: float = -0.25
    correction_pattern_weight: float = 1.2
    """Initial weight of merchant patterns created from user corrections."""

    decay_factor: float = 0.9
    decay_threshold_days: int = 30
    deactivation_weight: float = 0.3
    """Decayed patterns below this weight are deactivated."""

    batch_size: int = 100

    learn_keywords: bool = True
    min_corrections_for_keyword: int = 3
    """Corrections naming the same description keyword before a keyword pattern is activated."""

    max_keywords: int = 5
    min_keyword_length: int = 3

    merge_similarity_threshold: float = 0.85
    """Same-type patterns of one category at least this similar are merged after a pattern is created."""

    record_user_preferences: bool = True

    def __post_init__(self):
        if self.weaken_delta >= 0:
            raise ValueError(f"weaken_delta must be negative, got {self.weaken_delta}")
        if not 0.0 < self.decay_factor < 1.0:
            raise ValueError(f"decay_factor must be in (0, 1), got {self.decay_factor}")
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")
        if self.min_corrections_for_keyword < 1:
            raise ValueError(
                f"min_corrections_for_keyword must be positive, got {self.min_corrections_for_keyword}"
            )
        if self.max_keywords < 1:
            raise ValueError(f"max_keywords must be positive, got {self.max_keywords}")
        if self.min_keyword_length < 1:
            raise ValueError(f"min_keyword_length must be positive, got {self.min_keyword_length}")
        if not 0.0 < self.merge_similarity_threshold <= 1.0:
            raise ValueError(
                f"merge_similarity_threshold must be in (0, 1], got {self.merge_similarity_threshold}"
            )


class CategorizationConfig:
    """
    Master configuration for the categorization engine.

    Aggregates all configuration classes into a single configuration object.
    """

    def __init__(
        self,
        matching: Optional[MatchingConfig] = None,
        scoring: Optional[ScoringConfig] = None,
        cache: Optional[CacheConfig] = None,
        circuit_breaker: Optional[CircuitBreakerConfig] = None,
        processing: Optional[ProcessingConfig] = None,
        learning: Optional[LearningConfig] = None
    ):
        self.matching = matching or MatchingConfig()
        self.scoring = scoring or ScoringConfig()
        self.cache = cache or CacheConfig()
        self.circuit_breaker = circuit_breaker or CircuitBreakerConfig()
        self.processing = processing or ProcessingConfig()
        self.learning = learning or LearningConfig()

    @classmethod
    def from_environment(cls) -> "CategorizationConfig":
        """
        Build a configuration from CATEGORIZATION_* environment variables,
        falling back to defaults for anything unset.
        """
        try:
            return cls(
                matching=MatchingConfig(
                    fuzzy_threshold=_env("FUZZY_THRESHOLD", float, 0.85),
                    normalization_cache_size=_env("NORMALIZATION_CACHE_SIZE", int, 1000),
                ),
                scoring=ScoringConfig(
                    min_confidence=_env("MIN_CONFIDENCE", float, 0.3),
                    normalization_weight=_env("NORMALIZATION_WEIGHT", float, 3.0),
                    max_alternatives=_env("MAX_ALTERNATIVES", int, 3),
                    check_user_preferences=_env("CHECK_USER_PREFERENCES", _flag, True),
                    user_preference_boost=_env("USER_PREFERENCE_BOOST", float, 0.15),
                ),
                cache=CacheConfig(
                    namespace=_env("CACHE_NAMESPACE", str, "cat:pattern"),
                    memory_ttl_seconds=_env("CACHE_MEMORY_TTL_SECONDS", float, 300.0),
                    shared_ttl_seconds=_env("CACHE_SHARED_TTL_SECONDS", int, 86400),
                ),
                circuit_breaker=CircuitBreakerConfig(
                    failure_threshold=_env("BREAKER_FAILURE_THRESHOLD", int, 5),
                    cooldown_seconds=_env("BREAKER_COOLDOWN_SECONDS", float, 30.0),
                ),
                processing=ProcessingConfig(
                    item_timeout_ms=_env("ITEM_TIMEOUT_MS", float, 25.0),
                    small_batch_threshold=_env("SMALL_BATCH_THRESHOLD", int, 50),
                    resource_pool_size=_env("RESOURCE_POOL_SIZE", int, 5),
                    max_workers=_env("MAX_WORKERS", int, 4),
                    batch_timeout_seconds=_env("BATCH_TIMEOUT_SECONDS", float, 30.0),
                ),
                learning=LearningConfig(
                    decay_threshold_days=_env("DECAY_THRESHOLD_DAYS", int, 30),
                    batch_size=_env("LEARNING_BATCH_SIZE", int, 100),
                    learn_keywords=_env("LEARN_KEYWORDS", _flag, True),
                    min_corrections_for_keyword=_env("MIN_CORRECTIONS_FOR_KEYWORD", int, 3),
                    merge_similarity_threshold=_env("MERGE_SIMILARITY_THRESHOLD", float, 0.85),
                    record_user_preferences=_env("RECORD_USER_PREFERENCES", _flag, True),
                ),
            )
        except ValueError as e:
            raise EngineConfigurationError(f"Invalid categorization configuration: {str(e)}") from e


def _env(name: str, cast: Callable[[str], T], default: T) -> T:
    raw = os.environ.get(f"{ENV_PREFIX}{name}")
    if raw is None or raw == "":
        return default
    logger.debug(f"Using {ENV_PREFIX}{name}={raw} from environment")
    return cast(raw)


def _flag(raw: str) -> bool:
    value = raw.strip().lower()
    if value in ('1', 'true', 'yes', 'on'):
        return True
    if value in ('0', 'false', 'no', 'off'):
        return False
    raise ValueError(f"Expected a boolean flag, got '{raw}'")


# Default configuration instance
DEFAULT_CONFIG = CategorizationConfig()
