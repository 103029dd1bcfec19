"""
Two-tier cache of active patterns.

Tier one is an in-process map with a short TTL. Tier two is the shared cache
table, reached only through a circuit breaker. Misses in both tiers load from
the pattern store, itself behind a second breaker.

Shared keys live in this cache's own namespace partition:

    <version>#category#<category_id>#patterns   active patterns of one category
    <version>#index                             ids of categories with active patterns
    <version>#preference#<merchant_key>         user preference of one merchant, or none

Preferences are only served when the cache is given a preference loader.
They are cached with preference_ttl_factor times the pattern TTLs, and a
missing preference is cached as well.

invalidate_category drops one category's keys plus the index (which is
rebuilt from the store on next read). invalidate_all drops this namespace
partition only. Neither ever enumerates the table outside the partition.

Every invalidation bumps a generation counter. A fill that started under an
older generation is discarded instead of being written back to either tier.
"""

import time
import uuid
import logging
import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from models.pattern import Pattern
from models.preference import UserPreference
from services.categorization.circuit_breaker import CircuitBreaker
from services.categorization.config import CacheConfig, CategorizationConfig, CircuitBreakerConfig
from services.categorization.errors import CacheUnavailableError, CircuitOpenError
from utils.db import pattern_cache as pattern_cache_db
from utils.db.patterns import list_active_patterns_from_db
from utils.db.preferences import get_user_preference_from_db

logger = logging.getLogger(__name__)

# Failures of the shared tier or store that degrade the cache instead of crashing it
BACKEND_ERRORS = (ClientError, BotoCoreError, ConnectionError, TimeoutError)

PatternLoader = Callable[[Optional[uuid.UUID]], List[Pattern]]
PreferenceLoader = Callable[[str], Optional[UserPreference]]

# (namespace generation, category or index generation)
Generation = Tuple[int, int]


class SharedCacheTier:
    """Shared cache table operations bound to one namespace."""

    def __init__(self, namespace: str):
        self.namespace = namespace

    def get(self, cache_key: str) -> Optional[Dict[str, Any]]:
        return pattern_cache_db.get_cache_entry(self.namespace, cache_key)

    def put_many(self, entries: Dict[str, Dict[str, Any]], ttl_seconds: int) -> int:
        return pattern_cache_db.put_cache_entries(self.namespace, entries, ttl_seconds)

    def delete_prefix(self, prefix: str) -> int:
        return pattern_cache_db.delete_cache_prefix(self.namespace, prefix)

    def delete_keys(self, cache_keys: List[str]) -> int:
        return pattern_cache_db.delete_cache_keys(self.namespace, cache_keys)

    def delete_all(self) -> int:
        return pattern_cache_db.delete_cache_namespace(self.namespace)


class PatternCache:
    """Read-mostly cache of active patterns grouped by category."""

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        shared_tier: Optional[SharedCacheTier] = None,
        pattern_loader: Optional[PatternLoader] = None,
        shared_breaker: Optional[CircuitBreaker] = None,
        store_breaker: Optional[CircuitBreaker] = None,
        breaker_config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        preference_loader: Optional[PreferenceLoader] = None
    ):
        self.config = config or CacheConfig()
        self.shared_tier = shared_tier or SharedCacheTier(self.config.namespace)
        self.pattern_loader = pattern_loader or list_active_patterns_from_db
        self.preference_loader = preference_loader
        self.shared_breaker = shared_breaker or CircuitBreaker("pattern-cache-shared", breaker_config)
        self.store_breaker = store_breaker or CircuitBreaker("pattern-store", breaker_config)
        self._clock = clock
        self._memory: Dict[str, Tuple[float, Tuple[Any, ...]]] = {}
        self._lock = threading.Lock()
        self._metrics: Dict[str, int] = defaultdict(int)
        # Held across generation checks and tier writes; acquired before _lock, never after
        self._fill_lock = threading.Lock()
        self._namespace_generation = 0
        self._index_generation = 0
        self._category_generations: Dict[uuid.UUID, int] = defaultdict(int)
        self._preference_generations: Dict[str, int] = defaultdict(int)

    @classmethod
    def from_config(cls, config: CategorizationConfig) -> "PatternCache":
        """Cache over the DynamoDB pattern and preference tables."""
        return cls(
            config.cache,
            breaker_config=config.circuit_breaker,
            preference_loader=get_user_preference_from_db
        )

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def category_prefix(self, category_id: uuid.UUID) -> str:
        return f"{self.config.key_version}#category#{category_id}#"

    def category_key(self, category_id: uuid.UUID) -> str:
        return f"{self.category_prefix(category_id)}patterns"

    @property
    def index_key(self) -> str:
        return f"{self.config.key_version}#index"

    def preference_key(self, merchant_key: str) -> str:
        return f"{self.config.key_version}#preference#{merchant_key}"

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def active_patterns_for(self, category_id: Optional[uuid.UUID] = None) -> List[Pattern]:
        """
        Active patterns of one category, or of every category when category_id is None.

        Raises:
            CacheUnavailableError: If neither tier has the data and the store is unreachable
        """
        if category_id is not None:
            return list(self._category_patterns(category_id))

        patterns: List[Pattern] = []
        for cid in self._category_index():
            patterns.extend(self._category_patterns(cid))
        patterns.sort(key=lambda p: str(p.pattern_id))
        return patterns

    def get_pattern(self, pattern_id: uuid.UUID) -> Optional[Pattern]:
        """Look up one active pattern by id."""
        for pattern in self.active_patterns_for():
            if pattern.pattern_id == pattern_id:
                return pattern
        return None

    def warm_cache(self) -> int:
        """Drop the in-process tier and repopulate it. Returns the number of patterns loaded."""
        with self._lock:
            self._memory.clear()
        count = len(self.active_patterns_for())
        logger.info(f"Pattern cache warmed with {count} active patterns")
        return count

    def user_preference(self, merchant_key: str) -> Optional[UserPreference]:
        """
        The user's preferred category for a normalized merchant name.

        Always None when the cache has no preference loader.

        Raises:
            CacheUnavailableError: If neither tier has the entry and the store is unreachable
        """
        if self.preference_loader is None or not merchant_key:
            return None
        key = self.preference_key(merchant_key)
        factor = self.config.preference_ttl_factor

        cached = self._memory_get(key)
        if cached is not None:
            self._count('preference_hits')
            return cached[0]

        generation = self._preference_generation(merchant_key)
        payload = self._shared_get(key)
        if payload is not None:
            self._count('preference_hits')
            item = payload.get('preference')
            preference = UserPreference.from_dynamodb_item(item) if item else None
            with self._fill_lock:
                if self._preference_generation(merchant_key) == generation:
                    self._memory_put(key, (preference,), self.config.memory_ttl_seconds * factor)
            return preference

        self._count('preference_misses')
        preference = self._load_preference(merchant_key)
        with self._fill_lock:
            if self._preference_generation(merchant_key) != generation:
                self._discard_fill(key)
                return preference
            self._memory_put(key, (preference,), self.config.memory_ttl_seconds * factor)
            self._shared_put(
                {key: {'preference': preference.to_dynamodb_item() if preference else None}},
                self.config.shared_ttl_seconds * factor
            )
        return preference

    def _category_patterns(self, category_id: uuid.UUID) -> Tuple[Pattern, ...]:
        key = self.category_key(category_id)

        cached = self._memory_get(key)
        if cached is not None:
            self._count('memory_hits')
            return cached

        generation = self._category_generation(category_id)
        payload = self._shared_get(key)
        if payload is not None:
            self._count('shared_hits')
            patterns = tuple(Pattern.from_dynamodb_item(item) for item in payload.get('patterns', []))
            with self._fill_lock:
                if self._category_generation(category_id) == generation:
                    self._memory_put(key, patterns)
            return patterns

        self._count('misses')
        patterns = tuple(
            p for p in self._load(category_id)
            if p.active and p.category_id == category_id
        )
        with self._fill_lock:
            if self._category_generation(category_id) != generation:
                self._discard_fill(key)
                return patterns
            self._memory_put(key, patterns)
            self._shared_put({key: self._patterns_payload(patterns)})
        return patterns

    def _category_index(self) -> Tuple[uuid.UUID, ...]:
        key = self.index_key

        cached = self._memory_get(key)
        if cached is not None:
            self._count('memory_hits')
            return cached

        generation = self._index_generation_token()
        payload = self._shared_get(key)
        if payload is not None:
            self._count('shared_hits')
            category_ids = tuple(sorted(uuid.UUID(cid) for cid in payload.get('categoryIds', [])))
            with self._fill_lock:
                if self._index_generation_token() == generation:
                    self._memory_put(key, category_ids)
            return category_ids

        self._count('misses')
        grouped: Dict[uuid.UUID, List[Pattern]] = defaultdict(list)
        for pattern in self._load(None):
            if pattern.active:
                grouped[pattern.category_id].append(pattern)

        category_ids = tuple(sorted(grouped))
        with self._fill_lock:
            # any category invalidation also bumps the index generation
            if self._index_generation_token() != generation:
                self._discard_fill(key)
                return category_ids
            entries: Dict[str, Dict[str, Any]] = {}
            for cid in category_ids:
                patterns = tuple(grouped[cid])
                self._memory_put(self.category_key(cid), patterns)
                entries[self.category_key(cid)] = self._patterns_payload(patterns)
            self._memory_put(key, category_ids)
            entries[key] = {'categoryIds': [str(cid) for cid in category_ids]}
            self._shared_put(entries)
        return category_ids

    @staticmethod
    def _patterns_payload(patterns: Sequence[Pattern]) -> Dict[str, Any]:
        return {'patterns': [p.to_dynamodb_item() for p in patterns]}

    # ------------------------------------------------------------------
    # Generations
    # ------------------------------------------------------------------

    def _category_generation(self, category_id: uuid.UUID) -> Generation:
        with self._lock:
            return self._namespace_generation, self._category_generations[category_id]

    def _index_generation_token(self) -> Generation:
        with self._lock:
            return self._namespace_generation, self._index_generation

    def _preference_generation(self, merchant_key: str) -> Generation:
        with self._lock:
            return self._namespace_generation, self._preference_generations[merchant_key]

    def _discard_fill(self, key: str) -> None:
        self._count('discarded_fills')
        logger.debug(f"Discarded pattern cache fill for {key}, invalidated while loading")

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def invalidate_category(self, category_id: uuid.UUID) -> None:
        """
        Remove one category's entries from both tiers.

        Raises:
            CacheUnavailableError: If the shared tier could not be updated
        """
        prefix = self.category_prefix(category_id)
        with self._fill_lock:
            with self._lock:
                self._category_generations[category_id] += 1
                self._index_generation += 1
                for key in [k for k in self._memory if k.startswith(prefix)]:
                    del self._memory[key]
                self._memory.pop(self.index_key, None)

        self._shared_delete(self.shared_tier.delete_prefix, prefix)
        self._shared_delete(self.shared_tier.delete_prefix, self.index_key)
        self._count('category_invalidations')
        logger.info(f"Invalidated pattern cache for category {category_id}",
                    extra={'category_id': str(category_id)})

    def invalidate_preference(self, merchant_key: str) -> None:
        """
        Remove one merchant's preference from both tiers.

        Raises:
            CacheUnavailableError: If the shared tier could not be updated
        """
        key = self.preference_key(merchant_key)
        with self._fill_lock:
            with self._lock:
                self._preference_generations[merchant_key] += 1
                self._memory.pop(key, None)

        self._shared_delete(self.shared_tier.delete_keys, [key])
        self._count('preference_invalidations')
        logger.debug(f"Invalidated cached preference for '{merchant_key}'")

    def invalidate_all(self) -> None:
        """
        Remove every entry in this cache's namespace from both tiers.

        Raises:
            CacheUnavailableError: If the shared tier could not be updated
        """
        with self._fill_lock:
            with self._lock:
                self._namespace_generation += 1
                self._memory.clear()
        self._shared_delete(self.shared_tier.delete_all)
        self._count('full_invalidations')
        logger.info(f"Invalidated pattern cache namespace {self.config.namespace}")

    # ------------------------------------------------------------------
    # Tier access
    # ------------------------------------------------------------------

    def _memory_get(self, key: str) -> Optional[Tuple[Any, ...]]:
        with self._lock:
            entry = self._memory.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._memory[key]
                return None
            return value

    def _memory_put(self, key: str, value: Tuple[Any, ...], ttl_seconds: Optional[float] = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self.config.memory_ttl_seconds
        with self._lock:
            self._memory[key] = (self._clock() + ttl, value)

    def _shared_get(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            return self.shared_breaker.call(self.shared_tier.get, key)
        except CircuitOpenError:
            self._count('shared_rejections')
            return None
        except BACKEND_ERRORS as e:
            self._count('shared_errors')
            logger.warning(f"Shared pattern cache read failed for {key}: {str(e)}")
            return None

    def _shared_put(self, entries: Dict[str, Dict[str, Any]], ttl_seconds: Optional[int] = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self.config.shared_ttl_seconds
        try:
            self.shared_breaker.call(self.shared_tier.put_many, entries, ttl)
        except CircuitOpenError:
            self._count('shared_rejections')
        except BACKEND_ERRORS as e:
            self._count('shared_errors')
            logger.warning(f"Shared pattern cache write failed: {str(e)}")

    def _shared_delete(self, operation: Callable[..., int], *args: Any) -> int:
        try:
            return self.shared_breaker.call(operation, *args)
        except CircuitOpenError as e:
            self._count('shared_rejections')
            raise CacheUnavailableError(f"Shared pattern cache unavailable for invalidation: {str(e)}") from e
        except BACKEND_ERRORS as e:
            self._count('shared_errors')
            raise CacheUnavailableError(f"Shared pattern cache invalidation failed: {str(e)}") from e

    def _load(self, category_id: Optional[uuid.UUID]) -> List[Pattern]:
        try:
            return self.store_breaker.call(self.pattern_loader, category_id)
        except CircuitOpenError:
            self._count('store_rejections')
            raise
        except BACKEND_ERRORS as e:
            self._count('store_errors')
            raise CacheUnavailableError(f"Pattern store unavailable: {str(e)}") from e

    def _load_preference(self, merchant_key: str) -> Optional[UserPreference]:
        try:
            return self.store_breaker.call(self.preference_loader, merchant_key)
        except CircuitOpenError:
            self._count('store_rejections')
            raise
        except BACKEND_ERRORS as e:
            self._count('store_errors')
            raise CacheUnavailableError(f"Preference store unavailable: {str(e)}") from e

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def _count(self, name: str) -> None:
        with self._lock:
            self._metrics[name] += 1

    def metrics(self) -> Dict[str, Any]:
        with self._lock:
            counts = dict(self._metrics)
            memory_entries = len(self._memory)
        counts = defaultdict(int, counts)
        lookups = counts['memory_hits'] + counts['shared_hits'] + counts['misses']
        hits = counts['memory_hits'] + counts['shared_hits']
        return {
            'namespace': self.config.namespace,
            'memory_entries': memory_entries,
            'memory_hits': counts['memory_hits'],
            'shared_hits': counts['shared_hits'],
            'misses': counts['misses'],
            'hit_rate': round(hits / lookups, 4) if lookups else 0.0,
            'shared_errors': counts['shared_errors'],
            'shared_rejections': counts['shared_rejections'],
            'store_errors': counts['store_errors'],
            'store_rejections': counts['store_rejections'],
            'discarded_fills': counts['discarded_fills'],
            'preference_hits': counts['preference_hits'],
            'preference_misses': counts['preference_misses'],
            'preference_invalidations': counts['preference_invalidations'],
            'category_invalidations': counts['category_invalidations'],
            'full_invalidations': counts['full_invalidations'],
            'shared_breaker': self.shared_breaker.metrics(),
            'store_breaker': self.store_breaker.metrics(),
        }

    def reset_metrics(self) -> None:
        with self._lock:
            self._metrics.clear()

    def is_healthy(self) -> bool:
        return self.store_breaker.metrics()['state'] != 'open'
