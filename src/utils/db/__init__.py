"""
Database utilities for DynamoDB operations.

This module provides a clean interface for all database operations.
Imports are organized by resource type for easy navigation.
"""

# ============================================================================
# Core Infrastructure
# ============================================================================

from .base import (
    # Table management
    tables,
    DynamoDBTables,

    # Exceptions
    NotFound,
    ConflictError,

    # Decorators
    dynamodb_operation,
    retry_on_throttle,
    monitor_performance,
    validate_params,

    # Helpers
    is_valid_uuid,
    current_timestamp,
)

# ============================================================================
# Pattern Operations
# ============================================================================

from .patterns import (
    create_pattern_in_db,
    create_composite_pattern_in_db,
    get_pattern_from_db,
    list_active_patterns_from_db,
    list_stale_patterns_from_db,
    find_pattern_from_db,
    record_pattern_outcome_in_db,
    update_pattern_weight_in_db,
    deactivate_pattern_in_db,
    record_pattern_correction_in_db,
    activate_pattern_in_db,
    merge_pattern_stats_in_db,
)

# ============================================================================
# User Preference Operations
# ============================================================================

from .preferences import (
    get_user_preference_from_db,
    record_user_preference_in_db,
)

# ============================================================================
# Shared Cache Operations
# ============================================================================

from .pattern_cache import (
    get_cache_entry,
    put_cache_entry,
    put_cache_entries,
    list_cache_keys,
    delete_cache_keys,
    delete_cache_prefix,
    delete_cache_namespace,
)

# ============================================================================
# Category Operations
# ============================================================================

from .categories import (
    create_category_in_db,
    get_category_by_id_from_db,
    list_categories_from_db,
    checked_mandatory_category,
)

__all__ = [
    'tables',
    'DynamoDBTables',
    'NotFound',
    'ConflictError',
    'dynamodb_operation',
    'retry_on_throttle',
    'monitor_performance',
    'validate_params',
    'is_valid_uuid',
    'current_timestamp',
    'create_pattern_in_db',
    'create_composite_pattern_in_db',
    'get_pattern_from_db',
    'list_active_patterns_from_db',
    'list_stale_patterns_from_db',
    'find_pattern_from_db',
    'record_pattern_outcome_in_db',
    'update_pattern_weight_in_db',
    'deactivate_pattern_in_db',
    'record_pattern_correction_in_db',
    'activate_pattern_in_db',
    'merge_pattern_stats_in_db',
    'get_user_preference_from_db',
    'record_user_preference_in_db',
    'get_cache_entry',
    'put_cache_entry',
    'put_cache_entries',
    'list_cache_keys',
    'delete_cache_keys',
    'delete_cache_prefix',
    'delete_cache_namespace',
    'create_category_in_db',
    'get_category_by_id_from_db',
    'list_categories_from_db',
    'checked_mandatory_category',
]
