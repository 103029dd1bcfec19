"""
Core database infrastructure.

This module provides:
- DynamoDB table management for patterns, categories, user preferences and the
  shared pattern cache
- Decorators for cross-cutting concerns
- Common exceptions
"""

import os
import logging
import boto3
import uuid
import time
from datetime import datetime, timezone
from typing import Dict, Any, Optional, Tuple, Callable, TypeVar
from functools import wraps
from botocore.exceptions import ClientError
from pydantic import ValidationError

# Configure logging
logger = logging.getLogger(__name__)

T = TypeVar('T')

# ============================================================================
# Exceptions
# ============================================================================

class NotFound(Exception):
    """Raised when a requested resource is not found."""
    pass

class ConflictError(Exception):
    """Raised when a conditional write fails."""
    pass


# ============================================================================
# Decorators
# ============================================================================

def dynamodb_operation(operation_name: Optional[str] = None):
    """
    Decorator for consistent DynamoDB error handling and logging.

    ClientErrors are logged with their error code and re-raised unchanged.
    Pydantic validation errors on the way in or out become ValueError.

    Usage:
        @dynamodb_operation("get_pattern")
        def get_pattern(pattern_id: uuid.UUID) -> Optional[Pattern]:
            ...
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            op_name = operation_name or func.__name__
            try:
                logger.debug(f"Starting {op_name}")
                result = func(*args, **kwargs)
                logger.debug(f"Successfully completed {op_name}")
                return result
            except ClientError as e:
                error_code = e.response.get('Error', {}).get('Code', 'Unknown')
                error_msg = e.response.get('Error', {}).get('Message', str(e))
                logger.error(
                    f"DynamoDB error in {op_name}: {error_code} - {error_msg}",
                    exc_info=True,
                    extra={
                        'operation': op_name,
                        'error_code': error_code,
                        'function': func.__name__
                    }
                )
                raise
            except ValidationError as e:
                logger.error(
                    f"Validation error in {op_name}: {str(e)}",
                    exc_info=True,
                    extra={'operation': op_name}
                )
                raise ValueError(f"Invalid data in {op_name}: {str(e)}")
        return wrapper
    return decorator


def retry_on_throttle(
    max_attempts: int = 3,
    base_delay: float = 0.1,
    max_delay: float = 5.0,
    exponential_base: float = 2,
    retry_on: Tuple[str, ...] = (
        'ProvisionedThroughputExceededException',
        'ThrottlingException',
        'RequestLimitExceeded'
    )
):
    """
    Decorator to retry DynamoDB operations on throttling with exponential backoff.

    delay = min(base_delay * exponential_base ** attempt, max_delay). Only the
    error codes in retry_on are retried; everything else is raised at once.
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            for attempt in range(max_attempts):
                try:
                    return func(*args, **kwargs)
                except ClientError as e:
                    error_code = e.response.get('Error', {}).get('Code', 'Unknown')
                    if error_code not in retry_on or attempt >= max_attempts - 1:
                        raise

                    delay = min(base_delay * (exponential_base ** attempt), max_delay)
                    logger.warning(
                        f"Throttled on {func.__name__} "
                        f"(attempt {attempt + 1}/{max_attempts}), "
                        f"retrying in {delay:.2f}s... "
                        f"Error: {error_code}"
                    )
                    time.sleep(delay)
            raise RuntimeError(f"Unexpected state in retry_on_throttle for {func.__name__}")
        return wrapper
    return decorator


def monitor_performance(
    operation_type: str = "db_operation",
    warn_threshold_ms: float = 1000,
    error_threshold_ms: float = 5000
):
    """
    Decorator to log operation latency.

    Debug below warn_threshold_ms, warning up to error_threshold_ms, error above.
    Runs in a finally block and never changes the function's behavior.
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            start_time = time.time()
            try:
                return func(*args, **kwargs)
            finally:
                elapsed_ms = (time.time() - start_time) * 1000
                log_context = {
                    'operation': func.__name__,
                    'operation_type': operation_type,
                    'elapsed_ms': elapsed_ms
                }

                if elapsed_ms > error_threshold_ms:
                    logger.error(
                        f"SLOW OPERATION: {func.__name__} took {elapsed_ms:.2f}ms "
                        f"(threshold: {error_threshold_ms}ms)",
                        extra=log_context
                    )
                elif elapsed_ms > warn_threshold_ms:
                    logger.warning(
                        f"Slow operation: {func.__name__} took {elapsed_ms:.2f}ms "
                        f"(threshold: {warn_threshold_ms}ms)",
                        extra=log_context
                    )
                else:
                    logger.debug(
                        f"{func.__name__} completed in {elapsed_ms:.2f}ms",
                        extra=log_context
                    )
        return wrapper
    return decorator


def validate_params(**validators):
    """
    Decorator to validate function parameters with predicate functions.

    Usage:
        @validate_params(pattern_id=is_valid_uuid)
        def get_pattern(pattern_id: uuid.UUID) -> Optional[Pattern]:
            ...
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        import inspect
        sig = inspect.signature(func)

        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            bound_args = sig.bind(*args, **kwargs)
            bound_args.apply_defaults()

            for param_name, validator_func in validators.items():
                if param_name in bound_args.arguments:
                    value = bound_args.arguments[param_name]
                    if not validator_func(value):
                        raise ValueError(
                            f"Invalid value for parameter '{param_name}': {value}"
                        )

            return func(*args, **kwargs)
        return wrapper
    return decorator


def is_valid_uuid(value: Any) -> bool:
    """Validator for UUID parameters."""
    if value is None:
        return True
    try:
        uuid.UUID(str(value))
        return True
    except (ValueError, AttributeError):
        return False


def current_timestamp() -> int:
    """Milliseconds since epoch, UTC."""
    return int(datetime.now(timezone.utc).timestamp() * 1000)


# ============================================================================
# Table Management
# ============================================================================

class DynamoDBTables:
    """
    Singleton for managing DynamoDB table resources.

    Tables are resolved lazily from environment variables on first access.

    Usage:
        tables = DynamoDBTables()
        patterns = tables.patterns
    """
    _instance: Optional['DynamoDBTables'] = None

    # Table name to environment variable mapping
    TABLE_CONFIGS = {
        'patterns': 'PATTERNS_TABLE',
        'pattern_cache': 'PATTERN_CACHE_TABLE',
        'categories': 'CATEGORIES_TABLE_NAME',
        'preferences': 'PREFERENCES_TABLE',
    }

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if not self._initialized:
            self._dynamodb = None
            self._tables: Dict[str, Any] = {}
            self._initialized = True

    def _get_table(self, table_key: str) -> Optional[Any]:
        """Get table resource with lazy initialization."""
        if table_key not in self._tables:
            env_var_name = self.TABLE_CONFIGS.get(table_key)
            if not env_var_name:
                logger.error(f"Unknown table key: {table_key}")
                return None

            table_name = os.environ.get(env_var_name)
            if not table_name:
                logger.warning(
                    f"Environment variable {env_var_name} not set, "
                    f"table '{table_key}' unavailable"
                )
                return None

            if self._dynamodb is None:
                self._dynamodb = boto3.resource('dynamodb')
            self._tables[table_key] = self._dynamodb.Table(table_name)
            logger.info(f"Initialized table: {table_key} ({table_name})")

        return self._tables.get(table_key)

    @property
    def patterns(self) -> Any:
        """Get patterns table."""
        return self._get_table('patterns')

    @property
    def pattern_cache(self) -> Any:
        """Get shared pattern cache table."""
        return self._get_table('pattern_cache')

    @property
    def categories(self) -> Any:
        """Get categories table."""
        return self._get_table('categories')

    @property
    def preferences(self) -> Any:
        """Get user merchant preferences table."""
        return self._get_table('preferences')

    def reinitialize(self):
        """Reinitialize DynamoDB resource (useful for testing)."""
        self._dynamodb = boto3.resource('dynamodb')
        self._tables.clear()
        logger.info("Reinitialized DynamoDB tables")


# Global instance
tables = DynamoDBTables()
