"""
Exceptions raised inside the categorization engine.

Only EngineConfigurationError is meant to escape a batch call; everything else
is converted into a per-item result status by the engine.
"""

from typing import Optional


class CategorizationError(Exception):
    """Base class for categorization failures."""
    pass


class PatternConfigurationError(CategorizationError):
    """Raised when a pattern's value cannot be interpreted by its matcher."""

    def __init__(self, message: str, pattern_id: Optional[str] = None):
        super().__init__(message)
        self.pattern_id = pattern_id


class CategorizationTimeoutError(CategorizationError):
    """Raised when one transaction exceeds its evaluation budget."""

    def __init__(self, message: str, elapsed_ms: float = 0.0):
        super().__init__(message)
        self.elapsed_ms = elapsed_ms


class CacheUnavailableError(CategorizationError):
    """Raised when the shared cache tier or backing store cannot be reached."""
    pass


class CircuitOpenError(CacheUnavailableError):
    """Raised by the circuit breaker while it is rejecting calls."""

    def __init__(self, message: str, retry_after_seconds: float = 0.0):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class EngineConfigurationError(CategorizationError):
    """Raised for invalid setup of the engine itself. Always propagates."""
    pass
