"""
Service layer infrastructure - caching and resilience for upstream calls.

Provides:
- CacheManager: TTL, stale-while-revalidate, tag invalidation, LRU
- CircuitBreaker: Stops calling failing upstreams
- RetryPolicy: Classified retry with exponential backoff and jitter
- ResilienceController: Timeout + retry + breaker, and fallback chaining
- RequestDeduplicator: Single-flight for concurrent loads
"""

from cmsfacade.services.errors import (
    ServiceError,
    TransientUpstreamError,
    RateLimitError,
    UpstreamTimeoutError,
    PermanentRequestError,
    NotFoundError,
    CircuitOpenError,
    ConfigurationError,
)
from cmsfacade.services.cache import CacheManager, CacheEntry, CacheResult, CacheStatus
from cmsfacade.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from cmsfacade.services.retry import RetryPolicy
from cmsfacade.services.resilience import ResilienceController
from cmsfacade.services.deduplicator import RequestDeduplicator

__all__ = [
    # Errors
    "ServiceError",
    "TransientUpstreamError",
    "RateLimitError",
    "UpstreamTimeoutError",
    "PermanentRequestError",
    "NotFoundError",
    "CircuitOpenError",
    "ConfigurationError",
    # Cache
    "CacheManager",
    "CacheEntry",
    "CacheResult",
    "CacheStatus",
    # Circuit Breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitState",
    # Resilience
    "RetryPolicy",
    "ResilienceController",
    # Deduplicator
    "RequestDeduplicator",
]
