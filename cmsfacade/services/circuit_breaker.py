"""
CircuitBreaker - Stops calling an upstream that keeps failing.

States:
- CLOSED: Normal operation, requests pass through
- OPEN: Upstream is failing, requests are rejected without a call
- HALF_OPEN: Cool-down elapsed, a single probe request is let through

Transitions:
- CLOSED → OPEN: When failure_threshold consecutive failures are recorded
- OPEN → HALF_OPEN: After reset_timeout expires
- HALF_OPEN → CLOSED: On successful probe
- HALF_OPEN → OPEN: On failed probe (cool-down restarts)
"""

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable

from loguru import logger


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"  # Normal operation
    OPEN = "OPEN"  # Blocking requests
    HALF_OPEN = "HALF_OPEN"  # Testing recovery


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""

    failure_threshold: int = 5  # Consecutive failures before opening
    reset_timeout: timedelta = timedelta(seconds=30)  # Time before half-open
    half_open_max_requests: int = 1  # Probes allowed in half-open state


class CircuitBreaker:
    """
    Circuit breaker for a single upstream identity.

    try_acquire() hands out a ticket: the breaker's generation, which
    changes on every state transition. Outcomes reported with a ticket from
    an earlier generation are dropped, so a call admitted while CLOSED that
    finishes after the cool-down cannot close or reopen the breaker in
    place of the half-open probe.

    Usage:
        cb = CircuitBreaker("baserow:stations")

        ticket = cb.try_acquire()
        if ticket is None:
            raise CircuitOpenError(cb.service_id, cb.get_time_until_reset() or 0)

        try:
            result = await make_request()
            cb.record_success(ticket)
            return result
        except TransientUpstreamError:
            cb.record_failure(ticket)
            raise
    """

    def __init__(
        self,
        service_id: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.service_id = service_id
        self.config = config or CircuitBreakerConfig()
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._generation = 1
        self._failure_count = 0
        self._last_failure_time: datetime | None = None
        self._opened_at: datetime | None = None
        self._half_open_requests = 0
        self._lock = threading.RLock()

    @property
    def state(self) -> CircuitState:
        """Get current state, checking for automatic transitions."""
        with self._lock:
            if self._state == CircuitState.OPEN:
                if (
                    self._opened_at
                    and self._clock() >= self._opened_at + self.config.reset_timeout
                ):
                    self._transition(CircuitState.HALF_OPEN)
                    self._half_open_requests = 0
                    logger.info(
                        f"Circuit breaker '{self.service_id}' transitioned to HALF_OPEN"
                    )
            return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def opened_at(self) -> datetime | None:
        return self._opened_at

    @property
    def generation(self) -> int:
        return self._generation

    def can_request(self) -> bool:
        """Check if a request would be allowed, without reserving a probe."""
        with self._lock:
            current_state = self.state

            if current_state == CircuitState.CLOSED:
                return True

            if current_state == CircuitState.HALF_OPEN:
                return self._half_open_requests < self.config.half_open_max_requests

            return False

    def try_acquire(self) -> int | None:
        """
        Reserve permission for one request.

        Returns the ticket to pass to record_*, or None when rejected.
        In HALF_OPEN this takes the probe slot, so concurrent callers see
        the breaker as closed to them until the probe reports back.
        """
        with self._lock:
            if not self.can_request():
                return None
            if self._state == CircuitState.HALF_OPEN:
                self._half_open_requests += 1
            return self._generation

    def record_success(self, ticket: int | None = None) -> None:
        """Record a successful request."""
        with self._lock:
            if self._is_outdated(ticket):
                return
            if self._state == CircuitState.HALF_OPEN:
                self._close()
            elif self._state == CircuitState.CLOSED:
                self._failure_count = 0

    def record_failure(self, ticket: int | None = None) -> None:
        """Record a failed request."""
        with self._lock:
            if self._is_outdated(ticket):
                return
            self._failure_count += 1
            self._last_failure_time = self._clock()

            if self._state == CircuitState.HALF_OPEN:
                # Any failure in half-open reopens the circuit
                self._open()
            elif self._state == CircuitState.CLOSED:
                if self._failure_count >= self.config.failure_threshold:
                    self._open()

    def record_ignored(self, ticket: int | None = None) -> None:
        """
        Record an outcome that says nothing about upstream health.

        State is unchanged; a half-open probe slot is handed back so the
        next caller can probe instead.
        """
        with self._lock:
            if self._is_outdated(ticket):
                return
            if self._state == CircuitState.HALF_OPEN and self._half_open_requests > 0:
                self._half_open_requests -= 1

    def _is_outdated(self, ticket: int | None) -> bool:
        if ticket is None or ticket == self._generation:
            return False
        logger.debug(
            f"Circuit breaker '{self.service_id}' dropped outcome from generation "
            f"{ticket} (now {self._generation})"
        )
        return True

    def _transition(self, state: CircuitState) -> None:
        self._state = state
        self._generation += 1

    def _open(self) -> None:
        """Transition to OPEN state."""
        self._transition(CircuitState.OPEN)
        self._opened_at = self._clock()
        self._half_open_requests = 0
        logger.warning(
            f"Circuit breaker '{self.service_id}' OPENED after {self._failure_count} failures"
        )

    def _close(self) -> None:
        """Transition to CLOSED state."""
        self._transition(CircuitState.CLOSED)
        self._failure_count = 0
        self._opened_at = None
        self._half_open_requests = 0
        logger.info(f"Circuit breaker '{self.service_id}' CLOSED (recovered)")

    def reset(self) -> None:
        """Manually reset the circuit breaker."""
        with self._lock:
            self._transition(CircuitState.CLOSED)
            self._failure_count = 0
            self._opened_at = None
            self._half_open_requests = 0
            self._last_failure_time = None
            logger.info(f"Circuit breaker '{self.service_id}' manually reset")

    def get_time_until_reset(self) -> float | None:
        """Get seconds until circuit transitions to half-open."""
        with self._lock:
            if self._state != CircuitState.OPEN or not self._opened_at:
                return None

            reset_at = self._opened_at + self.config.reset_timeout
            remaining = (reset_at - self._clock()).total_seconds()
            return max(0.0, remaining)

    def get_status(self) -> dict[str, Any]:
        """Get current status as dictionary."""
        return {
            "service_id": self.service_id,
            "state": self.state.value,
            "failure_count": self._failure_count,
            "last_failure": (
                self._last_failure_time.isoformat() if self._last_failure_time else None
            ),
            "opened_at": (self._opened_at.isoformat() if self._opened_at else None),
            "time_until_reset": self.get_time_until_reset(),
        }


class CircuitBreakerRegistry:
    """
    Registry holding exactly one circuit breaker per upstream identity.

    Usage:
        registry = CircuitBreakerRegistry()
        cb = registry.get("baserow:stations")
    """

    def __init__(
        self,
        default_config: CircuitBreakerConfig | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._breakers: dict[str, CircuitBreaker] = {}
        self._default_config = default_config or CircuitBreakerConfig()
        self._clock = clock
        self._lock = threading.Lock()

    def get(
        self,
        service_id: str,
        config: CircuitBreakerConfig | None = None,
    ) -> CircuitBreaker:
        """Get or create a circuit breaker for a service."""
        with self._lock:
            if service_id not in self._breakers:
                self._breakers[service_id] = CircuitBreaker(
                    service_id,
                    config or self._default_config,
                    clock=self._clock,
                )
            return self._breakers[service_id]

    def find(self, service_id: str) -> CircuitBreaker | None:
        """Get an existing breaker without creating one."""
        return self._breakers.get(service_id)

    def get_all_status(self) -> dict[str, dict[str, Any]]:
        """Get status of all circuit breakers."""
        return {
            service_id: cb.get_status() for service_id, cb in self._breakers.items()
        }

    def reset_all(self) -> None:
        """Reset all circuit breakers."""
        for cb in self._breakers.values():
            cb.reset()
        logger.info(f"Reset {len(self._breakers)} circuit breakers")

    def reset(self, service_id: str) -> bool:
        """Reset a specific circuit breaker."""
        if service_id in self._breakers:
            self._breakers[service_id].reset()
            return True
        return False

    def get_open_circuits(self) -> list[str]:
        """Get list of services with open circuits."""
        return [
            service_id
            for service_id, cb in self._breakers.items()
            if cb.state == CircuitState.OPEN
        ]
