"""
Store Circuit Breaker

Circuit breaker guarding remote cache stores (Redis, SQL). After a run of
failures the circuit opens and calls fail fast with
CacheCircuitOpenException until the recovery timeout has passed. A level
behind an open circuit behaves as an always-missing level.
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from ..domain.cache.exceptions import CacheCircuitOpenException, CacheStorageException

logger = logging.getLogger(__name__)

T = TypeVar("T")

STORE_FAILURES = (ConnectionError, TimeoutError, OSError, CacheStorageException)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    """Thresholds for a store circuit breaker."""

    failure_threshold: int = 5
    recovery_timeout: float = 30.0
    success_threshold: int = 2
    operation_timeout: float = 2.0
    # Exception types counted against the store
    failure_exceptions: tuple = STORE_FAILURES


@dataclass
class BreakerCounters:
    calls: int = 0
    succeeded: int = 0
    failed: int = 0
    timed_out: int = 0
    rejected: int = 0
    opened: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["success_rate"] = round(self.succeeded / self.calls, 4) if self.calls else 0.0
        return data


class StoreCircuitBreaker:
    """Circuit breaker for one cache level's backing store."""

    def __init__(
        self,
        level: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.level = level
        self.config = config or CircuitBreakerConfig()
        self.state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.probe_successes = 0
        self.opened_at: Optional[float] = None
        self.counters = BreakerCounters()
        self._clock = clock
        self._lock = asyncio.Lock()

    def _transition(self, state: CircuitState, reason: str) -> None:
        previous, self.state = self.state, state
        if state == CircuitState.OPEN:
            self.opened_at = self._clock()
            self.counters.opened += 1
        if state != CircuitState.HALF_OPEN:
            self.probe_successes = 0
        if state == CircuitState.CLOSED:
            self.consecutive_failures = 0
            self.opened_at = None

        log = logger.warning if state == CircuitState.OPEN else logger.info
        log(
            f"Circuit for {self.level} level {previous.value} -> {state.value}: {reason}",
            extra={"level": self.level, "state": state.value, "reason": reason},
        )

    async def _admit(self) -> None:
        async with self._lock:
            self.counters.calls += 1
            if self.state != CircuitState.OPEN:
                return
            if self._clock() - self.opened_at >= self.config.recovery_timeout:
                self._transition(CircuitState.HALF_OPEN, "recovery timeout elapsed")
                return
            self.counters.rejected += 1
        raise CacheCircuitOpenException(level=self.level)

    async def call(
        self, operation: str, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any
    ) -> T:
        """
        Run an awaitable store call under the breaker.

        Raises:
            CacheCircuitOpenException: If the circuit is open
            CacheStorageException: If the call exceeds the operation timeout
        """
        await self._admit()

        try:
            result = await asyncio.wait_for(
                func(*args, **kwargs), timeout=self.config.operation_timeout
            )
        except asyncio.TimeoutError as e:
            self.counters.timed_out += 1
            await self._on_failure("timeout")
            raise CacheStorageException(
                f"{self.level} store '{operation}' timed out after "
                f"{self.config.operation_timeout}s",
                level=self.level,
                operation=operation,
                original_error=e,
            )
        except self.config.failure_exceptions as e:
            await self._on_failure(type(e).__name__)
            raise

        await self._on_success()
        return result

    async def _on_success(self) -> None:
        async with self._lock:
            self.counters.succeeded += 1
            if self.state == CircuitState.HALF_OPEN:
                self.probe_successes += 1
                if self.probe_successes >= self.config.success_threshold:
                    self._transition(CircuitState.CLOSED, "store recovered")
            else:
                self.consecutive_failures = 0

    async def _on_failure(self, failure_type: str) -> None:
        async with self._lock:
            self.counters.failed += 1
            if self.state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN, f"probe failed ({failure_type})")
                return
            self.consecutive_failures += 1
            if (
                self.state == CircuitState.CLOSED
                and self.consecutive_failures >= self.config.failure_threshold
            ):
                self._transition(
                    CircuitState.OPEN,
                    f"{self.consecutive_failures} consecutive failures ({failure_type})",
                )

    def get_status(self) -> Dict[str, Any]:
        return {
            "level": self.level,
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "opened_at": self.opened_at,
            "counters": self.counters.to_dict(),
        }

    async def reset(self) -> None:
        """Force the circuit closed."""
        async with self._lock:
            if self.state != CircuitState.CLOSED:
                self._transition(CircuitState.CLOSED, "manual reset")
