"""Circuit breaker for calls to flaky dependencies.

A breaker counts consecutive failures while CLOSED. At ``failure_threshold`` it
opens and rejects calls without invoking them until ``reset_timeout`` seconds
have passed. The next call then moves it to HALF_OPEN, where at most
``half_open_success_threshold`` probes run concurrently. Any probe failure
reopens the circuit; that many probe successes close it again.

State transitions and probe admission happen under an ``asyncio.Lock`` so one
breaker can be shared by many concurrent callers.
"""

import asyncio
import functools
import inspect
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, Union

import structlog

from sessionguard.core.config import CircuitBreakerSettings
from sessionguard.core.errors import ServiceUnavailableError

logger = structlog.get_logger(__name__)

StateChangeHook = Callable[[str, "CircuitState", "CircuitState"], None]
ExceptionTypes = Union[Type[BaseException], Tuple[Type[BaseException], ...]]


class CircuitState(Enum):
    """Breaker lifecycle."""
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Failing, reject calls
    HALF_OPEN = "half_open"  # Probing recovery


class CircuitOpenError(ServiceUnavailableError):
    """Raised when the breaker rejects a call without attempting it."""

    default_message = "Circuit breaker is open"

    def __init__(self, name: str, retry_after: Optional[float] = None):
        self.name = name
        self.retry_after = retry_after
        details: Dict[str, Any] = {"circuit": name}
        if retry_after is not None:
            details["retry_after"] = round(retry_after, 3)
        super().__init__(f"Circuit breaker '{name}' is open", details)


@dataclass
class CircuitStats:
    """Counters kept for monitoring."""
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    consecutive_failures: int = 0
    last_failure_time: Optional[float] = None
    last_success_time: Optional[float] = None
    state_changes: List[tuple] = field(default_factory=list)

    @property
    def failure_rate(self) -> float:
        """Failure rate percentage over attempted calls."""
        if self.total_calls == 0:
            return 0.0
        return (self.failed_calls / self.total_calls) * 100


@dataclass(frozen=True)
class _Admission:
    probe: bool
    generation: int


class CircuitBreaker:
    """
    Fail fast while a dependency is down, then probe it back to health.

    Args:
        name: Identifier for this circuit breaker
        failure_threshold: Consecutive failures before opening
        reset_timeout: Seconds to stay OPEN before allowing a probe
        half_open_success_threshold: Probe successes needed to close, and the
            cap on concurrent probes while HALF_OPEN
        expected_exception: Exception type(s) counted as failures; anything
            else propagates without touching the counters
        on_state_change: Called with ``(name, old_state, new_state)``
        clock: Monotonic seconds source
    """

    def __init__(
        self,
        name: str,
        failure_threshold: Optional[int] = None,
        reset_timeout: Optional[float] = None,
        half_open_success_threshold: Optional[int] = None,
        expected_exception: ExceptionTypes = Exception,
        on_state_change: Optional[StateChangeHook] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        defaults = CircuitBreakerSettings()
        self.name = name
        self.failure_threshold = failure_threshold or defaults.failure_threshold
        self.reset_timeout = (
            reset_timeout if reset_timeout is not None else defaults.reset_timeout
        )
        self.half_open_success_threshold = (
            half_open_success_threshold or defaults.half_open_success_threshold
        )
        self.expected_exception = expected_exception
        self.on_state_change = on_state_change
        self._clock = clock

        self.state = CircuitState.CLOSED
        self.stats = CircuitStats()
        self._opened_at: Optional[float] = None
        self._half_open_in_flight = 0
        self._half_open_successes = 0
        # Bumped on every transition so late results from an older phase are ignored
        self._generation = 0
        self._lock = asyncio.Lock()

    @property
    def failure_count(self) -> int:
        return self.stats.consecutive_failures

    def _change_state(self, new_state: CircuitState) -> None:
        """Change circuit state and log the transition. Caller holds the lock."""
        old_state = self.state
        if old_state == new_state:
            return
        self.state = new_state
        self._generation += 1
        now = self._clock()
        self.stats.state_changes.append((now, old_state, new_state))

        if new_state == CircuitState.OPEN:
            self._opened_at = now
        elif new_state == CircuitState.HALF_OPEN:
            self._half_open_in_flight = 0
            self._half_open_successes = 0
        else:
            self._opened_at = None
            self._half_open_in_flight = 0
            self._half_open_successes = 0
            self.stats.consecutive_failures = 0

        logger.info(
            "circuit_breaker.state_changed",
            circuit=self.name,
            old_state=old_state.value,
            new_state=new_state.value,
        )
        if self.on_state_change is not None:
            try:
                self.on_state_change(self.name, old_state, new_state)
            except Exception as exc:
                logger.error(
                    "circuit_breaker.state_hook_failed", circuit=self.name, error=str(exc)
                )

    async def _admit(self) -> _Admission:
        async with self._lock:
            if self.state == CircuitState.OPEN:
                elapsed = self._clock() - (self._opened_at or 0.0)
                if elapsed < self.reset_timeout:
                    self.stats.rejected_calls += 1
                    raise CircuitOpenError(self.name, self.reset_timeout - elapsed)
                self._change_state(CircuitState.HALF_OPEN)

            if self.state == CircuitState.HALF_OPEN:
                if self._half_open_in_flight >= self.half_open_success_threshold:
                    self.stats.rejected_calls += 1
                    raise CircuitOpenError(self.name)
                self._half_open_in_flight += 1
                return _Admission(probe=True, generation=self._generation)

            return _Admission(probe=False, generation=self._generation)

    def _is_current_probe(self, admission: _Admission) -> bool:
        return (
            admission.probe
            and admission.generation == self._generation
            and self.state == CircuitState.HALF_OPEN
        )

    def _is_current_closed(self, admission: _Admission) -> bool:
        # Results from calls admitted before the last transition do not count
        return (
            not admission.probe
            and admission.generation == self._generation
            and self.state == CircuitState.CLOSED
        )

    async def _record_success(self, admission: _Admission) -> None:
        async with self._lock:
            self.stats.total_calls += 1
            self.stats.successful_calls += 1
            self.stats.last_success_time = self._clock()

            if self._is_current_probe(admission):
                self._half_open_in_flight -= 1
                self._half_open_successes += 1
                if self._half_open_successes >= self.half_open_success_threshold:
                    self._change_state(CircuitState.CLOSED)
            elif self._is_current_closed(admission):
                self.stats.consecutive_failures = 0

    async def _record_failure(self, admission: _Admission) -> None:
        async with self._lock:
            self.stats.total_calls += 1
            self.stats.failed_calls += 1
            self.stats.last_failure_time = self._clock()

            if self._is_current_probe(admission):
                self._change_state(CircuitState.OPEN)
            elif self._is_current_closed(admission):
                self.stats.consecutive_failures += 1
                if self.stats.consecutive_failures >= self.failure_threshold:
                    self._change_state(CircuitState.OPEN)

    async def _release(self, admission: _Admission) -> None:
        async with self._lock:
            if self._is_current_probe(admission):
                self._half_open_in_flight -= 1

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        """Invoke ``func(*args, **kwargs)`` (sync or async) under the breaker.

        Raises ``CircuitOpenError`` without calling ``func`` while OPEN, or
        when the HALF_OPEN probe slots are taken. Errors from ``func`` itself
        propagate unchanged.
        """
        admission = await self._admit()
        try:
            result = func(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
        except self.expected_exception:
            await self._record_failure(admission)
            raise
        except BaseException:
            # Unexpected errors and cancellation free the probe slot only
            if admission.probe:
                await asyncio.shield(self._release(admission))
            raise

        await self._record_success(admission)
        return result

    async def execute(self, func: Callable[[], Any]) -> Any:
        return await self.call(func)

    def get_stats(self) -> Dict[str, Any]:
        """Counters and current phase, for health endpoints."""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.stats.consecutive_failures,
            "total_calls": self.stats.total_calls,
            "successful_calls": self.stats.successful_calls,
            "failed_calls": self.stats.failed_calls,
            "rejected_calls": self.stats.rejected_calls,
            "failure_rate": self.stats.failure_rate,
            "last_failure_time": self.stats.last_failure_time,
            "last_success_time": self.stats.last_success_time,
            "half_open_in_flight": self._half_open_in_flight,
            "half_open_successes": self._half_open_successes,
        }

    def reset(self) -> None:
        """Force the breaker CLOSED and forget the failure streak."""
        self._change_state(CircuitState.CLOSED)
        self.stats.consecutive_failures = 0
        self._half_open_in_flight = 0
        self._half_open_successes = 0


class CircuitBreakerManager:
    """Registry of named breakers, one per guarded dependency."""

    def __init__(self):
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get_or_create(self, name: str, **kwargs) -> CircuitBreaker:
        """Return the breaker registered under ``name``; kwargs only apply on creation."""
        if name not in self._breakers:
            self._breakers[name] = CircuitBreaker(name=name, **kwargs)
        return self._breakers[name]

    def get(self, name: str) -> Optional[CircuitBreaker]:
        return self._breakers.get(name)

    def remove(self, name: str) -> None:
        self._breakers.pop(name, None)

    def get_all_stats(self) -> Dict[str, Any]:
        """Snapshot of every registered breaker, keyed by name."""
        return {
            name: breaker.get_stats()
            for name, breaker in self._breakers.items()
        }

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()


# Process-wide default registry
circuit_manager = CircuitBreakerManager()


def with_circuit_breaker(
    name: str,
    failure_threshold: Optional[int] = None,
    reset_timeout: Optional[float] = None,
    expected_exception: ExceptionTypes = Exception,
    manager: Optional[CircuitBreakerManager] = None,
):
    """
    Route every call of the decorated function through the named breaker.

    Usage:
        @with_circuit_breaker("user_directory", failure_threshold=3)
        async def load_user():
            ...
    """
    def decorator(func):
        breaker = (manager or circuit_manager).get_or_create(
            name,
            failure_threshold=failure_threshold,
            reset_timeout=reset_timeout,
            expected_exception=expected_exception,
        )

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            return await breaker.call(func, *args, **kwargs)

        # Exposed so callers can inspect or reset it
        wrapper.circuit_breaker = breaker

        return wrapper
    return decorator
