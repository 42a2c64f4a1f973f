"""
Retry with exponential backoff, built on tenacity.

``RetryPolicy.execute`` runs a callable up to ``max_retries + 1`` times. The
delay before retry *n* is ``min(base_delay * 2**(n-1), max_delay)`` spread by
``±jitter`` of itself. A ``retryable`` predicate stops early on errors that
will not go away; the last error always propagates unchanged.

Compose the policy outside a circuit breaker and pass ``not_circuit_open`` as
the predicate so a fast-fail is not retried.
"""

import asyncio
import functools
import inspect
import random
from typing import Any, Awaitable, Callable, Optional

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
)

from sessionguard.core.config import RetrySettings
from sessionguard.utils.circuit_breaker import CircuitOpenError

logger = structlog.get_logger(__name__)

RetryHook = Callable[[int, BaseException, float], None]


def calculate_backoff(
    attempt: int,
    base_delay: float,
    max_delay: float,
    jitter: float = 0.0,
) -> float:
    """Delay before retry number ``attempt`` (1-based)."""
    delay = min(base_delay * (2 ** max(0, attempt - 1)), max_delay)
    if jitter > 0:
        delay += random.uniform(-jitter, jitter) * delay
    return max(0.0, delay)


def not_circuit_open(exc: BaseException) -> bool:
    """Retry predicate that refuses to retry a breaker fast-fail."""
    return not isinstance(exc, CircuitOpenError)


class RetryPolicy:
    def __init__(
        self,
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        jitter: Optional[float] = None,
        retryable: Optional[Callable[[BaseException], bool]] = None,
        on_retry: Optional[RetryHook] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        defaults = RetrySettings()
        self.max_retries = max_retries if max_retries is not None else defaults.max_retries
        self.base_delay = base_delay if base_delay is not None else defaults.base_delay
        self.max_delay = max_delay if max_delay is not None else defaults.max_delay
        self.jitter = jitter if jitter is not None else defaults.jitter
        self.retryable = retryable
        self.on_retry = on_retry
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: RetrySettings, **kwargs) -> "RetryPolicy":
        return cls(
            max_retries=settings.max_retries,
            base_delay=settings.base_delay,
            max_delay=settings.max_delay,
            jitter=settings.jitter,
            **kwargs,
        )

    def _should_retry(self, exc: BaseException) -> bool:
        # Cancellation and other BaseExceptions always propagate
        if not isinstance(exc, Exception):
            return False
        return self.retryable is None or bool(self.retryable(exc))

    def _wait(self, retry_state: RetryCallState) -> float:
        return calculate_backoff(
            retry_state.attempt_number, self.base_delay, self.max_delay, self.jitter
        )

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.info(
            "retry.scheduled",
            attempt=retry_state.attempt_number,
            max_attempts=self.max_retries + 1,
            delay=round(delay, 4),
            error=str(exc),
        )
        if self.on_retry is not None and exc is not None:
            try:
                self.on_retry(retry_state.attempt_number, exc, delay)
            except Exception as hook_exc:
                logger.error("retry.hook_failed", error=str(hook_exc))

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=self._wait,
            retry=retry_if_exception(self._should_retry),
            before_sleep=self._before_sleep,
            sleep=self._sleep,
            reraise=True,
        )

    async def execute(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        """Call ``func`` (sync or async) until it succeeds or retries run out."""

        async def attempt() -> Any:
            result = func(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
            return result

        try:
            return await self._retrying()(attempt)
        except Exception as exc:
            logger.debug(
                "retry.gave_up",
                function=getattr(func, "__name__", "unknown"),
                error=str(exc),
            )
            raise


def with_retry(policy: Optional[RetryPolicy] = None, **kwargs):
    """
    Decorator form of ``RetryPolicy.execute``.

    Usage:
        @with_retry(max_retries=2, retryable=not_circuit_open)
        async def fetch():
            ...
    """
    policy = policy or RetryPolicy(**kwargs)

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kw):
            return await policy.execute(func, *args, **kw)

        wrapper.retry_policy = policy
        return wrapper

    return decorator
