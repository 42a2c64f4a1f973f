import asyncio

import pytest

from sessionguard.core.errors import AppError
from sessionguard.utils.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerManager,
    CircuitOpenError,
    CircuitState,
    with_circuit_breaker,
)


class Upstream:
    """Callable dependency that fails on demand and counts invocations"""

    def __init__(self):
        self.calls = 0
        self.fail = False

    async def __call__(self):
        self.calls += 1
        if self.fail:
            raise ConnectionError("upstream down")
        return "ok"


def make_breaker(monotonic, **kwargs):
    kwargs.setdefault("failure_threshold", 3)
    kwargs.setdefault("reset_timeout", 30.0)
    kwargs.setdefault("half_open_success_threshold", 2)
    return CircuitBreaker("upstream", clock=monotonic, **kwargs)


async def trip(breaker, upstream):
    upstream.fail = True
    for _ in range(breaker.failure_threshold):
        with pytest.raises(ConnectionError):
            await breaker.call(upstream)


@pytest.mark.asyncio
async def test_opens_after_consecutive_failures(monotonic):
    breaker = make_breaker(monotonic)
    upstream = Upstream()

    await trip(breaker, upstream)

    assert breaker.state == CircuitState.OPEN
    assert breaker.failure_count == 3


@pytest.mark.asyncio
async def test_success_resets_failure_count(monotonic):
    breaker = make_breaker(monotonic)
    upstream = Upstream()

    upstream.fail = True
    for _ in range(2):
        with pytest.raises(ConnectionError):
            await breaker.call(upstream)
    upstream.fail = False
    await breaker.call(upstream)
    upstream.fail = True
    for _ in range(2):
        with pytest.raises(ConnectionError):
            await breaker.call(upstream)

    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_open_circuit_fails_fast_without_calling(monotonic):
    breaker = make_breaker(monotonic)
    upstream = Upstream()
    await trip(breaker, upstream)
    calls_before = upstream.calls

    monotonic.advance(29.9)
    for _ in range(5):
        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.call(upstream)

    assert upstream.calls == calls_before
    assert exc_info.value.retry_after == pytest.approx(0.1)
    assert breaker.get_stats()["rejected_calls"] == 5
    # Fast-fails are not failures of the dependency
    assert breaker.get_stats()["failed_calls"] == 3


@pytest.mark.asyncio
async def test_probe_after_reset_timeout_then_close(monotonic):
    breaker = make_breaker(monotonic)
    upstream = Upstream()
    await trip(breaker, upstream)

    monotonic.advance(30)
    upstream.fail = False

    assert await breaker.call(upstream) == "ok"
    assert breaker.state == CircuitState.HALF_OPEN
    assert await breaker.call(upstream) == "ok"
    assert breaker.state == CircuitState.CLOSED
    assert breaker.failure_count == 0


@pytest.mark.asyncio
async def test_half_open_failure_reopens(monotonic):
    breaker = make_breaker(monotonic)
    upstream = Upstream()
    await trip(breaker, upstream)

    monotonic.advance(30)
    with pytest.raises(ConnectionError):
        await breaker.call(upstream)

    assert breaker.state == CircuitState.OPEN
    with pytest.raises(CircuitOpenError):
        await breaker.call(upstream)


@pytest.mark.asyncio
async def test_half_open_caps_concurrent_probes(monotonic):
    breaker = make_breaker(monotonic)
    upstream = Upstream()
    await trip(breaker, upstream)
    monotonic.advance(30)

    gate = asyncio.Event()
    started = 0

    async def slow_probe():
        nonlocal started
        started += 1
        await gate.wait()
        return "probe"

    probes = [asyncio.create_task(breaker.call(slow_probe)) for _ in range(2)]
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    with pytest.raises(CircuitOpenError):
        await breaker.call(slow_probe)
    assert started == 2

    gate.set()
    assert await asyncio.gather(*probes) == ["probe", "probe"]
    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_unexpected_exceptions_are_not_counted(monotonic):
    breaker = make_breaker(monotonic, expected_exception=ConnectionError)

    async def broken():
        raise KeyError("bug")

    for _ in range(5):
        with pytest.raises(KeyError):
            await breaker.call(broken)

    assert breaker.state == CircuitState.CLOSED
    assert breaker.failure_count == 0


@pytest.mark.asyncio
async def test_unexpected_exception_frees_probe_slot(monotonic):
    breaker = make_breaker(monotonic, expected_exception=ConnectionError)
    upstream = Upstream()
    await trip(breaker, upstream)
    monotonic.advance(30)

    async def broken():
        raise KeyError("bug")

    for _ in range(3):
        with pytest.raises(KeyError):
            await breaker.call(broken)

    upstream.fail = False
    assert await breaker.call(upstream) == "ok"
    assert breaker.state == CircuitState.HALF_OPEN


@pytest.mark.asyncio
async def test_state_change_hook(monotonic):
    transitions = []
    breaker = make_breaker(
        monotonic,
        on_state_change=lambda name, old, new: transitions.append((name, old, new)),
    )
    upstream = Upstream()
    await trip(breaker, upstream)
    monotonic.advance(30)
    upstream.fail = False
    await breaker.call(upstream)
    await breaker.call(upstream)

    assert transitions == [
        ("upstream", CircuitState.CLOSED, CircuitState.OPEN),
        ("upstream", CircuitState.OPEN, CircuitState.HALF_OPEN),
        ("upstream", CircuitState.HALF_OPEN, CircuitState.CLOSED),
    ]


@pytest.mark.asyncio
async def test_sync_callables_are_supported(monotonic):
    breaker = make_breaker(monotonic)

    assert await breaker.call(lambda x: x * 2, 21) == 42
    assert await breaker.execute(lambda: "done") == "done"


@pytest.mark.asyncio
async def test_reset_closes_circuit(monotonic):
    breaker = make_breaker(monotonic)
    upstream = Upstream()
    await trip(breaker, upstream)

    breaker.reset()

    assert breaker.state == CircuitState.CLOSED
    upstream.fail = False
    assert await breaker.call(upstream) == "ok"


def test_circuit_open_error_is_service_unavailable():
    exc = CircuitOpenError("upstream", retry_after=1.5)

    assert isinstance(exc, AppError)
    assert exc.http_status == 503
    assert exc.to_dict()["details"] == {"circuit": "upstream", "retry_after": 1.5}


def test_manager_returns_same_breaker():
    manager = CircuitBreakerManager()

    first = manager.get_or_create("svc", failure_threshold=2)
    second = manager.get_or_create("svc", failure_threshold=9)

    assert first is second
    assert first.failure_threshold == 2
    assert set(manager.get_all_stats()) == {"svc"}


@pytest.mark.asyncio
async def test_decorator_wraps_function():
    manager = CircuitBreakerManager()
    calls = 0

    @with_circuit_breaker("decorated", failure_threshold=1, manager=manager)
    async def flaky():
        nonlocal calls
        calls += 1
        raise ConnectionError("nope")

    with pytest.raises(ConnectionError):
        await flaky()
    with pytest.raises(CircuitOpenError):
        await flaky()

    assert calls == 1
    assert flaky.circuit_breaker is manager.get("decorated")


@pytest.mark.asyncio
async def test_failure_admitted_before_a_full_cycle_is_not_counted(monotonic):
    breaker = make_breaker(monotonic)
    upstream = Upstream()
    started = asyncio.Event()
    release = asyncio.Event()

    async def slow_failure():
        started.set()
        await release.wait()
        raise ConnectionError("late")

    slow = asyncio.create_task(breaker.call(slow_failure))
    await started.wait()

    await trip(breaker, upstream)
    monotonic.advance(30)
    upstream.fail = False
    await breaker.call(upstream)
    await breaker.call(upstream)
    assert breaker.state == CircuitState.CLOSED

    release.set()
    with pytest.raises(ConnectionError):
        await slow

    assert breaker.state == CircuitState.CLOSED
    assert breaker.failure_count == 0
