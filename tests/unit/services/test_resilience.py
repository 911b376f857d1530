"""Tests for ResilienceController."""

import asyncio
from datetime import timedelta

import pytest

from cmsfacade.services.circuit_breaker import CircuitBreakerConfig, CircuitState
from cmsfacade.services.errors import (
    CircuitOpenError,
    PermanentRequestError,
    TransientUpstreamError,
    UpstreamTimeoutError,
    is_unavailable,
)
from cmsfacade.services.resilience import ResilienceController
from cmsfacade.services.retry import RetryPolicy

FAST = RetryPolicy(max_attempts=3, base_delay=0.01, max_delay=0.05, jitter=0, timeout=1.0)


@pytest.fixture
def controller(clock, fake_sleep) -> ResilienceController:
    return ResilienceController(
        breaker_config=CircuitBreakerConfig(
            failure_threshold=2, reset_timeout=timedelta(seconds=30)
        ),
        clock=clock,
        sleep=fake_sleep,
    )


class Counter:
    def __init__(self, error: Exception | None = None, result: str = "ok"):
        self.error = error
        self.result = result
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.result


class TestExecute:
    """Tests for execute()."""

    @pytest.mark.asyncio
    async def test_success_passes_result_through(self, controller) -> None:
        operation = Counter(result="rows")

        assert await controller.execute("baserow:stations", operation, FAST) == "rows"
        assert operation.calls == 1

    @pytest.mark.asyncio
    async def test_breaker_counts_one_failure_per_call(self, controller) -> None:
        operation = Counter(TransientUpstreamError("HTTP 502", status_code=502))

        with pytest.raises(TransientUpstreamError):
            await controller.execute("baserow:stations", operation, FAST)

        assert operation.calls == 3
        assert controller.breakers.get("baserow:stations").failure_count == 1

    @pytest.mark.asyncio
    async def test_open_breaker_rejects_without_calling(self, controller, clock) -> None:
        failing = Counter(TransientUpstreamError("HTTP 502", status_code=502))
        for _ in range(2):
            with pytest.raises(TransientUpstreamError):
                await controller.execute("baserow:stations", failing, FAST)

        probe = Counter()
        clock.advance(10)
        with pytest.raises(CircuitOpenError) as exc_info:
            await controller.execute("baserow:stations", probe, FAST)

        assert probe.calls == 0
        assert exc_info.value.reset_after_seconds == pytest.approx(20.0)

    @pytest.mark.asyncio
    async def test_half_open_probe_success_closes(self, controller, clock) -> None:
        cb = controller.breakers.get("baserow:stations")
        cb.record_failure()
        cb.record_failure()
        clock.advance(30)

        assert await controller.execute("baserow:stations", Counter(), FAST) == "ok"
        assert cb.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_straggler_failure_does_not_override_probe(self, controller, clock) -> None:
        once = RetryPolicy(max_attempts=1, base_delay=0, max_delay=0, jitter=0, timeout=5.0)
        straggler_started = asyncio.Event()
        release_straggler = asyncio.Event()
        release_probe = asyncio.Event()

        async def straggler() -> str:
            straggler_started.set()
            await release_straggler.wait()
            raise TransientUpstreamError("HTTP 502", status_code=502)

        async def probe() -> str:
            await release_probe.wait()
            return "ok"

        held = asyncio.create_task(controller.execute("baserow:stations", straggler, once))
        await straggler_started.wait()

        failing = Counter(TransientUpstreamError("HTTP 502", status_code=502))
        for _ in range(2):
            with pytest.raises(TransientUpstreamError):
                await controller.execute("baserow:stations", failing, once)
        cb = controller.breakers.get("baserow:stations")
        assert cb.state == CircuitState.OPEN

        clock.advance(31)
        probing = asyncio.create_task(controller.execute("baserow:stations", probe, once))
        await asyncio.sleep(0)

        release_straggler.set()
        with pytest.raises(TransientUpstreamError):
            await held
        assert cb.state == CircuitState.HALF_OPEN

        release_probe.set()
        assert await probing == "ok"
        assert cb.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_permanent_errors_do_not_trip_breaker(self, controller) -> None:
        operation = Counter(PermanentRequestError("bad filter", status_code=400))

        for _ in range(5):
            with pytest.raises(PermanentRequestError):
                await controller.execute("baserow:stations", operation, FAST)

        assert operation.calls == 5
        cb = controller.breakers.get("baserow:stations")
        assert cb.state == CircuitState.CLOSED
        assert cb.failure_count == 0

    @pytest.mark.asyncio
    async def test_breakers_are_per_identity(self, controller) -> None:
        failing = Counter(TransientUpstreamError("HTTP 502", status_code=502))
        for _ in range(2):
            with pytest.raises(TransientUpstreamError):
                await controller.execute("baserow:stations", failing, FAST)

        assert await controller.execute("baserow:routes", Counter(), FAST) == "ok"

    @pytest.mark.asyncio
    async def test_breaker_disabled(self, clock, fake_sleep) -> None:
        controller = ResilienceController(
            breaker_config=CircuitBreakerConfig(failure_threshold=1),
            circuit_breaker_enabled=False,
            clock=clock,
            sleep=fake_sleep,
        )
        failing = Counter(TransientUpstreamError("HTTP 502", status_code=502))

        for _ in range(3):
            with pytest.raises(TransientUpstreamError):
                await controller.execute("baserow:stations", failing, FAST)

        assert failing.calls == 9
        assert controller.breakers.get_all_status() == {}


class TestTimeout:
    """Tests for the per-attempt deadline."""

    @staticmethod
    async def hang() -> None:
        await asyncio.Event().wait()

    @pytest.mark.asyncio
    async def test_timeout_is_transient_and_retried(self, controller) -> None:
        calls = 0

        async def operation() -> None:
            nonlocal calls
            calls += 1
            await self.hang()

        policy = RetryPolicy(max_attempts=2, base_delay=0, max_delay=0, jitter=0, timeout=0.01)

        with pytest.raises(UpstreamTimeoutError):
            await controller.execute("baserow:stations", operation, policy)

        assert calls == 2
        assert controller.breakers.get("baserow:stations").failure_count == 1

    @pytest.mark.asyncio
    async def test_timeout_not_retried_for_writes(self, controller) -> None:
        calls = 0

        async def operation() -> None:
            nonlocal calls
            calls += 1
            await self.hang()

        policy = RetryPolicy(
            max_attempts=3, base_delay=0, max_delay=0, jitter=0, timeout=0.01,
            retry_on_timeout=False,
        )

        with pytest.raises(UpstreamTimeoutError):
            await controller.execute("baserow:stations", operation, policy)

        assert calls == 1


class TestWithFallback:
    """Tests for with_fallback()."""

    @pytest.mark.asyncio
    async def test_primary_result_wins(self, controller) -> None:
        result = await controller.with_fallback(Counter(result="primary"), lambda: "fallback")

        assert result == "primary"

    @pytest.mark.asyncio
    async def test_fallback_on_error_and_observer_called(self, controller) -> None:
        seen: list[BaseException] = []
        error = TransientUpstreamError("HTTP 503", status_code=503)

        result = await controller.with_fallback(
            Counter(error), lambda: "fallback", on_error=seen.append
        )

        assert result == "fallback"
        assert seen == [error]

    @pytest.mark.asyncio
    async def test_async_fallback(self, controller) -> None:
        async def fallback() -> str:
            return "from-async"

        result = await controller.with_fallback(Counter(RuntimeError("x")), fallback)

        assert result == "from-async"

    @pytest.mark.asyncio
    async def test_declined_fallback_reraises_after_observer(self, controller) -> None:
        seen: list[BaseException] = []

        with pytest.raises(PermanentRequestError):
            await controller.with_fallback(
                Counter(PermanentRequestError("bad")),
                lambda: "fallback",
                on_error=seen.append,
                should_fallback=is_unavailable,
            )

        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_fallback_error_propagates(self, controller) -> None:
        def fallback() -> str:
            raise ValueError("fallback broke")

        with pytest.raises(ValueError):
            await controller.with_fallback(Counter(RuntimeError("x")), fallback)
