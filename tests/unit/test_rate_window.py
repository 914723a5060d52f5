"""Unit tests for the per-key hourly rate window.

Time is driven by a fake clock: the injected sleep advances the clock by the
requested amount and records each wait, so no test ever sleeps for real.
"""

from __future__ import annotations

import asyncio

import pytest

from marginbot.orchestrator.rate_window import DEFAULT_WINDOW_S, RateWindowGate


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def gate(clock: FakeClock) -> RateWindowGate:
    return RateWindowGate(clock=clock, sleep=clock.sleep)


class TestAcquire:
    """acquire() opens a window per key and waits out an open one."""

    @pytest.mark.asyncio
    async def test_first_acquire_does_not_wait(
        self, gate: RateWindowGate, clock: FakeClock
    ) -> None:
        assert await gate.acquire("tenant:acme") == 0.0
        assert clock.sleeps == []
        assert gate.window_started_at("tenant:acme") == 1000.0

    @pytest.mark.asyncio
    async def test_second_acquire_waits_remaining_window(
        self, gate: RateWindowGate, clock: FakeClock
    ) -> None:
        await gate.acquire("tenant:acme")
        clock.now += 600.0

        waited = await gate.acquire("tenant:acme")

        assert waited == pytest.approx(3000.0)
        assert clock.sleeps == [pytest.approx(3000.0)]
        # The new window starts after the wait, never overlapping the first.
        assert gate.window_started_at("tenant:acme") == pytest.approx(4600.0)

    @pytest.mark.asyncio
    async def test_elapsed_window_does_not_wait(
        self, gate: RateWindowGate, clock: FakeClock
    ) -> None:
        await gate.acquire("tenant:acme")
        clock.now += DEFAULT_WINDOW_S

        assert await gate.acquire("tenant:acme") == 0.0
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_distinct_keys_are_independent(
        self, gate: RateWindowGate, clock: FakeClock
    ) -> None:
        await gate.acquire("tenant:acme")
        assert await gate.acquire("tenant:globex") == 0.0
        assert await gate.acquire("credential:7") == 0.0
        assert clock.sleeps == []
        assert len(gate) == 3

    @pytest.mark.asyncio
    async def test_other_key_proceeds_while_one_waits(self) -> None:
        release = asyncio.Event()
        waiting = asyncio.Event()

        async def _blocking_sleep(seconds: float) -> None:
            waiting.set()
            await release.wait()

        gate = RateWindowGate(clock=lambda: 1000.0, sleep=_blocking_sleep)
        await gate.acquire("tenant:acme")

        blocked = asyncio.create_task(gate.acquire("tenant:acme"))
        await waiting.wait()

        assert await asyncio.wait_for(gate.acquire("tenant:globex"), timeout=1.0) == 0.0
        assert not blocked.done()

        release.set()
        assert await blocked == pytest.approx(3600.0)

    @pytest.mark.asyncio
    async def test_concurrent_same_key_is_serialised(
        self, gate: RateWindowGate, clock: FakeClock
    ) -> None:
        waits = await asyncio.gather(
            gate.acquire("tenant:acme"),
            gate.acquire("tenant:acme"),
            gate.acquire("tenant:acme"),
        )

        assert sorted(waits) == [0.0, pytest.approx(3600.0), pytest.approx(3600.0)]
        assert clock.now == pytest.approx(1000.0 + 7200.0)

    @pytest.mark.asyncio
    async def test_zero_window_never_waits(self, clock: FakeClock) -> None:
        gate = RateWindowGate(0.0, clock=clock, sleep=clock.sleep)
        await gate.acquire("tenant:acme")
        assert await gate.acquire("tenant:acme") == 0.0
        assert clock.sleeps == []

    def test_negative_window_rejected(self) -> None:
        with pytest.raises(ValueError, match="window_s"):
            RateWindowGate(-1.0)

    def test_default_window_is_one_hour(self) -> None:
        assert RateWindowGate().window_s == 3600.0


class TestPrune:
    """prune() forgets only windows that no longer impose a wait."""

    @pytest.mark.asyncio
    async def test_prunes_elapsed_windows(
        self, gate: RateWindowGate, clock: FakeClock
    ) -> None:
        await gate.acquire("tenant:old")
        clock.now += 3000.0
        await gate.acquire("tenant:new")
        clock.now += 700.0

        assert gate.prune() == 1
        assert gate.window_started_at("tenant:old") is None
        assert gate.window_started_at("tenant:new") is not None

    @pytest.mark.asyncio
    async def test_open_window_is_kept(self, gate: RateWindowGate) -> None:
        await gate.acquire("tenant:acme")
        assert gate.prune() == 0
        assert len(gate) == 1

    @pytest.mark.asyncio
    async def test_pruned_key_behaves_like_new(
        self, gate: RateWindowGate, clock: FakeClock
    ) -> None:
        await gate.acquire("tenant:acme")
        clock.now += 4000.0
        gate.prune()

        assert await gate.acquire("tenant:acme") == 0.0

    def test_empty_gate(self, gate: RateWindowGate) -> None:
        assert gate.prune() == 0
