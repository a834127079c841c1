"""
Unit Tests — CircuitBreaker
════════════════════════════
Coverage targets:
  ✅ CLOSED → OPEN after exactly failure_threshold consecutive failures
  ✅ OPEN rejects immediately without invoking the callable
  ✅ Rejections are not counted as failures
  ✅ Lazy OPEN → HALF_OPEN after reset_timeout, exactly one trial call
  ✅ Trial success closes and resets the counter; trial failure re-opens
  ✅ Success while CLOSED resets the consecutive failure counter
  ✅ "opened" warning logged once per CLOSED → OPEN transition
  ✅ Cancelled trial frees the HALF_OPEN slot
  ✅ Registry returns one shared instance per name
"""

from __future__ import annotations

import asyncio
import logging

import pytest

from docproc.core.errors import CircuitOpenError
from docproc.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitState,
    all_circuit_breakers,
    get_circuit_breaker,
)


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

class Boom(Exception):
    pass


async def _fail():
    raise Boom("engine down")


async def _ok():
    return "ok"


async def _trip(breaker: CircuitBreaker, times: int) -> None:
    for _ in range(times):
        with pytest.raises(Boom):
            await breaker.call(_fail)


# ─────────────────────────────────────────────────────────────────────────────
# CLOSED / OPEN
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.resilience
class TestClosedToOpen:

    async def test_starts_closed(self, breaker):
        assert breaker.state is CircuitState.CLOSED
        assert breaker.failure_count == 0

    async def test_result_passes_through(self, breaker):
        assert await breaker.call(_ok) == "ok"

    async def test_stays_closed_below_threshold(self, breaker):
        await _trip(breaker, 2)
        assert breaker.state is CircuitState.CLOSED
        assert breaker.failure_count == 2

    async def test_opens_at_exact_threshold(self, breaker):
        await _trip(breaker, 3)
        assert breaker.state is CircuitState.OPEN

    async def test_open_rejects_without_calling(self, breaker):
        await _trip(breaker, 3)
        called = False

        async def _spy():
            nonlocal called
            called = True

        with pytest.raises(CircuitOpenError):
            await breaker.call(_spy)
        assert called is False

    async def test_rejections_are_not_counted(self, breaker):
        await _trip(breaker, 3)
        for _ in range(5):
            with pytest.raises(CircuitOpenError):
                await breaker.call(_ok)
        assert breaker.failure_count == 3

    async def test_success_resets_consecutive_counter(self, breaker):
        await _trip(breaker, 2)
        await breaker.call(_ok)
        assert breaker.failure_count == 0

        await _trip(breaker, 2)
        assert breaker.state is CircuitState.CLOSED

    async def test_open_warning_logged_once(self, breaker, caplog):
        caplog.set_level(logging.DEBUG, logger="docproc.resilience.circuit_breaker")

        await _trip(breaker, 3)
        for _ in range(4):
            with pytest.raises(CircuitOpenError):
                await breaker.call(_ok)

        opened = [r for r in caplog.records if r.getMessage().startswith("Circuit breaker opened")]
        assert len(opened) == 1
        assert opened[0].levelno == logging.WARNING

    def test_threshold_must_be_positive(self):
        with pytest.raises(ValueError):
            CircuitBreaker("bad", failure_threshold=0)


# ─────────────────────────────────────────────────────────────────────────────
# HALF_OPEN
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.resilience
class TestHalfOpen:

    async def test_still_open_before_timeout(self, breaker, fake_clock):
        await _trip(breaker, 3)
        fake_clock.advance(29.9)
        with pytest.raises(CircuitOpenError):
            await breaker.call(_ok)

    async def test_transition_is_lazy(self, breaker, fake_clock):
        await _trip(breaker, 3)
        fake_clock.advance(30)
        assert breaker.state is CircuitState.HALF_OPEN

    async def test_trial_success_closes_and_resets(self, breaker, fake_clock):
        await _trip(breaker, 3)
        fake_clock.advance(30)

        assert await breaker.call(_ok) == "ok"
        assert breaker.state is CircuitState.CLOSED
        assert breaker.failure_count == 0

    async def test_trial_failure_reopens_with_fresh_timer(self, breaker, fake_clock):
        await _trip(breaker, 3)
        fake_clock.advance(30)

        with pytest.raises(Boom):
            await breaker.call(_fail)
        assert breaker.state is CircuitState.OPEN

        fake_clock.advance(29)
        with pytest.raises(CircuitOpenError):
            await breaker.call(_ok)

        fake_clock.advance(1)
        assert breaker.state is CircuitState.HALF_OPEN

    async def test_exactly_one_trial_in_flight(self, breaker, fake_clock):
        await _trip(breaker, 3)
        fake_clock.advance(30)

        release = asyncio.Event()
        entered = asyncio.Event()

        async def _slow_trial():
            entered.set()
            await release.wait()
            return "trial"

        trial = asyncio.create_task(breaker.call(_slow_trial))
        await entered.wait()

        with pytest.raises(CircuitOpenError):
            await breaker.call(_ok)

        release.set()
        assert await trial == "trial"
        assert breaker.state is CircuitState.CLOSED

    async def test_cancelled_trial_frees_slot(self, breaker, fake_clock):
        await _trip(breaker, 3)
        fake_clock.advance(30)

        async def _hang():
            await asyncio.sleep(3600)

        trial = asyncio.create_task(breaker.call(_hang))
        await asyncio.sleep(0)
        trial.cancel()
        with pytest.raises(asyncio.CancelledError):
            await trial

        assert breaker.state is CircuitState.HALF_OPEN
        assert await breaker.call(_ok) == "ok"


# ─────────────────────────────────────────────────────────────────────────────
# Inspection & registry
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.resilience
class TestInspection:

    async def test_snapshot_reflects_state(self, breaker):
        await _trip(breaker, 3)
        snap = breaker.snapshot()
        assert snap.state is CircuitState.OPEN
        assert snap.failure_count == 3
        assert snap.failure_threshold == 3
        assert snap.reset_timeout == 30.0

    async def test_manual_reset(self, breaker):
        await _trip(breaker, 3)
        breaker.reset()
        assert breaker.state is CircuitState.CLOSED
        assert breaker.failure_count == 0
        assert await breaker.call(_ok) == "ok"

    def test_registry_returns_shared_instance(self):
        first  = get_circuit_breaker("registry-test", failure_threshold=2, reset_timeout=5)
        second = get_circuit_breaker("registry-test")
        assert first is second
        assert first.failure_threshold == 2
        assert first in all_circuit_breakers()

    def test_registry_defaults_from_settings(self):
        from docproc.core.config import settings

        cb = get_circuit_breaker("registry-defaults-test")
        assert cb.failure_threshold == settings.circuit_failure_threshold
        assert cb.reset_timeout == settings.circuit_reset_timeout
