"""
Circuit Breaker — guards calls to an unreliable dependency (the OCR engine)

States:
  CLOSED     normal operation; consecutive failures are counted
  OPEN       failure_threshold consecutive failures reached; every call is
             rejected immediately with CircuitOpenError
  HALF_OPEN  reset_timeout has elapsed since opening; exactly one trial call
             is let through. Success closes the circuit, failure re-opens it.

The OPEN → HALF_OPEN transition is lazy: it happens on the first call
attempt after the timeout, not on a timer.

Concurrency:
  State lives behind a threading.Lock, held only for bookkeeping and never
  across the awaited call. That keeps one instance safe to share between
  FastAPI request handlers and Celery tasks running on other event loops.

Scope:
  State is per process. One instance per logical endpoint is obtained via
  get_circuit_breaker(name); failure counting only means something in aggregate.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, TypeVar

from docproc.core.errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED    = "closed"
    OPEN      = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitSnapshot:
    """Point-in-time view used by /ready and logs."""
    name:               str
    state:              CircuitState
    failure_count:      int
    failure_threshold:  int
    reset_timeout:      float
    last_transition_at: float


class CircuitBreaker:
    """
    Usage::

        breaker = CircuitBreaker("ocr-engine", failure_threshold=5, reset_timeout=60)
        result = await breaker.call(lambda: client.post(...))

    The callable must return an awaitable; anything it raises counts as a
    failure and is re-raised unchanged. A CircuitOpenError raised by the
    breaker itself is never counted.
    """

    def __init__(
        self,
        name:              str,
        failure_threshold: int   = 5,
        reset_timeout:     float = 60.0,
        clock:             Callable[[], float] = time.monotonic,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.name               = name
        self.failure_threshold  = failure_threshold
        self.reset_timeout      = reset_timeout
        self._clock             = clock
        self._lock              = threading.Lock()
        self._state             = CircuitState.CLOSED
        self._failure_count     = 0
        self._opened_at: float | None = None
        self._last_transition   = clock()
        self._trial_in_flight   = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def call(self, fn: Callable[[], Awaitable[T]]) -> T:
        is_trial = self._admit()

        try:
            result = await fn()
        except asyncio.CancelledError:
            self._on_cancel(is_trial)
            raise
        except Exception:
            self._on_failure(is_trial)
            raise

        self._on_success(is_trial)
        return result

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    def snapshot(self) -> CircuitSnapshot:
        with self._lock:
            self._maybe_half_open()
            return CircuitSnapshot(
                name=self.name,
                state=self._state,
                failure_count=self._failure_count,
                failure_threshold=self.failure_threshold,
                reset_timeout=self.reset_timeout,
                last_transition_at=self._last_transition,
            )

    def reset(self) -> None:
        """Manual operator reset back to CLOSED."""
        with self._lock:
            self._set_state(CircuitState.CLOSED)
            self._failure_count   = 0
            self._opened_at       = None
            self._trial_in_flight = False
        logger.info("Circuit breaker manually reset | name=%s", self.name)

    # ------------------------------------------------------------------
    # State bookkeeping (all called with or acquiring self._lock)
    # ------------------------------------------------------------------

    def _admit(self) -> bool:
        """Decide whether a call may proceed. Returns True for the HALF_OPEN trial."""
        with self._lock:
            self._maybe_half_open()

            if self._state is CircuitState.CLOSED:
                return False

            if self._state is CircuitState.HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                return True

            state = self._state

        logger.debug("Circuit breaker rejected call | name=%s state=%s", self.name, state.value)
        raise CircuitOpenError(self.name)

    def _maybe_half_open(self) -> None:
        if (
            self._state is CircuitState.OPEN
            and self._opened_at is not None
            and self._clock() - self._opened_at >= self.reset_timeout
        ):
            self._set_state(CircuitState.HALF_OPEN)
            self._trial_in_flight = False
            logger.info(
                "Circuit breaker half-open | name=%s reset_timeout=%ss",
                self.name, self.reset_timeout,
            )

    def _on_success(self, is_trial: bool) -> None:
        with self._lock:
            if is_trial:
                self._trial_in_flight = False
                logger.info(
                    "Circuit breaker closed after successful trial | name=%s previous_failures=%d",
                    self.name, self._failure_count,
                )
            if not is_trial and self._state is not CircuitState.CLOSED:
                # a call admitted while CLOSED finished after the circuit opened;
                # its success does not override the aggregate verdict
                return
            if self._state is not CircuitState.CLOSED:
                self._set_state(CircuitState.CLOSED)
            self._failure_count = 0
            self._opened_at     = None

    def _on_cancel(self, is_trial: bool) -> None:
        # a cancelled call says nothing about the dependency's health
        if is_trial:
            with self._lock:
                self._trial_in_flight = False

    def _on_failure(self, is_trial: bool) -> None:
        with self._lock:
            self._failure_count += 1

            if is_trial:
                self._trial_in_flight = False
                self._open()
                logger.warning(
                    "Circuit breaker re-opened after failed trial | name=%s failures=%d",
                    self.name, self._failure_count,
                )
                return

            if self._state is not CircuitState.CLOSED:
                return

            if self._failure_count >= self.failure_threshold:
                self._open()
                logger.warning(
                    "Circuit breaker opened | name=%s failures=%d threshold=%d reset_timeout=%ss",
                    self.name, self._failure_count, self.failure_threshold, self.reset_timeout,
                )
            else:
                logger.debug(
                    "Circuit breaker recorded failure | name=%s failures=%d threshold=%d",
                    self.name, self._failure_count, self.failure_threshold,
                )

    def _open(self) -> None:
        self._set_state(CircuitState.OPEN)
        self._opened_at = self._clock()

    def _set_state(self, state: CircuitState) -> None:
        self._state           = state
        self._last_transition = self._clock()


# ---------------------------------------------------------------------------
# Per-endpoint registry
# ---------------------------------------------------------------------------

_BREAKERS: dict[str, CircuitBreaker] = {}
_REGISTRY_LOCK = threading.Lock()


def get_circuit_breaker(
    name:              str,
    failure_threshold: int   | None = None,
    reset_timeout:     float | None = None,
) -> CircuitBreaker:
    """Return the process-wide breaker for name, creating it from settings on first use."""
    with _REGISTRY_LOCK:
        breaker = _BREAKERS.get(name)
        if breaker is None:
            from docproc.core.config import settings

            breaker = CircuitBreaker(
                name,
                failure_threshold=failure_threshold or settings.circuit_failure_threshold,
                reset_timeout=reset_timeout if reset_timeout is not None else settings.circuit_reset_timeout,
            )
            _BREAKERS[name] = breaker
        return breaker


def all_circuit_breakers() -> list[CircuitBreaker]:
    with _REGISTRY_LOCK:
        return list(_BREAKERS.values())
