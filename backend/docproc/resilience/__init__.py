"""
Resilience primitives

    from docproc.resilience import get_circuit_breaker, IdempotencyService

    breaker = get_circuit_breaker("ocr-engine")
    result  = await breaker.call(lambda: client.post(...))

    outcome = await idempotency.run_once(token, apply_change)
    if not outcome.executed:
        ...  # duplicate delivery, nothing ran
"""

from docproc.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitSnapshot,
    CircuitState,
    all_circuit_breakers,
    get_circuit_breaker,
)
from docproc.resilience.idempotency import (
    IdempotencyService,
    IdempotentOutcome,
    InMemoryTokenStore,
    SqlTokenStore,
    build_idempotency_service,
)

__all__ = [
    "CircuitBreaker",
    "CircuitSnapshot",
    "CircuitState",
    "all_circuit_breakers",
    "get_circuit_breaker",
    "IdempotencyService",
    "IdempotentOutcome",
    "InMemoryTokenStore",
    "SqlTokenStore",
    "build_idempotency_service",
]
