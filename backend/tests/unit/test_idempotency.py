"""
Unit Tests — IdempotencyService & token stores
═══════════════════════════════════════════════
Coverage targets:
  ✅ was_used / mark_used with TTL expiry (injected clock)
  ✅ run_once executes once, replays are no-ops
  ✅ run_once releases the claim when fn raises
  ✅ concurrent run_once on one token runs fn exactly once
  ✅ context-derived tokens are stable under key order
  ✅ SqlTokenStore claim / release statements
  ✅ backend factory honours settings.idempotency_backend
"""

from __future__ import annotations

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.dialects import postgresql

from docproc.resilience.idempotency import (
    IdempotencyService,
    InMemoryTokenStore,
    SqlTokenStore,
    build_idempotency_service,
)


@pytest.fixture
def clock(fake_clock):
    return fake_clock


@pytest.fixture
def service(clock):
    return IdempotencyService(InMemoryTokenStore(clock=clock), ttl=60)


# ─────────────────────────────────────────────────────────────────────────────
# Token generation
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.resilience
class TestTokens:

    def test_generated_tokens_are_unique(self):
        tokens = {IdempotencyService.generate_token() for _ in range(50)}
        assert len(tokens) == 50

    def test_context_token_ignores_key_order(self):
        a = IdempotencyService.token_from_context({"document_id": "d", "status": "completed", "task_id": "t"})
        b = IdempotencyService.token_from_context({"task_id": "t", "status": "completed", "document_id": "d"})
        assert a == b
        assert len(a) == 64

    def test_context_token_differs_on_value(self):
        a = IdempotencyService.token_from_context({"progress": 50})
        b = IdempotencyService.token_from_context({"progress": 51})
        assert a != b


# ─────────────────────────────────────────────────────────────────────────────
# was_used / mark_used
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.resilience
class TestMarkUsed:

    async def test_unused_token(self, service):
        assert await service.was_used("abc") is False

    async def test_marked_token_is_used(self, service):
        await service.mark_used("abc")
        assert await service.was_used("abc") is True

    async def test_token_expires_after_ttl(self, service, clock):
        await service.mark_used("abc", ttl=10)
        clock.advance(9)
        assert await service.was_used("abc") is True
        clock.advance(1)
        assert await service.was_used("abc") is False

    async def test_explicit_zero_ttl_is_honoured(self, caplog):
        store = MagicMock(spec=InMemoryTokenStore)
        store.put = AsyncMock(return_value=None)
        service = IdempotencyService(store, ttl=60)

        with caplog.at_level(logging.DEBUG, logger="docproc.resilience.idempotency"):
            await service.mark_used("abc", ttl=0)

        store.put.assert_awaited_once_with("abc", 0)
        assert "ttl=0" in caplog.text
        assert "ttl=60" not in caplog.text


# ─────────────────────────────────────────────────────────────────────────────
# run_once
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.resilience
class TestRunOnce:

    async def test_first_call_executes(self, service):
        fn = AsyncMock(return_value=42)
        outcome = await service.run_once("tok", fn)
        assert outcome.executed is True
        assert outcome.value == 42
        assert await service.was_used("tok") is True

    async def test_replay_is_noop(self, service):
        fn = AsyncMock(return_value=42)
        await service.run_once("tok", fn)
        outcome = await service.run_once("tok", fn)

        assert outcome.executed is False
        assert outcome.value is None
        fn.assert_awaited_once()

    async def test_failure_releases_claim(self, service):
        failing = AsyncMock(side_effect=RuntimeError("crash mid-apply"))
        with pytest.raises(RuntimeError):
            await service.run_once("tok", failing)

        assert await service.was_used("tok") is False

        retry = AsyncMock(return_value="applied")
        outcome = await service.run_once("tok", retry)
        assert outcome.executed is True

    async def test_expired_token_runs_again(self, service, clock):
        fn = AsyncMock(return_value=None)
        await service.run_once("tok", fn)
        clock.advance(61)
        outcome = await service.run_once("tok", fn)
        assert outcome.executed is True
        assert fn.await_count == 2

    async def test_concurrent_duplicates_execute_once(self, service):
        calls = 0

        async def _apply():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return calls

        outcomes = await asyncio.gather(*(service.run_once("same", _apply) for _ in range(10)))

        assert calls == 1
        assert sum(o.executed for o in outcomes) == 1


# ─────────────────────────────────────────────────────────────────────────────
# SqlTokenStore
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.resilience
class TestSqlTokenStore:

    async def test_claim_true_when_row_returned(self, mock_session):
        mock_session.execute.return_value = MagicMock(scalar_one_or_none=MagicMock(return_value="tok"))
        store = SqlTokenStore(mock_session)
        assert await store.claim("tok", 60) is True

        stmt = mock_session.execute.await_args.args[0]
        sql = str(stmt.compile(dialect=postgresql.dialect()))
        assert "ON CONFLICT" in sql.upper()
        assert "RETURNING" in sql.upper()

    async def test_claim_false_when_token_live(self, mock_session):
        mock_session.execute.return_value = MagicMock(scalar_one_or_none=MagicMock(return_value=None))
        store = SqlTokenStore(mock_session)
        assert await store.claim("tok", 60) is False

    async def test_release_deletes_inside_transaction(self, mock_session):
        store = SqlTokenStore(mock_session)
        await store.release("tok")
        mock_session.execute.assert_awaited_once()

    async def test_release_outside_transaction_is_noop(self, mock_session):
        mock_session.in_transaction.return_value = False
        store = SqlTokenStore(mock_session)
        await store.release("tok")
        mock_session.execute.assert_not_awaited()


# ─────────────────────────────────────────────────────────────────────────────
# Factory
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.resilience
class TestFactory:

    def test_memory_backend(self, mock_session):
        from docproc.core.config import settings

        with patch.object(settings, "idempotency_backend", "memory"):
            svc = build_idempotency_service(mock_session)
        assert isinstance(svc._store, InMemoryTokenStore)
        assert svc.ttl == settings.idempotency_ttl_seconds

    def test_database_backend(self, mock_session):
        from docproc.core.config import settings

        with patch.object(settings, "idempotency_backend", "database"):
            svc = build_idempotency_service(mock_session)
        assert isinstance(svc._store, SqlTokenStore)

    def test_unknown_backend(self, mock_session):
        from docproc.core.config import settings

        with patch.object(settings, "idempotency_backend", "redis"):
            with pytest.raises(ValueError):
                build_idempotency_service(mock_session)
