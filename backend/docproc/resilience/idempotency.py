"""
Idempotency Service — dedup of repeated deliveries

Contract:
  was_used(token)              → bool
  mark_used(token, ttl)        → None
  run_once(token, fn)          → IdempotentOutcome(executed, value)

run_once performs check-and-mark atomically against the store: the token
is claimed before fn runs, so two concurrent deliveries can never both see
"not used". If fn raises, the claim is released and a later re-delivery
is processed normally.

Stores (selected by settings.idempotency_backend):
  InMemoryTokenStore  single-instance deployments; threading.Lock-guarded dict
  SqlTokenStore       shared across instances; claims are an
                      INSERT ... ON CONFLICT on idempotency_tokens executed in
                      the caller's session, so they commit or roll back
                      together with the state change they protect

Tokens are either random (generate_token) or derived from a content
fingerprint (token_from_context): same logical input ⇒ same token.
"""

from __future__ import annotations

import hashlib
import json
import logging
import secrets
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Generic, Protocol, TypeVar

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from docproc.models.documents import IdempotencyToken

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _prefix(token: str) -> str:
    """Log only the first 8 characters of a token."""
    return f"{token[:8]}..."


# ---------------------------------------------------------------------------
# Store protocol
# ---------------------------------------------------------------------------

class TokenStore(Protocol):
    async def contains(self, token: str) -> bool: ...
    async def put(self, token: str, ttl: int) -> None: ...
    async def claim(self, token: str, ttl: int) -> bool: ...
    async def release(self, token: str) -> None: ...


class InMemoryTokenStore:
    """
    Process-local store. Expired entries are purged lazily on access.
    The lock is never held across an await, so one instance can serve
    several event loops.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock  = clock
        self._lock   = threading.Lock()
        self._tokens: dict[str, float] = {}   # token → expiry (clock seconds)

    def _alive(self, token: str, now: float) -> bool:
        expires_at = self._tokens.get(token)
        if expires_at is None:
            return False
        if expires_at <= now:
            del self._tokens[token]
            return False
        return True

    async def contains(self, token: str) -> bool:
        with self._lock:
            return self._alive(token, self._clock())

    async def put(self, token: str, ttl: int) -> None:
        with self._lock:
            self._tokens[token] = self._clock() + ttl

    async def claim(self, token: str, ttl: int) -> bool:
        with self._lock:
            now = self._clock()
            if self._alive(token, now):
                return False
            self._tokens[token] = now + ttl
            return True

    async def release(self, token: str) -> None:
        with self._lock:
            self._tokens.pop(token, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)


class SqlTokenStore:
    """
    Shared store on the idempotency_tokens table.

    claim() is a single INSERT ... ON CONFLICT DO UPDATE ... WHERE expired
    RETURNING token: it yields a row only if the token was absent or had
    expired, which PostgreSQL evaluates atomically under the unique index.
    A concurrent duplicate blocks on the index entry until the first
    transaction commits or rolls back.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    async def contains(self, token: str) -> bool:
        result = await self._session.execute(
            select(IdempotencyToken.token).where(
                IdempotencyToken.token == token,
                IdempotencyToken.expires_at > self._now(),
            )
        )
        return result.scalar_one_or_none() is not None

    async def put(self, token: str, ttl: int) -> None:
        expires_at = self._now() + timedelta(seconds=ttl)
        stmt = pg_insert(IdempotencyToken).values(token=token, expires_at=expires_at)
        stmt = stmt.on_conflict_do_update(
            index_elements=[IdempotencyToken.token],
            set_={"expires_at": stmt.excluded.expires_at},
        )
        await self._session.execute(stmt)

    async def claim(self, token: str, ttl: int) -> bool:
        now = self._now()
        stmt = pg_insert(IdempotencyToken).values(
            token=token,
            expires_at=now + timedelta(seconds=ttl),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[IdempotencyToken.token],
            set_={"expires_at": stmt.excluded.expires_at},
            where=IdempotencyToken.expires_at <= now,
        ).returning(IdempotencyToken.token)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def release(self, token: str) -> None:
        # The claim is part of the caller's transaction; rolling that back
        # removes it. Only an explicit delete is needed when the caller keeps
        # the transaction going after a failure.
        if self._session.in_transaction():
            await self._session.execute(
                delete(IdempotencyToken).where(IdempotencyToken.token == token)
            )

    async def purge_expired(self) -> int:
        result = await self._session.execute(
            delete(IdempotencyToken).where(IdempotencyToken.expires_at <= self._now())
        )
        return result.rowcount or 0


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class IdempotentOutcome(Generic[T]):
    """executed=False means the token was already used and fn did not run."""
    executed: bool
    value:    T | None = None


class IdempotencyService:

    def __init__(self, store: TokenStore, ttl: int = 3600) -> None:
        self._store = store
        self._ttl   = ttl

    @property
    def ttl(self) -> int:
        return self._ttl

    # ------------------------------------------------------------------
    # Token generation
    # ------------------------------------------------------------------

    @staticmethod
    def generate_token() -> str:
        return secrets.token_hex(16)

    @staticmethod
    def token_from_context(context: dict[str, Any]) -> str:
        """Deterministic token: SHA-256 of the canonical JSON of context."""
        canonical = json.dumps(context, sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    # ------------------------------------------------------------------
    # Store operations
    # ------------------------------------------------------------------

    async def was_used(self, token: str) -> bool:
        return await self._store.contains(token)

    async def mark_used(self, token: str, ttl: int | None = None) -> None:
        ttl = ttl if ttl is not None else self._ttl
        await self._store.put(token, ttl)
        logger.debug("Idempotency token marked | token=%s ttl=%d", _prefix(token), ttl)

    async def run_once(
        self,
        token: str,
        fn:    Callable[[], Awaitable[T]],
    ) -> IdempotentOutcome[T]:
        if not await self._store.claim(token, self._ttl):
            logger.info("Idempotent replay detected — skipping execution | token=%s", _prefix(token))
            return IdempotentOutcome(executed=False)

        try:
            value = await fn()
        except BaseException:
            await self._store.release(token)
            raise

        return IdempotentOutcome(executed=True, value=value)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

_MEMORY_STORE = InMemoryTokenStore()


def build_idempotency_service(session: AsyncSession) -> IdempotencyService:
    """Pick the store configured by settings.idempotency_backend."""
    from docproc.core.config import settings

    store: TokenStore
    if settings.idempotency_backend == "memory":
        store = _MEMORY_STORE
    elif settings.idempotency_backend == "database":
        store = SqlTokenStore(session)
    else:
        raise ValueError(f"Unknown idempotency backend: {settings.idempotency_backend!r}")
    return IdempotencyService(store, ttl=settings.idempotency_ttl_seconds)
