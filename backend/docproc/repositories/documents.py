"""
Document repository — the only place that builds queries on `documents`.

get_for_update() takes a row lock (SELECT ... FOR UPDATE) that serialises
every mutation of one document: concurrent callbacks for the same id
queue behind each other until the holder commits or rolls back.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from docproc.models.documents import Document
from docproc.processing.state_machine import ProcessingStatus


class DocumentRepository:

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    @property
    def session(self) -> AsyncSession:
        return self._session

    async def get(self, document_id: str) -> Document | None:
        result = await self._session.execute(
            select(Document).where(Document.id == document_id)
        )
        return result.scalars().first()

    async def get_for_update(self, document_id: str) -> Document | None:
        result = await self._session.execute(
            select(Document)
            .where(Document.id == document_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def find_undispatched_completed(
        self,
        older_than_seconds: int,
        limit: int = 100,
    ) -> Sequence[Document]:
        """
        COMPLETED documents whose index event never reached the broker.
        Rows locked by another worker are skipped, not waited on.
        """
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=older_than_seconds)
        result = await self._session.execute(
            select(Document)
            .where(
                Document.processing_status == ProcessingStatus.COMPLETED,
                Document.index_dispatched_at.is_(None),
                Document.completed_at <= cutoff,
            )
            .order_by(Document.completed_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return result.scalars().all()

