"""
Index event publisher — hands completed documents to the external indexer.

The indexer consumes `settings.index_task_name` from `settings.index_queue`
with a single kwarg, document_id. Delivery is at-least-once: the event is
sent after the completion is committed, index_dispatched_at is recorded
once the broker accepted it, and the dispatch_pending_index_events beat
task re-sends any completion whose dispatch was never recorded. The
indexer skips documents that are not COMPLETED or carry no OCR text.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from docproc.core.config import settings
from docproc.models.documents import Document

logger = logging.getLogger(__name__)


class IndexEventPublisher:
    """
    Sends the index event via Celery send_task(). The Celery import is
    deferred so a broker is not needed at module load time.
    """

    async def publish_document_completed(self, document_id: str) -> None:
        from docproc.workers.celery_app import celery_app

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None,
            lambda: celery_app.send_task(
                settings.index_task_name,
                kwargs={"document_id": document_id},
                queue=settings.index_queue,
            ),
        )
        logger.info("Index event published | doc=%s queue=%s", document_id, settings.index_queue)


async def dispatch_index_event(
    session:   AsyncSession,
    publisher: IndexEventPublisher,
    document:  Document,
) -> bool:
    """
    Publish the completion event for an already committed document and
    record the dispatch. Returns False when the broker was unreachable;
    the redispatch task picks the document up later.
    """
    try:
        await publisher.publish_document_completed(document.id)
    except Exception as exc:
        logger.error(
            "Failed to publish index event, will be redispatched | doc=%s error=%s",
            document.id, exc,
        )
        return False

    dispatched_at = datetime.now(timezone.utc)
    await session.execute(
        update(Document)
        .where(Document.id == document.id)
        .values(index_dispatched_at=dispatched_at)
    )
    await session.commit()
    document.index_dispatched_at = dispatched_at
    return True
