"""
Celery Tasks — OCR submission & maintenance

Task: process_document(document_id)
  Invoked by the upload path once a QUEUED document is stored. Runs
  DocumentProcessingService.submit(). Engine-side failures are recorded on
  the document (status=FAILED) and are NOT retried here; retry is an
  explicit operator action. Only infrastructure errors around the
  submission (database unreachable, broker hiccup) that categorize() deems
  TRANSIENT are retried by Celery.

Task: dispatch_pending_index_events
  Beat task. Re-publishes the index event for COMPLETED documents whose
  dispatch was never recorded (broker down at completion time).

Task: cleanup_stuck_tasks
  Beat task. Asks the OCR engine for tasks stuck in processing longer than
  stuck_task_timeout_minutes and resets each one.

Task: purge_expired_idempotency_tokens
  Beat task. Deletes expired rows from idempotency_tokens.

Each task runs its coroutine on a fresh event loop with its own NullPool
DB engine and httpx client.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
from typing import Any, Coroutine, TypeVar

from celery import Task

from docproc.core.config import settings
from docproc.core.errors import (
    DocumentNotFoundError,
    IllegalTransitionError,
    TransientInfrastructureError,
    categorize,
)
from docproc.workers.celery_app import celery_app

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)

    # called from inside a running loop (eager mode under an async caller)
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, coro).result()


# ---------------------------------------------------------------------------
# Submission task
# ---------------------------------------------------------------------------

@celery_app.task(
    name="docproc.workers.tasks.process_document",
    bind=True,
    max_retries=3,
    default_retry_delay=30,
    acks_late=True,
    reject_on_worker_lost=True,
)
def process_document(self: Task, *, document_id: str) -> dict[str, Any]:
    try:
        return run_async(_process_document_async(document_id))
    except Exception as exc:
        category = categorize(exc)
        if category.is_transient and self.request.retries < self.max_retries:
            logger.warning(
                "Transient error around submission, retrying | doc=%s attempt=%d error=%s",
                document_id, self.request.retries + 1, exc,
            )
            raise self.retry(exc=exc, countdown=30 * (2 ** self.request.retries))
        raise


async def _process_document_async(document_id: str) -> dict[str, Any]:
    from docproc.db.session import session_scope
    from docproc.ocr.client import ocr_client_scope
    from docproc.processing.state_machine import ProcessingStatus
    from docproc.repositories.documents import DocumentRepository
    from docproc.services.processing import DocumentProcessingService
    from docproc.storage.local import get_document_storage

    async with session_scope() as session, ocr_client_scope() as ocr_client:
        service = DocumentProcessingService(
            session=session,
            repository=DocumentRepository(session),
            storage=get_document_storage(),
            ocr_client=ocr_client,
        )
        try:
            doc = await service.submit(document_id)
        except DocumentNotFoundError:
            logger.error("Document not found for processing | doc=%s", document_id)
            return {"status": "not_found", "document_id": document_id}
        except IllegalTransitionError as exc:
            logger.warning(
                "Document not in queued state, skipping | doc=%s current=%s",
                document_id, exc.current,
            )
            return {"status": "skipped", "document_id": document_id, "current_status": exc.current}

        return {
            "status":      ProcessingStatus(doc.processing_status).value,
            "document_id": doc.id,
            "task_id":     doc.ocr_task_id,
            "error":       doc.processing_error,
        }


# ---------------------------------------------------------------------------
# Index event redispatch
# ---------------------------------------------------------------------------

@celery_app.task(
    name="docproc.workers.tasks.dispatch_pending_index_events",
    acks_late=True,
)
def dispatch_pending_index_events(limit: int = 100) -> dict[str, int]:
    return run_async(_dispatch_pending_async(limit))


async def _dispatch_pending_async(limit: int) -> dict[str, int]:
    from docproc.db.session import session_scope
    from docproc.repositories.documents import DocumentRepository
    from docproc.services.indexing import IndexEventPublisher, dispatch_index_event

    publisher = IndexEventPublisher()
    dispatched = failed = 0

    async with session_scope() as session:
        pending = await DocumentRepository(session).find_undispatched_completed(
            older_than_seconds=settings.index_redispatch_delay_seconds,
            limit=limit,
        )
        for doc in pending:
            if await dispatch_index_event(session, publisher, doc):
                dispatched += 1
            else:
                failed += 1

    if pending:
        logger.info(
            "Index redispatch sweep | found=%d dispatched=%d failed=%d",
            len(pending), dispatched, failed,
        )
    return {"found": len(pending), "dispatched": dispatched, "failed": failed}


# ---------------------------------------------------------------------------
# Stuck task cleanup
# ---------------------------------------------------------------------------

@celery_app.task(
    name="docproc.workers.tasks.cleanup_stuck_tasks",
    acks_late=True,
)
def cleanup_stuck_tasks(timeout_minutes: int | None = None) -> dict[str, Any]:
    return run_async(_cleanup_stuck_async(timeout_minutes or settings.stuck_task_timeout_minutes))


async def _cleanup_stuck_async(timeout_minutes: int) -> dict[str, Any]:
    from docproc.ocr.client import ocr_client_scope

    async with ocr_client_scope() as client:
        try:
            stuck = await client.find_stuck_tasks(timeout_minutes)
        except TransientInfrastructureError as exc:
            logger.error(
                "Failed to find stuck tasks | timeout_minutes=%d error=%s", timeout_minutes, exc,
            )
            return {"status": "ocr_unavailable", "error": exc.message}

        reset = failed = 0
        for entry in stuck:
            task_id = entry.get("task_id") if isinstance(entry, dict) else entry
            if not task_id:
                logger.warning("Stuck task entry without task_id | entry=%r", entry)
                failed += 1
                continue
            logger.warning(
                "Resetting stuck task | task=%s timeout_minutes=%d", task_id, timeout_minutes,
            )
            if await client.reset_stuck_task(str(task_id)):
                reset += 1
            else:
                failed += 1

    if failed:
        logger.warning("Stuck task cleanup incomplete | found=%d reset=%d failed=%d",
                       len(stuck), reset, failed)
    return {"status": "ok", "found": len(stuck), "reset": reset, "failed": failed}


# ---------------------------------------------------------------------------
# Idempotency token housekeeping
# ---------------------------------------------------------------------------

@celery_app.task(
    name="docproc.workers.tasks.purge_expired_idempotency_tokens",
    acks_late=True,
)
def purge_expired_idempotency_tokens() -> dict[str, int]:
    return run_async(_purge_tokens_async())


async def _purge_tokens_async() -> dict[str, int]:
    from docproc.db.session import session_scope
    from docproc.resilience.idempotency import SqlTokenStore

    # memory-backed deployments expire tokens lazily on access
    if settings.idempotency_backend != "database":
        return {"purged": 0}

    async with session_scope() as session:
        purged = await SqlTokenStore(session).purge_expired()
        await session.commit()

    if purged:
        logger.info("Purged expired idempotency tokens | count=%d", purged)
    return {"purged": purged}
