"""
Document Processing Service

Orchestrates submission of a document to the OCR engine:
  1. Lock the document row (SELECT ... FOR UPDATE)
  2. Require status=QUEUED (submission is only legal from QUEUED)
  3. Resolve the stored relative path to an absolute, existing file
     (fail fast: no HTTP call is made when the file is missing)
  4. POST {file_path, language, document_id} to the engine through the
     "ocr-engine" circuit breaker
  5a. Success → store the task id, queued_at, status QUEUED or PROCESSING
      as reported by the engine
  5b. Failure → status FAILED with a readable processing_error; progress
      is kept, except that a fresh submission with no progress gets 0
  6. Commit

The row lock is held across the outbound call, which keeps at most one
submission in flight per document. A callback racing the submission
commit waits on the lock and then sees the stored task id.

Retry:      FAILED → QUEUED (clear error, progress 0, drop task id) → Submit
GetStatus:  read-only projection; no lock, no network
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from docproc.core.errors import (
    CircuitOpenError,
    DocumentNotFoundError,
    FileNotFoundForProcessingError,
    IllegalTransitionError,
    RetryNotAllowedError,
    TransientInfrastructureError,
)
from docproc.models.documents import Document
from docproc.ocr.client import OcrEngineClient
from docproc.processing import state_machine
from docproc.processing.state_machine import ProcessingStatus
from docproc.repositories.documents import DocumentRepository
from docproc.schemas.processing import ProcessingStatusResponse
from docproc.storage.local import DocumentStorage

logger = logging.getLogger(__name__)

CIRCUIT_OPEN_MESSAGE = "OCR service temporarily unavailable. Please try again later."


class DocumentProcessingService:
    """
    One instance per request / task. All dependencies are injected.
    """

    def __init__(
        self,
        session:    AsyncSession,
        repository: DocumentRepository,
        storage:    DocumentStorage,
        ocr_client: OcrEngineClient,
    ) -> None:
        self._session = session
        self._repo    = repository
        self._storage = storage
        self._ocr     = ocr_client

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def submit(self, document_id: str) -> Document:
        doc = await self._load_locked(document_id)
        await self._submit_locked(doc)
        await self._session.commit()
        return doc

    async def retry(self, document_id: str) -> Document:
        doc = await self._load_locked(document_id)

        current = ProcessingStatus(doc.processing_status)
        if current is not ProcessingStatus.FAILED:
            raise RetryNotAllowedError(current.value)

        previous_error = doc.processing_error
        state_machine.reset_for_retry(doc)
        logger.info(
            "Retrying document processing | doc=%s previous_error=%s",
            doc.id, previous_error,
        )

        await self._submit_locked(doc)
        await self._session.commit()
        return doc

    async def get_status(self, document_id: str) -> ProcessingStatusResponse:
        doc = await self._repo.get(document_id)
        if doc is None:
            raise DocumentNotFoundError(document_id)
        return project_status(doc)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _load_locked(self, document_id: str) -> Document:
        doc = await self._repo.get_for_update(document_id)
        if doc is None:
            raise DocumentNotFoundError(document_id)
        return doc

    async def _submit_locked(self, doc: Document) -> None:
        current = ProcessingStatus(doc.processing_status)
        if current is not ProcessingStatus.QUEUED:
            raise IllegalTransitionError(current.value, ProcessingStatus.PROCESSING.value)

        logger.info("Starting document processing | doc=%s file=%s", doc.id, doc.file_path)

        try:
            absolute_path = self._storage.resolve_existing(doc.file_path)
            submission = await self._ocr.start_processing(
                document_id=doc.id,
                file_path=str(absolute_path),
                language=doc.language,
            )
        except FileNotFoundForProcessingError as exc:
            self._record_failure(doc, exc.message)
            return
        except CircuitOpenError as exc:
            logger.error("OCR service circuit breaker is open | doc=%s breaker=%s", doc.id, exc.name)
            self._record_failure(doc, CIRCUIT_OPEN_MESSAGE)
            return
        except TransientInfrastructureError as exc:
            self._record_failure(doc, exc.message)
            return

        now = datetime.now(timezone.utc)
        doc.ocr_task_id = submission.task_id
        doc.queued_at   = now
        if submission.status is ProcessingStatus.PROCESSING:
            state_machine.mark_processing(doc)
        else:
            doc.updated_at = now

        logger.info(
            "Document queued for OCR processing | doc=%s task=%s status=%s",
            doc.id, submission.task_id, ProcessingStatus(doc.processing_status).value,
        )

    @staticmethod
    def _record_failure(doc: Document, error: str) -> None:
        if doc.progress is None:
            doc.progress = 0
        state_machine.mark_failed(doc, error)
        logger.error("Document submission failed | doc=%s error=%s", doc.id, error)


def project_status(doc: Document) -> ProcessingStatusResponse:
    return ProcessingStatusResponse(
        document_id=doc.id,
        status=ProcessingStatus(doc.processing_status),
        progress=doc.progress,
        current_operation=doc.current_operation,
        error=doc.processing_error,
        task_id=doc.ocr_task_id,
        ocr_text=doc.ocr_text,
        confidence_score=doc.confidence_score,
        category=doc.category,
        extracted_date=doc.extracted_date,
        extracted_amount=doc.extracted_amount,
    )
