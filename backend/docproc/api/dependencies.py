"""
Composed FastAPI Dependencies

Single wiring point for the request context: DB session, repository,
OCR client, storage, idempotency and the two services built from them.
Route handlers import from here, never from db/session or ocr/client
directly, so tests can swap any layer via app.dependency_overrides.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from docproc.core.config import settings
from docproc.db.session import get_db
from docproc.ocr.client import OcrEngineClient, get_http_client
from docproc.repositories.documents import DocumentRepository
from docproc.resilience.idempotency import IdempotencyService, build_idempotency_service
from docproc.services.indexing import IndexEventPublisher
from docproc.services.processing import DocumentProcessingService
from docproc.services.webhook import WebhookCallbackHandler
from docproc.storage.local import DocumentStorage, get_document_storage


# ---------------------------------------------------------------------------
# Building blocks
# ---------------------------------------------------------------------------

def get_repository(
    session: Annotated[AsyncSession, Depends(get_db)],
) -> DocumentRepository:
    return DocumentRepository(session)


def get_ocr_client() -> OcrEngineClient:
    return OcrEngineClient(get_http_client())


def get_storage() -> DocumentStorage:
    return get_document_storage()


def get_idempotency(
    session: Annotated[AsyncSession, Depends(get_db)],
) -> IdempotencyService:
    return build_idempotency_service(session)


def get_index_publisher() -> IndexEventPublisher:
    return IndexEventPublisher()


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------

def get_processing_service(
    session:    Annotated[AsyncSession, Depends(get_db)],
    repository: Annotated[DocumentRepository, Depends(get_repository)],
    storage:    Annotated[DocumentStorage, Depends(get_storage)],
    ocr_client: Annotated[OcrEngineClient, Depends(get_ocr_client)],
) -> DocumentProcessingService:
    return DocumentProcessingService(
        session=session,
        repository=repository,
        storage=storage,
        ocr_client=ocr_client,
    )


def get_webhook_handler(
    session:     Annotated[AsyncSession, Depends(get_db)],
    repository:  Annotated[DocumentRepository, Depends(get_repository)],
    idempotency: Annotated[IdempotencyService, Depends(get_idempotency)],
    publisher:   Annotated[IndexEventPublisher, Depends(get_index_publisher)],
) -> WebhookCallbackHandler:
    return WebhookCallbackHandler(
        session=session,
        repository=repository,
        idempotency=idempotency,
        publisher=publisher,
        secret=settings.ocr_webhook_secret,
        max_body_bytes=settings.webhook_max_body_bytes,
    )


# ---------------------------------------------------------------------------
# Type aliases for cleaner route signatures
# ---------------------------------------------------------------------------

ProcessingServiceDep = Annotated[DocumentProcessingService, Depends(get_processing_service)]
WebhookHandlerDep    = Annotated[WebhookCallbackHandler,    Depends(get_webhook_handler)]
OcrClientDep         = Annotated[OcrEngineClient,           Depends(get_ocr_client)]
