"""
Document Processing Router

  POST /documents/{document_id}/retry-processing   FAILED → QUEUED → resubmit
  GET  /documents/{document_id}/processing-status  read-only projection

Errors are raised as ProcessingError subclasses and rendered by the
application exception handlers; the request session is rolled back on
the way out.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, status

from docproc.api.dependencies import ProcessingServiceDep
from docproc.processing.state_machine import ProcessingStatus
from docproc.schemas.processing import ErrorBody, ProcessingStatusResponse, RetryResponse

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/documents",
    tags=["Document Processing"],
)


# ---------------------------------------------------------------------------
# POST /documents/{document_id}/retry-processing
# ---------------------------------------------------------------------------

@router.post(
    "/{document_id}/retry-processing",
    response_model=RetryResponse,
    status_code=status.HTTP_200_OK,
    summary="Retry processing of a failed document",
    responses={
        400: {"model": ErrorBody, "description": "Document processing has not failed"},
        404: {"model": ErrorBody, "description": "Document not found"},
    },
)
async def retry_processing(
    document_id: str,
    service:     ProcessingServiceDep,
) -> RetryResponse:
    doc = await service.retry(document_id)
    current = ProcessingStatus(doc.processing_status)

    if current is ProcessingStatus.FAILED:
        # the resubmission itself failed; the record carries the reason
        message = "Document processing retry failed"
    else:
        message = "Document processing restarted"

    return RetryResponse(
        message=message,
        document_id=doc.id,
        status=current,
        task_id=doc.ocr_task_id,
        error=doc.processing_error,
    )


# ---------------------------------------------------------------------------
# GET /documents/{document_id}/processing-status
# ---------------------------------------------------------------------------

@router.get(
    "/{document_id}/processing-status",
    response_model=ProcessingStatusResponse,
    summary="Current processing status",
    responses={
        404: {"model": ErrorBody, "description": "Document not found"},
    },
)
async def processing_status(
    document_id: str,
    service:     ProcessingServiceDep,
) -> ProcessingStatusResponse:
    return await service.get_status(document_id)
