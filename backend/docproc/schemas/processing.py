"""
Processing API — Pydantic Request/Response Schemas

Covers:
  - POST /webhooks/ocr/callback           inbound callback body + ack
  - POST /documents/{id}/retry-processing retry response
  - GET  /documents/{id}/processing-status status projection
  - GET  /ocr/queue-statistics            engine statistics passthrough
  - GET  /ocr/queue-health                healthy / warning / critical verdict
  - GET  /ocr/stuck-tasks                 tasks stuck in the engine
  - Error body shared by all 4xx/5xx responses

Design decisions:
  - Callback `status` is a plain string here; the handler maps it to a
    closed set and rejects anything else with "Unknown status: X".
  - `progress` is a strict int without range constraints so that out-of-range
    values reach the state machine and fail with PROGRESS_OUT_OF_RANGE, while
    booleans and numeric strings are rejected as malformed.
  - Unknown fields are ignored: the engine may add fields at any time.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt

from docproc.processing.state_machine import ProcessingStatus


# ---------------------------------------------------------------------------
# Inbound webhook
# ---------------------------------------------------------------------------

class OcrResultPayload(BaseModel):
    """`result` object of a completed callback; only text + confidence are required."""
    model_config = ConfigDict(extra="ignore")

    text:       str
    # 0..1 or a 0..100 percentage; normalised to 0..1 on completion
    confidence: float = Field(..., ge=0, le=100)
    language:   Optional[str] = None
    metadata:   Optional[dict[str, Any]] = None
    category:   Optional[dict[str, Any] | str] = None


class OcrCallbackPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    task_id:           str
    document_id:       str
    status:            str
    timestamp:         Optional[str | float] = None
    progress:          Optional[StrictInt] = None
    current_operation: Optional[str] = Field(None, max_length=255)
    result:            Optional[dict[str, Any]] = None
    error:             Optional[str] = None


class WebhookAck(BaseModel):
    """Identical for first deliveries and idempotent replays."""
    message:     str = "Webhook processed successfully"
    document_id: str
    status:      str


# ---------------------------------------------------------------------------
# Document processing endpoints
# ---------------------------------------------------------------------------

class ProcessingStatusResponse(BaseModel):
    """Read-only projection; no side effects, no network calls."""
    document_id:       str
    status:            ProcessingStatus
    progress:          Optional[int] = None
    current_operation: Optional[str] = None
    error:             Optional[str] = None
    task_id:           Optional[str] = None
    ocr_text:          Optional[str] = None
    confidence_score:  Optional[Decimal] = None
    category:          Optional[str] = None
    extracted_date:    Optional[date] = None
    extracted_amount:  Optional[Decimal] = None


class RetryResponse(BaseModel):
    message:     str
    document_id: str
    status:      ProcessingStatus
    task_id:     Optional[str] = None
    error:       Optional[str] = None


class QueueStatisticsResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    circuit_state: str


class QueueHealthResponse(BaseModel):
    status:    str                      # healthy | warning | critical | unavailable
    timestamp: Optional[datetime] = None
    issues:    Optional[list[str]] = None
    error:     Optional[str] = None


class StuckTasksResponse(BaseModel):
    stuck_tasks:     list[Any]
    count:           int
    timeout_minutes: int


# ---------------------------------------------------------------------------
# Error body
# ---------------------------------------------------------------------------

class ErrorBody(BaseModel):
    error:          str
    error_code:     str
    current_status: Optional[str] = None
    request_id:     Optional[str] = None
