"""
Processing State Machine

Legal status transitions for a document's OCR lifecycle, plus the field
invariants that go with each state. Services call these functions; the
ORM entity itself accepts any assignment.

    QUEUED      → PROCESSING   submission accepted / first progress callback
    QUEUED      → FAILED       submission error (missing file, transport, breaker open)
    PROCESSING  → PROCESSING   progress callback
    PROCESSING  → COMPLETED    completion callback
    PROCESSING  → FAILED       failure callback or submission-time error
    FAILED      → QUEUED       explicit retry
    COMPLETED   — terminal

Field invariants:
  - 0 ≤ progress ≤ 100 when present; out-of-range is rejected, never clamped.
  - current_operation is present while PROCESSING with progress < 100 and
    cleared on COMPLETED / FAILED.
  - processing_error is set only on FAILED; cleared only by retry.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING

from docproc.core.errors import IllegalTransitionError, ProgressOutOfRangeError

if TYPE_CHECKING:
    from docproc.models.documents import Document


class ProcessingStatus(str, Enum):
    """
    Maps to documents.processing_status.
    Transitions: queued → processing → completed | failed
    """
    QUEUED      = "queued"       # accepted by the engine, not yet started
    PROCESSING  = "processing"   # engine actively extracting text
    COMPLETED   = "completed"    # OCR result stored, index event emitted
    FAILED      = "failed"       # see processing_error


ALLOWED_TRANSITIONS: dict[ProcessingStatus, frozenset[ProcessingStatus]] = {
    ProcessingStatus.QUEUED:     frozenset({ProcessingStatus.PROCESSING, ProcessingStatus.FAILED}),
    ProcessingStatus.PROCESSING: frozenset({
        ProcessingStatus.PROCESSING,
        ProcessingStatus.COMPLETED,
        ProcessingStatus.FAILED,
    }),
    ProcessingStatus.FAILED:     frozenset({ProcessingStatus.QUEUED}),
    ProcessingStatus.COMPLETED:  frozenset(),
}

TERMINAL_STATES = frozenset({ProcessingStatus.COMPLETED, ProcessingStatus.FAILED})

DEFAULT_OPERATION = "Processing"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def can_transition(current: ProcessingStatus, target: ProcessingStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def transition(doc: "Document", target: ProcessingStatus) -> None:
    """Move doc to target, raising IllegalTransitionError if the table forbids it."""
    current = ProcessingStatus(doc.processing_status)
    if not can_transition(current, target):
        raise IllegalTransitionError(current.value, target.value)
    doc.processing_status = target
    doc.updated_at = _now()


def validate_progress(value: object) -> int:
    # bool is an int subclass; True is not a progress value
    if isinstance(value, bool) or not isinstance(value, int):
        raise ProgressOutOfRangeError(value)
    if value < 0 or value > 100:
        raise ProgressOutOfRangeError(value)
    return value


# ---------------------------------------------------------------------------
# State entry helpers: each applies the transition plus its side effects
# ---------------------------------------------------------------------------

def mark_processing(
    doc: "Document",
    progress: int | None = None,
    operation: str | None = None,
) -> None:
    """Enter (or stay in) PROCESSING, updating progress and current operation."""
    if progress is not None:
        progress = validate_progress(progress)
    transition(doc, ProcessingStatus.PROCESSING)

    if progress is not None:
        doc.progress = progress
    if operation:
        doc.current_operation = operation
    elif doc.current_operation is None and (doc.progress or 0) < 100:
        doc.current_operation = DEFAULT_OPERATION


def mark_completed(doc: "Document") -> None:
    """Enter COMPLETED. A QUEUED record passes through PROCESSING first."""
    if ProcessingStatus(doc.processing_status) is ProcessingStatus.QUEUED:
        transition(doc, ProcessingStatus.PROCESSING)
    transition(doc, ProcessingStatus.COMPLETED)
    doc.progress          = 100
    doc.current_operation = None
    doc.processing_error  = None
    doc.completed_at      = doc.updated_at


def mark_failed(doc: "Document", error: str) -> None:
    """Enter FAILED. Progress is preserved for diagnostics."""
    transition(doc, ProcessingStatus.FAILED)
    doc.processing_error  = error
    doc.current_operation = None
    doc.failed_at         = doc.updated_at


def reset_for_retry(doc: "Document") -> None:
    """FAILED → QUEUED: clear error, reset progress, discard the stale task id."""
    transition(doc, ProcessingStatus.QUEUED)
    doc.processing_error  = None
    doc.progress          = 0
    doc.current_operation = None
    doc.ocr_task_id       = None
    doc.failed_at         = None
