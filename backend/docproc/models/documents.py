"""
SQLAlchemy ORM Models — Document processing state & idempotency tokens

Only the subset of the document entity that the processing core reads or
writes is mapped here; the upload / tagging / sharing columns belong to
the CRUD application and are not touched by this service.

Using SQLAlchemy 2.x mapped classes for full async support.
Timestamps are set explicitly by the service layer — there are no ORM
lifecycle hooks on these models.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from docproc.processing.state_machine import ProcessingStatus


# ---------------------------------------------------------------------------
# Declarative base: shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Document model: documents
# ---------------------------------------------------------------------------

class Document(Base):
    """
    Processing record for one uploaded file.

    Created as QUEUED by the upload path (outside this service), then
    mutated only by DocumentProcessingService (submission, retry) and
    WebhookCallbackHandler (progress, completion, failure).

    ocr_task_id is the correlation id the OCR engine returned at submission;
    a callback carrying a different task_id is rejected.
    """

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(
            "progress IS NULL OR (progress >= 0 AND progress <= 100)",
            name="documents_progress_range",
        ),
        Index("idx_documents_processing_status", "processing_status"),
        Index("idx_documents_ocr_task_id",       "ocr_task_id"),
    )

    # Externally assigned, immutable
    id: Mapped[str] = mapped_column(String(36), primary_key=True)

    # File reference: relative to settings.storage_base_path
    file_path:     Mapped[str]           = mapped_column(Text, nullable=False)
    original_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    language:      Mapped[Optional[str]] = mapped_column(String(5), nullable=True)

    # ------------------------------------------------------------------
    # Processing state machine
    # ------------------------------------------------------------------
    processing_status: Mapped[ProcessingStatus] = mapped_column(
        SAEnum(
            ProcessingStatus,
            name="processing_status",
            native_enum=False,
            length=20,
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=ProcessingStatus.QUEUED,
        server_default=ProcessingStatus.QUEUED.value,
    )
    progress:          Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    current_operation: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    processing_error:  Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Populated only when processing_status='failed'",
    )
    ocr_task_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="Correlation id assigned by the OCR engine at submission",
    )

    # ------------------------------------------------------------------
    # Extracted result: populated only on COMPLETED
    # ------------------------------------------------------------------
    ocr_text:           Mapped[Optional[str]]     = mapped_column(Text, nullable=True)
    confidence_score:   Mapped[Optional[Decimal]] = mapped_column(Numeric(3, 2), nullable=True)
    extracted_metadata: Mapped[Optional[dict]]    = mapped_column(JSONB, nullable=True)
    category:           Mapped[Optional[str]]     = mapped_column(String(255), nullable=True)
    extracted_date:     Mapped[Optional[date]]    = mapped_column(Date, nullable=True)
    extracted_amount:   Mapped[Optional[Decimal]] = mapped_column(Numeric(15, 2), nullable=True)
    searchable_content: Mapped[Optional[str]]     = mapped_column(Text, nullable=True)

    # ------------------------------------------------------------------
    # Timestamps: written by the service layer
    # ------------------------------------------------------------------
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at:          Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    queued_at:           Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at:        Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at:           Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    index_dispatched_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Set once the completion event reached the broker",
    )

    def __repr__(self) -> str:
        return (
            f"<Document id={self.id} status={self.processing_status} "
            f"progress={self.progress} task={self.ocr_task_id!r}>"
        )


# ---------------------------------------------------------------------------
# IdempotencyToken model: idempotency_tokens
# ---------------------------------------------------------------------------

class IdempotencyToken(Base):
    """
    Shared dedup store for multi-instance deployments.

    Claims are inserted inside the caller's transaction, so a crash before
    commit leaves no token behind and the delivery can safely be retried.
    """

    __tablename__ = "idempotency_tokens"
    __table_args__ = (
        Index("idx_idempotency_tokens_expires_at", "expires_at"),
    )

    token:      Mapped[str]      = mapped_column(String(64), primary_key=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<IdempotencyToken token={self.token[:8]}... expires_at={self.expires_at}>"
