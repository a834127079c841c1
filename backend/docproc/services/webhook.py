"""
OCR Webhook Callback Handler

Request handling stages (fixed order; each short-circuits on failure):

  1. Size cap            body > webhook_max_body_bytes          → 413
  2. Signature           HMAC-SHA256(secret, raw body), hex,
                         constant-time compare                   → 401
  3. Parse               JSON object; task_id / document_id /
                         status present; schema valid            → 400
  4. Lookup              document row locked FOR UPDATE          → 404
  5. Correlation         stored task id non-empty and different  → 400
  6. Idempotency gate    key = (document_id, task_id, status
                         [, progress]); replay → same 200, no-op
  7. State application   processing | completed | failed         → 400 on
                                                                   illegal input
  8. Commit, then (completed only) publish the index event

The signature is checked before the body is parsed: it covers the raw
bytes. The dedup key is claimed inside the same transaction as the state
change, so it becomes durable only if the change commits.

Logging: one line per outcome with result=success|replay|rejected_*|error_*
and latency_ms. Signatures and tokens are logged by 8-char prefix only.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
import uuid
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from docproc.core.errors import (
    DocumentNotFoundError,
    InvalidSignatureError,
    MalformedPayloadError,
    MissingFieldError,
    PayloadTooLargeError,
    ProcessingError,
    SignatureMissingError,
    TaskMismatchError,
    UnknownCallbackStatusError,
)
from docproc.models.documents import Document
from docproc.processing import state_machine
from docproc.processing.metadata import apply_completion_result
from docproc.processing.state_machine import ProcessingStatus
from docproc.repositories.documents import DocumentRepository
from docproc.resilience.idempotency import IdempotencyService
from docproc.schemas.processing import OcrCallbackPayload, OcrResultPayload, WebhookAck
from docproc.services.indexing import IndexEventPublisher, dispatch_index_event

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"

REQUIRED_FIELDS = ("task_id", "document_id", "status")

CALLBACK_STATUSES = frozenset({
    ProcessingStatus.PROCESSING.value,
    ProcessingStatus.COMPLETED.value,
    ProcessingStatus.FAILED.value,
})


# ---------------------------------------------------------------------------
# Signature helpers
# ---------------------------------------------------------------------------

def compute_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: str | None) -> None:
    """Raise SignatureMissingError / InvalidSignatureError; return None when valid."""
    if not signature or not signature.strip():
        raise SignatureMissingError()

    supplied = signature.strip().lower()
    if supplied.startswith("sha256="):
        supplied = supplied[len("sha256="):]

    expected = compute_signature(secret, body)
    if not hmac.compare_digest(expected.encode("ascii"), supplied.encode("ascii", "replace")):
        raise InvalidSignatureError()


def _prefix(value: str | None) -> str:
    return f"{value[:8]}..." if value else "-"


# ---------------------------------------------------------------------------
# Handler
# ---------------------------------------------------------------------------

class WebhookCallbackHandler:
    """
    One instance per request. The session is owned by the caller (FastAPI
    dependency) and is rolled back there if anything below raises.
    """

    def __init__(
        self,
        session:        AsyncSession,
        repository:     DocumentRepository,
        idempotency:    IdempotencyService,
        publisher:      IndexEventPublisher,
        secret:         str,
        max_body_bytes: int,
    ) -> None:
        self._session     = session
        self._repo        = repository
        self._idempotency = idempotency
        self._publisher   = publisher
        self._secret      = secret
        self._max_body    = max_body_bytes

    async def handle(self, raw_body: bytes, signature: str | None) -> WebhookAck:
        webhook_id = f"webhook_{uuid.uuid4().hex[:12]}"
        start = time.perf_counter()
        try:
            ack, result = await self._handle(raw_body, signature)
        except ProcessingError as exc:
            self._log_rejection(webhook_id, exc, start, signature)
            raise

        logger.info(
            "Webhook processed | webhook_id=%s doc=%s status=%s result=%s latency_ms=%.2f",
            webhook_id, ack.document_id, ack.status, result, _elapsed_ms(start),
        )
        return ack

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _handle(self, raw_body: bytes, signature: str | None) -> tuple[WebhookAck, str]:
        # ---- Stage 1: size cap ----------------------------------------
        if len(raw_body) > self._max_body:
            raise PayloadTooLargeError(len(raw_body), self._max_body)

        # ---- Stage 2: signature over raw bytes ------------------------
        verify_signature(self._secret, raw_body, signature)

        # ---- Stage 3: parse + schema ----------------------------------
        payload = parse_callback(raw_body)

        # ---- Stage 4: lookup (row lock) --------------------------------
        doc = await self._repo.get_for_update(payload.document_id)
        if doc is None:
            raise DocumentNotFoundError(payload.document_id)

        # ---- Stage 5: correlation --------------------------------------
        if doc.ocr_task_id and doc.ocr_task_id != payload.task_id:
            logger.error(
                "Task ID mismatch in webhook | doc=%s expected_task=%s received_task=%s",
                doc.id, doc.ocr_task_id, payload.task_id,
            )
            raise TaskMismatchError(doc.ocr_task_id, payload.task_id)

        ack = WebhookAck(document_id=payload.document_id, status=payload.status)

        # ---- Stage 6 + 7: idempotency gate around state application ---
        token = self._idempotency.token_from_context(dedup_context(payload))

        async def _apply() -> bool:
            dispatch = self._apply(doc, payload)
            await self._session.commit()
            return dispatch

        outcome = await self._idempotency.run_once(token, _apply)
        if not outcome.executed:
            # nothing was written; release the row lock
            await self._session.rollback()
            return ack, "replay"

        # ---- Stage 8: completion event after commit --------------------
        if outcome.value:
            await dispatch_index_event(self._session, self._publisher, doc)

        return ack, "success"

    def _apply(self, doc: Document, payload: OcrCallbackPayload) -> bool:
        """Mutate doc for the callback. Returns True when an index event is due."""
        if payload.status == ProcessingStatus.PROCESSING.value:
            state_machine.mark_processing(
                doc,
                progress=payload.progress,
                operation=payload.current_operation,
            )
            logger.info(
                "Document progress updated via webhook | doc=%s progress=%s operation=%s",
                doc.id, doc.progress, doc.current_operation,
            )
            return False

        if payload.status == ProcessingStatus.COMPLETED.value:
            result = _validate_result(payload.result)
            # transition first: an illegal completion must not touch result fields
            state_machine.mark_completed(doc)
            apply_completion_result(doc, result.model_dump(exclude_none=True))
            logger.info(
                "Document processing completed via webhook | doc=%s confidence=%s category=%s",
                doc.id, doc.confidence_score, doc.category,
            )
            return True

        if not payload.error:
            raise MissingFieldError("error")
        state_machine.mark_failed(doc, payload.error)
        logger.warning(
            "Document processing failed via webhook | doc=%s progress=%s error=%s",
            doc.id, doc.progress, payload.error,
        )
        return False

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------

    @staticmethod
    def _log_rejection(
        webhook_id: str,
        exc:        ProcessingError,
        start:      float,
        signature:  str | None,
    ) -> None:
        if isinstance(exc, SignatureMissingError):
            result = "rejected_no_signature"
        elif isinstance(exc, InvalidSignatureError):
            result = "rejected_invalid_signature"
        else:
            result = f"error_{exc.error_code.lower()}"

        log = logger.warning if exc.status_code < 500 else logger.error
        log(
            "Webhook rejected | webhook_id=%s result=%s status_code=%d error=%s "
            "signature_prefix=%s latency_ms=%.2f",
            webhook_id, result, exc.status_code, exc.message,
            _prefix(signature), _elapsed_ms(start),
        )


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------

def parse_callback(raw_body: bytes) -> OcrCallbackPayload:
    try:
        data = json.loads(raw_body)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedPayloadError(f"Invalid JSON payload: {exc}") from exc
    if not isinstance(data, dict):
        raise MalformedPayloadError("Invalid JSON payload: expected an object")

    for field in REQUIRED_FIELDS:
        if data.get(field) in (None, ""):
            raise MissingFieldError(field)

    try:
        payload = OcrCallbackPayload.model_validate(data)
    except PydanticValidationError as exc:
        raise MalformedPayloadError(f"Invalid callback payload: {_first_error(exc)}") from exc

    if payload.status not in CALLBACK_STATUSES:
        raise UnknownCallbackStatusError(payload.status)
    return payload


def dedup_context(payload: OcrCallbackPayload) -> dict[str, Any]:
    context: dict[str, Any] = {
        "document_id": payload.document_id,
        "task_id":     payload.task_id,
        "status":      payload.status,
    }
    if payload.status == ProcessingStatus.PROCESSING.value:
        context["progress"] = payload.progress
    return context


def _validate_result(result: dict[str, Any] | None) -> OcrResultPayload:
    if not isinstance(result, dict):
        raise MissingFieldError("result")
    for field in ("text", "confidence"):
        if result.get(field) is None:
            raise MissingFieldError(f"result.{field}")
    try:
        return OcrResultPayload.model_validate(result)
    except PydanticValidationError as exc:
        raise MalformedPayloadError(f"Invalid result object: {_first_error(exc)}") from exc


def _first_error(exc: PydanticValidationError) -> str:
    err = exc.errors()[0]
    location = ".".join(str(part) for part in err["loc"])
    return f"{location}: {err['msg']}" if location else err["msg"]


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000
