"""
Error taxonomy for the processing core.

Every error carries the HTTP status it surfaces as and a stable
machine-readable code. FastAPI exception handlers in docproc.main turn
any ProcessingError into {"error": ..., "error_code": ...}.

  AuthError                     401  never retried
  ValidationError               400  never retried, never mutates state
  NotFoundError                 404
  PayloadTooLargeError          413
  TransientInfrastructureError  counted by the circuit breaker; the
                                document is marked FAILED, retry is an
                                explicit operator action

IdempotentReplay is deliberately absent: a replay is a success.
"""

from __future__ import annotations

from enum import Enum

import httpx


class ProcessingError(Exception):
    status_code: int = 500
    error_code:  str = "PROCESSING_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_body(self) -> dict:
        return {"error": self.message, "error_code": self.error_code}


# ---------------------------------------------------------------------------
# 401: webhook authentication
# ---------------------------------------------------------------------------

class AuthError(ProcessingError):
    status_code = 401
    error_code  = "UNAUTHORIZED"


class SignatureMissingError(AuthError):
    error_code = "SIGNATURE_REQUIRED"

    def __init__(self) -> None:
        super().__init__("Webhook signature required")


class InvalidSignatureError(AuthError):
    error_code = "INVALID_SIGNATURE"

    def __init__(self) -> None:
        super().__init__("Invalid webhook signature")


# ---------------------------------------------------------------------------
# 400: validation
# ---------------------------------------------------------------------------

class ValidationError(ProcessingError):
    status_code = 400
    error_code  = "VALIDATION_ERROR"


class MalformedPayloadError(ValidationError):
    error_code = "MALFORMED_PAYLOAD"


class MissingFieldError(ValidationError):
    error_code = "MISSING_FIELD"

    def __init__(self, field: str) -> None:
        super().__init__(f"Missing required field: {field}")
        self.field = field


class ProgressOutOfRangeError(ValidationError):
    error_code = "PROGRESS_OUT_OF_RANGE"

    def __init__(self, value: object) -> None:
        super().__init__(f"Progress must be between 0 and 100, got {value!r}")
        self.value = value


class TaskMismatchError(ValidationError):
    error_code = "TASK_MISMATCH"

    def __init__(self, expected: str, received: str) -> None:
        super().__init__("Task ID mismatch - webhook task_id does not match document")
        self.expected = expected
        self.received = received


class UnknownCallbackStatusError(ValidationError):
    error_code = "UNKNOWN_STATUS"

    def __init__(self, status: str) -> None:
        super().__init__(f"Unknown status: {status}")


class IllegalTransitionError(ValidationError):
    error_code = "ILLEGAL_TRANSITION"

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Illegal processing transition: {current} -> {target}")
        self.current = current
        self.target  = target


class RetryNotAllowedError(IllegalTransitionError):
    error_code = "RETRY_NOT_ALLOWED"

    def __init__(self, current: str) -> None:
        super().__init__(current, "queued")
        self.message = "Document processing has not failed"
        self.args    = (self.message,)

    def to_body(self) -> dict:
        return {**super().to_body(), "current_status": self.current}


# ---------------------------------------------------------------------------
# 404 / 413
# ---------------------------------------------------------------------------

class NotFoundError(ProcessingError):
    status_code = 404
    error_code  = "NOT_FOUND"


class DocumentNotFoundError(NotFoundError):
    error_code = "DOCUMENT_NOT_FOUND"

    def __init__(self, document_id: str) -> None:
        super().__init__("Document not found")
        self.document_id = document_id


class PayloadTooLargeError(ProcessingError):
    status_code = 413
    error_code  = "PAYLOAD_TOO_LARGE"

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"Payload of {size:,} bytes exceeds the {limit:,} byte limit")


# ---------------------------------------------------------------------------
# Submission-time failures (recorded on the document, not surfaced as HTTP)
# ---------------------------------------------------------------------------

class FileNotFoundForProcessingError(ProcessingError):
    error_code = "FILE_NOT_FOUND"

    def __init__(self, path: str) -> None:
        super().__init__(f"Document file not found: {path}")
        self.path = path


class TransientInfrastructureError(ProcessingError):
    status_code = 503
    error_code  = "OCR_UNAVAILABLE"


class CircuitOpenError(TransientInfrastructureError):
    error_code = "CIRCUIT_OPEN"

    def __init__(self, name: str) -> None:
        super().__init__(f"Circuit breaker '{name}' is open")
        self.name = name


class OcrEngineError(TransientInfrastructureError):
    """Transport failure, timeout or non-2xx response from the OCR engine."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.upstream_status = status_code


# ---------------------------------------------------------------------------
# Transient vs permanent categorisation
# ---------------------------------------------------------------------------

class ErrorCategory(str, Enum):
    TRANSIENT = "transient"   # network, timeout, 5xx, breaker open: may succeed later
    PERMANENT = "permanent"   # bad input, missing file, auth: will never succeed

    @property
    def is_transient(self) -> bool:
        return self is ErrorCategory.TRANSIENT


_TRANSIENT_PATTERNS = (
    "timeout",
    "timed out",
    "connection refused",
    "connection reset",
    "temporarily unavailable",
    "service unavailable",
    "too many requests",
    "rate limit",
    "deadlock",
    "lock wait timeout",
)


def categorize(exc: BaseException) -> ErrorCategory:
    """Classify an exception; unknown errors are PERMANENT to avoid endless retries."""
    if isinstance(exc, OcrEngineError):
        if exc.upstream_status is not None and 400 <= exc.upstream_status < 500:
            return ErrorCategory.PERMANENT
        return ErrorCategory.TRANSIENT
    if isinstance(exc, (TransientInfrastructureError, httpx.TransportError, TimeoutError, ConnectionError)):
        return ErrorCategory.TRANSIENT
    if isinstance(exc, ProcessingError):
        return ErrorCategory.PERMANENT

    message = str(exc).lower()
    if any(pattern in message for pattern in _TRANSIENT_PATTERNS):
        return ErrorCategory.TRANSIENT
    return ErrorCategory.PERMANENT
