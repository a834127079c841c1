"""
OCR Engine HTTP Client

Outbound calls to the external OCR engine. The engine reads files from a
shared storage volume, so requests carry an absolute path, never content.

  POST {base}/ocr/process                 start processing → {task_id, status}
  GET  {base}/tasks/stuck?timeout_minutes list tasks stuck in processing
  POST {base}/tasks/{task_id}/reset       reset a stuck task
  GET  {base}/queue/statistics            engine queue statistics

Every call goes through the process-wide "ocr-engine" circuit breaker.
Timeouts, transport errors and non-2xx responses all surface as
OcrEngineError and count as breaker failures.

The API process shares one httpx.AsyncClient (get_http_client); Celery
tasks, which run each coroutine on a fresh event loop, open their own via
ocr_client_scope().
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator

import httpx

from docproc.core.config import settings
from docproc.core.errors import OcrEngineError, TransientInfrastructureError
from docproc.processing.state_machine import ProcessingStatus
from docproc.resilience.circuit_breaker import CircuitBreaker, get_circuit_breaker

logger = logging.getLogger(__name__)

OCR_BREAKER_NAME = "ocr-engine"

# Two-letter document language → engine language code; unknown codes pass through
LANGUAGE_MAP: dict[str, str] = {
    "en": "eng",
    "de": "deu",
    "fr": "fra",
    "es": "spa",
    "it": "ita",
    "pt": "por",
    "pl": "pol",
}


def map_language(code: str | None) -> str:
    code = (code or settings.ocr_default_language).strip().lower()
    return LANGUAGE_MAP.get(code, code)


@dataclass(frozen=True)
class OcrSubmission:
    """Engine acknowledgement of a start-processing request."""
    task_id: str
    status:  ProcessingStatus
    raw:     dict[str, Any] = field(default_factory=dict)


class OcrEngineClient:
    """
    Thin async wrapper over the engine's REST API.
    The httpx client and breaker are injected so tests can swap in
    httpx.MockTransport and a breaker with a fake clock.
    """

    def __init__(
        self,
        http:     httpx.AsyncClient,
        base_url: str | None = None,
        breaker:  CircuitBreaker | None = None,
    ) -> None:
        self._http     = http
        self._base_url = (base_url or settings.ocr_service_url).rstrip("/")
        self._breaker  = breaker or get_circuit_breaker(OCR_BREAKER_NAME)

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def start_processing(
        self,
        document_id: str,
        file_path:   str,
        language:    str | None = None,
    ) -> OcrSubmission:
        body = {
            "file_path":   file_path,
            "language":    map_language(language),
            "document_id": document_id,
        }
        data = await self._breaker.call(
            lambda: self._request("POST", "/ocr/process", json=body)
        )

        task_id = data.get("task_id") if isinstance(data, dict) else None
        if not task_id:
            # accepted but unusable: nothing to correlate callbacks with
            raise OcrEngineError("OCR service response missing task_id")

        engine_status = str(data.get("status") or "queued").lower()
        status = (
            ProcessingStatus.PROCESSING
            if engine_status == ProcessingStatus.PROCESSING.value
            else ProcessingStatus.QUEUED
        )
        logger.info(
            "OCR submission accepted | doc=%s task=%s status=%s language=%s",
            document_id, task_id, status.value, body["language"],
        )
        return OcrSubmission(task_id=str(task_id), status=status, raw=data)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def find_stuck_tasks(self, timeout_minutes: int) -> list[Any]:
        data = await self._breaker.call(
            lambda: self._request(
                "GET", "/tasks/stuck", params={"timeout_minutes": timeout_minutes},
            )
        )
        stuck = data.get("stuck_tasks") if isinstance(data, dict) else None
        if not isinstance(stuck, list):
            logger.warning("OCR service response missing stuck_tasks field | response=%s", data)
            return []
        logger.info(
            "Retrieved stuck tasks | count=%d timeout_minutes=%d", len(stuck), timeout_minutes,
        )
        return stuck

    async def reset_stuck_task(self, task_id: str) -> bool:
        """Returns False instead of raising; one failed reset must not stop a sweep."""
        try:
            await self._breaker.call(lambda: self._request("POST", f"/tasks/{task_id}/reset"))
        except TransientInfrastructureError as exc:
            logger.warning("Failed to reset stuck task | task=%s error=%s", task_id, exc)
            return False
        logger.info("Reset stuck task | task=%s", task_id)
        return True

    async def get_queue_statistics(self) -> dict[str, Any]:
        data = await self._breaker.call(lambda: self._request("GET", "/queue/statistics"))
        return data if isinstance(data, dict) else {"statistics": data}

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = f"{self._base_url}{path}"
        try:
            response = await self._http.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            logger.error("OCR request timed out | method=%s url=%s", method, url)
            raise OcrEngineError(f"OCR service unavailable: request timed out ({exc})") from exc
        except httpx.TransportError as exc:
            logger.error("OCR request failed | method=%s url=%s error=%s", method, url, exc)
            raise OcrEngineError(f"OCR service unavailable: {exc}") from exc

        if not response.is_success:
            logger.error(
                "OCR service error response | method=%s url=%s status=%d",
                method, url, response.status_code,
            )
            raise OcrEngineError(
                f"OCR service returned status code: {response.status_code}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as exc:
            raise OcrEngineError("OCR service returned a non-JSON response") from exc


# ---------------------------------------------------------------------------
# Client lifecycle
# ---------------------------------------------------------------------------

_HTTP_CLIENT: httpx.AsyncClient | None = None


def get_http_client() -> httpx.AsyncClient:
    """Shared client for the API process; closed by the app lifespan."""
    global _HTTP_CLIENT
    if _HTTP_CLIENT is None or _HTTP_CLIENT.is_closed:
        _HTTP_CLIENT = httpx.AsyncClient(timeout=settings.ocr_request_timeout)
    return _HTTP_CLIENT


async def close_http_client() -> None:
    global _HTTP_CLIENT
    if _HTTP_CLIENT is not None and not _HTTP_CLIENT.is_closed:
        await _HTTP_CLIENT.aclose()
    _HTTP_CLIENT = None


@asynccontextmanager
async def ocr_client_scope() -> AsyncGenerator[OcrEngineClient, None]:
    """Per-task client for Celery workers."""
    async with httpx.AsyncClient(timeout=settings.ocr_request_timeout) as http:
        yield OcrEngineClient(http)
