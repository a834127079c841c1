"""
OCR Engine Operations Router
GET /ocr/queue-statistics — engine queue statistics plus local breaker state
GET /ocr/queue-health     — healthy / warning / critical verdict from the statistics
GET /ocr/stuck-tasks      — tasks stuck in processing longer than ?timeout minutes
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Query, status
from fastapi.responses import JSONResponse

from docproc.api.dependencies import OcrClientDep
from docproc.core.config import settings
from docproc.core.errors import TransientInfrastructureError
from docproc.schemas.processing import (
    ErrorBody,
    QueueHealthResponse,
    QueueStatisticsResponse,
    StuckTasksResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/ocr",
    tags=["OCR Operations"],
)


def assess_queue_health(stats: dict[str, Any]) -> tuple[str, list[str]]:
    """Return (status, issues). A dead-letter backlog outranks stuck tasks."""
    verdict = "healthy"
    issues: list[str] = []

    stuck = stats.get("stuck")
    if isinstance(stuck, int) and stuck > settings.queue_health_stuck_warning:
        verdict = "warning"
        issues.append(f"High number of stuck tasks: {stuck}")

    dead_lettered = stats.get("dead_letter_queue")
    if isinstance(dead_lettered, int) and dead_lettered > settings.queue_health_dlq_critical:
        verdict = "critical"
        issues.append(f"High dead letter queue count: {dead_lettered}")

    return verdict, issues


@router.get(
    "/queue-statistics",
    response_model=QueueStatisticsResponse,
    summary="OCR engine queue statistics",
    responses={503: {"model": ErrorBody, "description": "OCR engine unreachable or circuit open"}},
)
async def queue_statistics(client: OcrClientDep) -> QueueStatisticsResponse:
    stats = await client.get_queue_statistics()
    return QueueStatisticsResponse.model_validate({**stats, "circuit_state": client.breaker.state.value})


@router.get(
    "/queue-health",
    response_model=QueueHealthResponse,
    response_model_exclude_none=True,
    summary="OCR queue health verdict",
    responses={503: {"model": QueueHealthResponse, "description": "OCR engine unreachable or circuit open"}},
)
async def queue_health(client: OcrClientDep):
    try:
        stats = await client.get_queue_statistics()
    except TransientInfrastructureError as exc:
        logger.warning("Queue health unavailable | error=%s", exc.message)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "unavailable", "error": exc.message},
        )

    verdict, issues = assess_queue_health(stats)
    if issues:
        logger.warning("OCR queue degraded | status=%s issues=%s", verdict, issues)
    return QueueHealthResponse(
        status=verdict,
        timestamp=datetime.now(timezone.utc),
        issues=issues or None,
    )


@router.get(
    "/stuck-tasks",
    response_model=StuckTasksResponse,
    summary="Tasks stuck in the OCR engine",
    responses={503: {"model": ErrorBody, "description": "OCR engine unreachable or circuit open"}},
)
async def stuck_tasks(
    client:  OcrClientDep,
    timeout: int = Query(settings.stuck_task_timeout_minutes, ge=1, description="Minutes in processing"),
) -> StuckTasksResponse:
    tasks = await client.find_stuck_tasks(timeout)
    return StuckTasksResponse(stuck_tasks=tasks, count=len(tasks), timeout_minutes=timeout)
