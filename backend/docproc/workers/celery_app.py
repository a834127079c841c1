"""
Celery Application Factory

Broker: RabbitMQ (amqp://) in production; Redis or memory:// for local dev
and tests. Result backend: Redis (optional — processing state lives in
PostgreSQL, not in Celery results).

Queue topology:
  documents.ocr          submission of uploaded documents to the OCR engine
  documents.index        consumed by the external indexer (this service only
                         publishes to it)
  documents.maintenance  periodic jobs: index redispatch, stuck-task cleanup,
                         idempotency token purge

Task payloads carry document ids only, never file content.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from docproc.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

DOCUMENTS_EXCHANGE = Exchange("documents", type="direct", durable=True)

TASK_QUEUES = (
    Queue(
        "documents.ocr",
        exchange=DOCUMENTS_EXCHANGE,
        routing_key="documents.ocr",
        durable=True,
    ),
    Queue(
        settings.index_queue,
        exchange=DOCUMENTS_EXCHANGE,
        routing_key=settings.index_queue,
        durable=True,
    ),
    Queue(
        "documents.maintenance",
        exchange=DOCUMENTS_EXCHANGE,
        routing_key="documents.maintenance",
        durable=True,
    ),
)

CONSUMED_QUEUES = ("documents.ocr", "documents.maintenance")

TASK_ROUTES = {
    "docproc.workers.tasks.process_document":               {"queue": "documents.ocr"},
    "docproc.workers.tasks.dispatch_pending_index_events":  {"queue": "documents.maintenance"},
    "docproc.workers.tasks.cleanup_stuck_tasks":            {"queue": "documents.maintenance"},
    "docproc.workers.tasks.purge_expired_idempotency_tokens": {"queue": "documents.maintenance"},
    settings.index_task_name:                               {"queue": settings.index_queue},
}

# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app() -> Celery:
    app = Celery("docproc")

    app.conf.update(
        # --- Broker / Backend ---
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,

        # --- Serialization (reject non-JSON messages) ---
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        # --- Queues ---
        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue="documents.ocr",
        task_default_exchange="documents",
        task_default_routing_key="documents.ocr",

        # --- Reliability ---
        task_acks_late=True,            # ack only after the task finished
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,

        # --- Retries ---
        task_default_retry_delay=30,    # seconds

        # --- Timeouts ---
        # submission is bounded by ocr_request_timeout; leave headroom for DB work
        task_soft_time_limit=int(settings.ocr_request_timeout) + 60,
        task_time_limit=int(settings.ocr_request_timeout) + 90,

        # --- Result TTL ---
        result_expires=3600,

        # --- Timezone ---
        timezone="UTC",
        enable_utc=True,

        # --- Beat schedule ---
        beat_schedule={
            "dispatch-pending-index-events-every-60s": {
                "task":     "docproc.workers.tasks.dispatch_pending_index_events",
                "schedule": 60,
                "options":  {"queue": "documents.maintenance"},
            },
            "cleanup-stuck-ocr-tasks-every-15m": {
                "task":     "docproc.workers.tasks.cleanup_stuck_tasks",
                "schedule": 15 * 60,
                "options":  {"queue": "documents.maintenance"},
            },
            "purge-expired-idempotency-tokens-hourly": {
                "task":     "docproc.workers.tasks.purge_expired_idempotency_tokens",
                "schedule": 60 * 60,
                "options":  {"queue": "documents.maintenance"},
            },
        },

        # --- Worker ---
        worker_max_tasks_per_child=200,
    )

    # documents.index is declared for publishing only; the external indexer
    # consumes it. An explicit -Q on the worker command line still wins.
    app.amqp.queues.select(CONSUMED_QUEUES)

    app.autodiscover_tasks(["docproc.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals: structured task logging
# ---------------------------------------------------------------------------

@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info(
        "Task start | task_id=%s task=%s doc=%s",
        task_id, task.name, (kwargs or {}).get("document_id", "-"),
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task end | task_id=%s task=%s state=%s doc=%s",
        task_id, task.name, state, (kwargs or {}).get("document_id", "-"),
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s doc=%s error=%s",
        task_id, (kwargs or {}).get("document_id", "-"), exception,
        exc_info=True,
    )
