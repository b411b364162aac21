"""
Celery Application Factory

Runs ingestion jobs outside the API process.
Broker: RabbitMQ (amqp://) in production; Redis (redis://) for local dev.
Result backend: Redis (optional; job state lives on the catalog record).

Queue topology:
  knowledge.ingest    — single-document ingestion of stored uploads
  knowledge.reingest  — bulk re-ingestion (sequential per batch)

Task payloads carry document ids and filters only, never file bytes;
the worker loads uploads from S3 itself.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from knowledge_ingest.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

KNOWLEDGE_EXCHANGE = Exchange("knowledge", type="direct", durable=True)

TASK_QUEUES = (
    Queue(
        "knowledge.ingest",
        exchange=KNOWLEDGE_EXCHANGE,
        routing_key="knowledge.ingest",
        durable=True,
    ),
    Queue(
        "knowledge.reingest",
        exchange=KNOWLEDGE_EXCHANGE,
        routing_key="knowledge.reingest",
        durable=True,
    ),
)

TASK_ROUTES = {
    "knowledge_ingest.workers.tasks.ingest_document":    {"queue": "knowledge.ingest"},
    "knowledge_ingest.workers.tasks.reingest_documents": {"queue": "knowledge.reingest"},
}

# Hard backstop above the in-process watchdog
_WATCHDOG_GRACE_SECONDS = 60


# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app() -> Celery:
    app = Celery("knowledge_ingest")

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
        task_default_queue="knowledge.ingest",
        task_default_exchange="knowledge",
        task_default_routing_key="knowledge.ingest",

        # --- Acks ---
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,   # one job at a time per worker process

        # --- Timeouts ---
        task_time_limit=int(settings.ingestion_timeout_seconds) + _WATCHDOG_GRACE_SECONDS,

        # --- Results ---
        result_expires=3600,   # state is tracked on the catalog record

        # --- Timezone ---
        timezone="UTC",
        enable_utc=True,

        # --- Worker ---
        worker_max_tasks_per_child=200,   # recycle workers to bound memory (PDF parsing)
    )

    app.autodiscover_tasks(["knowledge_ingest.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals — task lifecycle logging
# ---------------------------------------------------------------------------

@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info(
        "Task start | task_id=%s task=%s doc=%s",
        task_id, task.name, kwargs.get("document_id", "?"),
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task finished | task_id=%s task=%s state=%s doc=%s",
        task_id, task.name, state, kwargs.get("document_id", "?"),
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task raised | task_id=%s doc=%s error=%s",
        task_id, kwargs.get("document_id", "?"), exception,
        exc_info=True,
    )
