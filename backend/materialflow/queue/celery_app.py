"""
Celery Application Factory

Broker: Redis (CELERY_BROKER_URL); RabbitMQ works unchanged.
Result backend: Redis, short TTL. Job state that operators need lives in
the processing_jobs ledger, not in Celery results.

Queue topology:
  materials       — process-material jobs, one logical job type
  system.health   — internal health-check and staleness-scan tasks

Job payloads carry only the envelope (materialId, fileUrl); raw bytes are
fetched inside the worker.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from materialflow.core.config import settings
from materialflow.queue.envelope import QUEUE_NAME

logger = logging.getLogger(__name__)

PROCESS_TASK = "materialflow.queue.tasks.process_material"
STALE_SCAN_TASK = "materialflow.queue.tasks.recover_stale_materials"
HEALTH_TASK = "materialflow.queue.tasks.health_check"

MATERIALS_EXCHANGE = Exchange(QUEUE_NAME, type="direct", durable=True)

TASK_QUEUES = (
    Queue(QUEUE_NAME, exchange=MATERIALS_EXCHANGE, routing_key=QUEUE_NAME, durable=True),
    Queue(
        "system.health",
        Exchange("system", type="direct"),
        routing_key="system.health",
        durable=True,
    ),
)

TASK_ROUTES = {
    PROCESS_TASK:    {"queue": QUEUE_NAME},
    STALE_SCAN_TASK: {"queue": "system.health"},
    HEALTH_TASK:     {"queue": "system.health"},
}


def create_celery_app() -> Celery:
    app = Celery("materialflow")

    app.conf.update(
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,

        # JSON only
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue=QUEUE_NAME,
        task_default_exchange=QUEUE_NAME,
        task_default_routing_key=QUEUE_NAME,

        # at-least-once: ack after the task finishes, redeliver if the worker dies
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,

        task_soft_time_limit=900,
        task_time_limit=960,

        result_expires=3600,

        timezone="UTC",
        enable_utc=True,

        beat_schedule={
            "recover-stale-materials": {
                "task":     STALE_SCAN_TASK,
                "schedule": settings.stale_scan_interval_seconds,
                "options":  {"queue": "system.health"},
            },
        },

        worker_max_tasks_per_child=200,
    )

    app.autodiscover_tasks(["materialflow.queue"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------

def _material_of(kwargs: dict | None) -> str:
    payload = (kwargs or {}).get("payload")
    if isinstance(payload, dict):
        return str(payload.get("materialId", "?"))
    return "?"


@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info(
        "Task start | task_id=%s task=%s material=%s retries=%s",
        task_id, task.name, _material_of(kwargs), task.request.retries,
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task end | task_id=%s task=%s state=%s material=%s",
        task_id, task.name, state, _material_of(kwargs),
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s material=%s error=%s",
        task_id, _material_of(kwargs), exception,
    )
