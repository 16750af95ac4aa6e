"""
Celery Application Factory

Configures the Celery app for background chunk processing of large PDFs.
Broker: RabbitMQ (amqp://) in production; Redis (redis://) for local dev.
Result backend: Redis (optional — session state lives in PostgreSQL).

Queue topology:
  uwia.chunks        — chunk planning + batch storage for one session
  uwia.maintenance   — TTL sweep and stale-session re-queue (beat)
  system.health      — internal health-check tasks

Task payloads carry only the session id. Uploaded bytes are re-read from
upload staging (S3 by default) inside the worker.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from uwia.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

UWIA_EXCHANGE = Exchange("uwia", type="direct", durable=True)

TASK_QUEUES = (
    Queue(
        "uwia.chunks",
        exchange=UWIA_EXCHANGE,
        routing_key="uwia.chunks",
        queue_arguments={"x-max-priority": 10},
        durable=True,
    ),
    Queue(
        "uwia.maintenance",
        exchange=UWIA_EXCHANGE,
        routing_key="uwia.maintenance",
        durable=True,
    ),
    Queue(
        "system.health",
        Exchange("system", type="direct"),
        routing_key="system.health",
        durable=True,
    ),
)

TASK_ROUTES = {
    "uwia.workers.tasks.process_session_chunks":   {"queue": "uwia.chunks"},
    "uwia.workers.tasks.cleanup_expired_sessions": {"queue": "uwia.maintenance"},
    "uwia.workers.tasks.requeue_stale_sessions":   {"queue": "uwia.maintenance"},
    "uwia.workers.tasks.health_check":             {"queue": "system.health"},
}

# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app() -> Celery:
    app = Celery("uwia")

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
        task_default_queue="uwia.chunks",
        task_default_exchange="uwia",
        task_default_routing_key="uwia.chunks",

        # --- Reliability ---
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,   # one session at a time per worker process

        # --- Timeouts (huge documents: planning + ~30 batches) ---
        task_soft_time_limit=int(settings.ultra_large_timeout_seconds * 3),
        task_time_limit=int(settings.ultra_large_timeout_seconds * 3) + 60,

        # --- Result TTL ---
        result_expires=3600,

        # --- Timezone ---
        timezone="UTC",
        enable_utc=True,

        # --- Beat schedule ---
        beat_schedule={
            "cleanup-expired-sessions": {
                "task":     "uwia.workers.tasks.cleanup_expired_sessions",
                "schedule": settings.cleanup_interval_hours * 3600,
                "options":  {"queue": "uwia.maintenance"},
            },
            "requeue-stale-sessions": {
                "task":     "uwia.workers.tasks.requeue_stale_sessions",
                "schedule": max(settings.stale_session_minutes, 1) * 60,
                "options":  {"queue": "uwia.maintenance"},
            },
        },

        # --- Worker ---
        worker_max_tasks_per_child=50,   # recycle after large PDFs to return memory
    )

    app.autodiscover_tasks(["uwia.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals: task lifecycle logging
# ---------------------------------------------------------------------------

@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info(
        "Task start | task_id=%s task=%s session=%s",
        task_id, task.name, (kwargs or {}).get("session_id", "-"),
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task end | task_id=%s task=%s state=%s session=%s",
        task_id, task.name, state, (kwargs or {}).get("session_id", "-"),
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s session=%s error=%s",
        task_id, (kwargs or {}).get("session_id", "-"), exception,
        exc_info=True,
    )
