from celery import Celery
from relay.core.config import settings

celery = Celery(
    "relay-worker",
    broker=settings.rabbitmq_url,
    backend=settings.redis_url,
    include=["worker.tasks"],
)

celery.conf.update(
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_default_queue="default",
    task_routes={
        "worker.tasks.process_due_outbox": {"queue": "outbox"},
    },
    beat_schedule={
        "process-due-outbox": {
            "task": "worker.tasks.process_due_outbox",
            "schedule": settings.outbox_beat_seconds,
        },
    },
)
