from __future__ import annotations

from celery import Celery

from receipt_nest.core.config import settings

RECEIPTS_QUEUE = "receipts"


def make_celery() -> Celery:
    app = Celery(
        "receipt_nest",
        broker=settings.redis_url,
        backend=settings.redis_url,
        include=["receipt_nest.worker.tasks"],
    )
    app.conf.update(
        task_always_eager=settings.environment in {"dev", "test"},
        task_eager_propagates=True,
        task_track_started=True,
        task_default_queue=RECEIPTS_QUEUE,
        # Extraction calls are slow; take one receipt at a time and ack after it settles.
        task_acks_late=True,
        worker_prefetch_multiplier=1,
    )
    return app


celery_app = make_celery()
