from __future__ import annotations

# Models must be mapped before the lifecycle queries receipts.
# isort: off
import receipt_nest.models  # noqa: F401
# isort: on

import time

from receipt_nest.core.logging import (
    get_logger,
    log_event,
    log_exception,
    monotonic_ms,
    reset_task_context,
    set_task_context,
)
from receipt_nest.worker.celery_app import RECEIPTS_QUEUE, celery_app

logger = get_logger(__name__)

PROCESS_RECEIPT_TASK = "receipts.process_receipt"


@celery_app.task(name=PROCESS_RECEIPT_TASK, bind=True, queue=RECEIPTS_QUEUE)
def process_receipt_task(self, receipt_id: str) -> str | None:
    """Run the receipt lifecycle for one stored document; returns the status it settled in."""
    from receipt_nest.modules.receipts.lifecycle import process_receipt

    task_id = getattr(self.request, "id", None)
    token = set_task_context(task_id)
    start = time.monotonic()
    fields = {"task_name": PROCESS_RECEIPT_TASK, "receipt_id": receipt_id}
    log_event(logger, "celery.task.start", **fields)
    try:
        status = process_receipt(receipt_id=receipt_id)
    except Exception:
        # The lifecycle already parks receipts in needs_review; reaching here means the
        # database itself was unusable.
        log_exception(logger, "celery.task.error", duration_ms=monotonic_ms(start), **fields)
        raise
    else:
        log_event(
            logger,
            "celery.task.finish",
            status=status,
            duration_ms=monotonic_ms(start),
            **fields,
        )
        return status
    finally:
        reset_task_context(token)
