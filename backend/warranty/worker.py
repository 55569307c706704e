# Overview: Celery wiring and background tasks that drive barcode generation batches.

"""
Batch Workers

WHY: Minting up to a million codes outlives any HTTP request. The request
only queues the batch; a Celery worker drives it chunk by chunk.

LIFECYCLE:
- init_celery(app) builds the Celery app from the Flask config and makes
  every task run inside an application context
- drive_batch runs one batch until it completes, is cancelled, fails, or
  the worker shuts down (the batch then stays running and is resumable)
- resume_batches re-dispatches every queued/running batch, e.g. after a
  crash or a deploy

Run a worker:
    celery -A make_celery worker --loglevel=info
"""

from __future__ import annotations

import threading

from celery import Celery, Task, shared_task
from celery.signals import worker_shutting_down
from flask import Flask, current_app

from .deadline import CancellationToken, Deadline
from .errors import WarrantyError
from .extensions import db
from .models import Storefront
from .models.tenancy import STOREFRONT_STATUS_ACTIVE
from .services import batch_service
from .services.tenant_service import ResolutionHints


class BatchWorkerState:
    """Cancellation tokens of batches running in this worker process."""

    def __init__(self):
        self._lock = threading.Lock()
        self._tokens: set[CancellationToken] = set()

    def register(self, token: CancellationToken) -> None:
        with self._lock:
            self._tokens.add(token)

    def discard(self, token: CancellationToken) -> None:
        with self._lock:
            self._tokens.discard(token)

    def cancel_all(self, reason: str) -> int:
        with self._lock:
            tokens = list(self._tokens)
        for token in tokens:
            token.cancel(reason)
        return len(tokens)


def init_celery(app: Flask) -> Celery:
    class FlaskTask(Task):
        def __call__(self, *args, **kwargs):
            with app.app_context():
                return self.run(*args, **kwargs)

    celery = Celery(app.import_name, task_cls=FlaskTask)
    celery.conf.update(
        broker_url=app.config["CELERY_BROKER_URL"],
        result_backend=app.config["CELERY_RESULT_BACKEND"],
        task_always_eager=app.config["CELERY_TASK_ALWAYS_EAGER"],
        task_eager_propagates=True,
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        timezone="UTC",
        enable_utc=True,
        task_track_started=True,
        worker_prefetch_multiplier=1,
        worker_concurrency=app.config["CELERY_WORKER_CONCURRENCY"],
    )
    celery.set_default()
    state = BatchWorkerState()
    app.extensions["celery"] = celery
    app.extensions["warranty_worker"] = state

    @worker_shutting_down.connect(weak=False)
    def _stop_batches(sig=None, how=None, exitcode=None, **kwargs):
        count = state.cancel_all(f"worker shutdown ({how})")
        if count:
            app.logger.info("Stopping %s running batch(es) for worker shutdown", count)

    return celery


def dispatch_batch(storefront_id: str, batch_id: str) -> None:
    """Default orchestrator dispatcher: queue drive_batch."""
    drive_batch.delay(storefront_id, batch_id)


@shared_task(ignore_result=True, acks_late=True)
def drive_batch(storefront_id: str, batch_id: str) -> dict | None:
    """
    Drive one batch. Safe to run twice: a second run of a finished batch is
    a no-op and a running batch continues from its committed progress.
    """
    service = current_app.extensions["warranty"]
    state: BatchWorkerState = current_app.extensions["warranty_worker"]
    try:
        tenant = service.resolve_tenant(ResolutionHints(claim_storefront_id=storefront_id))
    except WarrantyError as exc:
        current_app.logger.warning("Batch %s not started: %s (%s)", batch_id, exc.code, exc.message)
        return None

    token = CancellationToken()
    state.register(token)
    try:
        return service.run_batch(tenant, batch_id, deadline=Deadline.never(token))
    finally:
        state.discard(token)


@shared_task(ignore_result=True)
def resume_batches() -> int:
    """Re-dispatch every queued or running batch of active storefronts."""
    service = current_app.extensions["warranty"]
    dispatched = 0
    storefronts = db.session.query(Storefront).filter_by(status=STOREFRONT_STATUS_ACTIVE).all()
    for storefront in storefronts:
        tenant = service.resolve_tenant(ResolutionHints(claim_storefront_id=str(storefront.id)))
        for batch in batch_service.list_resumable(tenant):
            drive_batch.delay(str(tenant.storefront_id), str(batch.id))
            dispatched += 1
    if dispatched:
        current_app.logger.info("Resumed %s batch(es)", dispatched)
    return dispatched
