# Overview: Service-layer operations for barcode batches; the chunked generation engine, progress and cancellation.

"""
Barcode Batch Engine

================================================================================
PURPOSE: Mint large pools of unique warranty codes as a resumable background job
================================================================================

STATE MACHINE:
    queued -> running -> completed
                      -> cancelled   (operator request, idempotent)
                      -> failed      (entropy_exhausted or internal error)
    queued -> cancelled

EACH ITERATION (one transaction per chunk):
1. Re-read the batch row; stop unless it is still running
2. Generate k = min(chunk_size, remaining) random codes in memory
3. Bulk insert with skip-on-conflict
4. minted += inserted, collisions += k - inserted, compare-and-set on
   status == running (a concurrent cancel makes the chunk roll back)
5. If the collision rate over the recent window exceeds the threshold,
   double the code length (or fail with entropy_exhausted at max length)

Because progress and the chunk's barcodes commit together, a crash leaves
minted_count equal to the number of barcode rows; re-running the batch
continues from there without duplicating work.
"""

from __future__ import annotations

import logging
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy import select, update

from ..config import WarrantySettings
from ..deadline import Deadline
from ..errors import ENTROPY_EXHAUSTED, ConflictError, ValidationError, WarrantyError
from ..extensions import db
from ..models import BarcodeBatch, Product
from ..models.barcodes import (
    BATCH_ACTIVE_STATUSES,
    BATCH_STATUS_CANCELLED,
    BATCH_STATUS_COMPLETED,
    BATCH_STATUS_FAILED,
    BATCH_STATUS_QUEUED,
    BATCH_STATUS_RUNNING,
    BATCH_TERMINAL_STATUSES,
)
from ..time_utils import utcnow
from . import barcode_repository
from .barcode_generator import CodeGenerator, normalize_prefix
from .concurrency import transaction
from .tenant_service import BoundTenant, get_owned, require_tenant, scoped_query


@dataclass(frozen=True)
class BatchProgress:
    batch_id: uuid.UUID
    status: str
    requested_count: int
    minted_count: int
    collision_count: int
    code_length: int
    rate: Optional[float]
    eta_seconds: Optional[float]
    failure_reason: Optional[str] = None

    @classmethod
    def from_batch(cls, batch: BarcodeBatch, now=None) -> "BatchProgress":
        now = now or utcnow()
        rate = None
        eta = None
        if batch.started_at is not None:
            end = batch.finished_at or now
            elapsed = (end - batch.started_at).total_seconds()
            if elapsed > 0:
                rate = batch.minted_count / elapsed
        remaining = batch.requested_count - batch.minted_count
        if batch.status == BATCH_STATUS_RUNNING and rate:
            eta = remaining / rate
        elif batch.status in BATCH_TERMINAL_STATUSES:
            eta = 0.0
        return cls(
            batch_id=batch.id,
            status=batch.status,
            requested_count=batch.requested_count,
            minted_count=batch.minted_count,
            collision_count=batch.collision_count,
            code_length=batch.code_length,
            rate=rate,
            eta_seconds=eta,
            failure_reason=batch.failure_reason,
        )

    def to_dict(self) -> dict:
        return {
            "batch_id": str(self.batch_id),
            "state": self.status,
            "requested": self.requested_count,
            "minted": self.minted_count,
            "collisions": self.collision_count,
            "code_length": self.code_length,
            "rate": round(self.rate, 2) if self.rate is not None else None,
            "eta_seconds": round(self.eta_seconds, 1) if self.eta_seconds is not None else None,
            "failure_reason": self.failure_reason,
        }


class CollisionWindow:
    """Collision rate over (at least) the most recent `size` attempts."""

    def __init__(self, size: int):
        self.size = size
        self._chunks: deque[tuple[int, int]] = deque()
        self.attempts = 0
        self.collisions = 0

    def record(self, attempts: int, collisions: int) -> None:
        self._chunks.append((attempts, collisions))
        self.attempts += attempts
        self.collisions += collisions
        while self._chunks and self.attempts - self._chunks[0][0] >= self.size:
            old_attempts, old_collisions = self._chunks.popleft()
            self.attempts -= old_attempts
            self.collisions -= old_collisions

    @property
    def rate(self) -> float:
        return self.collisions / self.attempts if self.attempts else 0.0

    def exceeded(self, threshold: float, min_sample: int) -> bool:
        return self.attempts >= min_sample and self.rate > threshold

    def reset(self) -> None:
        self._chunks.clear()
        self.attempts = 0
        self.collisions = 0


class _ChunkRejected(Exception):
    """The batch left `running` while a chunk was in flight."""


def create_batch(
    tenant: BoundTenant,
    *,
    product_id,
    requested_count: int,
    requested_by: str,
    settings: WarrantySettings,
    prefix: Optional[str] = None,
    deadline: Deadline | None = None,
) -> BarcodeBatch:
    """Create a queued batch. The caller dispatches it to a worker after commit."""
    require_tenant(tenant)
    if not isinstance(requested_count, int) or isinstance(requested_count, bool) or requested_count < 1:
        raise ValidationError("count must be a positive integer", details={"field": "count"})
    if requested_count > settings.batch_max_count:
        raise ValidationError(
            f"count cannot exceed {settings.batch_max_count}", details={"field": "count"}
        )
    prefix = normalize_prefix(prefix)
    with transaction(deadline, statement_timeout_ms=settings.db_statement_timeout_ms, operation="create batch"):
        product = get_owned(Product, tenant, product_id, label="Product")
        batch = BarcodeBatch(
            storefront_id=tenant.storefront_id,
            product_id=product.id,
            requested_count=requested_count,
            minted_count=0,
            collision_count=0,
            status=BATCH_STATUS_QUEUED,
            prefix=prefix,
            code_length=settings.code_length,
            annotations=[],
            requested_by=requested_by,
        )
        db.session.add(batch)
        db.session.flush()
        batch_id = batch.id
    return get_owned(BarcodeBatch, tenant, batch_id, label="Batch")


def get_batch(tenant: BoundTenant, batch_id) -> BarcodeBatch:
    return get_owned(BarcodeBatch, tenant, batch_id, label="Batch")


def get_progress(tenant: BoundTenant, batch_id) -> BatchProgress:
    """Plain read; never locks the batch row."""
    return BatchProgress.from_batch(get_batch(tenant, batch_id))


def cancel_batch(tenant: BoundTenant, batch_id, *, deadline: Deadline | None = None) -> BatchProgress:
    """
    Cancel a queued or running batch.

    Idempotent: cancelling an already cancelled batch is a no-op.

    Raises:
        ConflictError: batch already completed or failed
    """
    with transaction(deadline, operation="cancel batch"):
        batch = get_batch(tenant, batch_id)
        result = db.session.execute(
            update(BarcodeBatch)
            .where(
                BarcodeBatch.id == batch.id,
                BarcodeBatch.storefront_id == tenant.storefront_id,
                BarcodeBatch.status.in_(BATCH_ACTIVE_STATUSES),
            )
            .values(status=BATCH_STATUS_CANCELLED, finished_at=utcnow(), updated_at=utcnow())
        )
        if result.rowcount == 0:
            current = db.session.execute(
                select(BarcodeBatch.status).where(BarcodeBatch.id == batch.id)
            ).scalar_one()
            if current != BATCH_STATUS_CANCELLED:
                raise ConflictError(
                    f"Batch is already {current}", details={"status": current}
                )
    return get_progress(tenant, batch_id)


def list_resumable(tenant: BoundTenant) -> list[BarcodeBatch]:
    return (
        scoped_query(BarcodeBatch, tenant)
        .filter(BarcodeBatch.status.in_(BATCH_ACTIVE_STATUSES))
        .order_by(BarcodeBatch.created_at)
        .all()
    )


class BatchEngine:
    """
    Drives one batch to a terminal state (or until stopped).

    generator_factory(alphabet, length, prefix) -> CodeGenerator is
    injectable so tests can force collisions.
    """

    def __init__(
        self,
        settings: WarrantySettings,
        *,
        logger: logging.Logger | None = None,
        generator_factory: Callable[..., CodeGenerator] | None = None,
    ):
        self.settings = settings
        self.logger = logger or logging.getLogger(__name__)
        self.generator_factory = generator_factory or (
            lambda alphabet, length, prefix: CodeGenerator(alphabet, length, prefix=prefix)
        )

    def run(
        self,
        tenant: BoundTenant,
        batch_id,
        *,
        deadline: Deadline | None = None,
        on_progress: Callable[[BatchProgress], None] | None = None,
    ) -> BatchProgress:
        require_tenant(tenant)
        deadline = deadline or Deadline.never()
        batch = get_batch(tenant, batch_id)
        batch_id = batch.id

        if batch.status in BATCH_TERMINAL_STATUSES:
            return BatchProgress.from_batch(batch)
        if batch.status == BATCH_STATUS_QUEUED:
            self._start(tenant, batch_id)

        try:
            self._loop(tenant, batch_id, deadline, on_progress)
        except WarrantyError:
            raise
        except Exception:
            self.logger.exception("Batch %s crashed; marking failed", batch_id)
            db.session.rollback()
            self._finish(tenant, batch_id, BATCH_STATUS_FAILED, failure_reason="internal")
            raise
        return get_progress(tenant, batch_id)

    def _start(self, tenant: BoundTenant, batch_id: uuid.UUID) -> None:
        with transaction(operation="start batch"):
            db.session.execute(
                update(BarcodeBatch)
                .where(
                    BarcodeBatch.id == batch_id,
                    BarcodeBatch.storefront_id == tenant.storefront_id,
                    BarcodeBatch.status == BATCH_STATUS_QUEUED,
                )
                .values(status=BATCH_STATUS_RUNNING, started_at=utcnow(), updated_at=utcnow())
            )
        self.logger.info("Batch %s started", batch_id)

    def _read_state(self, batch_id: uuid.UUID):
        row = db.session.execute(
            select(
                BarcodeBatch.status,
                BarcodeBatch.requested_count,
                BarcodeBatch.minted_count,
                BarcodeBatch.code_length,
                BarcodeBatch.prefix,
                BarcodeBatch.product_id,
                BarcodeBatch.annotations,
            ).where(BarcodeBatch.id == batch_id)
        ).one()
        db.session.commit()
        return row

    def _loop(self, tenant, batch_id, deadline: Deadline, on_progress) -> None:
        settings = self.settings
        window = CollisionWindow(settings.collision_window)
        generator: CodeGenerator | None = None

        while True:
            if deadline.token.cancelled:
                self.logger.info("Batch %s paused: worker stopping (%s)", batch_id, deadline.token.reason)
                return
            deadline.check("next batch chunk")

            state = self._read_state(batch_id)
            if state.status != BATCH_STATUS_RUNNING:
                self.logger.info("Batch %s stopped in status %s", batch_id, state.status)
                return
            remaining = state.requested_count - state.minted_count
            if remaining <= 0:
                self._finish(tenant, batch_id, BATCH_STATUS_COMPLETED)
                return

            if generator is None or generator.length != state.code_length:
                generator = self.generator_factory(settings.code_alphabet, state.code_length, state.prefix)

            k = min(settings.batch_chunk_size, remaining)
            codes = generator.generate_many(k)
            try:
                progress = self._commit_chunk(tenant, batch_id, state, codes, window)
            except _ChunkRejected:
                self.logger.info("Batch %s left running during a chunk; chunk discarded", batch_id)
                return
            if on_progress is not None:
                on_progress(progress)
            if progress.status == BATCH_STATUS_FAILED:
                return

    def _commit_chunk(self, tenant, batch_id, state, codes: list[str], window: CollisionWindow) -> BatchProgress:
        settings = self.settings
        with transaction(operation="batch chunk"):
            result = barcode_repository.bulk_insert(
                tenant, product_id=state.product_id, codes=codes, batch_id=batch_id
            )
            inserted = result.inserted_count
            collisions = len(codes) - inserted
            window.record(len(codes), collisions)

            values = {
                "minted_count": BarcodeBatch.minted_count + inserted,
                "collision_count": BarcodeBatch.collision_count + collisions,
                "updated_at": utcnow(),
            }
            if window.exceeded(settings.collision_threshold, settings.collision_min_sample):
                new_length = state.code_length * 2
                annotations = list(state.annotations or [])
                if new_length > settings.code_max_length:
                    values.update(
                        status=BATCH_STATUS_FAILED,
                        failure_reason=ENTROPY_EXHAUSTED,
                        finished_at=utcnow(),
                    )
                    annotations.append({
                        "at": utcnow().isoformat(),
                        "event": ENTROPY_EXHAUSTED,
                        "collision_rate": round(window.rate, 4),
                        "code_length": state.code_length,
                    })
                    self.logger.warning(
                        "Batch %s failed: collision rate %.2f%% at max code length %s",
                        batch_id, window.rate * 100, state.code_length,
                    )
                else:
                    values["code_length"] = new_length
                    annotations.append({
                        "at": utcnow().isoformat(),
                        "event": "code_length_doubled",
                        "collision_rate": round(window.rate, 4),
                        "from": state.code_length,
                        "to": new_length,
                    })
                    self.logger.warning(
                        "Batch %s widened codes %s -> %s (collision rate %.2f%%)",
                        batch_id, state.code_length, new_length, window.rate * 100,
                    )
                values["annotations"] = annotations
                window.reset()

            updated = db.session.execute(
                update(BarcodeBatch)
                .where(
                    BarcodeBatch.id == batch_id,
                    BarcodeBatch.storefront_id == tenant.storefront_id,
                    BarcodeBatch.status == BATCH_STATUS_RUNNING,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if updated.rowcount != 1:
                raise _ChunkRejected()
        return get_progress(tenant, batch_id)

    def _finish(self, tenant, batch_id, status: str, *, failure_reason: str | None = None) -> None:
        with transaction(operation="finish batch"):
            stmt = (
                update(BarcodeBatch)
                .where(
                    BarcodeBatch.id == batch_id,
                    BarcodeBatch.storefront_id == tenant.storefront_id,
                    BarcodeBatch.status == BATCH_STATUS_RUNNING,
                )
                .values(status=status, failure_reason=failure_reason, finished_at=utcnow(), updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if status == BATCH_STATUS_COMPLETED:
                stmt = stmt.where(BarcodeBatch.minted_count == BarcodeBatch.requested_count)
            db.session.execute(stmt)
        self.logger.info("Batch %s finished: %s", batch_id, status)
