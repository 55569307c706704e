# Overview: Use-case facade composing tenant resolution, barcodes, batches, claims, tickets and attachments.

"""
Warranty Orchestrator

================================================================================
PURPOSE: One method per use case; the only entry point HTTP handlers, CLI
commands and workers call
================================================================================

EVERY OPERATION:
1. Requires a BoundTenant (resolved by the caller through `resolver`)
2. Loads entities through tenant-scoped helpers (foreign id == not found)
3. Checks the actor's role for the action
4. Applies state-machine or generator logic
5. Persists in ONE transaction where consistency is required
6. Returns a response dict stripped of internal fields for the actor

The deadline is checked before each transaction; the per-statement DB
timeout is derived from it.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Optional

from ..config import WarrantySettings
from ..deadline import Deadline
from ..errors import ConflictError, NotFoundError, ValidationError
from ..models import Customer, Product, WarrantyClaim
from ..models.barcodes import BARCODE_STATUS_ACTIVATED, BARCODE_STATUS_CLAIMED
from ..models.claims import CLAIM_STATUS_CANCELLED, CLAIM_STATUS_ON_HOLD
from ..permissions import Actor, Role, require_action
from ..time_utils import to_utc_z, utcnow
from . import (
    barcode_repository,
    batch_service,
    claim_repository,
    claim_state_machine,
    outbox_service,
    repair_ticket_service,
    timeline_service,
)
from .batch_service import BatchEngine
from .concurrency import read_with_retry, run_with_retry, transaction
from .pagination import Page, PageRequest
from .tenant_service import BoundTenant, ResolutionHints, TenantResolver, get_owned, require_tenant


# (storefront_id, batch_id) -> None; hands a queued batch to a background worker
BatchDispatcher = Callable[[str, str], None]


class WarrantyOrchestrator:
    def __init__(
        self,
        settings: WarrantySettings,
        *,
        resolver: TenantResolver,
        engine: BatchEngine,
        dispatcher: Optional[BatchDispatcher] = None,
        logger: logging.Logger | None = None,
    ):
        self.settings = settings
        self.resolver = resolver
        self.engine = engine
        self.dispatcher = dispatcher
        self.logger = logger or logging.getLogger(__name__)

    # =========================================================================
    # PLUMBING
    # =========================================================================

    def resolve_tenant(self, hints: ResolutionHints) -> BoundTenant:
        return self.resolver.resolve(hints)

    def _tx(self, deadline: Optional[Deadline], operation: str):
        return transaction(
            deadline,
            statement_timeout_ms=self.settings.db_statement_timeout_ms,
            operation=operation,
        )

    def _read(self, deadline: Optional[Deadline], stage: str, func: Callable[[], Any]) -> Any:
        if deadline is not None:
            deadline.check(stage)
        return read_with_retry(func)

    @staticmethod
    def _claim_view(claim: WarrantyClaim, actor: Actor) -> dict:
        return claim.to_customer_dict() if actor.role == Role.CUSTOMER else claim.to_dict()

    @staticmethod
    def _require_own_claim(claim: WarrantyClaim, actor: Actor) -> None:
        if actor.role == Role.CUSTOMER and str(claim.customer_id) != actor.actor_id:
            raise NotFoundError("Claim not found")

    # =========================================================================
    # BARCODES
    # =========================================================================

    def generate_batch(
        self,
        tenant: BoundTenant,
        actor: Actor,
        *,
        product_id,
        count: Any,
        prefix: Optional[str] = None,
        deadline: Optional[Deadline] = None,
    ) -> dict:
        """Create a queued batch and hand it to a worker after commit."""
        require_tenant(tenant)
        require_action(actor, "GENERATE_BARCODES")
        batch = batch_service.create_batch(
            tenant,
            product_id=product_id,
            requested_count=count,
            requested_by=actor.actor_id,
            settings=self.settings,
            prefix=prefix,
            deadline=deadline,
        )
        self.logger.info(
            "Batch %s queued for storefront %s: %s codes", batch.id, tenant.slug, batch.requested_count
        )
        if self.dispatcher is not None:
            self.dispatcher(str(tenant.storefront_id), str(batch.id))
        return {"batch_id": str(batch.id)}

    def batch_progress(self, tenant: BoundTenant, actor: Actor, batch_id, *, deadline: Optional[Deadline] = None) -> dict:
        require_action(actor, "VIEW_BARCODES")
        progress = self._read(deadline, "batch progress", lambda: batch_service.get_progress(tenant, batch_id))
        return progress.to_dict()

    def cancel_batch(self, tenant: BoundTenant, actor: Actor, batch_id, *, deadline: Optional[Deadline] = None) -> dict:
        require_action(actor, "GENERATE_BARCODES")
        progress = batch_service.cancel_batch(tenant, batch_id, deadline=deadline)
        self.logger.info("Batch %s cancelled by %s", batch_id, actor.actor_id)
        return progress.to_dict()

    def run_batch(self, tenant: BoundTenant, batch_id, *, deadline: Optional[Deadline] = None, on_progress=None) -> dict:
        """Worker entry point: drive the batch until it stops."""
        return self.engine.run(tenant, batch_id, deadline=deadline, on_progress=on_progress).to_dict()

    def list_barcodes(
        self,
        tenant: BoundTenant,
        actor: Actor,
        *,
        page_request: PageRequest,
        deadline: Optional[Deadline] = None,
        **filters,
    ) -> Page:
        require_action(actor, "VIEW_BARCODES")
        page = self._read(
            deadline,
            "list barcodes",
            lambda: barcode_repository.list_by_tenant(tenant, page_request=page_request, **filters),
        )
        return Page([b.to_dict() for b in page.items], page.page, page.size, page.total)

    def barcode_stats(self, tenant: BoundTenant, actor: Actor, *, deadline: Optional[Deadline] = None) -> dict:
        require_action(actor, "VIEW_BARCODES")
        counts = self._read(deadline, "barcode stats", lambda: barcode_repository.count_by_status(tenant))
        return {"by_status": counts, "total": sum(counts.values())}

    def activate_barcode(
        self,
        tenant: BoundTenant,
        actor: Actor,
        barcode_id,
        *,
        customer_id,
        purchase_date: datetime,
        warranty_months: Optional[int] = None,
        deadline: Optional[Deadline] = None,
    ) -> dict:
        require_action(actor, "MANAGE_BARCODES")
        with self._tx(deadline, "activate barcode"):
            barcode = barcode_repository.get_by_id(tenant, barcode_id)
            barcode = self._activate(tenant, actor, barcode, customer_id, purchase_date, warranty_months)
            data = barcode.to_dict()
        return data

    def _activate(self, tenant, actor, barcode, customer_id, purchase_date, warranty_months):
        if warranty_months is None:
            product = get_owned(Product, tenant, barcode.product_id, label="Product")
            warranty_months = product.warranty_months
        barcode = barcode_repository.activate(
            tenant,
            barcode.id,
            customer_id=customer_id,
            purchase_date=purchase_date,
            warranty_months=warranty_months,
        )
        outbox_service.enqueue(
            tenant,
            topic="barcode.activated",
            aggregate_type="barcode",
            aggregate_id=barcode.id,
            payload={
                "customer_id": str(barcode.customer_id),
                "expiry_date": to_utc_z(barcode.expiry_date),
                "activated_by": actor.role,
            },
        )
        return barcode

    def register_warranty(
        self,
        tenant: BoundTenant,
        actor: Actor,
        *,
        code_value: str,
        purchase_date: datetime,
        deadline: Optional[Deadline] = None,
    ) -> dict:
        """
        Customer registers a code they hold; the warranty period is the product's.

        Unknown and foreign codes are not found; a code that is already
        activated, claimed or revoked is a conflict.
        """
        require_action(actor, "REGISTER_WARRANTY")
        code_value = (code_value or "").strip()
        if not code_value:
            raise ValidationError("code_value is required", details={"field": "code_value"})
        with self._tx(deadline, "register warranty"):
            customer = get_owned(Customer, tenant, actor.actor_id, label="Customer")
            barcode = barcode_repository.get_by_code_value(tenant, code_value)
            if barcode is None:
                raise NotFoundError("Barcode not found")
            barcode = self._activate(tenant, actor, barcode, customer.id, purchase_date, None)
            data = barcode.to_customer_dict()
        self.logger.info("Barcode %s registered by customer %s", data["id"], actor.actor_id)
        return data

    def list_own_warranties(
        self,
        tenant: BoundTenant,
        actor: Actor,
        *,
        page_request: PageRequest,
        status: Optional[str] = None,
        deadline: Optional[Deadline] = None,
    ) -> Page:
        require_action(actor, "REGISTER_WARRANTY")

        def load():
            customer = get_owned(Customer, tenant, actor.actor_id, label="Customer")
            return barcode_repository.list_by_tenant(
                tenant, status=status, customer_id=customer.id, page_request=page_request
            )

        page = self._read(deadline, "list own warranties", load)
        return Page([b.to_customer_dict() for b in page.items], page.page, page.size, page.total)

    def get_own_warranty(self, tenant: BoundTenant, actor: Actor, barcode_id, *, deadline: Optional[Deadline] = None) -> dict:
        require_action(actor, "REGISTER_WARRANTY")

        def load():
            barcode = barcode_repository.get_by_id(tenant, barcode_id)
            if str(barcode.customer_id) != actor.actor_id:
                raise NotFoundError("Barcode not found")
            return barcode.to_customer_dict()

        return self._read(deadline, "get own warranty", load)

    def revoke_barcode(
        self, tenant: BoundTenant, actor: Actor, barcode_id, *, reason: str, deadline: Optional[Deadline] = None
    ) -> dict:
        require_action(actor, "MANAGE_BARCODES")
        with self._tx(deadline, "revoke barcode"):
            barcode = barcode_repository.revoke(tenant, barcode_id, reason=reason)
            outbox_service.enqueue(
                tenant,
                topic="barcode.revoked",
                aggregate_type="barcode",
                aggregate_id=barcode.id,
                payload={"reason": barcode.revoked_reason},
            )
            data = barcode.to_dict()
        self.logger.info("Barcode %s revoked by %s", barcode_id, actor.actor_id)
        return data

    def expire_barcodes(self, tenant: BoundTenant, *, now: Optional[datetime] = None) -> int:
        with self._tx(None, "expire barcodes"):
            count = barcode_repository.expire_due(tenant, now)
        if count:
            self.logger.info("Expired %s barcodes for storefront %s", count, tenant.slug)
        return count

    def validate_code(self, tenant: BoundTenant, code_value: str, *, deadline: Optional[Deadline] = None) -> dict:
        """
        Public warranty check.

        SECURITY: unknown codes and codes of other storefronts look the same.
        """
        code_value = (code_value or "").strip()
        if not code_value or len(code_value) > 80:
            return {"valid": False}

        def load():
            barcode = barcode_repository.get_by_code_value(tenant, code_value)
            if barcode is None:
                return {"valid": False}
            product = get_owned(Product, tenant, barcode.product_id, label="Product")
            valid = barcode.status in (BARCODE_STATUS_ACTIVATED, BARCODE_STATUS_CLAIMED) and not barcode.is_expired(utcnow())
            return {
                "valid": valid,
                "status": barcode.status,
                "expiry_date": to_utc_z(barcode.expiry_date),
                "product": product.to_public_dict(),
                "storefront": {"slug": tenant.slug},
            }

        return self._read(deadline, "validate code", load)

    # =========================================================================
    # CLAIMS
    # =========================================================================

    def submit_claim(self, tenant: BoundTenant, actor: Actor, payload: dict, *, deadline: Optional[Deadline] = None) -> dict:
        """
        Customer submits a claim on a barcode they own.

        Claim creation, the seed timeline event and the outbox row commit
        together. A claim-number race is retried as a whole.
        """
        require_tenant(tenant)
        require_action(actor, "SUBMIT_CLAIM")
        claim_repository.validate_claim_fields(payload)

        def attempt() -> dict:
            with self._tx(deadline, "submit claim"):
                customer = get_owned(Customer, tenant, actor.actor_id, label="Customer")
                barcode = self._claimable_barcode(tenant, payload, customer)
                if claim_repository.has_active_claim_on_barcode(tenant, barcode.id):
                    raise ConflictError("An active claim already exists for this barcode")
                claim = claim_repository.create(
                    tenant,
                    barcode_id=barcode.id,
                    customer_id=customer.id,
                    product_id=barcode.product_id,
                    fields=payload,
                )
                claim_repository.append_timeline(
                    tenant,
                    claim,
                    kind="submitted",
                    actor=actor,
                    payload={"claim_number": claim.claim_number, "barcode_id": str(barcode.id)},
                )
                outbox_service.enqueue(
                    tenant,
                    topic="claim.submitted",
                    aggregate_type="claim",
                    aggregate_id=claim.id,
                    payload={"claim_number": claim.claim_number, "customer_id": str(customer.id)},
                )
                return claim.to_customer_dict()

        data = run_with_retry(attempt)
        self.logger.info("Claim %s submitted in storefront %s", data["claim_number"], tenant.slug)
        return data

    @staticmethod
    def _claimable_barcode(tenant: BoundTenant, payload: dict, customer: Customer):
        barcode_id = payload.get("barcode_id")
        if not barcode_id:
            code_value = (payload.get("code_value") or "").strip()
            if not code_value:
                raise ValidationError("barcode_id or code_value is required", details={"field": "barcode_id"})
            barcode = barcode_repository.get_by_code_value(tenant, code_value)
            if barcode is None:
                raise NotFoundError("Barcode not found")
            barcode_id = barcode.id
        return barcode_repository.require_activated_for(tenant, barcode_id, customer.id)

    def get_claim(self, tenant: BoundTenant, actor: Actor, claim_id, *, deadline: Optional[Deadline] = None) -> dict:
        if actor.role != Role.CUSTOMER:
            require_action(actor, "VIEW_CLAIMS")

        def load():
            claim = claim_repository.get_by_id(tenant, claim_id)
            self._require_own_claim(claim, actor)
            return self._claim_view(claim, actor)

        return self._read(deadline, "get claim", load)

    def get_claim_by_number(self, tenant: BoundTenant, actor: Actor, claim_number: str, *, deadline: Optional[Deadline] = None) -> dict:
        require_action(actor, "VIEW_CLAIMS")
        return self._read(
            deadline,
            "get claim by number",
            lambda: claim_repository.get_by_claim_number(tenant, claim_number).to_dict(),
        )

    def list_claims(
        self,
        tenant: BoundTenant,
        actor: Actor,
        *,
        page_request: PageRequest,
        deadline: Optional[Deadline] = None,
        **filters,
    ) -> Page:
        """Staff see every claim; a customer only their own."""
        if actor.role == Role.CUSTOMER:
            filters["customer_id"] = get_owned(Customer, tenant, actor.actor_id, label="Customer").id
        else:
            require_action(actor, "VIEW_CLAIMS")
        page = self._read(
            deadline,
            "list claims",
            lambda: claim_repository.list_claims(tenant, page_request=page_request, **filters),
        )
        return Page([self._claim_view(c, actor) for c in page.items], page.page, page.size, page.total)

    def claim_stats(
        self,
        tenant: BoundTenant,
        actor: Actor,
        *,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        deadline: Optional[Deadline] = None,
    ) -> dict:
        require_action(actor, "VIEW_STATS")
        if start and end and start > end:
            raise ValidationError("from must be before to", details={"field": "from"})
        return self._read(deadline, "claim stats", lambda: claim_repository.claim_stats(tenant, start, end))

    def update_claim(self, tenant: BoundTenant, actor: Actor, claim_id, patch: dict, *, deadline: Optional[Deadline] = None) -> dict:
        require_action(actor, "UPDATE_CLAIM_NOTES")
        with self._tx(deadline, "update claim"):
            claim = claim_repository.update_fields(tenant, claim_id, patch)
            data = claim.to_dict()
        return data

    def list_timeline(
        self,
        tenant: BoundTenant,
        actor: Actor,
        claim_id,
        *,
        page_request: PageRequest = PageRequest(size=100),
        deadline: Optional[Deadline] = None,
    ) -> Page:
        """Staff read any claim's timeline; a customer only their own claim's."""
        if actor.role != Role.CUSTOMER:
            require_action(actor, "VIEW_CLAIMS")

        def load():
            claim = claim_repository.get_by_id(tenant, claim_id)
            self._require_own_claim(claim, actor)
            return claim_repository.list_timeline(tenant, claim.id, page_request=page_request)

        page = self._read(deadline, "list timeline", load)
        if actor.role == Role.CUSTOMER:
            return Page([e.to_customer_dict() for e in page.items], page.page, page.size, page.total)
        return Page([e.to_dict() for e in page.items], page.page, page.size, page.total)

    # =========================================================================
    # CLAIM TRANSITIONS
    # =========================================================================

    def update_status(
        self,
        tenant: BoundTenant,
        actor: Actor,
        claim_id,
        target: str,
        *,
        deadline: Optional[Deadline] = None,
        **options,
    ) -> dict:
        """
        Generic transition entry point.

        Illegal (from, to) pairs raise ConflictError and write nothing.
        """
        require_tenant(tenant)
        with self._tx(deadline, f"claim -> {target}"):
            claim = claim_state_machine.apply(
                tenant, claim_id, target, actor, settings=self.settings, **options
            )
            data = self._claim_view(claim, actor)
        self.logger.info("Claim %s -> %s by %s (%s)", data["claim_number"], target, actor.actor_id, actor.role)
        return data

    def validate_claim(self, tenant, actor, claim_id, *, deadline=None) -> dict:
        return self.update_status(tenant, actor, claim_id, "validated", deadline=deadline)

    def reject_claim(self, tenant, actor, claim_id, *, reason: str, deadline=None) -> dict:
        return self.update_status(tenant, actor, claim_id, "rejected", reason=reason, deadline=deadline)

    def assign_technician(
        self,
        tenant,
        actor,
        claim_id,
        *,
        technician_id: str,
        estimated_completion_at: Optional[datetime] = None,
        deadline=None,
    ) -> dict:
        return self.update_status(
            tenant,
            actor,
            claim_id,
            "assigned",
            technician_id=technician_id,
            estimated_completion_at=estimated_completion_at,
            deadline=deadline,
        )

    def start_repair(self, tenant, actor, claim_id, *, deadline=None) -> dict:
        return self.update_status(tenant, actor, claim_id, "in_repair", deadline=deadline)

    def request_qc(self, tenant, actor, claim_id, *, deadline=None) -> dict:
        return self.update_status(tenant, actor, claim_id, "qc", deadline=deadline)

    def complete_claim(self, tenant, actor, claim_id, *, deadline=None) -> dict:
        return self.update_status(tenant, actor, claim_id, "completed", deadline=deadline)

    def fail_qc(self, tenant, actor, claim_id, *, notes: Optional[str] = None, deadline=None) -> dict:
        return self.update_status(tenant, actor, claim_id, "in_repair", notes=notes, deadline=deadline)

    def hold_claim(self, tenant, actor, claim_id, *, reason: str, deadline=None) -> dict:
        return self.update_status(tenant, actor, claim_id, CLAIM_STATUS_ON_HOLD, reason=reason, deadline=deadline)

    def resume_claim(self, tenant, actor, claim_id, *, deadline=None) -> dict:
        claim = self._read(deadline, "load claim", lambda: claim_repository.get_by_id(tenant, claim_id))
        if claim.status != CLAIM_STATUS_ON_HOLD:
            raise ConflictError(
                f"Claim is {claim.status}; only on_hold claims can be resumed",
                details={"from": claim.status},
            )
        return self.update_status(tenant, actor, claim.id, claim.held_from_status, deadline=deadline)

    def cancel_claim(self, tenant, actor, claim_id, *, reason: Optional[str] = None, deadline=None) -> dict:
        return self.update_status(tenant, actor, claim_id, CLAIM_STATUS_CANCELLED, reason=reason, deadline=deadline)

    # =========================================================================
    # REPAIR TICKETS
    # =========================================================================

    def get_ticket_for_claim(self, tenant: BoundTenant, actor: Actor, claim_id, *, deadline: Optional[Deadline] = None) -> dict:
        require_action(actor, "VIEW_CLAIMS")

        def load():
            claim = claim_repository.get_by_id(tenant, claim_id)
            return repair_ticket_service.get_current_ticket(tenant, claim.id).to_dict()

        return self._read(deadline, "get ticket", load)

    def _ticket_tx(self, deadline, operation: str, func: Callable[[], Any]) -> dict:
        with self._tx(deadline, operation):
            ticket = func()
            data = ticket.to_dict()
        return data

    def assign_ticket_technician(self, tenant, actor, ticket_id, *, technician_id: str, deadline=None) -> dict:
        require_action(actor, "ASSIGN_TECHNICIAN")
        return self._ticket_tx(
            deadline,
            "assign ticket technician",
            lambda: repair_ticket_service.assign_technician(tenant, ticket_id, technician_id),
        )

    def diagnose_ticket(self, tenant, actor, ticket_id, *, diagnosis: Optional[str] = None, deadline=None) -> dict:
        require_action(actor, "WORK_TICKET")
        return self._ticket_tx(
            deadline,
            "start diagnosis",
            lambda: repair_ticket_service.start_diagnosis(tenant, ticket_id, actor, diagnosis=diagnosis),
        )

    def start_ticket_repair(self, tenant, actor, ticket_id, *, diagnosis: Optional[str] = None, deadline=None) -> dict:
        require_action(actor, "WORK_TICKET")
        return self._ticket_tx(
            deadline,
            "start ticket repair",
            lambda: repair_ticket_service.start_repair(tenant, ticket_id, actor, diagnosis=diagnosis),
        )

    def submit_ticket_for_qc(
        self, tenant, actor, ticket_id, *, labor_minutes, parts_used, cost, deadline=None
    ) -> dict:
        require_action(actor, "WORK_TICKET")
        return self._ticket_tx(
            deadline,
            "submit ticket for qc",
            lambda: repair_ticket_service.submit_for_qc(
                tenant, ticket_id, actor, labor_minutes=labor_minutes, parts_used=parts_used, cost=cost
            ),
        )

    def record_qc(self, tenant, actor, ticket_id, *, passed: bool, notes: Optional[str] = None, deadline=None) -> dict:
        require_action(actor, "RECORD_QC")
        if not isinstance(passed, bool):
            raise ValidationError("passed must be true or false", details={"field": "passed"})
        return self._ticket_tx(
            deadline,
            "record qc",
            lambda: repair_ticket_service.record_qc(tenant, ticket_id, passed=passed, notes=notes),
        )

    # =========================================================================
    # ATTACHMENTS
    # =========================================================================

    def upload_attachment(self, tenant, actor, claim_id, meta: dict, *, deadline=None) -> dict:
        require_action(actor, "UPLOAD_ATTACHMENT")
        with self._tx(deadline, "upload attachment"):
            attachment = timeline_service.upload(tenant, claim_id, actor, meta, settings=self.settings)
            data = attachment.to_dict()
        return data

    def list_attachments(self, tenant, actor, claim_id, *, deadline=None) -> list[dict]:
        if actor.role != Role.CUSTOMER:
            require_action(actor, "VIEW_CLAIMS")
        return self._read(
            deadline,
            "list attachments",
            lambda: [a.to_dict() for a in timeline_service.list_for_actor(tenant, claim_id, actor)],
        )

    def set_attachment_approval(self, tenant, actor, attachment_id, approval: str, *, deadline=None) -> dict:
        require_action(actor, "APPROVE_ATTACHMENT")
        with self._tx(deadline, "attachment approval"):
            data = timeline_service.set_approval(tenant, attachment_id, approval, actor).to_dict()
        return data

    def set_scan_status(self, tenant, actor, attachment_id, scan_status: str, *, deadline=None) -> dict:
        require_action(actor, "SET_SCAN_STATUS")
        with self._tx(deadline, "attachment scan status"):
            attachment = timeline_service.set_scan_status(tenant, attachment_id, scan_status)
            data = attachment.to_dict()
        if scan_status == "infected":
            self.logger.warning("Attachment %s flagged infected in storefront %s", attachment_id, tenant.slug)
        return data
