# Overview: Pytest coverage for repair tickets; single open ticket, assignment and completion data.

import uuid

import pytest

from warranty.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from warranty.models import RepairTicket, WarrantyClaim
from warranty.permissions import Actor, Role
from warranty.services import repair_ticket_service
from warranty.services.concurrency import translate_db_errors


@pytest.fixture
def claim_in_repair(submitted_claim, drive_claim):
    claim = submitted_claim()
    return drive_claim(claim["id"], "in_repair")


@pytest.fixture
def ticket(service, tenant_a, admin, claim_in_repair):
    return service.get_ticket_for_claim(tenant_a, admin, claim_in_repair["id"])


class TestSingleOpenTicket:

    def test_second_open_ticket_conflicts(self, db_session, tenant_a, claim_in_repair):
        claim = db_session.get(WarrantyClaim, uuid.UUID(claim_in_repair["id"]))
        with pytest.raises(ConflictError):
            repair_ticket_service.open_ticket(tenant_a, claim, technician_id="tech-1")

    def test_storage_rejects_duplicate_open_ticket(self, db_session, tenant_a, claim_in_repair):
        """The partial unique index holds even if the pre-check is bypassed."""
        db_session.add(RepairTicket(
            claim_id=uuid.UUID(claim_in_repair["id"]),
            storefront_id=tenant_a.storefront_id,
            status="open",
        ))
        with pytest.raises(ConflictError):
            with translate_db_errors("insert ticket"):
                db_session.flush()
        db_session.rollback()
        assert db_session.query(RepairTicket).count() == 1

    def test_closed_tickets_do_not_count(self, db_session, tenant_a, submitted_claim, drive_claim):
        claim = submitted_claim()
        drive_claim(claim["id"], "completed")
        db_session.add(RepairTicket(
            claim_id=uuid.UUID(claim["id"]),
            storefront_id=tenant_a.storefront_id,
            status="open",
        ))
        with translate_db_errors("insert ticket"):
            db_session.flush()
        db_session.rollback()

    def test_no_ticket_before_repair(self, db_session, service, tenant_a, admin, submitted_claim):
        claim = submitted_claim()
        with pytest.raises(NotFoundError):
            service.get_ticket_for_claim(tenant_a, admin, claim["id"])


class TestTicketAssignment:

    def test_same_technician_is_noop(self, db_session, service, tenant_a, admin, ticket):
        again = service.assign_ticket_technician(tenant_a, admin, ticket["id"], technician_id="tech-1")
        assert again["technician_id"] == "tech-1"
        assert again["updated_at"] == ticket["updated_at"]

    def test_reassignment_mirrors_claim(self, db_session, service, tenant_a, admin, ticket, claim_in_repair):
        moved = service.assign_ticket_technician(tenant_a, admin, ticket["id"], technician_id="tech-2")
        assert moved["technician_id"] == "tech-2"
        assert service.get_claim(tenant_a, admin, claim_in_repair["id"])["technician_id"] == "tech-2"

    def test_no_reassignment_after_qc_submission(self, db_session, service, tenant_a, admin, technician, ticket):
        service.diagnose_ticket(tenant_a, technician, ticket["id"], diagnosis="Dead capacitor")
        service.start_ticket_repair(tenant_a, technician, ticket["id"])
        service.submit_ticket_for_qc(tenant_a, technician, ticket["id"], labor_minutes=30, parts_used=[], cost=0)
        with pytest.raises(ConflictError):
            service.assign_ticket_technician(tenant_a, admin, ticket["id"], technician_id="tech-2")

    def test_blank_technician(self, db_session, service, tenant_a, admin, ticket):
        with pytest.raises(ValidationError):
            service.assign_ticket_technician(tenant_a, admin, ticket["id"], technician_id="")

    def test_other_technician_cannot_work_ticket(self, db_session, service, tenant_a, ticket):
        with pytest.raises(ForbiddenError):
            service.diagnose_ticket(tenant_a, Actor("tech-2", Role.TECHNICIAN), ticket["id"], diagnosis="x")

    def test_customer_cannot_work_ticket(self, db_session, service, tenant_a, customer_actor_a, ticket):
        with pytest.raises(ForbiddenError):
            service.diagnose_ticket(tenant_a, customer_actor_a, ticket["id"])


class TestTicketWork:

    def test_diagnosis_required_before_repair(self, db_session, service, tenant_a, technician, ticket):
        service.diagnose_ticket(tenant_a, technician, ticket["id"])
        with pytest.raises(ValidationError):
            service.start_ticket_repair(tenant_a, technician, ticket["id"])
        repairing = service.start_ticket_repair(tenant_a, technician, ticket["id"], diagnosis="Loose ribbon cable")
        assert repairing["status"] == "repairing"
        assert repairing["diagnosis"] == "Loose ribbon cable"

    def test_steps_cannot_be_skipped(self, db_session, service, tenant_a, technician, ticket):
        with pytest.raises(ConflictError):
            service.submit_ticket_for_qc(tenant_a, technician, ticket["id"], labor_minutes=10, parts_used=[], cost=0)

    @pytest.mark.parametrize("completion,field", [
        ({"labor_minutes": -1, "parts_used": [], "cost": 0}, "labor_minutes"),
        ({"labor_minutes": True, "parts_used": [], "cost": 0}, "labor_minutes"),
        ({"labor_minutes": 10, "parts_used": None, "cost": 0}, "parts_used"),
        ({"labor_minutes": 10, "parts_used": [{"quantity": 1}], "cost": 0}, "parts_used"),
        ({"labor_minutes": 10, "parts_used": [{"name": "Fuse", "quantity": 0}], "cost": 0}, "parts_used"),
        ({"labor_minutes": 10, "parts_used": [], "cost": None}, "cost"),
        ({"labor_minutes": 10, "parts_used": [], "cost": "free"}, "cost"),
        ({"labor_minutes": 10, "parts_used": [], "cost": "-5"}, "cost"),
    ])
    def test_completion_data_validated(self, db_session, service, tenant_a, technician, ticket, completion, field):
        service.diagnose_ticket(tenant_a, technician, ticket["id"], diagnosis="Blown fuse")
        service.start_ticket_repair(tenant_a, technician, ticket["id"])
        with pytest.raises(ValidationError) as exc_info:
            service.submit_ticket_for_qc(tenant_a, technician, ticket["id"], **completion)
        assert exc_info.value.details["field"] == field

    def test_completion_data_is_normalized(self, db_session, service, tenant_a, technician, ticket):
        service.diagnose_ticket(tenant_a, technician, ticket["id"], diagnosis="Blown fuse")
        service.start_ticket_repair(tenant_a, technician, ticket["id"])
        submitted = service.submit_ticket_for_qc(
            tenant_a, technician, ticket["id"],
            labor_minutes=15,
            parts_used=[{"name": " Fuse 5A ", "quantity": 2, "unit_cost": 1.5}],
            cost="13",
        )
        assert submitted["status"] == "qc_pending"
        assert submitted["cost"] == "13.00"
        assert submitted["parts_used"] == [
            {"part_number": None, "name": "Fuse 5A", "quantity": 2, "unit_cost": "1.50"},
        ]

    def test_ticket_work_requires_claim_in_repair(self, db_session, service, tenant_a, admin, technician,
                                                  ticket, claim_in_repair):
        service.hold_claim(tenant_a, admin, claim_in_repair["id"], reason="Awaiting customer approval")
        with pytest.raises(ConflictError) as exc_info:
            service.diagnose_ticket(tenant_a, technician, ticket["id"], diagnosis="x")
        assert exc_info.value.details == {"claim_status": "on_hold"}

    def test_qc_verdict_must_be_boolean(self, db_session, service, tenant_a, qc_inspector, ticket):
        with pytest.raises(ValidationError):
            service.record_qc(tenant_a, qc_inspector, ticket["id"], passed="yes")

    def test_qc_verdict_requires_claim_in_qc(self, db_session, service, tenant_a, qc_inspector, ticket):
        with pytest.raises(ConflictError):
            service.record_qc(tenant_a, qc_inspector, ticket["id"], passed=True)

    def test_foreign_ticket_is_not_found(self, db_session, service, tenant_b, admin, ticket):
        with pytest.raises(NotFoundError):
            service.assign_ticket_technician(tenant_b, admin, ticket["id"], technician_id="tech-9")
