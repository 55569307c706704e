# Overview: Pytest coverage for claim submission, numbering, queries, updates and statistics.

"""
Claim Repository Tests

Verifies:
- Submission requires an activated, unexpired barcode owned by the customer
- Claim numbers are unique per storefront and follow CLM-YYYYMM-NNNNNN
- Submission writes the claim, its first timeline event and an outbox row together
- Customers see only their own claims and timelines, without staff-only fields
- Non-status updates are limited and terminal claims are frozen
"""

import re

import pytest

from warranty.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from warranty.models import ClaimTimelineEvent, Customer, OutboxEvent, WarrantyClaim
from warranty.permissions import Actor, Role
from warranty.services import claim_repository
from warranty.services.pagination import PageRequest

CLAIM_NUMBER_RE = re.compile(r"^CLM-\d{6}-\d{6}$")


class TestSubmitClaim:

    def test_submit_happy_path(self, db_session, service, tenant_a, product_a, customer_a, customer_actor_a,
                               make_barcode, claim_payload):
        barcode = make_barcode(tenant_a, product_a, customer_a)

        claim = service.submit_claim(tenant_a, customer_actor_a, claim_payload(barcode["id"]))

        assert claim["status"] == "submitted"
        assert CLAIM_NUMBER_RE.match(claim["claim_number"])
        assert claim["barcode_id"] == barcode["id"]
        assert claim["customer_id"] == str(customer_a.id)
        assert "admin_notes" not in claim

        events = db_session.query(ClaimTimelineEvent).all()
        assert [(e.kind, e.sequence) for e in events] == [("submitted", 1)]
        topics = [e.topic for e in db_session.query(OutboxEvent).all()]
        assert "claim.submitted" in topics

    def test_submit_by_code_value(self, db_session, service, tenant_a, product_a, customer_a, customer_actor_a,
                                  make_barcode, claim_payload):
        barcode = make_barcode(tenant_a, product_a, customer_a)
        payload = claim_payload(None, code_value=barcode["code_value"].lower())
        payload.pop("barcode_id")

        claim = service.submit_claim(tenant_a, customer_actor_a, payload)
        assert claim["barcode_id"] == barcode["id"]

    def test_only_customers_submit(self, db_session, service, tenant_a, product_a, customer_a, admin,
                                   make_barcode, claim_payload):
        barcode = make_barcode(tenant_a, product_a, customer_a)
        with pytest.raises(ForbiddenError):
            service.submit_claim(tenant_a, admin, claim_payload(barcode["id"]))

    def test_unactivated_barcode_is_not_claimable(self, db_session, service, tenant_a, product_a, customer_actor_a,
                                                  make_barcode, claim_payload):
        barcode = make_barcode(tenant_a, product_a)
        with pytest.raises(NotFoundError):
            service.submit_claim(tenant_a, customer_actor_a, claim_payload(barcode["id"]))
        assert db_session.query(WarrantyClaim).count() == 0

    def test_expired_warranty(self, db_session, service, tenant_a, product_a, customer_a, customer_actor_a,
                              make_barcode, claim_payload):
        barcode = make_barcode(tenant_a, product_a, customer_a, purchase_days_ago=800)
        with pytest.raises(ConflictError) as exc_info:
            service.submit_claim(tenant_a, customer_actor_a, claim_payload(barcode["id"]))
        assert "expired" in exc_info.value.message

    def test_revoked_barcode(self, db_session, service, tenant_a, product_a, customer_a, customer_actor_a, admin,
                             make_barcode, claim_payload):
        barcode = make_barcode(tenant_a, product_a, customer_a)
        service.revoke_barcode(tenant_a, admin, barcode["id"], reason="Reported stolen")
        with pytest.raises(ConflictError) as exc_info:
            service.submit_claim(tenant_a, customer_actor_a, claim_payload(barcode["id"]))
        assert exc_info.value.details == {"barcode_status": "revoked"}

    def test_barcode_of_another_customer(self, db_session, service, tenant_a, storefront_a, product_a, customer_a,
                                         make_barcode, claim_payload):
        other = Customer(storefront_id=storefront_a.id, name="Carol A", email="carol@acme.test")
        db_session.add(other)
        db_session.commit()
        barcode = make_barcode(tenant_a, product_a, customer_a)

        with pytest.raises(NotFoundError):
            service.submit_claim(tenant_a, Actor(str(other.id), Role.CUSTOMER), claim_payload(barcode["id"]))

    def test_second_active_claim_on_barcode(self, db_session, service, tenant_a, product_a, customer_a,
                                            customer_actor_a, make_barcode, claim_payload):
        barcode = make_barcode(tenant_a, product_a, customer_a)
        service.submit_claim(tenant_a, customer_actor_a, claim_payload(barcode["id"]))
        with pytest.raises(ConflictError):
            service.submit_claim(tenant_a, customer_actor_a, claim_payload(barcode["id"]))
        assert db_session.query(WarrantyClaim).count() == 1

    @pytest.mark.parametrize("override", [
        {"issue_description": "too short"},
        {"issue_category": "aliens"},
        {"severity": "apocalyptic"},
        {"customer_email": "not-an-email"},
        {"customer_name": "   "},
        {"pickup_address": None},
    ])
    def test_invalid_fields(self, db_session, service, tenant_a, product_a, customer_a, customer_actor_a,
                            make_barcode, claim_payload, override):
        barcode = make_barcode(tenant_a, product_a, customer_a)
        with pytest.raises(ValidationError) as exc_info:
            service.submit_claim(tenant_a, customer_actor_a, claim_payload(barcode["id"], **override))
        assert exc_info.value.details["field"] == next(iter(override))
        assert db_session.query(WarrantyClaim).count() == 0


class TestClaimNumbers:

    def test_sequential_claims_get_distinct_numbers(self, db_session, submitted_claim):
        numbers = [submitted_claim()["claim_number"] for _ in range(6)]
        assert len(set(numbers)) == 6
        assert all(CLAIM_NUMBER_RE.match(n) for n in numbers)
        assert [int(n.rsplit("-", 1)[1]) for n in numbers] == [1, 2, 3, 4, 5, 6]

    def test_taken_number_is_skipped(self, db_session, submitted_claim):
        first = submitted_claim()
        prefix = first["claim_number"].rsplit("-", 1)[0]
        db_session.query(WarrantyClaim).filter_by(claim_number=first["claim_number"]).update(
            {"claim_number": f"{prefix}-000002"}
        )
        db_session.commit()

        assert submitted_claim()["claim_number"] == f"{prefix}-000003"

    def test_counters_are_per_storefront(self, db_session, service, submitted_claim, tenant_b, product_b,
                                         customer_b, customer_actor_b, make_barcode, claim_payload):
        submitted_claim()
        submitted_claim()
        barcode = make_barcode(tenant_b, product_b, customer_b)
        claim_b = service.submit_claim(
            tenant_b, customer_actor_b, claim_payload(barcode["id"], customer_email="bob@beta.test")
        )
        assert claim_b["claim_number"].endswith("-000001")

    def test_lookup_by_number(self, db_session, service, tenant_a, tenant_b, admin, submitted_claim):
        claim = submitted_claim()
        found = service.get_claim_by_number(tenant_a, admin, claim["claim_number"].lower())
        assert found["id"] == claim["id"]
        with pytest.raises(NotFoundError):
            service.get_claim_by_number(tenant_b, admin, claim["claim_number"])


class TestClaimQueries:

    def test_customer_sees_only_own_claims(self, db_session, service, tenant_a, storefront_a, product_a,
                                           customer_actor_a, make_barcode, claim_payload, submitted_claim):
        mine = submitted_claim()
        other = Customer(storefront_id=storefront_a.id, name="Carol A", email="carol@acme.test")
        db_session.add(other)
        db_session.commit()
        other_actor = Actor(str(other.id), Role.CUSTOMER)
        barcode = make_barcode(tenant_a, product_a, other)
        theirs = service.submit_claim(tenant_a, other_actor, claim_payload(barcode["id"]))

        page = service.list_claims(tenant_a, customer_actor_a, page_request=PageRequest())
        assert [c["id"] for c in page.items] == [mine["id"]]
        assert "technician_id" not in page.items[0]

        with pytest.raises(NotFoundError):
            service.get_claim(tenant_a, customer_actor_a, theirs["id"])

    def test_staff_filters_and_pagination(self, db_session, service, tenant_a, admin, submitted_claim):
        claims = [submitted_claim() for _ in range(3)]
        service.validate_claim(tenant_a, admin, claims[0]["id"])

        page = service.list_claims(tenant_a, admin, page_request=PageRequest(page=1, size=2))
        assert page.total == 3
        assert page.pages == 2
        assert len(page.items) == 2

        validated = service.list_claims(tenant_a, admin, page_request=PageRequest(), status="validated")
        assert [c["id"] for c in validated.items] == [claims[0]["id"]]

    def test_invalid_filter(self, db_session, service, tenant_a, admin):
        with pytest.raises(ValidationError):
            service.list_claims(tenant_a, admin, page_request=PageRequest(), status="lost")

    def test_page_size_bounds(self):
        with pytest.raises(ValidationError):
            PageRequest(size=101)
        with pytest.raises(ValidationError):
            PageRequest(page=0)

    def test_count_matches_list_filters(self, db_session, tenant_a, tenant_b, service, admin, submitted_claim):
        claims = [submitted_claim() for _ in range(3)]
        service.validate_claim(tenant_a, admin, claims[0]["id"])

        assert claim_repository.count(tenant_a) == 3
        assert claim_repository.count(tenant_a, status="validated") == 1
        assert claim_repository.count(tenant_a, severity="low") == 0
        assert claim_repository.count(tenant_b) == 0
        with pytest.raises(ValidationError):
            claim_repository.count(tenant_a, status="lost")


class TestCustomerTimeline:

    def test_customer_reads_own_timeline(self, db_session, service, tenant_a, admin, customer_actor_a,
                                         submitted_claim):
        claim = submitted_claim()
        service.validate_claim(tenant_a, admin, claim["id"])

        page = service.list_timeline(tenant_a, customer_actor_a, claim["id"])
        assert [e["kind"] for e in page.items] == ["submitted", "validated"]
        assert page.items[1]["actor_role"] == "admin"
        assert all("actor_id" not in e for e in page.items)

    def test_staff_view_keeps_actor(self, db_session, service, tenant_a, admin, submitted_claim):
        claim = submitted_claim()
        page = service.list_timeline(tenant_a, admin, claim["id"])
        assert page.items[0]["actor_id"] == claim["customer_id"]

    def test_other_customer_gets_not_found(self, db_session, service, tenant_a, storefront_a, submitted_claim):
        claim = submitted_claim()
        other = Customer(storefront_id=storefront_a.id, name="Carol A", email="carol@acme.test")
        db_session.add(other)
        db_session.commit()

        with pytest.raises(NotFoundError):
            service.list_timeline(tenant_a, Actor(str(other.id), Role.CUSTOMER), claim["id"])


class TestUpdateClaim:

    def test_admin_notes(self, db_session, service, tenant_a, admin, customer_actor_a, submitted_claim):
        claim = submitted_claim()
        updated = service.update_claim(tenant_a, admin, claim["id"], {"admin_notes": "VIP customer", "priority": "high"})
        assert updated["admin_notes"] == "VIP customer"
        assert updated["priority"] == "high"
        assert "admin_notes" not in service.get_claim(tenant_a, customer_actor_a, claim["id"])

    def test_status_cannot_be_patched(self, db_session, service, tenant_a, admin, submitted_claim):
        claim = submitted_claim()
        with pytest.raises(ValidationError):
            service.update_claim(tenant_a, admin, claim["id"], {"status": "completed"})
        assert service.get_claim(tenant_a, admin, claim["id"])["status"] == "submitted"

    def test_terminal_claim_is_frozen(self, db_session, service, tenant_a, admin, submitted_claim):
        claim = submitted_claim()
        service.reject_claim(tenant_a, admin, claim["id"], reason="Physical damage not covered")
        with pytest.raises(ConflictError):
            service.update_claim(tenant_a, admin, claim["id"], {"admin_notes": "late note"})

    def test_technician_cannot_update(self, db_session, service, tenant_a, technician, submitted_claim):
        claim = submitted_claim()
        with pytest.raises(ForbiddenError):
            service.update_claim(tenant_a, technician, claim["id"], {"admin_notes": "x"})


class TestClaimStats:

    def test_stats_counts_and_averages(self, db_session, service, tenant_a, admin, submitted_claim, drive_claim):
        done = submitted_claim()
        drive_claim(done["id"], "completed")
        rejected = submitted_claim()
        service.reject_claim(tenant_a, admin, rejected["id"], reason="Outside coverage")
        submitted_claim()

        stats = service.claim_stats(tenant_a, admin)

        assert stats["total"] == 3
        assert stats["completed"] == 1
        assert stats["by_status"]["rejected"] == 1
        assert stats["by_status"]["submitted"] == 1
        assert stats["by_severity"]["high"] == 3
        assert stats["by_category"] == {"malfunction": 3}
        assert stats["avg_repair_cost"] == "74.50"
        assert stats["avg_resolution_hours"] is not None
        assert stats["growth_rate"] is None
        assert stats["claims_this_month"] is None

    def test_stats_are_per_storefront(self, db_session, service, tenant_b, admin, submitted_claim):
        submitted_claim()
        assert service.claim_stats(tenant_b, admin)["total"] == 0

    def test_stats_require_admin(self, db_session, service, tenant_a, qc_inspector):
        with pytest.raises(ForbiddenError):
            service.claim_stats(tenant_a, qc_inspector)
