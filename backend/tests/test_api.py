# Overview: Pytest coverage for the HTTP surface; envelopes, status codes and tenant binding.

"""
API Contract Tests

Verifies:
- Success bodies are {"data": ...} with "pagination" on lists only
- Failures are {"error": {"code", "message", "details"?}} with stable codes
- Storefront binding by header, host, custom domain and /s/<slug>/ prefix
- Gateway actor headers are required on protected routes
- Async batch generation answers 202 and cancellation 204
"""

import pytest

from warranty.extensions import db
from warranty.models import Storefront

from conftest import actor_headers

ADMIN = "/api/v1/admin/warranty"
CUSTOMER = "/api/v1/customer/protected/warranty"
PUBLIC = "/api/v1/public/warranty"


@pytest.fixture
def activated(tenant_a, product_a, customer_a, make_barcode):
    return make_barcode(tenant_a, product_a, customer_a)


class TestSystemEndpoints:

    def test_health(self, client, db_session, storefront_a):
        response = client.get("/api/v1/health")
        assert response.status_code == 200
        body = response.get_json()["data"]
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["details"]["storefronts"] == 1

    def test_version(self, client, db_session):
        response = client.get("/api/v1/version")
        assert response.status_code == 200
        assert response.get_json()["data"]["api_version"] == "1.0.0"


class TestEnvelope:

    def test_single_entity(self, client, admin, submitted_claim):
        claim = submitted_claim()
        response = client.get(f"{ADMIN}/claims/{claim['id']}", headers=actor_headers(admin, "acme"))
        assert response.status_code == 200
        body = response.get_json()
        assert set(body) == {"data"}
        assert body["data"]["claim_number"] == claim["claim_number"]

    def test_list_carries_pagination(self, client, admin, submitted_claim):
        for _ in range(3):
            submitted_claim()
        response = client.get(f"{ADMIN}/claims?page=1&size=2", headers=actor_headers(admin, "acme"))
        assert response.status_code == 200
        body = response.get_json()
        assert len(body["data"]) == 2
        assert body["pagination"] == {"page": 1, "size": 2, "total": 3, "pages": 2}

    def test_page_size_limit(self, client, db_session, admin, storefront_a):
        response = client.get(f"{ADMIN}/claims?size=101", headers=actor_headers(admin, "acme"))
        assert response.status_code == 400
        assert response.get_json()["error"]["code"] == "validation_failed"

    def test_not_found_body(self, client, db_session, admin, storefront_a):
        response = client.get(f"{ADMIN}/claims/not-a-uuid", headers=actor_headers(admin, "acme"))
        assert response.status_code == 404
        assert response.get_json() == {"error": {"code": "not_found", "message": "Claim not found"}}

    def test_illegal_transition_is_409_with_details(self, client, admin, submitted_claim):
        claim = submitted_claim()
        response = client.post(f"{ADMIN}/claims/{claim['id']}/complete", headers=actor_headers(admin, "acme"))
        assert response.status_code == 409
        error = response.get_json()["error"]
        assert error["code"] == "conflict"
        assert error["details"] == {"from": "submitted", "to": "completed"}

    def test_method_not_allowed(self, client, db_session, admin, storefront_a):
        response = client.delete(f"{ADMIN}/claims", headers=actor_headers(admin, "acme"))
        assert response.status_code == 405
        assert response.get_json() == {"error": {"code": "validation_failed", "message": "Method not allowed"}}

    def test_unknown_route(self, client, db_session):
        response = client.get("/api/v1/nothing-here")
        assert response.status_code == 404
        assert response.get_json()["error"]["code"] == "not_found"


class TestRequestHeaders:

    def test_missing_actor_headers(self, client, db_session, storefront_a):
        response = client.get(f"{ADMIN}/claims", headers={"X-Storefront-Slug": "acme"})
        assert response.status_code == 403
        assert response.get_json()["error"]["code"] == "forbidden"

    def test_customer_role_on_staff_route(self, client, db_session, customer_actor_a):
        response = client.get(f"{ADMIN}/claims", headers=actor_headers(customer_actor_a, "acme"))
        assert response.status_code == 403
        assert response.get_json()["error"]["details"] == {"required_roles": ["admin", "qc", "technician"]}

    def test_no_storefront_hint(self, client, db_session, admin, storefront_a):
        response = client.get(f"{ADMIN}/claims", headers=actor_headers(admin))
        assert response.status_code == 404
        assert response.get_json()["error"]["code"] == "tenant_unknown"

    def test_unknown_slug(self, client, db_session, admin, storefront_a):
        response = client.get(f"{ADMIN}/claims", headers=actor_headers(admin, "nope"))
        assert response.status_code == 404
        assert response.get_json()["error"]["code"] == "tenant_unknown"

    def test_suspended_storefront(self, client, db_session, admin, storefront_a):
        storefront = db.session.get(Storefront, storefront_a.id)
        storefront.status = "suspended"
        db.session.commit()

        response = client.get(f"{ADMIN}/claims", headers=actor_headers(admin, "acme"))
        assert response.status_code == 403
        assert response.get_json()["error"]["code"] == "tenant_suspended"

    def test_storefront_id_header(self, client, db_session, admin, storefront_a):
        response = client.get(
            f"{ADMIN}/claims",
            headers={**actor_headers(admin), "X-Storefront-ID": str(storefront_a.id)},
        )
        assert response.status_code == 200

    @pytest.mark.parametrize("value", ["abc", "0", "-5"])
    def test_invalid_timeout_header(self, client, db_session, admin, storefront_a, value):
        response = client.get(
            f"{ADMIN}/claims",
            headers={**actor_headers(admin, "acme"), "X-Request-Timeout-Ms": value},
        )
        assert response.status_code == 400
        assert response.get_json()["error"]["code"] == "validation_failed"


class TestCustomerRoutes:

    def test_submit_returns_201(self, client, customer_actor_a, activated, claim_payload):
        response = client.post(
            f"{CUSTOMER}/claims",
            json=claim_payload(activated["id"]),
            headers=actor_headers(customer_actor_a, "acme"),
        )
        assert response.status_code == 201
        data = response.get_json()["data"]
        assert data["status"] == "submitted"
        assert "admin_notes" not in data

    def test_submit_with_missing_body(self, client, db_session, customer_actor_a, storefront_a):
        response = client.post(f"{CUSTOMER}/claims", headers=actor_headers(customer_actor_a, "acme"))
        assert response.status_code == 400

    def test_path_prefix_binds_storefront(self, client, customer_actor_a, submitted_claim):
        claim = submitted_claim()
        response = client.get(f"/s/acme{CUSTOMER}/claims", headers=actor_headers(customer_actor_a))
        assert response.status_code == 200
        assert [c["id"] for c in response.get_json()["data"]] == [claim["id"]]

    def test_customer_cancel(self, client, customer_actor_a, submitted_claim):
        claim = submitted_claim()
        response = client.post(
            f"{CUSTOMER}/claims/{claim['id']}/cancel",
            json={"reason": "Fixed it myself"},
            headers=actor_headers(customer_actor_a, "acme"),
        )
        assert response.status_code == 200
        assert response.get_json()["data"]["status"] == "cancelled"

    def test_staff_cannot_use_customer_routes(self, client, db_session, admin, storefront_a):
        response = client.get(f"{CUSTOMER}/claims", headers=actor_headers(admin, "acme"))
        assert response.status_code == 403

    def test_own_claim_timeline(self, client, customer_actor_a, submitted_claim):
        claim = submitted_claim()
        response = client.get(
            f"{CUSTOMER}/claims/{claim['id']}/timeline", headers=actor_headers(customer_actor_a, "acme")
        )
        assert response.status_code == 200
        body = response.get_json()
        assert [e["kind"] for e in body["data"]] == ["submitted"]
        assert body["pagination"]["total"] == 1

    def test_register_and_list_warranties(self, client, tenant_a, product_a, customer_actor_a, make_barcode):
        barcode = make_barcode(tenant_a, product_a)
        headers = actor_headers(customer_actor_a, "acme")

        response = client.post(
            f"{CUSTOMER}/warranties/register",
            json={"code_value": barcode["code_value"], "purchase_date": "2026-01-15T00:00:00Z"},
            headers=headers,
        )
        assert response.status_code == 201
        assert response.get_json()["data"]["expiry_date"].startswith("2028-01-15")

        again = client.post(
            f"{CUSTOMER}/warranties/register",
            json={"code_value": barcode["code_value"], "purchase_date": "2026-01-15T00:00:00Z"},
            headers=headers,
        )
        assert again.status_code == 409
        assert again.get_json()["error"]["code"] == "conflict"

        listing = client.get(f"{CUSTOMER}/warranties", headers=headers).get_json()
        assert [w["id"] for w in listing["data"]] == [barcode["id"]]
        detail = client.get(f"{CUSTOMER}/warranties/{barcode['id']}", headers=headers)
        assert detail.get_json()["data"]["status"] == "activated"

    def test_register_requires_code_and_date(self, client, db_session, customer_actor_a, storefront_a):
        response = client.post(
            f"{CUSTOMER}/warranties/register", json={"code_value": "ABC"}, headers=actor_headers(customer_actor_a, "acme")
        )
        assert response.status_code == 400
        assert response.get_json()["error"]["details"] == {"fields": ["purchase_date"]}


class TestPublicValidation:

    def test_valid_code_by_subdomain(self, client, activated):
        response = client.get(f"{PUBLIC}/validate/{activated['code_value']}", base_url="http://acme.shops.test")
        assert response.status_code == 200
        data = response.get_json()["data"]
        assert data["valid"] is True
        assert data["status"] == "activated"
        assert data["storefront"] == {"slug": "acme"}
        assert data["expiry_date"].endswith("Z")

    def test_valid_code_by_custom_domain(self, client, activated):
        response = client.get(f"{PUBLIC}/validate/{activated['code_value']}", base_url="http://warranty.acme.test")
        assert response.get_json()["data"]["valid"] is True

    def test_valid_code_by_path_prefix(self, client, activated):
        response = client.get(f"/s/acme{PUBLIC}/validate/{activated['code_value']}")
        assert response.get_json()["data"]["valid"] is True

    def test_unknown_code(self, client, db_session, storefront_a):
        response = client.get(f"{PUBLIC}/validate/NOPE", base_url="http://acme.shops.test")
        assert response.status_code == 200
        assert response.get_json() == {"data": {"valid": False}}


class TestAdminRoutes:

    def test_generate_and_cancel_batch(self, client, db_session, admin, product_a):
        headers = actor_headers(admin, "acme")
        response = client.post(
            f"{ADMIN}/barcodes/generate",
            json={"product_id": str(product_a.id), "count": 5},
            headers=headers,
        )
        assert response.status_code == 202
        batch_id = response.get_json()["data"]["batch_id"]

        progress = client.get(f"{ADMIN}/batches/{batch_id}/progress", headers=headers)
        assert progress.get_json()["data"]["state"] == "queued"

        cancelled = client.post(f"{ADMIN}/batches/{batch_id}/cancel", headers=headers)
        assert cancelled.status_code == 204
        assert cancelled.data == b""

        progress = client.get(f"{ADMIN}/batches/{batch_id}/progress", headers=headers)
        assert progress.get_json()["data"]["state"] == "cancelled"

    def test_generate_rejects_bad_count(self, client, db_session, admin, product_a):
        response = client.post(
            f"{ADMIN}/barcodes/generate",
            json={"product_id": str(product_a.id), "count": 0},
            headers=actor_headers(admin, "acme"),
        )
        assert response.status_code == 400
        assert response.get_json()["error"]["code"] == "validation_failed"

    def test_activate_barcode(self, client, db_session, admin, tenant_a, product_a, customer_a, make_barcode):
        barcode = make_barcode(tenant_a, product_a)
        response = client.post(
            f"{ADMIN}/barcodes/{barcode['id']}/activate",
            json={"customer_id": str(customer_a.id), "purchase_date": "2026-01-15T00:00:00Z"},
            headers=actor_headers(admin, "acme"),
        )
        assert response.status_code == 200
        data = response.get_json()["data"]
        assert data["status"] == "activated"
        assert data["expiry_date"].startswith("2028-01-15")

    def test_claim_lifecycle_over_http(self, client, admin, technician, qc_inspector, submitted_claim):
        claim = submitted_claim()
        base = f"{ADMIN}/claims/{claim['id']}"

        assert client.post(f"{base}/validate", headers=actor_headers(admin, "acme")).status_code == 200
        assigned = client.post(
            f"{base}/assign", json={"technician_id": technician.actor_id}, headers=actor_headers(admin, "acme")
        )
        assert assigned.get_json()["data"]["status"] == "assigned"
        assert client.post(f"{base}/start-repair", headers=actor_headers(technician, "acme")).status_code == 200

        ticket = client.get(f"{base}/ticket", headers=actor_headers(technician, "acme")).get_json()["data"]
        tickets = f"{ADMIN}/tickets/{ticket['id']}"
        tech = actor_headers(technician, "acme")
        assert client.post(f"{tickets}/diagnose", json={"diagnosis": "Cracked solder joint"}, headers=tech).status_code == 200
        assert client.post(f"{tickets}/repair", headers=tech).status_code == 200
        submitted = client.post(
            f"{tickets}/submit-qc",
            json={"labor_minutes": 45, "parts_used": [], "cost": "20.00"},
            headers=tech,
        )
        assert submitted.get_json()["data"]["status"] == "qc_pending"

        assert client.post(f"{base}/request-qc", headers=tech).status_code == 200
        verdict = client.post(f"{tickets}/qc", json={"passed": True}, headers=actor_headers(qc_inspector, "acme"))
        assert verdict.status_code == 200
        done = client.post(f"{base}/complete", headers=actor_headers(qc_inspector, "acme"))
        assert done.get_json()["data"]["status"] == "completed"

        timeline = client.get(f"{base}/timeline", headers=actor_headers(admin, "acme")).get_json()
        assert [e["kind"] for e in timeline["data"]] == [
            "submitted", "validated", "assigned", "repair_started", "qc_requested", "completed",
        ]
        assert timeline["pagination"]["total"] == 6

    def test_patch_claim(self, client, admin, submitted_claim):
        claim = submitted_claim()
        response = client.patch(
            f"{ADMIN}/claims/{claim['id']}",
            json={"admin_notes": "Call before pickup"},
            headers=actor_headers(admin, "acme"),
        )
        assert response.status_code == 200
        assert response.get_json()["data"]["admin_notes"] == "Call before pickup"


class TestInternalRoutes:

    def test_scan_status(self, client, tenant_a, scanner, admin, customer_actor_a, submitted_claim, service):
        claim = submitted_claim()
        attachment = service.upload_attachment(tenant_a, customer_actor_a, claim["id"], {
            "kind": "photo",
            "mime_type": "image/jpeg",
            "original_filename": "front.jpg",
            "size_bytes": 5000,
            "sanitized_path": "acme/claims/front.jpg",
        })
        url = f"/api/v1/internal/warranty/attachments/{attachment['id']}/scan-status"

        denied = client.post(url, json={"scan_status": "clean"}, headers=actor_headers(admin, "acme"))
        assert denied.status_code == 403

        response = client.post(url, json={"scan_status": "clean"}, headers=actor_headers(scanner, "acme"))
        assert response.status_code == 200
        assert response.get_json()["data"]["scan_status"] == "clean"
