"""
Warranty Core Load Testing with Locust

Run with:
    locust -f tests/stress/locustfile.py --host http://127.0.0.1:5001

Or headless:
    locust -f tests/stress/locustfile.py --host http://127.0.0.1:5001 \
           --users 20 --spawn-rate 4 --run-time 60s --headless

Seed data (CLI, see warranty/cli.py) and pass it in via environment:
    WARRANTY_STRESS_SLUG          storefront slug (default: acme)
    WARRANTY_STRESS_PRODUCT_ID    product used for small generation batches
    WARRANTY_STRESS_CUSTOMER_ID   customer that owns the activated codes
    WARRANTY_STRESS_CODES         comma separated activated code values

Thresholds checked at the end of the run (locust's own stats):
    p95 < 500ms for reads, < 1000ms for submit/generate; failures < 1%
"""

import os
import random
from typing import Dict, List

from locust import HttpUser, task, between, events


SLUG = os.environ.get("WARRANTY_STRESS_SLUG", "acme")
PRODUCT_ID = os.environ.get("WARRANTY_STRESS_PRODUCT_ID")
CUSTOMER_ID = os.environ.get("WARRANTY_STRESS_CUSTOMER_ID")
CODES = [c for c in os.environ.get("WARRANTY_STRESS_CODES", "").split(",") if c]

ADMIN = "/api/v1/admin/warranty"
CUSTOMER = "/api/v1/customer/protected/warranty"
PUBLIC = "/api/v1/public/warranty"

WRITE_ENDPOINTS = {"customer/submit", "admin/generate"}


class WarrantyUser(HttpUser):
    """
    Base user; identity is asserted through the gateway headers.
    """
    wait_time = between(0.5, 2)
    abstract = True

    actor_id: str = "stress-admin"
    role: str = "admin"

    def get_headers(self) -> Dict:
        return {
            "Content-Type": "application/json",
            "X-Actor-ID": self.actor_id,
            "X-Actor-Role": self.role,
            "X-Storefront-Slug": SLUG,
        }

    def timed(self, name: str, method: str, url: str, ok_statuses=(200,), **kwargs):
        """Expected statuses (e.g. a 409 on a re-submitted code) count as successes."""
        with self.client.request(method, url, name=name, catch_response=True, **kwargs) as response:
            if response.status_code in ok_statuses:
                response.success()
            else:
                response.failure(f"HTTP {response.status_code}")
            return response


class PublicValidationUser(WarrantyUser):
    """
    Anonymous shoppers checking warranty status (the hottest path).
    """
    weight = 5

    @task(5)
    def validate_known_code(self):
        if not CODES:
            return
        self.timed("public/validate", "GET", f"/s/{SLUG}{PUBLIC}/validate/{random.choice(CODES)}")

    @task(1)
    def validate_unknown_code(self):
        code = "".join(random.choice("ABCDEFGHJKLMNPQRSTUVWXYZ23456789") for _ in range(16))
        self.timed("public/validate_unknown", "GET", f"/s/{SLUG}{PUBLIC}/validate/{code}")

    @task(1)
    def health_check(self):
        self.timed("system/health", "GET", "/api/v1/health")


class CustomerUser(WarrantyUser):
    """
    Customers submitting and following their claims.
    """
    weight = 2
    role = "customer"
    created_claims: List[str] = []

    def on_start(self):
        self.actor_id = CUSTOMER_ID or "missing-customer"

    @task(3)
    def list_own_claims(self):
        self.timed("customer/claims", "GET", f"{CUSTOMER}/claims", headers=self.get_headers())

    @task(1)
    def submit_claim(self):
        """Submitting twice on one code is a 409; both count as handled."""
        if not CODES:
            return
        response = self.timed(
            "customer/submit",
            "POST",
            f"{CUSTOMER}/claims",
            ok_statuses=(201, 409),
            headers=self.get_headers(),
            json={
                "code_value": random.choice(CODES),
                "issue_description": "Load test: unit powers off after a few minutes",
                "issue_category": "malfunction",
                "severity": random.choice(["low", "medium", "high"]),
                "customer_name": "Stress Customer",
                "customer_email": "stress@example.com",
                "customer_phone": "+15550100",
                "pickup_address": {"street": "1 Main St", "city": "Springfield", "postal_code": "12345"},
            },
        )
        if response.status_code == 201:
            self.created_claims.append(response.json()["data"]["id"])

    @task(2)
    def get_own_claim(self):
        if not self.created_claims:
            return
        claim_id = random.choice(self.created_claims[-10:])
        self.timed("customer/claim", "GET", f"{CUSTOMER}/claims/{claim_id}", headers=self.get_headers())


class StaffUser(WarrantyUser):
    """
    Admins triaging claims and generating small batches.
    """
    weight = 1
    batch_ids: List[str] = []

    @task(5)
    def list_claims(self):
        self.timed(
            "admin/claims",
            "GET",
            f"{ADMIN}/claims",
            params={"status": random.choice(["submitted", "validated", "in_repair"]), "size": 20},
            headers=self.get_headers(),
        )

    @task(2)
    def claim_stats(self):
        self.timed("admin/claims_stats", "GET", f"{ADMIN}/claims/stats", headers=self.get_headers())

    @task(2)
    def barcode_stats(self):
        self.timed("admin/barcodes_stats", "GET", f"{ADMIN}/barcodes/stats", headers=self.get_headers())

    @task(1)
    def generate_batch(self):
        if not PRODUCT_ID:
            return
        response = self.timed(
            "admin/generate",
            "POST",
            f"{ADMIN}/barcodes/generate",
            ok_statuses=(202,),
            headers=self.get_headers(),
            json={"product_id": PRODUCT_ID, "count": random.randint(10, 200)},
        )
        if response.status_code == 202:
            self.batch_ids.append(response.json()["data"]["batch_id"])

    @task(3)
    def batch_progress(self):
        if not self.batch_ids:
            return
        batch_id = random.choice(self.batch_ids[-10:])
        self.timed("admin/batch_progress", "GET", f"{ADMIN}/batches/{batch_id}/progress", headers=self.get_headers())



@events.quitting.add_listener
def check_thresholds(environment, **kwargs):
    """Fail the run (exit code 1) when an endpoint misses its threshold."""
    misses: List[str] = []
    for entry in environment.stats.entries.values():
        if not entry.num_requests:
            continue
        limit_ms = 1000 if entry.name in WRITE_ENDPOINTS else 500
        p95 = entry.get_response_time_percentile(0.95)
        if p95 >= limit_ms or entry.fail_ratio >= 0.01:
            misses.append(f"{entry.name}: p95 {p95:.0f}ms, failures {entry.fail_ratio:.2%}")

    if misses:
        print("[FAIL] Endpoints over threshold:")
        for line in misses:
            print(f"  - {line}")
        environment.process_exit_code = 1
    else:
        print("[PASS] All endpoints within thresholds")
