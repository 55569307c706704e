# backend/warranty/routes/system.py
"""
System health and version endpoints.

Not tenant-bound; used by load balancers and deployment checks.
"""

import sys
import time

from flask import Blueprint, current_app
from sqlalchemy import text

from ..extensions import db
from ..models import OutboxEvent, Storefront
from ..time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api/v1")


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        db.session.execute(text("SELECT 1"))
        storefront_count = db.session.query(Storefront).count()
        pending_outbox = db.session.query(OutboxEvent).filter(OutboxEvent.dispatched_at.is_(None)).count()
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "storefronts": storefront_count,
                "outbox_pending": pending_outbox,
            },
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        db.session.rollback()
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


def check_tenant_cache() -> dict:
    resolver = current_app.extensions["warranty"].resolver
    return {
        "status": "healthy",
        "details": {"entries": len(resolver.cache), "capacity": resolver.cache.capacity},
    }


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: All systems healthy
    - 503: Database unreachable
    """
    start_time = time.time()
    database_health = check_database_health()
    cache_health = check_tenant_cache()

    unhealthy = database_health["status"] == "unhealthy"
    response = {
        "status": "unhealthy" if unhealthy else "healthy",
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": {
            "database": database_health,
            "tenant_cache": cache_health,
        },
    }
    return {"data": response}, 503 if unhealthy else 200


@system_bp.get("/version")
def version():
    """Non-sensitive deployment information."""
    env = "production" if not current_app.debug else "development"
    return {
        "data": {
            "api_version": "1.0.0",
            "environment": env,
            "python_version": sys.version.split()[0],
            "server_time": to_utc_z(utcnow()),
        }
    }
