# Overview: Flask API routes for anonymous warranty checks.

from flask import Blueprint

from ..decorators import orchestrator, require_tenant, with_deadline
from ..responses import ok


public_warranty_bp = Blueprint("public_warranty", __name__, url_prefix="/api/v1/public/warranty")


@public_warranty_bp.get("/validate/<code>")
@with_deadline
@require_tenant
def validate_code_route(code, tenant, deadline):
    """
    Check a printed warranty code.

    SECURITY: no customer data is returned; unknown codes and codes of
    other storefronts both answer 200 {"valid": false}.
    """
    return ok(orchestrator().validate_code(tenant, code, deadline=deadline))
