# Overview: Closed set of domain error kinds with stable codes and HTTP statuses.

"""
Warranty Error Kinds

WHY: Callers (HTTP handlers, CLI, workers) branch on a stable string code,
never on exception type names or message text. Every failure raised by the
core is one of the classes below, classified where it is generated.

DESIGN:
- code: stable machine-readable identifier surfaced in the error envelope
- http_status: status used by the HTTP layer
- retryable: True only for infrastructure failures the caller may retry
- details: optional JSON-safe dict (field names, constraint names, ids)

Storage-driver exceptions are translated into these kinds in exactly one
place (services/concurrency.py); the original exception is kept as
__cause__ for logging.
"""

from __future__ import annotations

from typing import Any


class WarrantyError(Exception):
    """Base class for all classified failures."""

    code = "internal"
    http_status = 500
    retryable = False

    def __init__(self, message: str | None = None, *, details: dict[str, Any] | None = None):
        self.message = message or self.default_message()
        self.details = details or None
        super().__init__(self.message)

    @classmethod
    def default_message(cls) -> str:
        return cls.code.replace("_", " ")

    def to_dict(self) -> dict:
        body: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(WarrantyError):
    """400-level input problem."""

    code = "validation_failed"
    http_status = 400


class NotFoundError(WarrantyError):
    """
    Entity absent OR owned by another storefront.

    SECURITY: Both cases produce the same message so callers cannot test
    for the existence of foreign rows.
    """

    code = "not_found"
    http_status = 404


class ConflictError(WarrantyError):
    """409-level uniqueness violation or illegal state transition."""

    code = "conflict"
    http_status = 409


class ForbiddenError(WarrantyError):
    code = "forbidden"
    http_status = 403


class TenantUnknownError(WarrantyError):
    code = "tenant_unknown"
    http_status = 404


class TenantSuspendedError(WarrantyError):
    code = "tenant_suspended"
    http_status = 403


class TenantAmbiguousError(WarrantyError):
    """Resolution hints point at different storefronts."""

    code = "tenant_ambiguous"
    http_status = 400


class RateLimitedError(WarrantyError):
    code = "rate_limited"
    http_status = 429


class TimeoutError_(WarrantyError):
    """Request deadline exceeded or the request was cancelled."""

    code = "timeout"
    http_status = 408


class DependencyUnavailableError(WarrantyError):
    code = "dependency_unavailable"
    http_status = 503
    retryable = True


class InternalError(WarrantyError):
    code = "internal"
    http_status = 500


ERROR_KINDS = {
    cls.code: cls
    for cls in (
        ValidationError,
        NotFoundError,
        ConflictError,
        ForbiddenError,
        TenantUnknownError,
        TenantSuspendedError,
        TenantAmbiguousError,
        RateLimitedError,
        TimeoutError_,
        DependencyUnavailableError,
        InternalError,
    )
}

# Batch failure cause recorded on the batch row (not raised to HTTP callers)
ENTROPY_EXHAUSTED = "entropy_exhausted"
