# Overview: Request decorators for API routes; deadline, tenant binding and actor extraction.

import re
from functools import wraps

from flask import current_app, request

from .deadline import Deadline
from .errors import ForbiddenError, ValidationError
from .permissions import Actor
from .services.tenant_service import ResolutionHints


_PATH_SLUG = re.compile(r"^/s/([^/]+)/")


def orchestrator():
    """The service container built by create_app()."""
    return current_app.extensions["warranty"]


def request_deadline() -> Deadline:
    """
    Deadline for the current request.

    X-Request-Timeout-Ms may shorten or lengthen the default, never beyond
    the configured maximum.
    """
    settings = orchestrator().settings
    raw = request.headers.get("X-Request-Timeout-Ms")
    timeout_ms = settings.request_timeout_ms
    if raw:
        if not raw.strip().isdigit() or int(raw) <= 0:
            raise ValidationError("X-Request-Timeout-Ms must be a positive integer")
        timeout_ms = min(int(raw), settings.max_request_timeout_ms)
    return Deadline.after_ms(timeout_ms)


def resolution_hints() -> ResolutionHints:
    match = _PATH_SLUG.match(request.path)
    return ResolutionHints(
        host=request.host,
        path_slug=match.group(1) if match else None,
        claim_storefront_id=request.headers.get("X-Storefront-ID"),
        explicit_slug=request.headers.get("X-Storefront-Slug"),
    )


def with_deadline(f):
    """Pass `deadline` to the view."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        kwargs["deadline"] = request_deadline()
        return f(*args, **kwargs)

    return decorated_function


def require_tenant(f):
    """
    Resolve the storefront for this request and pass it as `tenant`.

    MULTI-TENANT: the bound tenant is handed to the view explicitly; it is
    never stored on flask.g. The /s/<slug>/ URL variable is consumed here.

    SECURITY: resolution failures surface as tenant_unknown (404),
    tenant_suspended (403) or tenant_ambiguous (400).
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        kwargs.pop("storefront_slug", None)
        kwargs["tenant"] = orchestrator().resolve_tenant(resolution_hints())
        return f(*args, **kwargs)

    return decorated_function


def require_actor(*roles: str):
    """
    Read the acting identity asserted by the upstream gateway.

    Headers: X-Actor-ID, X-Actor-Role. When `roles` is given the role must
    be one of them (blueprint-level gate; per-action checks happen in the
    orchestrator).
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            actor_id = (request.headers.get("X-Actor-ID") or "").strip()
            role = (request.headers.get("X-Actor-Role") or "").strip().lower()
            if not actor_id or not role:
                raise ForbiddenError("X-Actor-ID and X-Actor-Role headers are required")
            actor = Actor(actor_id=actor_id, role=role)
            if roles and actor.role not in roles:
                raise ForbiddenError(
                    f"Role '{actor.role}' may not use this endpoint",
                    details={"required_roles": sorted(roles)},
                )
            kwargs["actor"] = actor
            return f(*args, **kwargs)

        return decorated_function

    return decorator
