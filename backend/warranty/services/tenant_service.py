"""
Multi-Tenant Service: Storefront Resolution, Caching and Scoping Helpers

WHY: Every request must be bound to exactly one storefront before any
warranty operation runs, and cross-tenant access must be indistinguishable
from "not found".

SECURITY INVARIANTS:
1. The bound tenant is an explicit BoundTenant value passed down the call
   chain; nothing is stored on flask.g or in a thread-local
2. Repository functions refuse to run without a BoundTenant
3. Every query touching tenant data filters by storefront_id
4. A foreign id yields NotFoundError with the same message as a missing id;
   the attempt is logged as a security event

USAGE:
    tenant = resolver.resolve(ResolutionHints(host="acme.shops.local"))
    claim = get_owned(WarrantyClaim, tenant, claim_id, label="Claim")
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

from flask import current_app

from ..config import WarrantySettings
from ..errors import (
    InternalError,
    NotFoundError,
    TenantAmbiguousError,
    TenantSuspendedError,
    TenantUnknownError,
)
from ..extensions import db
from ..models import Storefront
from ..models.tenancy import STOREFRONT_STATUS_DELETED, STOREFRONT_STATUS_SUSPENDED


@dataclass(frozen=True)
class BoundTenant:
    """Resolved storefront identity. Immutable; safe to share between threads."""

    storefront_id: uuid.UUID
    slug: str
    status: str


@dataclass(frozen=True)
class ResolutionHints:
    """Opaque inputs from the request that may identify a storefront."""

    host: Optional[str] = None
    path_slug: Optional[str] = None
    claim_storefront_id: Optional[str] = None
    explicit_slug: Optional[str] = None

    def is_empty(self) -> bool:
        return not any((self.host, self.path_slug, self.claim_storefront_id, self.explicit_slug))


class TenantCache:
    """
    TTL + capacity bounded map from hint key to BoundTenant (or None).

    CONCURRENCY: the entry dict is copy-on-write. Readers take no lock and
    see either the old or the new dict; writers serialize on a lock, copy,
    mutate and swap the reference. On overflow the oldest insertion is
    evicted.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float,
        negative_ttl_seconds: float,
        capacity: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.negative_ttl_seconds = negative_ttl_seconds
        self.capacity = capacity
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[Optional[BoundTenant], float]] = {}

    _MISS = object()

    def get(self, key: str):
        """Return the cached BoundTenant, None for a cached negative, or _MISS."""
        entry = self._entries.get(key)
        if entry is None:
            return self._MISS
        value, expires_at = entry
        if self._clock() >= expires_at:
            return self._MISS
        return value

    def put(self, key: str, value: Optional[BoundTenant]) -> None:
        ttl = self.ttl_seconds if value is not None else self.negative_ttl_seconds
        expires_at = self._clock() + ttl
        with self._lock:
            entries = dict(self._entries)
            entries.pop(key, None)
            now = self._clock()
            for stale_key in [k for k, (_, exp) in entries.items() if exp <= now]:
                del entries[stale_key]
            while len(entries) >= self.capacity:
                del entries[next(iter(entries))]
            entries[key] = (value, expires_at)
            self._entries = entries

    def invalidate(self, storefront_id: uuid.UUID) -> None:
        with self._lock:
            self._entries = {
                k: v for k, v in self._entries.items()
                if v[0] is None or v[0].storefront_id != storefront_id
            }

    def clear(self) -> None:
        with self._lock:
            self._entries = {}

    def __len__(self) -> int:
        return len(self._entries)


class TenantResolver:
    """
    Map request hints to a BoundTenant.

    All hints present must agree on one storefront. A host that is neither
    a known custom domain nor a subdomain of the base domain is not treated
    as a hint (it is the API host).
    """

    def __init__(self, settings: WarrantySettings, *, cache: TenantCache | None = None, logger: logging.Logger | None = None):
        self.settings = settings
        self.cache = cache or TenantCache(
            ttl_seconds=settings.tenant_cache_ttl_seconds,
            negative_ttl_seconds=settings.tenant_cache_negative_ttl_seconds,
            capacity=settings.tenant_cache_capacity,
        )
        self.logger = logger or logging.getLogger(__name__)

    def resolve(self, hints: ResolutionHints) -> BoundTenant:
        if hints.is_empty():
            raise TenantUnknownError("Storefront could not be determined from the request")

        resolved: list[BoundTenant] = []
        for key in self._hint_keys(hints):
            tenant = self._lookup(key)
            if tenant is None:
                if key.startswith("host:"):
                    continue
                raise TenantUnknownError("Storefront not found")
            resolved.append(tenant)

        if not resolved:
            raise TenantUnknownError("Storefront not found")

        ids = {t.storefront_id for t in resolved}
        if len(ids) > 1:
            self.logger.warning("Ambiguous storefront hints: %s", hints)
            raise TenantAmbiguousError(
                "Request identifies more than one storefront",
                details={"slugs": sorted({t.slug for t in resolved})},
            )

        tenant = resolved[0]
        if tenant.status == STOREFRONT_STATUS_DELETED:
            raise TenantUnknownError("Storefront not found")
        if tenant.status == STOREFRONT_STATUS_SUSPENDED:
            raise TenantSuspendedError("Storefront is suspended")
        return tenant

    def _hint_keys(self, hints: ResolutionHints) -> list[str]:
        keys = []
        if hints.host:
            host = hints.host.split(":", 1)[0].strip().lower().rstrip(".")
            if host:
                keys.append(f"host:{host}")
        if hints.path_slug:
            keys.append(f"slug:{hints.path_slug.strip().lower()}")
        if hints.claim_storefront_id:
            keys.append(f"id:{hints.claim_storefront_id.strip().lower()}")
        if hints.explicit_slug:
            keys.append(f"slug:{hints.explicit_slug.strip().lower()}")
        return keys

    def _lookup(self, key: str) -> Optional[BoundTenant]:
        cached = self.cache.get(key)
        if cached is not TenantCache._MISS:
            return cached
        tenant = self._load(key)
        self.cache.put(key, tenant)
        return tenant

    def _load(self, key: str) -> Optional[BoundTenant]:
        kind, value = key.split(":", 1)
        query = db.session.query(Storefront)
        if kind == "id":
            try:
                storefront = query.filter_by(id=uuid.UUID(value)).first()
            except ValueError:
                return None
        elif kind == "slug":
            storefront = query.filter_by(slug=value).first()
        else:
            suffix = "." + self.settings.base_domain.lower()
            if value.endswith(suffix):
                slug = value[: -len(suffix)]
                storefront = query.filter_by(slug=slug).first() if slug and "." not in slug else None
            else:
                storefront = query.filter_by(custom_domain=value).first()
        if storefront is None:
            return None
        return BoundTenant(storefront_id=storefront.id, slug=storefront.slug, status=storefront.status)


def require_tenant(tenant) -> BoundTenant:
    """Guard used by every repository entry point."""
    if not isinstance(tenant, BoundTenant):
        raise InternalError("tenant-scoped operation called without a bound tenant")
    return tenant


def scoped_query(model, tenant: BoundTenant):
    """
    Base query filtered to the bound storefront.

    Usage:
        claims = scoped_query(WarrantyClaim, tenant).filter_by(status="submitted").all()
    """
    require_tenant(tenant)
    return db.session.query(model).filter(model.storefront_id == tenant.storefront_id)


def get_owned(model, tenant: BoundTenant, entity_id, *, label: str, for_update: bool = False):
    """
    Load one row owned by the tenant or raise NotFoundError.

    SECURITY: A row that exists under another storefront produces exactly
    the same error as a missing row; the attempt is logged.
    """
    require_tenant(tenant)
    entity_id = _coerce_uuid(entity_id, label)
    query = scoped_query(model, tenant).filter(model.id == entity_id).execution_options(populate_existing=True)
    if for_update:
        query = query.with_for_update()
    row = query.first()
    if row is None:
        _log_cross_tenant_access(model, tenant, entity_id)
        raise NotFoundError(f"{label} not found")
    return row


def _coerce_uuid(value, label: str) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise NotFoundError(f"{label} not found")


def _log_cross_tenant_access(model, tenant: BoundTenant, entity_id: uuid.UUID) -> None:
    """
    Log a cross-tenant access attempt as a security event.

    SECURITY: Only logged, never reported to the caller.
    """
    owner = db.session.query(model.storefront_id).filter(model.id == entity_id).scalar()
    if owner is not None and owner != tenant.storefront_id:
        current_app.logger.warning(
            "CROSS_TENANT_ACCESS_DENIED model=%s id=%s requested_by=%s",
            model.__tablename__,
            entity_id,
            tenant.storefront_id,
        )
