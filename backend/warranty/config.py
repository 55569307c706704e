# backend/warranty/config.py
from __future__ import annotations

import math
import os
from dataclasses import dataclass, fields
from typing import Any, Mapping

from .errors import ValidationError


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, default))


def _env_float(name: str, default: float) -> float:
    return float(os.environ.get(name, default))


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",  # optional alternative location
        "sqlite:///warranty.sqlite3",  # default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Celery (batch workers)
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL", "redis://localhost:6379/0")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND", "redis://localhost:6379/0")
    CELERY_TASK_ALWAYS_EAGER = os.environ.get("CELERY_TASK_ALWAYS_EAGER", "false").lower() == "true"
    CELERY_WORKER_CONCURRENCY = _env_int("CELERY_WORKER_CONCURRENCY", 2)

    # Tenant resolution
    WARRANTY_BASE_DOMAIN = os.environ.get("WARRANTY_BASE_DOMAIN", "shops.local")
    WARRANTY_TENANT_CACHE_TTL_SECONDS = _env_float("WARRANTY_TENANT_CACHE_TTL_SECONDS", 3600)
    WARRANTY_TENANT_CACHE_NEGATIVE_TTL_SECONDS = _env_float("WARRANTY_TENANT_CACHE_NEGATIVE_TTL_SECONDS", 60)
    WARRANTY_TENANT_CACHE_CAPACITY = _env_int("WARRANTY_TENANT_CACHE_CAPACITY", 1000)

    # Deadlines (milliseconds)
    WARRANTY_REQUEST_TIMEOUT_MS = _env_int("WARRANTY_REQUEST_TIMEOUT_MS", 30_000)
    WARRANTY_MAX_REQUEST_TIMEOUT_MS = _env_int("WARRANTY_MAX_REQUEST_TIMEOUT_MS", 120_000)
    WARRANTY_DB_STATEMENT_TIMEOUT_MS = _env_int("WARRANTY_DB_STATEMENT_TIMEOUT_MS", 5_000)

    # Barcode generation
    WARRANTY_CODE_ALPHABET = os.environ.get("WARRANTY_CODE_ALPHABET", "ABCDEFGHJKLMNPQRSTUVWXYZ23456789")
    WARRANTY_CODE_LENGTH = _env_int("WARRANTY_CODE_LENGTH", 16)
    WARRANTY_CODE_MAX_LENGTH = _env_int("WARRANTY_CODE_MAX_LENGTH", 64)
    WARRANTY_BATCH_CHUNK_SIZE = _env_int("WARRANTY_BATCH_CHUNK_SIZE", 1000)
    WARRANTY_BATCH_MAX_COUNT = _env_int("WARRANTY_BATCH_MAX_COUNT", 1_000_000)
    WARRANTY_COLLISION_WINDOW = _env_int("WARRANTY_COLLISION_WINDOW", 10_000)
    WARRANTY_COLLISION_THRESHOLD = _env_float("WARRANTY_COLLISION_THRESHOLD", 0.05)
    WARRANTY_COLLISION_MIN_SAMPLE = _env_int("WARRANTY_COLLISION_MIN_SAMPLE", 1000)

    # Claims
    WARRANTY_DEFAULT_REPAIR_DAYS = _env_int("WARRANTY_DEFAULT_REPAIR_DAYS", 7)

    # Attachments (bytes)
    WARRANTY_MAX_IMAGE_BYTES = _env_int("WARRANTY_MAX_IMAGE_BYTES", 5 * 1024 * 1024)
    WARRANTY_MAX_DOCUMENT_BYTES = _env_int("WARRANTY_MAX_DOCUMENT_BYTES", 10 * 1024 * 1024)
    WARRANTY_MAX_VIDEO_BYTES = _env_int("WARRANTY_MAX_VIDEO_BYTES", 50 * 1024 * 1024)


@dataclass(frozen=True)
class WarrantySettings:
    """
    Immutable runtime settings for the warranty core.

    WHY: Components receive configuration as a value at construction time.
    Nothing reads app.config or os.environ after startup; a reload builds a
    new WarrantySettings and a new service container.
    """

    base_domain: str = "shops.local"
    tenant_cache_ttl_seconds: float = 3600.0
    tenant_cache_negative_ttl_seconds: float = 60.0
    tenant_cache_capacity: int = 1000

    request_timeout_ms: int = 30_000
    max_request_timeout_ms: int = 120_000
    db_statement_timeout_ms: int = 5_000

    code_alphabet: str = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
    code_length: int = 16
    code_max_length: int = 64
    batch_chunk_size: int = 1000
    batch_max_count: int = 1_000_000
    collision_window: int = 10_000
    collision_threshold: float = 0.05
    collision_min_sample: int = 1000

    default_repair_days: int = 7

    max_image_bytes: int = 5 * 1024 * 1024
    max_document_bytes: int = 10 * 1024 * 1024
    max_video_bytes: int = 50 * 1024 * 1024

    MIN_ENTROPY_BITS = 80

    def __post_init__(self):
        self.validate()

    @property
    def entropy_bits(self) -> float:
        return self.code_length * math.log2(len(self.code_alphabet))

    def validate(self) -> None:
        """Reject settings the core cannot honour. Raised once, at startup."""
        if len(set(self.code_alphabet)) != len(self.code_alphabet) or len(self.code_alphabet) < 2:
            raise ValidationError("code_alphabet must contain at least 2 distinct symbols")
        if self.entropy_bits < self.MIN_ENTROPY_BITS:
            raise ValidationError(
                f"code entropy {self.entropy_bits:.1f} bits is below the {self.MIN_ENTROPY_BITS}-bit floor",
                details={"code_length": self.code_length, "alphabet_size": len(self.code_alphabet)},
            )
        if self.code_max_length < self.code_length:
            raise ValidationError("code_max_length must be >= code_length")
        for name in (
            "tenant_cache_capacity",
            "request_timeout_ms",
            "db_statement_timeout_ms",
            "batch_chunk_size",
            "batch_max_count",
            "collision_window",
        ):
            if getattr(self, name) <= 0:
                raise ValidationError(f"{name} must be > 0")
        if not 0 < self.collision_threshold < 1:
            raise ValidationError("collision_threshold must be between 0 and 1")
        if self.db_statement_timeout_ms >= self.request_timeout_ms:
            raise ValidationError("db_statement_timeout_ms must be shorter than request_timeout_ms")

    @classmethod
    def from_mapping(cls, config: Mapping[str, Any]) -> "WarrantySettings":
        """Build settings from a Flask config (WARRANTY_* keys)."""
        values = {}
        for field in fields(cls):
            key = f"WARRANTY_{field.name.upper()}"
            if key in config:
                values[field.name] = config[key]
        return cls(**values)
