"""
Request payload and query-string parsing.

Routes turn raw JSON and query parameters into typed values here so that
services only ever see validated Python values. Every failure is a
ValidationError naming the offending field.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Mapping, Optional

from flask import request

from .errors import ValidationError
from .services.pagination import DEFAULT_PAGE_SIZE, PageRequest
from .time_utils import parse_iso_datetime


def json_body() -> dict:
    """The request's JSON object body ({} when absent)."""
    data = request.get_json(silent=True)
    if data is None:
        if request.data:
            raise ValidationError("Request body must be valid JSON")
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def require_fields(data: Mapping[str, Any], *names: str) -> None:
    missing = [name for name in names if data.get(name) in (None, "")]
    if missing:
        raise ValidationError(
            f"Missing required field(s): {', '.join(missing)}",
            details={"fields": missing},
        )


def parse_uuid(value: Any, field: str, *, required: bool = True) -> Optional[uuid.UUID]:
    if value in (None, ""):
        if required:
            raise ValidationError(f"{field} is required", details={"field": field})
        return None
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a UUID", details={"field": field})


def parse_int(value: Any, field: str, *, required: bool = True, minimum: Optional[int] = None) -> Optional[int]:
    """Strict integer: rejects bools, floats and scientific notation."""
    if value in (None, ""):
        if required:
            raise ValidationError(f"{field} is required", details={"field": field})
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer", details={"field": field})
    if isinstance(value, int):
        result = value
    elif isinstance(value, str) and value.strip().lstrip("-").isdigit():
        result = int(value.strip())
    else:
        raise ValidationError(f"{field} must be an integer", details={"field": field})
    if minimum is not None and result < minimum:
        raise ValidationError(f"{field} must be >= {minimum}", details={"field": field})
    return result


def parse_bool(value: Any, field: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise ValidationError(f"{field} must be true or false", details={"field": field})


def parse_datetime(value: Any, field: str, *, required: bool = False) -> Optional[datetime]:
    if value in (None, ""):
        if required:
            raise ValidationError(f"{field} is required", details={"field": field})
        return None
    try:
        return parse_iso_datetime(str(value))
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 datetime", details={"field": field})


def page_request_from_args(args: Mapping[str, Any]) -> PageRequest:
    page = parse_int(args.get("page"), "page", required=False, minimum=1) or 1
    size = parse_int(args.get("size"), "size", required=False, minimum=1) or DEFAULT_PAGE_SIZE
    return PageRequest(page=page, size=size)


def optional_str(data: Mapping[str, Any], field: str, *, max_length: int = 1000) -> Optional[str]:
    value = data.get(field)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string", details={"field": field})
    value = value.strip()
    if len(value) > max_length:
        raise ValidationError(f"{field} must be at most {max_length} characters", details={"field": field})
    return value or None
