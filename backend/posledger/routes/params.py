# Overview: Request parsing helpers shared by the API blueprints.

from __future__ import annotations

from typing import Any

from flask import request

from ..time_utils import parse_iso_date
from ..validation import ValidationError


def json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def int_value(value: Any, field: str, *, required: bool = True) -> int | None:
    if value is None or value == "":
        if required:
            raise ValidationError(f"{field} is required")
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer")


def int_arg(name: str, *, required: bool = False) -> int | None:
    return int_value(request.args.get(name), name, required=required)


def date_value(value: Any, field: str, *, required: bool = False):
    if value is None or value == "":
        if required:
            raise ValidationError(f"{field} is required")
        return None
    try:
        parsed = parse_iso_date(str(value))
    except ValueError:
        parsed = None
    if parsed is None:
        raise ValidationError(f"{field} must be an ISO date (YYYY-MM-DD)")
    return parsed


def date_arg(name: str):
    return date_value(request.args.get(name), name)


def limit_arg(default: int = 100, maximum: int = 500) -> int:
    limit = int_arg("limit") or default
    return max(1, min(limit, maximum))


def idempotency_key(data: dict) -> str | None:
    # Header wins over body so clients can retry the exact same body
    return request.headers.get("Idempotency-Key") or data.get("idempotency_key")
