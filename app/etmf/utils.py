from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any

from flask import request

from app.etmf.errors import ValidationError
from app.etmf.models import User


def json_payload() -> dict[str, Any]:
    """Request body as a JSON object (empty dict when absent)."""
    if not request.data:
        return {}
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object.")
    return payload


def require_fields(payload: dict[str, Any], *names: str) -> None:
    missing = [n for n in names if payload.get(n) in (None, "")]
    if missing:
        raise ValidationError(
            f"Required fields missing: {', '.join(missing)}",
            details={"missing": missing},
        )


def clean_str(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def parse_date(value: Any, field: str = "date") -> date | None:
    """Parse YYYY-MM-DD (a full ISO datetime is truncated to its date)."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    s = str(value).strip()
    try:
        if len(s) > 10:
            return parse_datetime(s, field).date()  # type: ignore[union-attr]
        return date.fromisoformat(s)
    except ValueError:
        raise ValidationError(f"{field} must be an ISO date (YYYY-MM-DD).", details={"field": field})


def parse_datetime(value: Any, field: str = "datetime") -> datetime | None:
    """Parse an ISO 8601 timestamp into naive UTC (how timestamps are stored)."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    else:
        s = str(value).strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except ValueError:
            raise ValidationError(f"{field} must be an ISO 8601 timestamp.", details={"field": field})
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def parse_int(
    value: Any,
    field: str,
    *,
    default: int | None = None,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int | None:
    if value in (None, ""):
        return default
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer.", details={"field": field})
    if minimum is not None and n < minimum:
        raise ValidationError(f"{field} must be >= {minimum}.", details={"field": field})
    if maximum is not None and n > maximum:
        n = maximum
    return n


def parse_choice(value: Any, field: str, choices: tuple[str, ...] | frozenset[str], default: str | None = None) -> str | None:
    if value in (None, ""):
        return default
    v = str(value).strip().upper()
    if v not in choices:
        raise ValidationError(
            f"Invalid {field}. Must be one of: {', '.join(sorted(choices))}",
            details={"field": field},
        )
    return v


def iso(value: date | datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def user_to_dict(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "user_name": user.user_name,
        "is_active": user.is_active,
        "roles": [r.role_key for r in user.roles],
    }


def parse_bool(value: Any, default: bool = False) -> bool:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")
