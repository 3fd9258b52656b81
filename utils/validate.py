# utils/validate.py
"""
Input parsing for the JSON endpoints.

Every helper raises services.errors.ValidationError with a readable message
naming the offending field, so handlers can parse straight-line.
"""
from __future__ import annotations

import re
from datetime import date, datetime, time, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional

from dateutil import parser as dtparse
from flask import current_app

from services.errors import ValidationError

_HHMM = re.compile(r"^([01]?[0-9]|2[0-3]):([0-5][0-9])$")
_EMAIL = re.compile(r"[^@\s]+@[^@\s]+\.[^@\s]+")
CENT = Decimal("0.01")
MAX_MONEY = Decimal("100000000")  # Numeric(10, 2)


def _as_bool(x, default=False) -> bool:
    if x is None:
        return default
    if isinstance(x, bool):
        return x
    s = str(x).strip().lower()
    return s in {"1", "true", "yes", "on"}


def required_str(data: dict, key: str, *, max_len: int | None = None) -> str:
    v = data.get(key)
    if v is None or not str(v).strip():
        raise ValidationError(f"{key} is required")
    v = str(v).strip()
    if max_len and len(v) > max_len:
        raise ValidationError(f"{key} must be at most {max_len} characters")
    return v


def optional_str(data: dict, key: str, *, max_len: int | None = None) -> Optional[str]:
    if data.get(key) is None:
        return None
    return required_str(data, key, max_len=max_len)


def parse_email(value: Any, field: str = "email") -> str:
    email = str(value or "").strip().lower()
    if not email or not _EMAIL.fullmatch(email):
        raise ValidationError(f"{field} must be a valid email address")
    return email


def parse_int(value: Any, field: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, float) and value != n:
        raise ValidationError(f"{field} must be an integer")
    if minimum is not None and n < minimum:
        raise ValidationError(f"{field} must be >= {minimum}")
    return n


def parse_money(value: Any, field: str = "amount") -> Decimal:
    """Positive amount with at most two decimal places."""
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be a positive number")
    try:
        # str() first so floats like 0.1 keep their literal digits
        d = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a positive number")
    if not d.is_finite() or d <= 0:
        raise ValidationError(f"{field} must be a positive number")
    if d >= MAX_MONEY:
        raise ValidationError(f"{field} is too large")
    if d != d.quantize(CENT):
        raise ValidationError(f"{field} must have at most two decimal places")
    return d.quantize(CENT, rounding=ROUND_HALF_UP)


def parse_coordinate(value: Any, field: str, *, limit: int) -> Decimal:
    try:
        d = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number")
    if not d.is_finite() or abs(d) > limit:
        raise ValidationError(f"{field} must be between -{limit} and {limit}")
    return d.quantize(Decimal("0.000001"), rounding=ROUND_HALF_UP)


def parse_hhmm(value: Any, field: str) -> time:
    m = _HHMM.match(str(value or "").strip())
    if not m:
        raise ValidationError(f"{field} must be HH:MM")
    return time(int(m.group(1)), int(m.group(2)))


def parse_datetime(value: Any, field: str) -> datetime:
    """ISO-8601 → naive UTC (the store keeps UTC without tzinfo)."""
    try:
        dt = dtparse.isoparse(str(value).strip())
    except (TypeError, ValueError, OverflowError):
        raise ValidationError(f"{field} must be an ISO-8601 datetime")
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def parse_date(value: Any, field: str) -> date:
    try:
        return datetime.strptime(str(value).strip(), "%Y-%m-%d").date()
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be YYYY-MM-DD")


def paging(args) -> tuple[int, int]:
    """(take, skip) from query args, clamped to MAX_PAGE_SIZE."""
    cfg = current_app.config
    take = args.get("take")
    skip = args.get("skip")
    take = parse_int(take, "take", minimum=1) if take not in (None, "") else cfg["DEFAULT_PAGE_SIZE"]
    skip = parse_int(skip, "skip", minimum=0) if skip not in (None, "") else 0
    return min(take, cfg["MAX_PAGE_SIZE"]), skip


# ── Output helpers ──────────────────────────────────────────────────────────

def money(d: Decimal | None) -> str | None:
    if d is None:
        return None
    return f"{Decimal(d).quantize(CENT):.2f}"


def iso(dt_obj) -> str | None:
    return dt_obj.isoformat() if dt_obj is not None else None


def hhmm(t: time | None) -> str | None:
    return t.strftime("%H:%M") if t is not None else None
