from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from .time_utils import parse_iso_datetime


# Maximum amount: 9,999,999.99 (999,999,999 cents)
# This prevents database overflow issues and nonsensical prices
MAX_AMOUNT_CENTS = 999_999_999


class ValidationError(ValueError):
    """Input problem; the message is a machine-readable reason code."""


def require_int(value: Any, field: str, *, allow_none: bool = False) -> int | None:
    """
    Strict integer coercion.

    Accepts ints and plain digit strings. Rejects bools, floats, decimals
    and scientific notation so that "12.5" never silently becomes 12.
    """
    if value is None or value == "":
        if allow_none:
            return None
        raise ValidationError(f"{field}_required")
    if isinstance(value, bool):
        raise ValidationError(f"{field}_must_be_integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped or "e" in stripped.lower() or "." in stripped:
            raise ValidationError(f"{field}_must_be_integer")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field}_must_be_integer")
    raise ValidationError(f"{field}_must_be_integer")


def require_cents(value: Any, field: str, *, allow_none: bool = False) -> int | None:
    cents = require_int(value, field, allow_none=allow_none)
    if cents is not None and cents > MAX_AMOUNT_CENTS:
        raise ValidationError(f"{field}_too_large")
    return cents


def require_decimal(value: Any, field: str, *, allow_none: bool = True) -> Decimal | None:
    if value is None or value == "":
        if allow_none:
            return None
        raise ValidationError(f"{field}_required")
    if isinstance(value, bool):
        raise ValidationError(f"{field}_must_be_number")
    try:
        number = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValidationError(f"{field}_must_be_number")
    if not number.is_finite():
        raise ValidationError(f"{field}_must_be_number")
    return number


def require_datetime(value: Any, field: str) -> datetime:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        raise ValidationError(f"{field}_required")
    try:
        dt = parse_iso_datetime(value)
    except ValueError:
        raise ValidationError(f"{field}_invalid")
    if dt is None:
        raise ValidationError(f"{field}_required")
    return dt


def optional_text(value: Any, field: str, *, max_length: int | None = None) -> str | None:
    if value is None:
        return None
    if not isinstance(value, (str, int)) or isinstance(value, bool):
        raise ValidationError(f"{field}_must_be_text")
    text = str(value).strip()
    if not text:
        return None
    if max_length is not None and len(text) > max_length:
        raise ValidationError(f"{field}_too_long")
    return text


def require_object(value: Any, field: str, *, allow_none: bool = True) -> dict | None:
    if value is None and allow_none:
        return None
    if not isinstance(value, dict):
        raise ValidationError(f"{field}_must_be_object")
    return value
