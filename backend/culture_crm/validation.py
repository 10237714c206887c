from __future__ import annotations
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable

from culture_crm.time_utils import parse_iso_date


# Maximum money amount: 9,999,999,999.99 (Numeric(12, 2))
MAX_AMOUNT = Decimal("9999999999.99")
CENT = Decimal("0.01")


# Machine-readable codes for 400-level problems. The message is for humans,
# the code is what callers branch on.
CODE_VALIDATION = "VALIDATION_ERROR"
CODE_BASIS_WITHOUT_GROUP = "BASIS_WITHOUT_GROUP"
CODE_SUBSCRIPTION_WRONG_CLIENT = "SUBSCRIPTION_WRONG_CLIENT"
CODE_SUBSCRIPTION_WRONG_GROUP = "SUBSCRIPTION_WRONG_GROUP"
CODE_SUBSCRIPTION_NOT_ACTIVE = "SUBSCRIPTION_NOT_ACTIVE"
CODE_SUBSCRIPTION_OUT_OF_RANGE = "SUBSCRIPTION_OUT_OF_RANGE"
CODE_NO_VISITS_LEFT = "NO_VISITS_LEFT"
CODE_AMOUNT_EXCEEDS_UNPAID = "AMOUNT_EXCEEDS_UNPAID"
CODE_INVOICE_CANCELLED = "INVOICE_CANCELLED"
CODE_INVALID_DATE_RANGE = "INVALID_DATE_RANGE"

CODE_NOT_FOUND = "NOT_FOUND"
CODE_CONFLICT = "CONFLICT"
CODE_VERSION_CONFLICT = "VERSION_CONFLICT"


class ValidationError(ValueError):
    """400-level input problem."""

    status_code = 400

    def __init__(self, message: str, code: str = CODE_VALIDATION):
        super().__init__(message)
        self.code = code


class NotFoundError(LookupError):
    """404-level: a referenced record does not exist."""

    status_code = 404
    code = CODE_NOT_FOUND


class ConflictError(ValueError):
    """409-level business rule conflict (e.g., duplicate attendance mark)."""

    status_code = 409

    def __init__(self, message: str, code: str = CODE_CONFLICT):
        super().__init__(message)
        self.code = code


class OptimisticLockError(ConflictError):
    """
    409: the caller edited a stale copy of a versioned record.

    Carries the current state so the UI can offer a merge.
    """

    def __init__(self, entity: str, entity_id: int, expected_version: int, current_version: int, current: dict | None = None):
        super().__init__("Record was modified by another user", code=CODE_VERSION_CONFLICT)
        self.entity = entity
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.current_version = current_version
        self.current = current

    def to_dict(self) -> dict:
        return {
            "error": str(self),
            "code": self.code,
            "entity": self.entity,
            "entity_id": self.entity_id,
            "expected_version": self.expected_version,
            "current_version": self.current_version,
            "current": self.current,
        }


# Expected business failures; routes answer these with status_code + error_payload.
DOMAIN_ERRORS = (ValidationError, NotFoundError, ConflictError)

# Default for optional PATCH fields: omitted leaves the column alone, None clears it.
UNSET = object()


def error_payload(exc: Exception) -> dict:
    if isinstance(exc, OptimisticLockError):
        return exc.to_dict()
    return {"error": str(exc), "code": getattr(exc, "code", CODE_VALIDATION)}


# =============================================================================
# PAYLOAD COERCION
# =============================================================================

def require_payload(payload: Any) -> dict:
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    return payload


def require_fields(payload: dict, *names: str) -> None:
    missing = [n for n in names if payload.get(n) in (None, "")]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")


def coerce_int(value: Any, field: str) -> int | None:
    """Strict integer: rejects bools, floats, decimals and scientific notation."""
    if value is None:
        return None
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        if 'e' in stripped.lower() or '.' in stripped:
            raise ValidationError(f"{field} must be a plain integer")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    raise ValidationError(f"{field} must be an integer")


def coerce_decimal(value: Any, field: str, *, allow_zero: bool = False) -> Decimal | None:
    """
    Money input. Floats are converted through str() so 0.1 stays 0.1.

    At most two decimal places; must be positive (or >= 0 with allow_zero).
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number")
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a finite number")
    if amount != amount.quantize(CENT):
        raise ValidationError(f"{field} cannot have more than 2 decimal places")
    if amount < 0 or (amount == 0 and not allow_zero):
        raise ValidationError(f"{field} must be positive")
    if amount > MAX_AMOUNT:
        raise ValidationError(f"{field} cannot exceed {MAX_AMOUNT}")
    return amount


def coerce_choice(value: Any, field: str, choices: Iterable[str]) -> str | None:
    if value is None:
        return None
    choices = tuple(choices)
    val = str(value).strip().upper()
    if val not in choices:
        raise ValidationError(f"Invalid {field}: {value}. Must be one of {list(choices)}")
    return val


def coerce_date(value: Any, field: str) -> date | None:
    try:
        return parse_iso_date(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an ISO-8601 date")


def coerce_str(value: Any, field: str, max_length: int | None = None) -> str | None:
    if value is None:
        return None
    val = str(value).strip()
    if max_length and len(val) > max_length:
        raise ValidationError(f"{field} exceeds max length {max_length}")
    return val or None


def validate_date_range(date_from: date | None, date_to: date | None) -> None:
    if date_from and date_to and date_from > date_to:
        raise ValidationError("'from' must not be after 'to'", code=CODE_INVALID_DATE_RANGE)
