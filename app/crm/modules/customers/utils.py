from __future__ import annotations

import re
from datetime import date
from typing import Any

from app.crm.errors import FieldError, MalformedIdentifier

INT_NR_PREFIX = "K-"
# Canonical form only: four digits, or more without a leading zero.
INT_NR_RE = re.compile(r"^K-(\d{4}|[1-9]\d{4,})$")

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PHONE_RE = re.compile(r"^\+?[0-9][0-9 ()/-]*$")
BIRTH_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

# wire name -> (column attribute, required, max length)
ADDRESS_FIELDS: dict[str, tuple[str, bool, int]] = {
    "companyName": ("company_name", False, 50),
    "country": ("country", True, 50),
    "zip": ("zip", True, 5),
    "city": ("city", True, 50),
    "street": ("street", True, 100),
    "email": ("email", False, 50),
    "phone": ("phone", False, 20),
    "fax": ("fax", False, 20),
}

CONTACT_FIELDS: dict[str, tuple[str, bool, int]] = {
    "firstName": ("first_name", True, 50),
    "lastName": ("last_name", True, 50),
    "email": ("email", False, 50),
    "phone": ("phone", False, 20),
    "birthDate": ("birth_date", False, 10),
}


def format_int_nr(n: int) -> str:
    """
    >>> format_int_nr(7)
    'K-0007'
    >>> format_int_nr(12345)
    'K-12345'
    """
    return f"{INT_NR_PREFIX}{n:04d}"


def parse_int_nr(value: str) -> int:
    """Integer suffix of a stored intNr. Raises MalformedIdentifier instead of guessing."""
    m = INT_NR_RE.match(value or "")
    if not m:
        raise MalformedIdentifier(f"Stored intNr {value!r} does not match K-NNNN.")
    return int(m.group(1))


def is_valid_int_nr(value: str | None) -> bool:
    return bool(INT_NR_RE.match(value or ""))


def _clean(raw: Any) -> tuple[str | None, bool]:
    """Return (value, ok). Blank strings become None; numbers are accepted as text."""
    if raw is None:
        return None, True
    if isinstance(raw, bool):
        return None, False
    if isinstance(raw, (int, float)):
        raw = str(raw)
    if not isinstance(raw, str):
        return None, False
    v = raw.strip()
    return (v or None), True


def _is_real_date(value: str) -> bool:
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def _validate_fields(
    payload: Any,
    spec: dict[str, tuple[str, bool, int]],
    prefix: str,
) -> tuple[dict[str, str | None], list[FieldError]]:
    errs: list[FieldError] = []
    values: dict[str, str | None] = {}
    if not isinstance(payload, dict):
        return values, [FieldError(prefix.rstrip(".") or "body", "Must be an object.")]

    for wire, (attr, required, max_len) in spec.items():
        field = f"{prefix}{wire}"
        v, ok = _clean(payload.get(wire))
        if not ok:
            errs.append(FieldError(field, "Must be a string."))
            continue
        if v is None:
            if required:
                errs.append(FieldError(field, "Is required."))
            values[attr] = None
            continue
        if len(v) > max_len:
            errs.append(FieldError(field, f"Must be at most {max_len} characters."))
        if wire == "zip" and len(v) != 5:
            errs.append(FieldError(field, "Must be exactly 5 characters."))
        elif wire == "email" and not EMAIL_RE.match(v):
            errs.append(FieldError(field, "Must be a valid email address."))
        elif wire in ("phone", "fax") and not PHONE_RE.match(v):
            errs.append(FieldError(field, "Must be a valid phone number."))
        elif wire == "birthDate" and not (BIRTH_DATE_RE.match(v) and _is_real_date(v)):
            errs.append(FieldError(field, "Must be a date in YYYY-MM-DD format."))
        values[attr] = v
    return values, errs


def validate_address(payload: Any, prefix: str = "") -> tuple[dict[str, str | None], list[FieldError]]:
    return _validate_fields(payload, ADDRESS_FIELDS, prefix)


def validate_contact_person(payload: Any, prefix: str = "") -> tuple[dict[str, str | None], list[FieldError]]:
    return _validate_fields(payload, CONTACT_FIELDS, prefix)


def merge_partial(existing: dict[str, Any], partial: Any) -> Any:
    """
    Shallow merge of a partial update over the current wire representation.
    Only keys the caller supplied change; unknown keys are ignored.
    """
    if not isinstance(partial, dict):
        return partial
    merged = dict(existing)
    for k, v in partial.items():
        if k in merged:
            merged[k] = v
    return merged
