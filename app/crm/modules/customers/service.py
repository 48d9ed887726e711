"""
CUSTOMER AGGREGATE STORE
========================

A Customer owns its addresses and contact persons; neither exists on its own.

INVARIANTS:
- A customer always has at least one address and at least one contact person.
- intNr (K-NNNN) is assigned once at creation and never rewritten by an update.
- A contact person's address reference is either NULL or points at an address of
  the same customer. Removing an address clears every reference to it in the same flush.

CONCURRENCY:
- Every write touches the customer row, whose `version` column is checked by the ORM.
  A concurrent writer surfaces as ConflictError (retryable), never as a lost update.
- intNr is derived from the current max on every call (no cached counter). Two creators
  racing for the same value hit the unique constraint; creation retries inside a SAVEPOINT.

Service functions flush but never commit; the caller owns the transaction.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, cast

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.crm.audit import record_event
from app.crm.db import translate_storage_errors
from app.crm.errors import ConflictError, FieldError, InvariantViolation, NotFound, ValidationError
from app.crm.models import User
from app.crm.modules.customers.models import (
    CUSTOMER_TYPES,
    Customer,
    CustomerAddress,
    CustomerContactPerson,
)
from app.crm.modules.customers.serializers import address_to_dict, contact_person_to_dict, flat_rows_for
from app.crm.modules.customers.utils import (
    format_int_nr,
    is_valid_int_nr,
    merge_partial,
    parse_int_nr,
    validate_address,
    validate_contact_person,
)

logger = logging.getLogger(__name__)

DEFAULT_INT_NR_RETRIES = 3


# ============================================================================
# Lookups
# ============================================================================

def get_customer_by_id(s: Session, customer_id: int) -> Customer:
    with translate_storage_errors("get_customer_by_id"):
        c = s.get(Customer, customer_id)
    if c is None:
        raise NotFound("Customer not found")
    return c


def find_customer_by_int_nr(s: Session, int_nr: str) -> Customer | None:
    with translate_storage_errors("find_customer_by_int_nr"):
        return s.query(Customer).filter(Customer.int_nr == int_nr).one_or_none()


def get_address(s: Session, address_id: int) -> CustomerAddress:
    with translate_storage_errors("get_address"):
        a = s.get(CustomerAddress, address_id)
    if a is None:
        raise NotFound("Address not found")
    return a


def get_contact_person(s: Session, contact_id: int) -> CustomerContactPerson:
    with translate_storage_errors("get_contact_person"):
        cp = s.get(CustomerContactPerson, contact_id)
    if cp is None:
        raise NotFound("Contact person not found")
    return cp


def get_all(s: Session) -> list[Customer]:
    # Full scan; no pagination.
    with translate_storage_errors("get_all"):
        return s.query(Customer).order_by(Customer.id.asc()).all()


def get_flat_export(s: Session) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for c in get_all(s):
        rows.extend(flat_rows_for(c))
    return rows


def _find_address(c: Customer, address_id: int) -> CustomerAddress:
    for a in c.addresses:
        if a.id == address_id:
            return a
    raise NotFound("Address not found")


def _find_contact_person(c: Customer, contact_id: int) -> CustomerContactPerson:
    for cp in c.contact_persons:
        if cp.id == contact_id:
            return cp
    raise NotFound("Contact person not found")


# ============================================================================
# Identifier generation
# ============================================================================

def next_business_id(s: Session) -> str:
    """
    Next intNr after the numerically highest stored one.

    For zero-padded K-NNNN values, ordering by (length, text) descending equals
    numeric ordering, so the query stays portable across SQLite and Postgres.
    """
    with translate_storage_errors("next_business_id"):
        top = (
            s.query(Customer.int_nr)
            .order_by(func.length(Customer.int_nr).desc(), Customer.int_nr.desc())
            .limit(1)
            .scalar()
        )
    if top is None:
        return format_int_nr(1)
    return format_int_nr(parse_int_nr(top) + 1)


# ============================================================================
# Write helpers
# ============================================================================

def _touch(c: Customer) -> None:
    c.updated_at = datetime.utcnow()


def check_version(c: Customer, expected_version: int | None) -> None:
    if expected_version is not None and c.version != expected_version:
        raise ConflictError(
            f"Customer {c.id} is at version {c.version}, not {expected_version}; reload and retry."
        )


def _flush(s: Session, operation: str) -> None:
    try:
        with translate_storage_errors(operation):
            s.flush()
    except StaleDataError as e:
        raise ConflictError("Customer was modified concurrently; reload and retry.") from e


def _validate_type(payload: dict[str, Any], errs: list[FieldError]) -> str | None:
    raw = payload.get("type")
    ctype = raw.strip() if isinstance(raw, str) else None
    if not ctype:
        errs.append(FieldError("type", "Is required."))
        return None
    if ctype not in CUSTOMER_TYPES:
        errs.append(FieldError("type", f"Must be one of: {', '.join(CUSTOMER_TYPES)}."))
        return None
    return ctype


def validate_customer_payload(
    payload: Any,
) -> tuple[str, list[dict[str, str | None]], list[tuple[dict[str, str | None], int]]]:
    """
    Validate a create payload, collecting every field message.

    Returns (type, address values, [(contact values, address index)]).
    A contact links to addresses[0] unless it names another `addressIndex`.
    """
    if not isinstance(payload, dict):
        raise ValidationError([FieldError("body", "Must be a JSON object.")])

    errs: list[FieldError] = []
    ctype = _validate_type(payload, errs)

    raw_addresses = payload.get("addresses")
    addresses: list[dict[str, str | None]] = []
    if not isinstance(raw_addresses, list) or not raw_addresses:
        errs.append(FieldError("addresses", "At least one address is required."))
        raw_addresses = []
    for i, raw in enumerate(raw_addresses):
        values, address_errs = validate_address(raw, prefix=f"addresses[{i}].")
        errs.extend(address_errs)
        addresses.append(values)

    raw_contacts = payload.get("contactPersons")
    contacts: list[tuple[dict[str, str | None], int]] = []
    if not isinstance(raw_contacts, list) or not raw_contacts:
        errs.append(FieldError("contactPersons", "At least one contact person is required."))
        raw_contacts = []
    for i, raw in enumerate(raw_contacts):
        values, contact_errs = validate_contact_person(raw, prefix=f"contactPersons[{i}].")
        errs.extend(contact_errs)
        idx = raw.get("addressIndex", 0) if isinstance(raw, dict) else 0
        if idx is None:
            idx = 0
        if isinstance(idx, bool) or not isinstance(idx, int) or not 0 <= idx < max(len(raw_addresses), 1):
            errs.append(
                FieldError(f"contactPersons[{i}].addressIndex", "Must reference one of the supplied addresses.")
            )
            idx = 0
        contacts.append((values, idx))

    if errs:
        raise ValidationError(errs)
    return cast(str, ctype), addresses, contacts


# ============================================================================
# Customer CRUD
# ============================================================================

def _insert_aggregate(
    s: Session,
    *,
    int_nr: str,
    ctype: str,
    addresses: list[dict[str, str | None]],
    contacts: list[tuple[dict[str, str | None], int]],
) -> Customer:
    now = datetime.utcnow()
    c = Customer(int_nr=int_nr, type=ctype, created_at=now, updated_at=now)
    for values in addresses:
        c.addresses.append(CustomerAddress(**values))
    s.add(c)
    # Addresses need their ids before contacts can point at them.
    s.flush()
    for values, idx in contacts:
        c.contact_persons.append(CustomerContactPerson(**values, address_id=c.addresses[idx].id))
    s.flush()
    return c


def create_customer(
    s: Session,
    payload: Any,
    *,
    user: User | None,
    int_nr: str | None = None,
    max_retries: int = DEFAULT_INT_NR_RETRIES,
) -> Customer:
    """
    Create a customer with its addresses and contact persons in one SAVEPOINT.

    `int_nr` is only passed by the importer, which keeps the identifier from the file.
    Otherwise the next identifier is generated; on a unique-constraint race the
    generation is retried up to `max_retries` times before giving up with ConflictError.
    """
    ctype, addresses, contacts = validate_customer_payload(payload)
    if int_nr is not None and not is_valid_int_nr(int_nr):
        raise ValidationError([FieldError("intNr", "Must match K-NNNN with no extra leading zeros.")])

    attempts = 0
    while True:
        attempts += 1
        candidate = int_nr or next_business_id(s)
        try:
            with translate_storage_errors("create_customer"):
                with s.begin_nested():
                    c = _insert_aggregate(s, int_nr=candidate, ctype=ctype, addresses=addresses, contacts=contacts)
            break
        except IntegrityError as e:
            if int_nr is not None:
                raise ConflictError(f"intNr {int_nr} already exists.") from e
            logger.warning("intNr collision on %s (attempt %d/%d)", candidate, attempts, max_retries)
            if attempts >= max_retries:
                raise ConflictError("Could not allocate a unique intNr; retry the request.") from e

    record_event(
        s,
        actor=user,
        action="customer.create",
        entity_type="Customer",
        entity_id=str(c.id),
        metadata={
            "int_nr": c.int_nr,
            "type": c.type,
            "addresses": len(c.addresses),
            "contact_persons": len(c.contact_persons),
        },
    )
    logger.info("Customer created id=%s int_nr=%s", c.id, c.int_nr)
    return c


def update_customer(
    s: Session,
    customer_id: int,
    payload: Any,
    *,
    user: User | None,
    expected_version: int | None = None,
) -> Customer:
    """Only `type` is applied. intNr and the sub-entities are never touched here."""
    c = get_customer_by_id(s, customer_id)
    check_version(c, expected_version)
    if not isinstance(payload, dict):
        raise ValidationError([FieldError("body", "Must be a JSON object.")])
    errs: list[FieldError] = []
    ctype = _validate_type(payload, errs)
    if errs:
        raise ValidationError(errs)

    if payload.get("intNr") not in (None, c.int_nr):
        logger.info("Ignoring intNr %r in update of customer %s", payload.get("intNr"), c.id)

    before = c.type
    c.type = ctype
    _touch(c)
    _flush(s, "update_customer")
    record_event(
        s,
        actor=user,
        action="customer.update",
        entity_type="Customer",
        entity_id=str(c.id),
        metadata={"before": {"type": before}, "after": {"type": c.type}},
    )
    return c


def delete_customer(
    s: Session,
    customer_id: int,
    *,
    user: User | None,
    expected_version: int | None = None,
) -> None:
    """Contacts and addresses are deleted in the same flush as the customer row."""
    c = get_customer_by_id(s, customer_id)
    check_version(c, expected_version)
    meta = {
        "int_nr": c.int_nr,
        "address_ids": [a.id for a in c.addresses],
        "contact_person_ids": [cp.id for cp in c.contact_persons],
    }
    for cp in list(c.contact_persons):
        s.delete(cp)
    for a in list(c.addresses):
        s.delete(a)
    s.delete(c)
    _flush(s, "delete_customer")
    record_event(s, actor=user, action="customer.delete", entity_type="Customer", entity_id=str(customer_id), metadata=meta)


# ============================================================================
# Addresses
# ============================================================================

def add_address(
    s: Session,
    customer_id: int,
    payload: Any,
    *,
    user: User | None,
    expected_version: int | None = None,
) -> Customer:
    c = get_customer_by_id(s, customer_id)
    check_version(c, expected_version)
    values, errs = validate_address(payload)
    if errs:
        raise ValidationError(errs)

    a = CustomerAddress(**values)
    c.addresses.append(a)
    _touch(c)
    _flush(s, "add_address")
    record_event(
        s,
        actor=user,
        action="customer.address.create",
        entity_type="CustomerAddress",
        entity_id=str(a.id),
        metadata={"customer_id": c.id},
    )
    return c


def update_address(
    s: Session,
    customer_id: int,
    address_id: int,
    partial: Any,
    *,
    user: User | None,
    expected_version: int | None = None,
) -> Customer:
    c = get_customer_by_id(s, customer_id)
    a = _find_address(c, address_id)
    check_version(c, expected_version)
    if not isinstance(partial, dict):
        raise ValidationError([FieldError("body", "Must be a JSON object.")])

    before = address_to_dict(a)
    values, errs = validate_address(merge_partial(before, partial))
    if errs:
        raise ValidationError(errs)
    for attr, v in values.items():
        setattr(a, attr, v)
    _touch(c)
    _flush(s, "update_address")

    after = address_to_dict(a)
    record_event(
        s,
        actor=user,
        action="customer.address.update",
        entity_type="CustomerAddress",
        entity_id=str(a.id),
        metadata={
            "customer_id": c.id,
            "fields_changed": [k for k in before if before[k] != after[k]],
        },
    )
    return c


def delete_address(
    s: Session,
    customer_id: int,
    address_id: int,
    *,
    user: User | None,
    expected_version: int | None = None,
) -> Customer:
    """
    Remove an address and clear every contact reference to it in one flush.
    The last remaining address cannot be removed.
    """
    c = get_customer_by_id(s, customer_id)
    a = _find_address(c, address_id)
    check_version(c, expected_version)
    if len(c.addresses) <= 1:
        raise InvariantViolation("At least one address required")

    unlinked: list[int] = []
    for cp in c.contact_persons:
        if cp.address_id == a.id:
            cp.address = None
            cp.address_id = None
            unlinked.append(cp.id)
    c.addresses.remove(a)
    _touch(c)
    _flush(s, "delete_address")
    record_event(
        s,
        actor=user,
        action="customer.address.delete",
        entity_type="CustomerAddress",
        entity_id=str(address_id),
        metadata={"customer_id": c.id, "unlinked_contact_person_ids": unlinked},
    )
    return c


# ============================================================================
# Contact persons
# ============================================================================

def add_contact_person(
    s: Session,
    customer_id: int,
    payload: Any,
    *,
    user: User | None,
    expected_version: int | None = None,
) -> Customer:
    """New contacts start unlinked; link them with update_contact_person."""
    c = get_customer_by_id(s, customer_id)
    check_version(c, expected_version)
    values, errs = validate_contact_person(payload)
    if errs:
        raise ValidationError(errs)

    cp = CustomerContactPerson(**values, address_id=None)
    c.contact_persons.append(cp)
    _touch(c)
    _flush(s, "add_contact_person")
    record_event(
        s,
        actor=user,
        action="customer.contact_person.create",
        entity_type="CustomerContactPerson",
        entity_id=str(cp.id),
        metadata={"customer_id": c.id},
    )
    return c


def update_contact_person(
    s: Session,
    customer_id: int,
    contact_id: int,
    partial: Any,
    *,
    user: User | None,
    expected_version: int | None = None,
) -> Customer:
    """
    Shallow merge over the stored contact. An `address` key (address id or null)
    relinks the contact; the id must belong to this customer.
    """
    c = get_customer_by_id(s, customer_id)
    cp = _find_contact_person(c, contact_id)
    check_version(c, expected_version)
    if not isinstance(partial, dict):
        raise ValidationError([FieldError("body", "Must be a JSON object.")])

    before = contact_person_to_dict(cp)
    merged = merge_partial(before, partial)
    values, errs = validate_contact_person(merged)

    address_id = merged.get("address")
    if address_id is not None:
        owned = {a.id for a in c.addresses}
        if isinstance(address_id, bool) or not isinstance(address_id, int) or address_id not in owned:
            errs.append(FieldError("address", "Must reference an address of this customer."))
    if errs:
        raise ValidationError(errs)

    for attr, v in values.items():
        setattr(cp, attr, v)
    cp.address_id = address_id
    _touch(c)
    _flush(s, "update_contact_person")

    after = contact_person_to_dict(cp)
    record_event(
        s,
        actor=user,
        action="customer.contact_person.update",
        entity_type="CustomerContactPerson",
        entity_id=str(cp.id),
        metadata={
            "customer_id": c.id,
            "fields_changed": [k for k in before if before[k] != after[k]],
        },
    )
    return c


def delete_contact_person(
    s: Session,
    customer_id: int,
    contact_id: int,
    *,
    user: User | None,
    expected_version: int | None = None,
) -> Customer:
    c = get_customer_by_id(s, customer_id)
    cp = _find_contact_person(c, contact_id)
    check_version(c, expected_version)
    if len(c.contact_persons) <= 1:
        raise InvariantViolation("At least one contact person required")

    c.contact_persons.remove(cp)
    _touch(c)
    _flush(s, "delete_contact_person")
    record_event(
        s,
        actor=user,
        action="customer.contact_person.delete",
        entity_type="CustomerContactPerson",
        entity_id=str(contact_id),
        metadata={"customer_id": c.id},
    )
    return c
