from __future__ import annotations

from datetime import datetime
from typing import Any

from app.crm.modules.customers.models import Customer, CustomerAddress, CustomerContactPerson

FLAT_COLUMNS = (
    "id",
    "intNr",
    "type",
    "companyName",
    "country",
    "zip",
    "city",
    "street",
    "email",
    "phone",
    "fax",
    "firstName",
    "lastName",
    "contactEmail",
    "contactPhone",
    "birthDate",
    "cId",
    "aId",
)


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def address_to_dict(a: CustomerAddress) -> dict[str, Any]:
    return {
        "id": a.id,
        "companyName": a.company_name,
        "country": a.country,
        "zip": a.zip,
        "city": a.city,
        "street": a.street,
        "email": a.email,
        "phone": a.phone,
        "fax": a.fax,
    }


def contact_person_to_dict(cp: CustomerContactPerson) -> dict[str, Any]:
    return {
        "id": cp.id,
        "firstName": cp.first_name,
        "lastName": cp.last_name,
        "email": cp.email,
        "phone": cp.phone,
        "birthDate": cp.birth_date,
        "address": cp.address_id,
    }


def customer_to_dict(c: Customer) -> dict[str, Any]:
    return {
        "id": c.id,
        "intNr": c.int_nr,
        "type": c.type,
        "version": c.version,
        "addresses": [address_to_dict(a) for a in c.addresses],
        "contactPersons": [contact_person_to_dict(cp) for cp in c.contact_persons],
        "createdAt": _ts(c.created_at),
        "updatedAt": _ts(c.updated_at),
    }


def flat_rows_for(c: Customer) -> list[dict[str, Any]]:
    """
    One row per (address, linked contact); an address without linked contacts
    still yields exactly one row with empty contact columns.
    """
    rows: list[dict[str, Any]] = []
    for a in c.addresses:
        linked = [cp for cp in c.contact_persons if cp.address_id == a.id]
        base = {
            "id": c.id,
            "intNr": c.int_nr,
            "type": c.type,
            "companyName": a.company_name,
            "country": a.country,
            "zip": a.zip,
            "city": a.city,
            "street": a.street,
            "email": a.email,
            "phone": a.phone,
            "fax": a.fax,
        }
        if not linked:
            rows.append(
                {
                    **base,
                    "firstName": None,
                    "lastName": None,
                    "contactEmail": None,
                    "contactPhone": None,
                    "birthDate": None,
                    "cId": None,
                    "aId": a.id,
                }
            )
            continue
        for cp in linked:
            rows.append(
                {
                    **base,
                    "firstName": cp.first_name,
                    "lastName": cp.last_name,
                    "contactEmail": cp.email,
                    "contactPhone": cp.phone,
                    "birthDate": cp.birth_date,
                    "cId": cp.id,
                    "aId": a.id,
                }
            )
    return rows
