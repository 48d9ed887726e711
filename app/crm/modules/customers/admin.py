from __future__ import annotations

from flask import Blueprint, Response, current_app, g, jsonify, request

from app.crm.db import commit, db_session
from app.crm.errors import FieldError, ValidationError
from app.crm.models import User
from app.crm.modules.customers.export import flat_rows_to_csv, flat_rows_to_xlsx
from app.crm.modules.customers.serializers import customer_to_dict
from app.crm.modules.customers.service import (
    add_address,
    add_contact_person,
    create_customer,
    delete_address,
    delete_contact_person,
    delete_customer,
    get_all,
    get_customer_by_id,
    get_flat_export,
    update_address,
    update_contact_person,
    update_customer,
)
from app.crm.rbac import require_permission

bp = Blueprint("customers", __name__)

XLSX_MIMETYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _payload():
    data = request.get_json(silent=True)
    return {} if data is None else data


def _expected_version() -> int | None:
    """Optimistic-lock token from `If-Match`, falling back to `version` in the body."""
    raw = (request.headers.get("If-Match") or "").strip()
    if raw:
        raw = raw.removeprefix("W/").strip('"')
        try:
            return int(raw)
        except ValueError:
            raise ValidationError([FieldError("If-Match", "Must be the customer version number.")])
    body = request.get_json(silent=True)
    if isinstance(body, dict):
        v = body.get("version")
        if isinstance(v, int) and not isinstance(v, bool):
            return v
    return None


def _with_customer(msg: str, c):
    return jsonify({"msg": msg, "customer": customer_to_dict(c)})


# ---------- List / export ----------
@bp.get("/customers")
@require_permission("customers.view")
def customers_list():
    s = db_session()
    view = (request.args.get("view") or "flat").strip().lower()
    if view == "nested":
        return jsonify([customer_to_dict(c) for c in get_all(s)])
    if view != "flat":
        raise ValidationError([FieldError("view", "Must be 'flat' or 'nested'.")])
    return jsonify(get_flat_export(s))


@bp.get("/customers/export.csv")
@require_permission("customers.view")
def customers_export_csv():
    s = db_session()
    data = flat_rows_to_csv(get_flat_export(s))
    return Response(
        data,
        mimetype="text/csv",
        headers={"Content-Disposition": "attachment; filename=customers.csv"},
    )


@bp.get("/customers/export.xlsx")
@require_permission("customers.view")
def customers_export_xlsx():
    s = db_session()
    data = flat_rows_to_xlsx(get_flat_export(s))
    return Response(
        data,
        mimetype=XLSX_MIMETYPE,
        headers={"Content-Disposition": "attachment; filename=customers.xlsx"},
    )


# ---------- Customer ----------
@bp.get("/customers/<int:customer_id>")
@require_permission("customers.view")
def customer_detail(customer_id: int):
    s = db_session()
    return jsonify(customer_to_dict(get_customer_by_id(s, customer_id)))


@bp.post("/customers")
@require_permission("customers.create")
def customers_create():
    s = db_session()
    c = create_customer(
        s,
        _payload(),
        user=_current_user(),
        max_retries=int(current_app.config.get("INT_NR_MAX_RETRIES") or 3),
    )
    commit(s, "customer.create")
    return jsonify(customer_to_dict(c)), 201


@bp.put("/customers/<int:customer_id>")
@require_permission("customers.edit")
def customers_update(customer_id: int):
    s = db_session()
    c = update_customer(s, customer_id, _payload(), user=_current_user(), expected_version=_expected_version())
    commit(s, "customer.update")
    return jsonify(customer_to_dict(c))


@bp.delete("/customers/<int:customer_id>")
@require_permission("customers.delete")
def customers_delete(customer_id: int):
    s = db_session()
    delete_customer(s, customer_id, user=_current_user(), expected_version=_expected_version())
    commit(s, "customer.delete")
    return jsonify({"msg": "Customer deleted"})


# ---------- Addresses ----------
@bp.put("/customers/<int:customer_id>/address")
@require_permission("customers.edit")
def customer_address_add(customer_id: int):
    s = db_session()
    c = add_address(s, customer_id, _payload(), user=_current_user(), expected_version=_expected_version())
    commit(s, "customer.address.create")
    return _with_customer("Address added", c)


@bp.put("/customers/<int:customer_id>/addresses/<int:address_id>")
@require_permission("customers.edit")
def customer_address_update(customer_id: int, address_id: int):
    s = db_session()
    c = update_address(
        s, customer_id, address_id, _payload(), user=_current_user(), expected_version=_expected_version()
    )
    commit(s, "customer.address.update")
    return _with_customer("Address updated", c)


@bp.delete("/customers/<int:customer_id>/addresses/<int:address_id>")
@require_permission("customers.edit")
def customer_address_delete(customer_id: int, address_id: int):
    s = db_session()
    c = delete_address(s, customer_id, address_id, user=_current_user(), expected_version=_expected_version())
    commit(s, "customer.address.delete")
    return _with_customer("Address deleted", c)


# ---------- Contact persons ----------
@bp.put("/customers/<int:customer_id>/contact")
@require_permission("customers.edit")
def customer_contact_add(customer_id: int):
    s = db_session()
    c = add_contact_person(s, customer_id, _payload(), user=_current_user(), expected_version=_expected_version())
    commit(s, "customer.contact_person.create")
    return _with_customer("Contact person added", c)


@bp.put("/customers/<int:customer_id>/contacts/<int:contact_id>")
@require_permission("customers.edit")
def customer_contact_update(customer_id: int, contact_id: int):
    s = db_session()
    c = update_contact_person(
        s, customer_id, contact_id, _payload(), user=_current_user(), expected_version=_expected_version()
    )
    commit(s, "customer.contact_person.update")
    return _with_customer("Contact person updated", c)


@bp.delete("/customers/<int:customer_id>/contacts/<int:contact_id>")
@require_permission("customers.edit")
def customer_contact_delete(customer_id: int, contact_id: int):
    s = db_session()
    c = delete_contact_person(s, customer_id, contact_id, user=_current_user(), expected_version=_expected_version())
    commit(s, "customer.contact_person.delete")
    return _with_customer("Contact person deleted", c)
