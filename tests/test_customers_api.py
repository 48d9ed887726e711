"""Tests for the Customers JSON API."""
import io
import sqlite3

import pytest
from openpyxl import load_workbook
from sqlalchemy import exc as sa_exc
from werkzeug.security import generate_password_hash

from app.crm import create_app
from app.crm import auth as auth_module
from app.crm.db import session_scope, translate_storage_errors
from app.crm.models import AuditEvent, Base, Permission, Role, User
from app.crm.modules.customers import admin as customers_admin
from app.crm.modules.customers import service
from app.crm.modules.customers.models import Customer, CustomerAddress, CustomerContactPerson
from app.crm.rbac import PERMISSIONS


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    auth_module._login_attempts.clear()

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        perms = [Permission(key=k, name=n) for k, n in PERMISSIONS.items()]
        r = Role(key="admin", name="Administrator")
        r.permissions.extend(perms)
        u = User(email="admin@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        u.roles.append(r)
        s.add_all(perms + [r, u])

    return app.test_client()


def _login(client) -> dict:
    r = client.post("/auth/login", json={"email": "admin@example.com", "password": "pw"})
    assert r.status_code == 200
    return {"X-CSRF-Token": r.json["csrfToken"]}


def _address(**overrides):
    a = {"companyName": "Acme", "country": "DE", "zip": "12345", "city": "Berlin", "street": "Main St 1"}
    a.update(overrides)
    return a


def _contact(**overrides):
    c = {"firstName": "Ann", "lastName": "Lee"}
    c.update(overrides)
    return c


def _create(client, headers, **payload):
    body = {"type": "DEALER", "addresses": [_address()], "contactPersons": [_contact()]}
    body.update(payload)
    r = client.post("/customers", json=body, headers=headers)
    assert r.status_code == 201, r.json
    return r.json


def test_customers_require_auth(client):
    r = client.get("/customers")
    assert r.status_code == 401
    r = client.post("/customers", json={})
    assert r.status_code == 401


def test_mutation_requires_csrf_token(client):
    _login(client)
    r = client.post("/customers", json={"type": "DEALER", "addresses": [_address()], "contactPersons": [_contact()]})
    assert r.status_code == 400
    assert "CSRF" in r.json["msg"]


def test_create_assigns_first_identifier_and_links_contact(client):
    headers = _login(client)
    c = _create(client, headers)

    assert c["intNr"] == "K-0001"
    assert c["type"] == "DEALER"
    assert c["version"] == 1
    assert len(c["addresses"]) == 1
    assert len(c["contactPersons"]) == 1
    assert c["contactPersons"][0]["address"] == c["addresses"][0]["id"]

    second = _create(client, headers, type="PRIVATE")
    assert second["intNr"] == "K-0002"

    with session_scope(client.application) as s:
        actions = [e.action for e in s.query(AuditEvent).all()]
    assert actions.count("customer.create") == 2


def test_create_with_address_index_links_chosen_address(client):
    headers = _login(client)
    c = _create(
        client,
        headers,
        addresses=[_address(), _address(street="Side St 2")],
        contactPersons=[_contact(addressIndex=1)],
    )
    assert c["contactPersons"][0]["address"] == c["addresses"][1]["id"]


def test_create_invalid_zip_persists_nothing(client):
    headers = _login(client)
    r = client.post(
        "/customers",
        json={"type": "DEALER", "addresses": [_address(zip="1234")], "contactPersons": [_contact()]},
        headers=headers,
    )
    assert r.status_code == 400
    fields = [e["field"] for e in r.json["errors"]]
    assert "addresses[0].zip" in fields

    with session_scope(client.application) as s:
        assert s.query(Customer).count() == 0
        assert s.query(CustomerAddress).count() == 0
        assert s.query(CustomerContactPerson).count() == 0


def test_create_collects_every_field_error(client):
    headers = _login(client)
    r = client.post(
        "/customers",
        json={
            "type": "SUPPLIER",
            "addresses": [_address(email="not-an-email", phone="abc")],
            "contactPersons": [_contact(lastName="", birthDate="2020-13-40")],
        },
        headers=headers,
    )
    assert r.status_code == 400
    fields = {e["field"] for e in r.json["errors"]}
    assert fields == {
        "type",
        "addresses[0].email",
        "addresses[0].phone",
        "contactPersons[0].lastName",
        "contactPersons[0].birthDate",
    }


def test_create_requires_address_and_contact(client):
    headers = _login(client)
    r = client.post("/customers", json={"type": "DEALER", "addresses": [], "contactPersons": []}, headers=headers)
    assert r.status_code == 400
    fields = {e["field"] for e in r.json["errors"]}
    assert {"addresses", "contactPersons"} <= fields


def test_get_customer_and_not_found(client):
    headers = _login(client)
    c = _create(client, headers)

    r = client.get(f"/customers/{c['id']}")
    assert r.status_code == 200
    assert r.json["intNr"] == "K-0001"

    r = client.get("/customers/999")
    assert r.status_code == 404
    assert r.json["msg"] == "Customer not found"


def test_update_keeps_stored_identifier(client):
    headers = _login(client)
    c = _create(client, headers)

    r = client.put(f"/customers/{c['id']}", json={"type": "COMPANY", "intNr": "K-9999"}, headers=headers)
    assert r.status_code == 200
    assert r.json["intNr"] == "K-0001"
    assert r.json["type"] == "COMPANY"
    assert r.json["version"] == 2


def test_update_with_stale_version_conflicts(client):
    headers = _login(client)
    c = _create(client, headers)

    r = client.put(
        f"/customers/{c['id']}",
        json={"type": "COMPANY"},
        headers={**headers, "If-Match": '"1"'},
    )
    assert r.status_code == 200

    # Second writer still holds version 1
    r = client.put(
        f"/customers/{c['id']}",
        json={"type": "PRIVATE"},
        headers={**headers, "If-Match": '"1"'},
    )
    assert r.status_code == 409
    assert r.json["retryable"] is True

    r = client.get(f"/customers/{c['id']}")
    assert r.json["type"] == "COMPANY"


def test_address_lifecycle(client):
    headers = _login(client)
    c = _create(client, headers)
    cid = c["id"]
    first_address = c["addresses"][0]["id"]

    r = client.put(f"/customers/{cid}/address", json=_address(street="Second St 2"), headers=headers)
    assert r.status_code == 200
    assert r.json["msg"] == "Address added"
    addresses = r.json["customer"]["addresses"]
    assert len(addresses) == 2
    second_address = addresses[1]["id"]

    r = client.put(f"/customers/{cid}/addresses/{second_address}", json={"city": "Hamburg"}, headers=headers)
    assert r.status_code == 200
    updated = [a for a in r.json["customer"]["addresses"] if a["id"] == second_address][0]
    assert updated["city"] == "Hamburg"
    assert updated["street"] == "Second St 2"

    r = client.put(f"/customers/{cid}/addresses/{second_address}", json={"zip": "99"}, headers=headers)
    assert r.status_code == 400

    # Removing the linked address clears the contact's reference
    r = client.delete(f"/customers/{cid}/addresses/{first_address}", headers=headers)
    assert r.status_code == 200
    assert r.json["msg"] == "Address deleted"
    assert [a["id"] for a in r.json["customer"]["addresses"]] == [second_address]
    assert r.json["customer"]["contactPersons"][0]["address"] is None

    r = client.delete(f"/customers/{cid}/addresses/{second_address}", headers=headers)
    assert r.status_code == 400
    assert r.json["msg"] == "At least one address required"

    r = client.delete(f"/customers/{cid}/addresses/424242", headers=headers)
    assert r.status_code == 404


def test_contact_person_lifecycle(client):
    headers = _login(client)
    c = _create(client, headers)
    other = _create(client, headers)
    cid = c["id"]
    address_id = c["addresses"][0]["id"]
    first_contact = c["contactPersons"][0]["id"]

    r = client.put(f"/customers/{cid}/contact", json=_contact(firstName="Bob"), headers=headers)
    assert r.status_code == 200
    assert r.json["msg"] == "Contact person added"
    contacts = r.json["customer"]["contactPersons"]
    assert len(contacts) == 2
    new_contact = contacts[1]
    assert new_contact["address"] is None

    r = client.put(
        f"/customers/{cid}/contacts/{new_contact['id']}",
        json={"address": address_id, "phone": "+49 30 1234"},
        headers=headers,
    )
    assert r.status_code == 200
    updated = [cp for cp in r.json["customer"]["contactPersons"] if cp["id"] == new_contact["id"]][0]
    assert updated["address"] == address_id
    assert updated["phone"] == "+49 30 1234"
    assert updated["firstName"] == "Bob"

    # Addresses of another customer cannot be referenced
    r = client.put(
        f"/customers/{cid}/contacts/{new_contact['id']}",
        json={"address": other["addresses"][0]["id"]},
        headers=headers,
    )
    assert r.status_code == 400

    r = client.delete(f"/customers/{cid}/contacts/{first_contact}", headers=headers)
    assert r.status_code == 200
    assert r.json["msg"] == "Contact person deleted"

    r = client.delete(f"/customers/{cid}/contacts/{new_contact['id']}", headers=headers)
    assert r.status_code == 400
    assert r.json["msg"] == "At least one contact person required"


def test_delete_customer_removes_aggregate(client):
    headers = _login(client)
    c = _create(client, headers, addresses=[_address(), _address(street="Other 5")])

    r = client.delete(f"/customers/{c['id']}", headers=headers)
    assert r.status_code == 200
    assert r.json["msg"] == "Customer deleted"

    r = client.get(f"/customers/{c['id']}")
    assert r.status_code == 404

    with session_scope(client.application) as s:
        assert s.query(CustomerAddress).count() == 0
        assert s.query(CustomerContactPerson).count() == 0


def test_flat_list_one_row_per_address_and_contact(client):
    headers = _login(client)
    _create(
        client,
        headers,
        addresses=[_address(), _address(street="Unlinked 9")],
        contactPersons=[_contact(), _contact(firstName="Cid")],
    )

    r = client.get("/customers")
    assert r.status_code == 200
    rows = r.json
    # Two contacts on the first address, none on the second
    assert len(rows) == 3
    assert [row["firstName"] for row in rows] == ["Ann", "Cid", None]
    assert rows[2]["street"] == "Unlinked 9"
    assert rows[2]["cId"] is None
    assert all(row["intNr"] == "K-0001" for row in rows)

    r = client.get("/customers?view=nested")
    assert r.status_code == 200
    assert len(r.json) == 1
    assert len(r.json[0]["addresses"]) == 2

    r = client.get("/customers?view=tree")
    assert r.status_code == 400


def test_export_csv_and_xlsx(client):
    headers = _login(client)
    _create(client, headers)

    r = client.get("/customers/export.csv")
    assert r.status_code == 200
    assert r.mimetype == "text/csv"
    text = r.data.decode("utf-8-sig")
    lines = text.strip().splitlines()
    assert lines[0].startswith("id,intNr,type,companyName")
    assert "K-0001" in lines[1]

    r = client.get("/customers/export.xlsx")
    assert r.status_code == 200
    wb = load_workbook(io.BytesIO(r.data))
    ws = wb["Customers"]
    header = [cell.value for cell in ws[1]]
    assert header[:3] == ["id", "intNr", "type"]
    assert ws.cell(row=2, column=2).value == "K-0001"


def test_create_private_customer_scenario(client):
    headers = _login(client)
    r = client.post(
        "/customers",
        json={
            "type": "PRIVATE",
            "addresses": [{"country": "DE", "zip": "12345", "city": "Berlin", "street": "Main 1"}],
            "contactPersons": [{"firstName": "A", "lastName": "B", "birthDate": "1990-01-01"}],
        },
        headers=headers,
    )
    assert r.status_code == 201
    assert r.json["intNr"] == "K-0001"
    assert r.json["contactPersons"][0]["address"] == r.json["addresses"][0]["id"]
    assert r.json["contactPersons"][0]["birthDate"] == "1990-01-01"


@pytest.mark.parametrize(
    "message",
    ["database is locked", "unable to open database file"],
)
def test_storage_failure_is_a_generic_server_error(client, monkeypatch, message):
    _login(client)

    def failing_get_all(s):
        with translate_storage_errors("get_all"):
            raise sa_exc.OperationalError("SELECT", {}, sqlite3.OperationalError(message))

    monkeypatch.setattr(service, "get_all", failing_get_all)
    monkeypatch.setattr(customers_admin, "get_all", failing_get_all)
    r = client.get("/customers")
    assert r.status_code == 500
    assert r.json == {"msg": "Server error"}

    r = client.get("/customers?view=nested")
    assert r.status_code == 500
