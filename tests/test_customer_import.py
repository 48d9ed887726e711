import csv
import io
import json

import pytest
from werkzeug.security import generate_password_hash

from app.crm import create_app
from app.crm import auth as auth_module
from app.crm.db import session_scope
from app.crm.models import AuditEvent, Base, Permission, Role, User
from app.crm.modules.customer_import.parsers import parse_customer_csv
from app.crm.modules.customers import service
from app.crm.modules.customers.models import Customer


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("IMPORT_MAX_BYTES", "4096")
    auth_module._login_attempts.clear()

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        perms = [
            Permission(key="customers.view", name="Customers: view"),
            Permission(key="customers.create", name="Customers: create"),
            Permission(key="customers.import", name="Customers: import CSV"),
        ]
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


ADDRESS = {"country": "DE", "zip": "12345", "city": "Berlin", "street": "Main St 1"}
CONTACT = {"firstName": "Ann", "lastName": "Lee"}


def _csv(rows, delimiter=",") -> bytes:
    buf = io.StringIO()
    w = csv.writer(buf, delimiter=delimiter)
    w.writerow(["intNr", "type", "contactPersons", "addresses"])
    for int_nr, ctype, contacts, addresses in rows:
        w.writerow([int_nr, ctype, contacts, addresses])
    return buf.getvalue().encode("utf-8")


def _upload(client, headers, data: bytes, filename="customers.csv"):
    return client.post(
        "/import/customers",
        data={"file": (io.BytesIO(data), filename)},
        content_type="multipart/form-data",
        headers=headers,
    )


def test_parse_customer_csv_reports_bad_json_rows():
    data = _csv(
        [
            ("K-0001", "DEALER", json.dumps([CONTACT]), json.dumps([ADDRESS])),
            ("K-0002", "DEALER", "{not json", json.dumps([ADDRESS])),
            ("K-0003", "DEALER", json.dumps(CONTACT), json.dumps([ADDRESS])),
        ]
    )
    rows, errors = parse_customer_csv(data)
    assert [r.int_nr for r in rows] == ["K-0001"]
    assert rows[0].payload["addresses"] == [ADDRESS]
    assert [e.row_number for e in errors] == [3, 4]
    assert "contactPersons" in errors[0].message


def test_parse_customer_csv_accepts_semicolons():
    data = _csv([("", "PRIVATE", json.dumps([CONTACT]), json.dumps([ADDRESS]))], delimiter=";")
    rows, errors = parse_customer_csv(data)
    assert errors == []
    assert rows[0].int_nr is None
    assert rows[0].payload["type"] == "PRIVATE"


def test_import_creates_new_and_skips_existing(client):
    headers = _login(client)
    r = client.post(
        "/customers",
        json={"type": "DEALER", "addresses": [ADDRESS], "contactPersons": [CONTACT]},
        headers=headers,
    )
    assert r.status_code == 201
    assert r.json["intNr"] == "K-0001"

    data = _csv(
        [
            ("K-0001", "COMPANY", json.dumps([CONTACT]), json.dumps([ADDRESS])),
            ("K-0007", "COMPANY", json.dumps([CONTACT]), json.dumps([ADDRESS])),
            ("", "PRIVATE", json.dumps([CONTACT]), json.dumps([ADDRESS])),
        ]
    )
    r = _upload(client, headers, data)
    assert r.status_code == 200, r.json
    assert r.json["skipped"] == ["K-0001"]
    assert r.json["imported"] == ["K-0007", "K-0008"]
    assert r.json["importedCount"] == 2
    assert r.json["skippedCount"] == 1
    assert r.json["errors"] == []

    with session_scope(client.application) as s:
        assert s.query(Customer).count() == 3
        existing = s.query(Customer).filter(Customer.int_nr == "K-0001").one()
        assert existing.type == "DEALER"
        assert s.query(AuditEvent).filter(AuditEvent.action == "customer.import").count() == 1


def test_import_is_idempotent(client):
    headers = _login(client)
    data = _csv([("K-0100", "DEALER", json.dumps([CONTACT]), json.dumps([ADDRESS]))])

    r = _upload(client, headers, data)
    assert r.json["importedCount"] == 1
    r = _upload(client, headers, data)
    assert r.json["importedCount"] == 0
    assert r.json["skipped"] == ["K-0100"]

    with session_scope(client.application) as s:
        assert s.query(Customer).count() == 1


def test_import_invalid_row_does_not_stop_batch(client):
    headers = _login(client)
    data = _csv(
        [
            ("K-0001", "DEALER", json.dumps([CONTACT]), json.dumps([{**ADDRESS, "zip": "1"}])),
            ("K-0002", "DEALER", json.dumps([CONTACT]), json.dumps([ADDRESS])),
        ]
    )
    r = _upload(client, headers, data)
    assert r.status_code == 200
    assert r.json["imported"] == ["K-0002"]
    assert len(r.json["errors"]) == 1
    assert r.json["errors"][0]["row"] == 2
    assert "addresses[0].zip" in r.json["errors"][0]["message"]


def test_import_rejects_missing_and_oversized_files(client):
    headers = _login(client)

    r = client.post("/import/customers", data={}, content_type="multipart/form-data", headers=headers)
    assert r.status_code == 400
    assert r.json["msg"] == "No file uploaded"

    r = _upload(client, headers, b"x" * 5000)
    assert r.status_code == 400
    assert r.json["msg"] == "File too large. Maximum size is 4KB."

    with session_scope(client.application) as s:
        assert s.query(Customer).count() == 0


def test_import_requires_permission(client):
    r = _upload(client, {}, _csv([]))
    assert r.status_code == 401


def test_import_rejects_non_canonical_identifier(client):
    headers = _login(client)
    with session_scope(client.application) as s:
        service.create_customer(
            s, {"type": "DEALER", "addresses": [ADDRESS], "contactPersons": [CONTACT]}, user=None, int_nr="K-0500"
        )

    data = _csv([("K-00012", "DEALER", json.dumps([CONTACT]), json.dumps([ADDRESS]))])
    r = _upload(client, headers, data)
    assert r.status_code == 200
    assert r.json["importedCount"] == 0
    assert r.json["errors"][0]["row"] == 2
    assert "intNr" in r.json["errors"][0]["message"]

    # Generation still follows the numerically highest stored intNr
    for expected in ("K-0501", "K-0502"):
        r = client.post(
            "/customers",
            json={"type": "DEALER", "addresses": [ADDRESS], "contactPersons": [CONTACT]},
            headers=headers,
        )
        assert r.status_code == 201
        assert r.json["intNr"] == expected
