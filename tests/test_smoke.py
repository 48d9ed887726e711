import pytest
from werkzeug.security import generate_password_hash

from app.crm import create_app
from app.crm import auth as auth_module
from app.crm.db import session_scope
from app.crm.models import AuditEvent, Base, Permission, Role, User


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
        p = Permission(key="customers.view", name="Customers: view")
        r = Role(key="admin", name="Administrator")
        r.permissions.append(p)
        u = User(email="admin@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        u.roles.append(r)
        s.add_all([p, r, u])

    return app.test_client()


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True

    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.data == b"ok"


def test_login_and_customer_access(client):
    # Anonymous is rejected before the handler runs
    r = client.get("/customers")
    assert r.status_code == 401
    assert r.json["msg"] == "Authentication required"

    r = client.post("/auth/login", json={"email": "admin@example.com", "password": "pw"})
    assert r.status_code == 200
    assert r.json["user"]["email"] == "admin@example.com"
    assert r.json["csrfToken"]

    r = client.get("/customers")
    assert r.status_code == 200
    assert r.json == []

    r = client.get("/auth/me")
    assert r.status_code == 200
    assert r.json["user"]["roles"] == ["admin"]


def test_login_rejects_bad_password_and_audits(client):
    r = client.post("/auth/login", json={"email": "admin@example.com", "password": "nope"})
    assert r.status_code == 400
    assert r.json["msg"] == "Invalid credentials"

    with session_scope(client.application) as s:
        actions = [e.action for e in s.query(AuditEvent).all()]
    assert "auth.login_failed" in actions


def test_login_rate_limited(client):
    for _ in range(5):
        client.post("/auth/login", json={"email": "admin@example.com", "password": "nope"})
    r = client.post("/auth/login", json={"email": "admin@example.com", "password": "pw"})
    assert r.status_code == 429


def test_missing_permission_is_forbidden(client):
    client.post("/auth/login", json={"email": "admin@example.com", "password": "pw"})
    r = client.get("/customers")
    assert r.status_code == 200

    # Only customers.view was granted
    token = client.get("/auth/me").json["csrfToken"]
    r = client.post("/customers", json={}, headers={"X-CSRF-Token": token})
    assert r.status_code == 403
    assert r.json["missingPermission"] == "customers.create"


def test_logout_ends_session(client):
    r = client.post("/auth/login", json={"email": "admin@example.com", "password": "pw"})
    assert r.status_code == 200
    r = client.post("/auth/logout")
    assert r.status_code == 200
    r = client.get("/customers")
    assert r.status_code == 401
