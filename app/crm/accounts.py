"""
Staff account management (JSON). Admin only.
"""

from __future__ import annotations

import re
from datetime import datetime

from flask import Blueprint, g, jsonify, request
from werkzeug.security import generate_password_hash

from app.crm.audit import record_event
from app.crm.auth import user_to_dict
from app.crm.db import commit, db_session
from app.crm.errors import FieldError, NotFound, ValidationError
from app.crm.models import Role, User
from app.crm.rbac import require_permission

bp = Blueprint("accounts", __name__)

_MIN_PASSWORD_LENGTH = 8


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _is_valid_email(email: str) -> bool:
    pattern = r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$"
    return bool(re.match(pattern, email))


def _get_user(s, user_id: int) -> User:
    user = s.get(User, user_id)
    if not user:
        raise NotFound("User not found")
    return user


def _apply_roles(s, user: User, role_keys) -> list[FieldError]:
    if role_keys is None:
        return []
    if not isinstance(role_keys, list) or not all(isinstance(k, str) for k in role_keys):
        return [FieldError("roles", "Must be a list of role keys.")]
    roles = s.query(Role).filter(Role.key.in_(role_keys)).all() if role_keys else []
    unknown = sorted(set(role_keys) - {r.key for r in roles})
    if unknown:
        return [FieldError("roles", f"Unknown role(s): {', '.join(unknown)}")]
    user.roles.clear()
    user.roles.extend(roles)
    return []


@bp.post("/users")
@require_permission("users.manage")
def users_create():
    s = db_session()
    u = _current_user()
    data = request.get_json(silent=True) or {}

    email = str(data.get("email") or "").strip().lower()
    password = str(data.get("password") or "")

    errors: list[FieldError] = []
    if not email:
        errors.append(FieldError("email", "Email is required."))
    elif not _is_valid_email(email):
        errors.append(FieldError("email", "Invalid email format."))
    elif s.query(User).filter(User.email == email).one_or_none():
        errors.append(FieldError("email", "An account with this email already exists."))

    if not password:
        errors.append(FieldError("password", "Password is required."))
    elif len(password) < _MIN_PASSWORD_LENGTH:
        errors.append(FieldError("password", f"Password must be at least {_MIN_PASSWORD_LENGTH} characters."))
    if errors:
        raise ValidationError(errors)

    new_user = User(email=email, password_hash=generate_password_hash(password), is_active=True)
    s.add(new_user)
    role_errors = _apply_roles(s, new_user, data.get("roles"))
    if role_errors:
        s.rollback()
        raise ValidationError(role_errors)
    s.flush()

    record_event(
        s,
        actor=u,
        action="user.create",
        entity_type="User",
        entity_id=str(new_user.id),
        metadata={"email": email, "roles": [r.key for r in new_user.roles]},
    )
    commit(s, "user.create")
    return jsonify(user_to_dict(new_user)), 201


@bp.put("/users/<int:user_id>")
@require_permission("users.manage")
def users_update(user_id: int):
    s = db_session()
    u = _current_user()
    user = _get_user(s, user_id)
    data = request.get_json(silent=True) or {}

    before = {"is_active": user.is_active, "roles": [r.key for r in user.roles]}
    errors: list[FieldError] = []

    if "password" in data:
        password = str(data.get("password") or "")
        if len(password) < _MIN_PASSWORD_LENGTH:
            errors.append(FieldError("password", f"Password must be at least {_MIN_PASSWORD_LENGTH} characters."))
        else:
            user.password_hash = generate_password_hash(password)

    if "isActive" in data:
        if not isinstance(data["isActive"], bool):
            errors.append(FieldError("isActive", "Must be true or false."))
        elif user.id == u.id and data["isActive"] is False:
            errors.append(FieldError("isActive", "You cannot deactivate your own account."))
        else:
            user.is_active = data["isActive"]

    errors.extend(_apply_roles(s, user, data.get("roles")))
    if errors:
        s.rollback()
        raise ValidationError(errors)

    user.updated_at = datetime.utcnow()
    after = {"is_active": user.is_active, "roles": [r.key for r in user.roles]}
    record_event(
        s,
        actor=u,
        action="user.update",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"before": before, "after": after, "password_changed": "password" in data},
    )
    commit(s, "user.update")
    return jsonify(user_to_dict(user))


@bp.delete("/users/<int:user_id>")
@require_permission("users.manage")
def users_delete(user_id: int):
    s = db_session()
    u = _current_user()
    user = _get_user(s, user_id)
    if user.id == u.id:
        raise ValidationError([FieldError("id", "You cannot delete your own account.")])

    record_event(
        s,
        actor=u,
        action="user.delete",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"email": user.email},
    )
    s.delete(user)
    commit(s, "user.delete")
    return jsonify({"msg": "User deleted"})
