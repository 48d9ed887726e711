from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import g, jsonify

from app.crm.models import User

PERMISSIONS: dict[str, str] = {
    "customers.view": "Customers: view",
    "customers.create": "Customers: create",
    "customers.edit": "Customers: edit",
    "customers.delete": "Customers: delete",
    "customers.import": "Customers: import CSV",
    "users.manage": "Users: manage staff accounts",
}


def user_has_permission(user: User | None, permission_key: str) -> bool:
    if not user or not user.is_active:
        return False
    for role in user.roles:
        for perm in role.permissions:
            if perm.key == permission_key:
                return True
    return False


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            # No principal: the request never reaches the handler.
            if not user or not user.is_active:
                return jsonify({"msg": "Authentication required"}), 401
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                return jsonify({"msg": "Forbidden", "missingPermission": permission_key}), 403
            return fn(*args, **kwargs)

        return wrapped

    return decorator
