"""
Error taxonomy for the customer back office.

Client-correctable errors (validation, not found, invariant, conflict) carry the
message that is returned to the caller. Infrastructure errors (storage, malformed
stored identifiers) are logged with context and surfaced as a generic 500.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from flask import Flask, g, jsonify
from werkzeug.exceptions import HTTPException


@dataclass(frozen=True)
class FieldError:
    field: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"field": self.field, "message": self.message}


class CrmError(Exception):
    """Base exception for all back-office errors."""

    status_code = 500
    client_safe = True

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"msg": self.message}


class ValidationError(CrmError):
    """One or more fields violate their constraints."""

    status_code = 400

    def __init__(self, errors: list[FieldError], message: str = "Validation failed") -> None:
        super().__init__(message)
        self.errors = list(errors)

    def to_dict(self) -> dict[str, Any]:
        return {"msg": self.message, "errors": [e.to_dict() for e in self.errors]}

    def __str__(self) -> str:
        return "; ".join(f"{e.field}: {e.message}" for e in self.errors) or self.message


class NotFound(CrmError):
    status_code = 404


class InvariantViolation(CrmError):
    """The operation would break an aggregate invariant (e.g. drop the last address)."""

    status_code = 400


class ConflictError(CrmError):
    """Identifier race or stale version. The caller may retry."""

    status_code = 409

    def to_dict(self) -> dict[str, Any]:
        return {"msg": self.message, "retryable": True}


class MalformedIdentifier(CrmError):
    """A stored intNr does not have the K-NNNN shape."""

    client_safe = False


class StorageError(CrmError):
    client_safe = False


class StorageTimeout(StorageError):
    pass


class StorageUnavailable(StorageError):
    pass


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(CrmError)
    def _crm_error(e: CrmError):
        rid = getattr(g, "request_id", None)
        if not e.client_safe:
            app.logger.error("%s (request_id=%s): %s", type(e).__name__, rid, e.message, exc_info=e)
            return jsonify({"msg": "Server error"}), 500
        if e.status_code == 409:
            app.logger.warning("Conflict (request_id=%s): %s", rid, e.message)
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(HTTPException)
    def _http_error(e: HTTPException):
        return jsonify({"msg": e.description or e.name}), e.code or 500

    @app.errorhandler(Exception)
    def _unhandled(e: Exception):
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return jsonify({"msg": "Server error"}), 500
