from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request

from app.crm.db import db_session
from app.crm.models import User
from app.crm.modules.customer_import.parsers import parse_customer_csv
from app.crm.modules.customer_import.service import import_customers
from app.crm.rbac import require_permission

bp = Blueprint("customer_import", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


@bp.post("/customers")
@require_permission("customers.import")
def import_customers_post():
    max_bytes = int(current_app.config.get("IMPORT_MAX_BYTES") or 512 * 1024)
    f = request.files.get("file")
    if f is None or not f.filename:
        return jsonify({"msg": "No file uploaded"}), 400

    file_bytes = f.read(max_bytes + 1)
    if len(file_bytes) > max_bytes:
        return jsonify({"msg": f"File too large. Maximum size is {max_bytes // 1024}KB."}), 400

    try:
        rows, parse_errors = parse_customer_csv(file_bytes)
    except ValueError as e:
        return jsonify({"msg": str(e)}), 400

    s = db_session()
    result = import_customers(
        s,
        rows,
        user=_current_user(),
        parse_errors=parse_errors,
        max_retries=int(current_app.config.get("INT_NR_MAX_RETRIES") or 3),
    )
    current_app.logger.info(
        "Import of %s by %s (request_id=%s): %d imported, %d skipped",
        f.filename,
        _current_user().email,
        g.request_id,
        len(result.imported),
        len(result.skipped),
    )
    return jsonify(result.to_dict())
