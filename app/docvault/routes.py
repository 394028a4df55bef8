from itertools import islice

from flask import Blueprint, request

from app.docvault.audit import query_audit_logs
from app.docvault.auth import current_principal, require_principal
from app.docvault.db import db_session
from app.docvault.serializers import audit_to_dict, datetime_arg, int_arg, page_args

bp = Blueprint("routes", __name__)


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON."""
    return {"ok": True}


@bp.get("/audit")
@require_principal
def audit_log():
    s = db_session()
    limit, offset = page_args()
    rows = query_audit_logs(
        s,
        current_principal(),
        user_id=(request.args.get("user_id") or "").strip() or None,
        action=request.args.get("action"),
        document_id=int_arg("document_id"),
        since=datetime_arg("since"),
        until=datetime_arg("until"),
        offset=offset,
        batch_size=limit,
    )
    return {"items": [audit_to_dict(ev) for ev in islice(rows, limit)], "limit": limit, "offset": offset}
