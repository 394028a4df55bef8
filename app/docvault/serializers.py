"""JSON shapes and query-string parsing shared by the API blueprints."""

from __future__ import annotations

from typing import Any

from flask import current_app, request

from app.docvault.errors import ValidationError
from app.docvault.models import AuditLog
from app.docvault.modules.documents.models import Document, DocumentVersion
from app.docvault.modules.folders.models import Folder
from app.docvault.utils import isoformat, parse_iso_datetime


def document_to_dict(doc: Document) -> dict[str, Any]:
    return {
        "id": doc.id,
        "title": doc.title,
        "category": doc.category,
        "created_at": isoformat(doc.created_at),
        "updated_at": isoformat(doc.updated_at),
    }


def version_to_dict(v: DocumentVersion) -> dict[str, Any]:
    return {
        "id": v.id,
        "document_id": v.document_id,
        "version_number": v.version_number,
        "file_name": v.file_name,
        "file_path": v.file_path,
        "file_size": v.file_size,
        "mime_type": v.mime_type,
        "checksum": v.checksum,
        "created_at": isoformat(v.created_at),
    }


def audit_to_dict(ev: AuditLog) -> dict[str, Any]:
    return {
        "id": ev.id,
        "user_id": ev.user_id,
        "action": ev.action.value,
        "document_id": ev.document_id,
        "document_version": ev.document_version,
        "metadata": ev.metadata_json,
        "created_at": isoformat(ev.created_at),
    }


def folder_to_dict(f: Folder) -> dict[str, Any]:
    return {
        "id": f.id,
        "name": f.name,
        "created_by": f.created_by,
        "created_at": isoformat(f.created_at),
    }


def int_arg(name: str, default: int | None = None) -> int | None:
    raw = (request.args.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValidationError(f"{name} must be an integer.") from e


def datetime_arg(name: str):
    try:
        return parse_iso_datetime(request.args.get(name))
    except ValueError as e:
        raise ValidationError(f"{name} must be an ISO-8601 timestamp.") from e


def page_args() -> tuple[int, int]:
    """(limit, offset) from the query string, capped at MAX_PAGE_SIZE."""
    limit = int_arg("limit", current_app.config.get("PAGE_SIZE", 50))
    offset = int_arg("offset", 0)
    if limit < 1:
        raise ValidationError("limit must be >= 1.")
    if offset < 0:
        raise ValidationError("offset must be >= 0.")
    return min(limit, int(current_app.config.get("MAX_PAGE_SIZE", 500))), offset


def json_body() -> dict[str, Any]:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object.")
    return payload
