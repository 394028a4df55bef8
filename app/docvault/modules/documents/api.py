from __future__ import annotations

import json
from itertools import islice

from flask import Blueprint, current_app, request, send_file

from app.docvault.auth import current_principal, require_principal
from app.docvault.db import db_session
from app.docvault.errors import ValidationError
from app.docvault.modules.documents import metadata as metadata_service
from app.docvault.modules.documents import service, versions
from app.docvault.rbac import OperationKind, authorize
from app.docvault.serializers import document_to_dict, int_arg, json_body, page_args, version_to_dict
from app.docvault.utils import isoformat

bp = Blueprint("documents", __name__)


def _storage():
    return current_app.extensions["docvault_storage"]


def _uploaded_file():
    f = request.files.get("file")
    if not f or not f.filename:
        raise ValidationError("A non-empty 'file' upload is required.")
    data = f.read()
    if not data:
        raise ValidationError("Uploaded file is empty.")
    return service.sanitize_upload_filename(f.filename), data, (f.mimetype or None)


def _upload_metadata() -> dict[str, str | None]:
    """Initial metadata from a JSON ``metadata`` field plus any ``meta_<key>`` fields."""
    entries: dict[str, str | None] = {}
    raw = (request.form.get("metadata") or "").strip()
    if raw:
        try:
            parsed = json.loads(raw)
        except ValueError as e:
            raise ValidationError("metadata must be a JSON object.") from e
        if not isinstance(parsed, dict):
            raise ValidationError("metadata must be a JSON object.")
        entries.update(parsed)
    for name, value in request.form.items():
        if name.startswith("meta_") and len(name) > len("meta_"):
            entries[name[len("meta_"):]] = value
    return entries


@bp.get("/documents")
@require_principal
def list_documents():
    s = db_session()
    limit, offset = page_args()
    docs = service.iter_documents(
        s,
        current_principal(),
        category=request.args.get("category"),
        title=request.args.get("title"),
        folder_id=int_arg("folder_id"),
        offset=offset,
        batch_size=limit,
    )
    items = [document_to_dict(d) for d in islice(docs, limit)]
    return {"items": items, "limit": limit, "offset": offset}


@bp.post("/documents")
@require_principal
def create_document():
    s = db_session()
    payload = json_body()
    doc = service.create_document(s, current_principal(), payload.get("title"), payload.get("category"))
    return document_to_dict(doc), 201


@bp.post("/upload")
@require_principal
def upload():
    """
    Multipart upload. Without ``document_id`` a new document is created at
    version 1; with it the file becomes that document's next version. Both
    forms apply the ``metadata`` and ``meta_<key>`` fields.
    """
    s = db_session()
    principal = current_principal()
    # Role first, so a viewer sees 403 whatever the form holds.
    authorize(principal, OperationKind.WRITE)
    file_name, data, mime_type = _uploaded_file()

    document_id = (request.form.get("document_id") or "").strip()
    if document_id:
        try:
            doc_id = int(document_id)
        except ValueError as e:
            raise ValidationError("document_id must be an integer.") from e
        version = versions.upload_version(
            s,
            principal,
            doc_id,
            storage=_storage(),
            file_name=file_name,
            data=data,
            mime_type=mime_type,
            metadata=_upload_metadata(),
        )
        return {"document": document_to_dict(service.get_document(s, principal, doc_id)), "version": version_to_dict(version)}, 201

    doc, version = service.upload_document(
        s,
        principal,
        storage=_storage(),
        title=request.form.get("title") or "",
        file_name=file_name,
        data=data,
        category=request.form.get("category"),
        mime_type=mime_type,
        metadata=_upload_metadata(),
    )
    return {"document": document_to_dict(doc), "version": version_to_dict(version)}, 201


@bp.get("/documents/<int:document_id>")
@require_principal
def get_document(document_id: int):
    s = db_session()
    doc = service.get_document(s, current_principal(), document_id)
    return document_to_dict(doc)


@bp.patch("/documents/<int:document_id>")
@require_principal
def update_document(document_id: int):
    s = db_session()
    doc = service.update_document(s, current_principal(), document_id, json_body())
    return document_to_dict(doc)


@bp.delete("/documents/<int:document_id>")
@require_principal
def delete_document(document_id: int):
    s = db_session()
    service.delete_document(s, current_principal(), document_id)
    return "", 204


@bp.get("/documents/<int:document_id>/stat")
@require_principal
def document_stat(document_id: int):
    s = db_session()
    stats = service.document_stats(s, current_principal(), document_id)
    stats["created_at"] = isoformat(stats["created_at"])
    stats["updated_at"] = isoformat(stats["updated_at"])
    return stats


@bp.get("/documents/<int:document_id>/versions")
@require_principal
def list_versions(document_id: int):
    s = db_session()
    rows = versions.list_versions(s, current_principal(), document_id)
    return {"items": [version_to_dict(v) for v in rows]}


@bp.post("/documents/<int:document_id>/versions")
@require_principal
def add_version(document_id: int):
    """Multipart ``file`` is stored first; a JSON body registers an already-stored file."""
    s = db_session()
    principal = current_principal()
    if request.files:
        authorize(principal, OperationKind.WRITE)
        file_name, data, mime_type = _uploaded_file()
        version = versions.upload_version(
            s, principal, document_id, storage=_storage(), file_name=file_name, data=data, mime_type=mime_type
        )
        return version_to_dict(version), 201

    payload = json_body()
    version = versions.add_version(
        s,
        principal,
        document_id,
        file_name=payload.get("file_name"),
        file_path=payload.get("file_path"),
        file_size=payload.get("file_size"),
        mime_type=payload.get("mime_type"),
        checksum=payload.get("checksum"),
    )
    return version_to_dict(version), 201


@bp.post("/documents/<int:document_id>/versions/<int:version_number>/restore")
@require_principal
def restore_version(document_id: int, version_number: int):
    s = db_session()
    version = versions.restore_version(s, current_principal(), document_id, version_number)
    return version_to_dict(version), 201


@bp.get("/documents/<int:document_id>/content")
@require_principal
def download(document_id: int):
    s = db_session()
    version, fobj = service.download_version(
        s,
        current_principal(),
        document_id,
        storage=_storage(),
        version_number=int_arg("version"),
    )
    return send_file(
        fobj,
        mimetype=version.mime_type or "application/octet-stream",
        as_attachment=True,
        download_name=version.file_name,
        max_age=0,
    )


@bp.get("/documents/<int:document_id>/metadata")
@require_principal
def get_metadata(document_id: int):
    s = db_session()
    return {"document_id": document_id, "metadata": metadata_service.get_metadata(s, current_principal(), document_id)}


@bp.put("/documents/<int:document_id>/metadata/<path:key>")
@require_principal
def set_metadata(document_id: int, key: str):
    s = db_session()
    payload = json_body()
    if "value" not in payload:
        raise ValidationError("Body must contain 'value'.")
    entry = metadata_service.set_metadata(s, current_principal(), document_id, key, payload["value"])
    return {"document_id": document_id, "key": entry.key, "value": entry.value, "created_at": isoformat(entry.created_at)}


@bp.delete("/documents/<int:document_id>/metadata/<path:key>")
@require_principal
def delete_metadata(document_id: int, key: str):
    s = db_session()
    metadata_service.delete_metadata(s, current_principal(), document_id, key)
    return "", 204
