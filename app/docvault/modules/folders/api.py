from __future__ import annotations

from flask import Blueprint

from app.docvault.auth import current_principal, require_principal
from app.docvault.db import db_session
from app.docvault.modules.folders import service
from app.docvault.serializers import document_to_dict, folder_to_dict, json_body

bp = Blueprint("folders", __name__)


@bp.get("/folders")
@require_principal
def list_folders():
    s = db_session()
    return {"items": [folder_to_dict(f) for f in service.list_folders(s, current_principal())]}


@bp.post("/folders")
@require_principal
def create_folder():
    s = db_session()
    folder = service.create_folder(s, current_principal(), json_body().get("name"))
    return folder_to_dict(folder), 201


@bp.get("/folders/<int:folder_id>/documents")
@require_principal
def folder_documents(folder_id: int):
    s = db_session()
    docs = service.list_folder_documents(s, current_principal(), folder_id)
    return {"folder_id": folder_id, "items": [document_to_dict(d) for d in docs]}


@bp.put("/folders/<int:folder_id>/documents/<int:document_id>")
@require_principal
def add_document(folder_id: int, document_id: int):
    s = db_session()
    added = service.add_document_to_folder(s, current_principal(), folder_id, document_id)
    return {"folder_id": folder_id, "document_id": document_id, "added": added}, (201 if added else 200)


@bp.delete("/folders/<int:folder_id>/documents/<int:document_id>")
@require_principal
def remove_document(folder_id: int, document_id: int):
    s = db_session()
    service.remove_document_from_folder(s, current_principal(), folder_id, document_id)
    return "", 204
