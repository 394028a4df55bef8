from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.docvault.audit import record_event
from app.docvault.db import atomic
from app.docvault.errors import ConflictError, NotFoundError, ValidationError
from app.docvault.models import AuditAction
from app.docvault.modules.documents.models import Document
from app.docvault.modules.documents.versions import latest_version_number, lock_document
from app.docvault.modules.folders.models import DocumentFolder, Folder
from app.docvault.rbac import OperationKind, authorize

if TYPE_CHECKING:
    from app.docvault.auth import Principal

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def sanitize_folder_name(name: str | None) -> str:
    raw = (name or "").strip()
    if not raw:
        raise ValidationError("Folder name cannot be empty.")
    cleaned = _UNSAFE_CHARS.sub("_", raw)
    if len(cleaned) > 255:
        raise ValidationError("Folder name must be at most 255 characters.")
    return cleaned


def _get_folder(s: Session, folder_id: int) -> Folder:
    folder = s.get(Folder, folder_id)
    if folder is None:
        raise NotFoundError(f"Folder {folder_id} not found.")
    return folder


def create_folder(s: Session, actor: "Principal", name: str) -> Folder:
    """Folders are not documents, so creation is logged but not audited."""
    authorize(actor, OperationKind.WRITE)
    name = sanitize_folder_name(name)

    with atomic(s):
        if s.scalars(select(Folder).where(Folder.name == name)).one_or_none() is not None:
            raise ConflictError(f"Folder {name!r} already exists.")
        folder = Folder(name=name, created_by=actor.user_id)
        s.add(folder)
        s.flush()

    logger.info("Created folder_id=%s name=%s by user_id=%s", folder.id, folder.name, actor.user_id)
    return folder


def list_folders(s: Session, actor: "Principal") -> list[Folder]:
    authorize(actor, OperationKind.READ)
    return list(s.scalars(select(Folder).order_by(Folder.name.asc())))


def list_folder_documents(s: Session, actor: "Principal", folder_id: int) -> list[Document]:
    authorize(actor, OperationKind.READ)
    _get_folder(s, folder_id)
    stmt = (
        select(Document)
        .join(DocumentFolder, DocumentFolder.document_id == Document.id)
        .where(DocumentFolder.folder_id == folder_id)
        .order_by(Document.created_at.desc(), Document.id.desc())
    )
    return list(s.scalars(stmt))


def add_document_to_folder(s: Session, actor: "Principal", folder_id: int, document_id: int) -> bool:
    """Idempotent; returns False (and audits nothing) if already linked."""
    authorize(actor, OperationKind.WRITE)

    with atomic(s):
        doc = lock_document(s, document_id)
        folder = _get_folder(s, folder_id)
        if s.get(DocumentFolder, (doc.id, folder.id)) is not None:
            return False
        s.add(DocumentFolder(document_id=doc.id, folder_id=folder.id))
        s.flush()
        record_event(
            s,
            actor=actor,
            action=AuditAction.UPDATE_METADATA,
            document_id=doc.id,
            document_version=latest_version_number(s, doc.id),
            metadata={"folder_id": folder.id, "folder": folder.name, "change": "added"},
        )

    logger.info("Added document_id=%s to folder_id=%s", document_id, folder_id)
    return True


def remove_document_from_folder(s: Session, actor: "Principal", folder_id: int, document_id: int) -> None:
    authorize(actor, OperationKind.WRITE)

    with atomic(s):
        doc = lock_document(s, document_id)
        folder = _get_folder(s, folder_id)
        link = s.get(DocumentFolder, (doc.id, folder.id))
        if link is None:
            raise NotFoundError(f"Document {document_id} is not in folder {folder_id}.")
        s.delete(link)
        s.flush()
        record_event(
            s,
            actor=actor,
            action=AuditAction.UPDATE_METADATA,
            document_id=doc.id,
            document_version=latest_version_number(s, doc.id),
            metadata={"folder_id": folder.id, "folder": folder.name, "change": "removed"},
        )

    logger.info("Removed document_id=%s from folder_id=%s", document_id, folder_id)
