"""
Document Store: logical documents and their lifecycle.

Every public operation authorizes first, then runs as one ``atomic`` unit
that includes its audit row.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from typing import TYPE_CHECKING, Any, BinaryIO

from sqlalchemy import func, select
from sqlalchemy.orm import Session
from werkzeug.utils import secure_filename

from app.docvault.audit import record_event
from app.docvault.db import atomic, iter_batches
from app.docvault.errors import NotFoundError, ValidationError
from app.docvault.models import AuditAction
from app.docvault.modules.documents.metadata import normalize_key, normalize_value, upsert_entry
from app.docvault.modules.documents.models import Document, DocumentMetadata, DocumentVersion
from app.docvault.modules.documents.versions import (
    append_version,
    find_version,
    lock_document,
    validate_file_attributes,
)
from app.docvault.modules.folders.models import DocumentFolder
from app.docvault.rbac import OperationKind, authorize
from app.docvault.storage import Storage, content_key
from app.docvault.utils import utcnow

if TYPE_CHECKING:
    from app.docvault.auth import Principal

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("title", "category")


def normalize_title(title: str | None) -> str:
    t = (title or "").strip()
    if not t:
        raise ValidationError("title is required.")
    if len(t) > 255:
        raise ValidationError("title must be at most 255 characters.")
    return t


def normalize_category(category: str | None) -> str | None:
    c = (category or "").strip() or None
    if c and len(c) > 100:
        raise ValidationError("category must be at most 100 characters.")
    return c


def sanitize_upload_filename(filename: str | None) -> str:
    fn = secure_filename(filename or "")
    return fn or "upload.bin"


def _insert_document(s: Session, title: str, category: str | None) -> Document:
    now = utcnow()
    doc = Document(title=title, category=category, created_at=now, updated_at=now)
    s.add(doc)
    s.flush()
    return doc


def create_document(s: Session, actor: "Principal", title: str, category: str | None = None) -> Document:
    authorize(actor, OperationKind.WRITE)
    title = normalize_title(title)
    category = normalize_category(category)

    with atomic(s):
        doc = _insert_document(s, title, category)
        record_event(
            s,
            actor=actor,
            action=AuditAction.UPLOAD,
            document_id=doc.id,
            metadata={"title": doc.title, "category": doc.category},
        )

    logger.info("Created document_id=%s", doc.id)
    return doc


def upload_document(
    s: Session,
    actor: "Principal",
    *,
    storage: Storage,
    title: str,
    file_name: str,
    data: bytes,
    category: str | None = None,
    mime_type: str | None = None,
    metadata: Mapping[str, Any] | None = None,
) -> tuple[Document, DocumentVersion]:
    """
    New document with version 1 and its initial metadata, as one audited
    UPLOAD. The blob is content-addressed, so it is written before the
    transaction opens.
    """
    authorize(actor, OperationKind.WRITE)
    title = normalize_title(title)
    category = normalize_category(category)
    file_name = sanitize_upload_filename(file_name)
    key, sha256, size = content_key(data)
    validate_file_attributes(file_name, key, size)
    entries = {normalize_key(k): normalize_value(v) for k, v in (metadata or {}).items()}

    storage.put_bytes(key, data, content_type=mime_type)

    with atomic(s):
        doc = _insert_document(s, title, category)
        version = append_version(
            s,
            doc,
            file_name=file_name,
            file_path=key,
            file_size=size,
            mime_type=mime_type,
            checksum=sha256,
        )
        for k, v in entries.items():
            upsert_entry(s, doc.id, k, v)
        record_event(
            s,
            actor=actor,
            action=AuditAction.UPLOAD,
            document_id=doc.id,
            document_version=version.version_number,
            metadata={
                "title": doc.title,
                "category": doc.category,
                "file_name": version.file_name,
                "file_size": version.file_size,
                "metadata_keys": sorted(entries),
            },
        )

    logger.info("Uploaded document_id=%s version=%s size=%s", doc.id, version.version_number, size)
    return doc, version


def update_document(s: Session, actor: "Principal", document_id: int, fields: Mapping[str, Any]) -> Document:
    authorize(actor, OperationKind.WRITE)
    unknown = sorted(set(fields) - set(UPDATABLE_FIELDS))
    if unknown:
        raise ValidationError(f"Unknown document fields: {', '.join(unknown)}")
    if not fields:
        raise ValidationError(f"Nothing to update. Allowed fields: {', '.join(UPDATABLE_FIELDS)}")
    new_values: dict[str, Any] = {}
    if "title" in fields:
        new_values["title"] = normalize_title(fields["title"])
    if "category" in fields:
        new_values["category"] = normalize_category(fields["category"])

    with atomic(s):
        doc = lock_document(s, document_id)
        changes = {}
        for name, new in new_values.items():
            old = getattr(doc, name)
            if new != old:
                changes[name] = {"old": old, "new": new}
                setattr(doc, name, new)
        doc.updated_at = utcnow()
        s.flush()
        record_event(
            s,
            actor=actor,
            action=AuditAction.UPDATE_METADATA,
            document_id=doc.id,
            document_version=None,
            metadata={"changes": changes},
        )

    logger.info("Updated document_id=%s fields=%s", document_id, sorted(changes))
    return doc


def delete_document(s: Session, actor: "Principal", document_id: int) -> None:
    """
    Hard delete. Versions, metadata and folder links go with the document
    (ON DELETE CASCADE); audit rows stay and have ``document_id`` nulled.
    """
    authorize(actor, OperationKind.DELETE)

    with atomic(s):
        doc = lock_document(s, document_id)
        version_count = s.scalar(
            select(func.count(DocumentVersion.id)).where(DocumentVersion.document_id == doc.id)
        )
        record_event(
            s,
            actor=actor,
            action=AuditAction.DELETE,
            document_id=doc.id,
            metadata={"document_id": doc.id, "title": doc.title, "version_count": version_count},
        )
        s.delete(doc)
        s.flush()

    # ON DELETE SET NULL ran in the database; drop the stale audit rows held by the session.
    s.expire_all()
    logger.info("Deleted document_id=%s (%s versions)", document_id, version_count)


def get_document(s: Session, actor: "Principal", document_id: int) -> Document:
    authorize(actor, OperationKind.READ)
    doc = s.get(Document, document_id)
    if doc is None:
        raise NotFoundError(f"Document {document_id} not found.")
    return doc


def iter_documents(
    s: Session,
    actor: "Principal",
    *,
    category: str | None = None,
    title: str | None = None,
    folder_id: int | None = None,
    offset: int = 0,
    batch_size: int = 100,
) -> Iterator[Document]:
    """
    Newest-first documents matching the filters. Lazy: rows are fetched in
    batches as the generator is consumed; calling again restarts the scan.
    """
    authorize(actor, OperationKind.READ)
    if offset < 0:
        raise ValidationError("offset must be >= 0.")
    stmt = select(Document)
    if category:
        stmt = stmt.where(Document.category == category.strip())
    if title:
        stmt = stmt.where(Document.title.ilike(f"%{title.strip()}%"))
    if folder_id is not None:
        stmt = stmt.join(DocumentFolder, DocumentFolder.document_id == Document.id).where(
            DocumentFolder.folder_id == folder_id
        )
    stmt = stmt.order_by(Document.created_at.desc(), Document.id.desc())
    return iter_batches(s, stmt, batch_size=batch_size, offset=offset)


def download_version(
    s: Session,
    actor: "Principal",
    document_id: int,
    *,
    storage: Storage,
    version_number: int | None = None,
) -> tuple[DocumentVersion, BinaryIO]:
    """
    Open the requested version (latest by default) and record the DOWNLOAD.
    The audit row names the version actually served.
    """
    authorize(actor, OperationKind.READ)

    fobj: BinaryIO | None = None
    try:
        with atomic(s):
            version = find_version(s, document_id, version_number)
            record_event(
                s,
                actor=actor,
                action=AuditAction.DOWNLOAD,
                document_id=document_id,
                document_version=version.version_number,
                metadata={"file_name": version.file_name},
            )
            # Opened last so a missing blob rolls the DOWNLOAD row back.
            fobj = storage.open(version.file_path)
    except BaseException:
        # Close the blob if the commit fails.
        if fobj is not None:
            fobj.close()
        raise

    return version, fobj


def document_stats(s: Session, actor: "Principal", document_id: int) -> dict[str, Any]:
    authorize(actor, OperationKind.STAT)
    doc = s.get(Document, document_id)
    if doc is None:
        raise NotFoundError(f"Document {document_id} not found.")

    version_count, latest, total_size = s.execute(
        select(
            func.count(DocumentVersion.id),
            func.max(DocumentVersion.version_number),
            func.coalesce(func.sum(DocumentVersion.file_size), 0),
        ).where(DocumentVersion.document_id == doc.id)
    ).one()
    metadata_count = s.scalar(
        select(func.count(DocumentMetadata.id)).where(DocumentMetadata.document_id == doc.id)
    )
    folder_count = s.scalar(
        select(func.count()).select_from(DocumentFolder).where(DocumentFolder.document_id == doc.id)
    )
    return {
        "document_id": doc.id,
        "version_count": int(version_count or 0),
        "latest_version": latest,
        "total_size": int(total_size or 0),
        "metadata_count": int(metadata_count or 0),
        "folder_count": int(folder_count or 0),
        "created_at": doc.created_at,
        "updated_at": doc.updated_at,
    }
