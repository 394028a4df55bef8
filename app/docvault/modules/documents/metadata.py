from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.docvault.audit import record_event
from app.docvault.db import atomic
from app.docvault.errors import NotFoundError, ValidationError
from app.docvault.models import AuditAction
from app.docvault.modules.documents.models import Document, DocumentMetadata
from app.docvault.modules.documents.versions import latest_version_number, lock_document
from app.docvault.rbac import OperationKind, authorize

if TYPE_CHECKING:
    from app.docvault.auth import Principal

logger = logging.getLogger(__name__)

MAX_KEY_LENGTH = 255


def normalize_key(key: str | None) -> str:
    k = (key or "").strip()
    if not k:
        raise ValidationError("Metadata key is required.")
    if len(k) > MAX_KEY_LENGTH:
        raise ValidationError(f"Metadata key must be at most {MAX_KEY_LENGTH} characters.")
    return k


def normalize_value(value: object) -> str | None:
    if value is None or isinstance(value, str):
        return value
    raise ValidationError("Metadata values must be strings or null.")


def _find_entry(s: Session, document_id: int, key: str, *, for_update: bool = False) -> DocumentMetadata | None:
    stmt = select(DocumentMetadata).where(DocumentMetadata.document_id == document_id, DocumentMetadata.key == key)
    if for_update:
        stmt = stmt.with_for_update()
    return s.scalars(stmt).one_or_none()


def upsert_entry(s: Session, document_id: int, key: str, value: str | None) -> tuple[DocumentMetadata, str | None, bool]:
    """
    Insert or update one key inside the caller's transaction.
    Returns (entry, previous value, created). ``created_at`` is never touched
    on update.
    """
    entry = _find_entry(s, document_id, key, for_update=True)
    if entry is not None:
        old = entry.value
        entry.value = value
        s.flush()
        return entry, old, False

    entry = DocumentMetadata(document_id=document_id, key=key, value=value)
    try:
        with s.begin_nested():
            s.add(entry)
    except IntegrityError:
        # A concurrent writer inserted the key first; update its row instead.
        entry = _find_entry(s, document_id, key, for_update=True)
        if entry is None:
            raise
        old = entry.value
        entry.value = value
        s.flush()
        return entry, old, False
    return entry, None, True


def set_metadata(
    s: Session,
    actor: "Principal",
    document_id: int,
    key: str,
    value: str | None = None,
) -> DocumentMetadata:
    authorize(actor, OperationKind.WRITE)
    key = normalize_key(key)
    value = normalize_value(value)

    with atomic(s):
        doc = lock_document(s, document_id)
        entry, old, created = upsert_entry(s, doc.id, key, value)
        record_event(
            s,
            actor=actor,
            action=AuditAction.UPDATE_METADATA,
            document_id=doc.id,
            document_version=latest_version_number(s, doc.id),
            metadata={"key": key, "old": old, "new": value, "change": "created" if created else "updated"},
        )

    logger.info("Set metadata key=%s on document_id=%s", key, document_id)
    return entry


def delete_metadata(s: Session, actor: "Principal", document_id: int, key: str) -> None:
    """Remove one key. An absent key is reported as NotFoundError."""
    authorize(actor, OperationKind.WRITE)
    key = normalize_key(key)

    with atomic(s):
        doc = lock_document(s, document_id)
        entry = _find_entry(s, doc.id, key, for_update=True)
        if entry is None:
            raise NotFoundError(f"Metadata key {key!r} not found on document {document_id}.")
        old = entry.value
        s.delete(entry)
        s.flush()
        record_event(
            s,
            actor=actor,
            action=AuditAction.UPDATE_METADATA,
            document_id=doc.id,
            document_version=latest_version_number(s, doc.id),
            metadata={"key": key, "old": old, "new": None, "change": "deleted"},
        )

    logger.info("Deleted metadata key=%s on document_id=%s", key, document_id)


def get_metadata(s: Session, actor: "Principal", document_id: int) -> dict[str, str | None]:
    authorize(actor, OperationKind.READ)
    if s.get(Document, document_id) is None:
        raise NotFoundError(f"Document {document_id} not found.")
    rows = s.scalars(select(DocumentMetadata).where(DocumentMetadata.document_id == document_id))
    return {row.key: row.value for row in rows}
