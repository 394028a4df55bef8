"""
Version Manager: append-only, gap-free version history per document.

Numbering is serialised on the parent document row. The allocating
transaction takes ``SELECT ... FOR UPDATE`` on the document (SQLite write
units begin with ``BEGIN IMMEDIATE`` instead), then reads
``MAX(version_number)`` and inserts. The unique constraint on
``(document_id, version_number)`` stays as the last line of defence: a
violation rolls back only the insert's SAVEPOINT and the allocation is
retried a bounded number of times.

Restoring never mutates history; it copies the target's file attributes
forward into a new version.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from flask import current_app, has_app_context
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.docvault.audit import record_event
from app.docvault.db import atomic
from app.docvault.errors import ConflictError, NotFoundError, ValidationError
from app.docvault.models import AuditAction
from app.docvault.modules.documents.models import Document, DocumentVersion
from app.docvault.rbac import OperationKind, authorize
from app.docvault.storage import Storage, content_key

if TYPE_CHECKING:
    from app.docvault.auth import Principal

logger = logging.getLogger(__name__)

DEFAULT_ALLOCATION_ATTEMPTS = 3


def _allocation_attempts() -> int:
    if has_app_context():
        return int(current_app.config.get("VERSION_ALLOCATION_ATTEMPTS", DEFAULT_ALLOCATION_ATTEMPTS))
    return DEFAULT_ALLOCATION_ATTEMPTS


def validate_file_attributes(file_name: str | None, file_path: str | None, file_size: int | None) -> tuple[str, str, int]:
    name = (file_name or "").strip()
    path = (file_path or "").strip()
    if not name:
        raise ValidationError("file_name is required.")
    if len(name) > 255:
        raise ValidationError("file_name must be at most 255 characters.")
    if not path:
        raise ValidationError("file_path is required.")
    if isinstance(file_size, bool) or not isinstance(file_size, int) or file_size <= 0:
        raise ValidationError("file_size must be a positive integer.")
    return name, path, file_size


def lock_document(s: Session, document_id: int) -> Document:
    """Load the document holding its row lock until the transaction ends."""
    doc = s.scalars(select(Document).where(Document.id == document_id).with_for_update()).one_or_none()
    if doc is None:
        raise NotFoundError(f"Document {document_id} not found.")
    return doc


def latest_version_number(s: Session, document_id: int) -> int | None:
    return s.scalar(
        select(func.max(DocumentVersion.version_number)).where(DocumentVersion.document_id == document_id)
    )


def append_version(
    s: Session,
    doc: Document,
    *,
    file_name: str,
    file_path: str,
    file_size: int,
    mime_type: str | None = None,
    checksum: str | None = None,
    attempts: int | None = None,
) -> DocumentVersion:
    """
    Allocate the next number and insert. The caller owns the transaction and
    must already hold the document lock (see ``lock_document``).
    """
    attempts = attempts or _allocation_attempts()
    for attempt in range(1, attempts + 1):
        number = (latest_version_number(s, doc.id) or 0) + 1
        version = DocumentVersion(
            document_id=doc.id,
            version_number=number,
            file_name=file_name,
            file_path=file_path,
            file_size=file_size,
            mime_type=(mime_type or "").strip() or None,
            checksum=(checksum or "").strip() or None,
        )
        try:
            with s.begin_nested():
                s.add(version)
        except IntegrityError:
            logger.warning(
                "Version number %s already taken for document_id=%s (attempt %s/%s)",
                number,
                doc.id,
                attempt,
                attempts,
            )
            continue
        return version
    raise ConflictError(f"Could not allocate a version number for document {doc.id}; retry the request.")


def add_version(
    s: Session,
    actor: "Principal",
    document_id: int,
    *,
    file_name: str,
    file_path: str,
    file_size: int,
    mime_type: str | None = None,
    checksum: str | None = None,
) -> DocumentVersion:
    authorize(actor, OperationKind.WRITE)
    return _create_version(
        s,
        actor,
        document_id,
        file_name=file_name,
        file_path=file_path,
        file_size=file_size,
        mime_type=mime_type,
        checksum=checksum,
    )


def _create_version(
    s: Session,
    actor: "Principal",
    document_id: int,
    *,
    file_name: str,
    file_path: str,
    file_size: int,
    mime_type: str | None,
    checksum: str | None,
    entries: Mapping[str, str | None] | None = None,
) -> DocumentVersion:
    # metadata imports this module.
    from app.docvault.modules.documents.metadata import upsert_entry

    file_name, file_path, file_size = validate_file_attributes(file_name, file_path, file_size)
    entries = dict(entries or {})

    with atomic(s):
        doc = lock_document(s, document_id)
        version = append_version(
            s,
            doc,
            file_name=file_name,
            file_path=file_path,
            file_size=file_size,
            mime_type=mime_type,
            checksum=checksum,
        )
        for k, v in entries.items():
            upsert_entry(s, doc.id, k, v)
        details: dict[str, Any] = {"file_name": version.file_name, "file_size": version.file_size}
        if entries:
            details["metadata_keys"] = sorted(entries)
        record_event(
            s,
            actor=actor,
            action=AuditAction.CREATE_VERSION,
            document_id=doc.id,
            document_version=version.version_number,
            metadata=details,
        )

    logger.info("Created version %s of document_id=%s", version.version_number, document_id)
    return version


def upload_version(
    s: Session,
    actor: "Principal",
    document_id: int,
    *,
    storage: Storage,
    file_name: str,
    data: bytes,
    mime_type: str | None = None,
    metadata: Mapping[str, Any] | None = None,
) -> DocumentVersion:
    """
    Store the bytes, then append them as the document's next version.
    ``metadata`` entries are upserted in the same transaction.
    """
    from app.docvault.modules.documents.metadata import normalize_key, normalize_value

    authorize(actor, OperationKind.WRITE)
    key, sha256, size = content_key(data)
    validate_file_attributes(file_name, key, size)
    entries = {normalize_key(k): normalize_value(v) for k, v in (metadata or {}).items()}
    storage.put_bytes(key, data, content_type=mime_type)
    return _create_version(
        s,
        actor,
        document_id,
        file_name=file_name,
        file_path=key,
        file_size=size,
        mime_type=mime_type,
        checksum=sha256,
        entries=entries,
    )


def restore_version(
    s: Session,
    actor: "Principal",
    document_id: int,
    target_version_number: int,
) -> DocumentVersion:
    authorize(actor, OperationKind.WRITE)
    if isinstance(target_version_number, bool) or not isinstance(target_version_number, int) or target_version_number < 1:
        raise ValidationError("version number must be a positive integer.")

    with atomic(s):
        doc = lock_document(s, document_id)
        target = s.scalars(
            select(DocumentVersion).where(
                DocumentVersion.document_id == doc.id,
                DocumentVersion.version_number == target_version_number,
            )
        ).one_or_none()
        if target is None:
            raise NotFoundError(f"Version {target_version_number} of document {document_id} not found.")

        version = append_version(
            s,
            doc,
            file_name=target.file_name,
            file_path=target.file_path,
            file_size=target.file_size,
            mime_type=target.mime_type,
            checksum=target.checksum,
        )
        record_event(
            s,
            actor=actor,
            action=AuditAction.RESTORE_VERSION,
            document_id=doc.id,
            document_version=version.version_number,
            metadata={"restored_from": target.version_number, "file_name": target.file_name},
        )

    logger.info(
        "Restored version %s of document_id=%s as version %s",
        target_version_number,
        document_id,
        version.version_number,
    )
    return version


def _require_document(s: Session, document_id: int) -> None:
    if s.get(Document, document_id) is None:
        raise NotFoundError(f"Document {document_id} not found.")


def list_versions(s: Session, actor: "Principal", document_id: int) -> list[DocumentVersion]:
    authorize(actor, OperationKind.READ)
    _require_document(s, document_id)
    return list(
        s.scalars(
            select(DocumentVersion)
            .where(DocumentVersion.document_id == document_id)
            .order_by(DocumentVersion.version_number.asc())
        )
    )


def find_version(s: Session, document_id: int, version_number: int | None = None) -> DocumentVersion:
    """The given version, or the latest one when ``version_number`` is None."""
    _require_document(s, document_id)
    stmt = select(DocumentVersion).where(DocumentVersion.document_id == document_id)
    if version_number is None:
        stmt = stmt.order_by(DocumentVersion.version_number.desc()).limit(1)
    else:
        stmt = stmt.where(DocumentVersion.version_number == version_number)
    version = s.scalars(stmt).first()
    if version is None:
        if version_number is None:
            raise NotFoundError(f"Document {document_id} has no versions.")
        raise NotFoundError(f"Version {version_number} of document {document_id} not found.")
    return version


def get_version(
    s: Session,
    actor: "Principal",
    document_id: int,
    version_number: int | None = None,
) -> DocumentVersion:
    authorize(actor, OperationKind.READ)
    return find_version(s, document_id, version_number)
