from __future__ import annotations

import logging
from collections.abc import Iterator
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.docvault.db import iter_batches
from app.docvault.errors import StorageError, ValidationError
from app.docvault.models import AuditAction, AuditLog
from app.docvault.rbac import OperationKind, authorize

if TYPE_CHECKING:
    from app.docvault.auth import Principal

logger = logging.getLogger(__name__)


def record_event(
    s: Session,
    *,
    actor: "Principal",
    action: AuditAction,
    document_id: int | None = None,
    document_version: int | None = None,
    metadata: dict[str, Any] | None = None,
) -> AuditLog:
    """
    Append-only audit helper. Runs inside the caller's transaction and flushes
    immediately, so a failed insert aborts the mutation it documents.
    """
    ev = AuditLog(
        user_id=actor.user_id,
        action=AuditAction(action),
        document_id=document_id,
        document_version=document_version,
        metadata_json=dict(metadata or {}),
    )
    try:
        s.add(ev)
        s.flush()
    except SQLAlchemyError as e:
        logger.error("Failed to insert audit log action=%s document_id=%s: %s", ev.action.value, document_id, e)
        raise StorageError("Failed to record audit entry; the change was not applied.") from e
    logger.info(
        "Audit log created user_id=%s action=%s document_id=%s document_version=%s",
        actor.user_id,
        ev.action.value,
        document_id,
        document_version,
    )
    return ev


def _coerce_action(action: AuditAction | str | None) -> AuditAction | None:
    if action is None or action == "":
        return None
    if isinstance(action, AuditAction):
        return action
    try:
        return AuditAction(str(action).strip().upper())
    except ValueError as e:
        allowed = ", ".join(a.value for a in AuditAction)
        raise ValidationError(f"Unknown audit action {action!r}. Must be one of: {allowed}") from e


def query_audit_logs(
    s: Session,
    actor: "Principal",
    *,
    user_id: str | None = None,
    action: AuditAction | str | None = None,
    document_id: int | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    offset: int = 0,
    batch_size: int = 100,
) -> Iterator[AuditLog]:
    """
    Newest-first audit rows matching every given filter. ``since`` is
    inclusive and ``until`` exclusive. The result is a lazy generator; the
    query only runs as it is consumed and nothing is ever written.
    """
    authorize(actor, OperationKind.AUDIT)
    act = _coerce_action(action)
    if offset < 0:
        raise ValidationError("offset must be >= 0.")
    if since and until and since >= until:
        raise ValidationError("since must be earlier than until.")

    stmt = select(AuditLog)
    if user_id:
        stmt = stmt.where(AuditLog.user_id == user_id)
    if act is not None:
        stmt = stmt.where(AuditLog.action == act)
    if document_id is not None:
        stmt = stmt.where(AuditLog.document_id == document_id)
    if since:
        stmt = stmt.where(AuditLog.created_at >= since)
    if until:
        stmt = stmt.where(AuditLog.created_at < until)
    stmt = stmt.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
    return iter_batches(s, stmt, batch_size=batch_size, offset=offset)
