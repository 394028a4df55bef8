from collections import Counter
from datetime import datetime, timedelta
from itertools import islice

import pytest
from sqlalchemy import event, func, select
from sqlalchemy.exc import OperationalError

from app.docvault.audit import query_audit_logs
from app.docvault.errors import StorageError, ValidationError
from app.docvault.models import AuditAction, AuditLog
from app.docvault.modules.documents.metadata import delete_metadata, set_metadata
from app.docvault.modules.documents.models import DocumentVersion
from app.docvault.modules.documents.service import create_document, delete_document, update_document
from app.docvault.modules.documents.versions import add_version, restore_version
from app.docvault.utils import parse_iso_datetime, utcnow
from conftest import audit_count


def _add(s, actor, doc_id, name="a.txt"):
    return add_version(s, actor, doc_id, file_name=name, file_path=f"blobs/{name}", file_size=3)


def test_one_row_per_mutation(session, principals):
    editor, admin = principals["editor"], principals["admin"]
    doc = create_document(session, editor, "Doc")
    _add(session, editor, doc.id)
    _add(session, editor, doc.id, "b.txt")
    restore_version(session, editor, doc.id, 1)
    set_metadata(session, editor, doc.id, "k", "v")
    delete_metadata(session, editor, doc.id, "k")
    update_document(session, editor, doc.id, {"title": "Doc 2"})
    delete_document(session, admin, doc.id)

    counts = Counter(session.scalars(select(AuditLog.action)).all())
    assert counts == Counter(
        {
            AuditAction.UPLOAD: 1,
            AuditAction.CREATE_VERSION: 2,
            AuditAction.RESTORE_VERSION: 1,
            AuditAction.UPDATE_METADATA: 3,
            AuditAction.DELETE: 1,
        }
    )


def test_audit_failure_aborts_the_mutation(session, principals):
    editor = principals["editor"]
    doc = create_document(session, editor, "Doc")
    before = audit_count(session)

    def _fail(mapper, connection, target):
        raise OperationalError("INSERT INTO audit_logs", {}, Exception("disk I/O error"))

    event.listen(AuditLog, "before_insert", _fail)
    try:
        with pytest.raises(StorageError):
            _add(session, editor, doc.id)
    finally:
        event.remove(AuditLog, "before_insert", _fail)

    assert session.scalar(select(func.count(DocumentVersion.id))) == 0
    assert audit_count(session) == before

    # Nothing was burned: the next version is still 1.
    assert _add(session, editor, doc.id).version_number == 1


def test_query_filters(session, principals):
    editor, admin = principals["editor"], principals["admin"]
    d1 = create_document(session, editor, "One")
    d2 = create_document(session, admin, "Two")
    _add(session, editor, d1.id)
    set_metadata(session, admin, d2.id, "k", "v")

    by_user = list(query_audit_logs(session, admin, user_id=editor.user_id))
    assert {ev.user_id for ev in by_user} == {editor.user_id}
    assert len(by_user) == 2

    by_action = list(query_audit_logs(session, admin, action="create_version"))
    assert [(ev.action, ev.document_id) for ev in by_action] == [(AuditAction.CREATE_VERSION, d1.id)]

    by_doc = list(query_audit_logs(session, admin, document_id=d2.id))
    assert [ev.action for ev in by_doc] == [AuditAction.UPDATE_METADATA, AuditAction.UPLOAD]

    combined = list(query_audit_logs(session, admin, user_id=admin.user_id, action=AuditAction.UPLOAD))
    assert [ev.document_id for ev in combined] == [d2.id]


def test_query_time_window(session, principals):
    admin = principals["admin"]
    doc = create_document(session, admin, "Doc")
    session.execute(AuditLog.__table__.update().values(created_at=datetime(2020, 1, 1, 12, 0)))
    session.commit()
    _add(session, admin, doc.id)

    old = list(query_audit_logs(session, admin, since=datetime(2020, 1, 1), until=datetime(2020, 1, 2)))
    assert [ev.action for ev in old] == [AuditAction.UPLOAD]

    recent = list(query_audit_logs(session, admin, since=utcnow() - timedelta(days=1)))
    assert [ev.action for ev in recent] == [AuditAction.CREATE_VERSION]

    with pytest.raises(ValidationError):
        query_audit_logs(session, admin, since=datetime(2020, 1, 2), until=datetime(2020, 1, 1))


def test_query_is_newest_first_and_paginates(session, principals):
    admin = principals["admin"]
    doc = create_document(session, admin, "Doc")
    for i in range(6):
        set_metadata(session, admin, doc.id, f"k{i}", str(i))

    all_ids = [ev.id for ev in query_audit_logs(session, admin, batch_size=2)]
    assert len(all_ids) == 7
    assert all_ids == sorted(all_ids, reverse=True)

    page = [ev.id for ev in islice(query_audit_logs(session, admin, offset=2, batch_size=3), 3)]
    assert page == all_ids[2:5]


def test_query_is_read_only_and_lazy(session, principals):
    admin = principals["admin"]
    create_document(session, admin, "Doc")
    before = audit_count(session)

    rows = query_audit_logs(session, admin)
    assert audit_count(session) == before
    assert len(list(rows)) == before
    assert audit_count(session) == before


def test_query_rejects_unknown_action(session, principals):
    with pytest.raises(ValidationError):
        query_audit_logs(session, principals["admin"], action="EXPLODE")
    with pytest.raises(ValidationError):
        query_audit_logs(session, principals["admin"], offset=-1)


def test_parse_iso_datetime_normalises_to_naive_utc():
    assert parse_iso_datetime("2020-01-01T00:00:00Z") == datetime(2020, 1, 1)
    assert parse_iso_datetime("2020-01-01T02:30:00+02:30") == datetime(2020, 1, 1)
    assert parse_iso_datetime(" 2020-01-01T00:00:00 ") == datetime(2020, 1, 1)
    assert parse_iso_datetime("  ") is None
    with pytest.raises(ValueError):
        parse_iso_datetime("yesterday")
