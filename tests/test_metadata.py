from datetime import datetime

import pytest
from sqlalchemy import select

from app.docvault.errors import AuthorizationError, NotFoundError, ValidationError
from app.docvault.models import AuditAction, AuditLog
from app.docvault.modules.documents.metadata import delete_metadata, get_metadata, set_metadata
from app.docvault.modules.documents.models import DocumentMetadata
from app.docvault.modules.documents.service import create_document
from app.docvault.modules.documents.versions import add_version
from conftest import audit_count


def test_set_metadata_upserts_single_row(session, principals):
    editor = principals["editor"]
    doc = create_document(session, editor, "Doc")

    first = set_metadata(session, editor, doc.id, "owner", "alice")
    session.execute(
        DocumentMetadata.__table__.update()
        .where(DocumentMetadata.id == first.id)
        .values(created_at=datetime(2001, 2, 3))
    )
    session.commit()

    set_metadata(session, editor, doc.id, "owner", "bob")

    rows = session.scalars(
        select(DocumentMetadata).where(DocumentMetadata.document_id == doc.id).execution_options(populate_existing=True)
    ).all()
    assert len(rows) == 1
    assert rows[0].value == "bob"
    assert rows[0].created_at == datetime(2001, 2, 3)
    assert get_metadata(session, principals["viewer"], doc.id) == {"owner": "bob"}

    changes = session.scalars(
        select(AuditLog.metadata_json)
        .where(AuditLog.action == AuditAction.UPDATE_METADATA)
        .order_by(AuditLog.id.asc())
    ).all()
    assert [c["change"] for c in changes] == ["created", "updated"]
    assert changes[1]["old"] == "alice"


def test_metadata_audit_names_latest_version(session, principals):
    editor = principals["editor"]
    doc = create_document(session, editor, "Doc")
    set_metadata(session, editor, doc.id, "k", "v")
    add_version(session, editor, doc.id, file_name="a.txt", file_path="blobs/a", file_size=1)
    set_metadata(session, editor, doc.id, "k", "w")

    versions = session.scalars(
        select(AuditLog.document_version)
        .where(AuditLog.action == AuditAction.UPDATE_METADATA)
        .order_by(AuditLog.id.asc())
    ).all()
    assert versions == [None, 1]


def test_delete_absent_key_is_not_found(session, principals):
    doc = create_document(session, principals["editor"], "Doc")
    before = audit_count(session)
    with pytest.raises(NotFoundError):
        delete_metadata(session, principals["editor"], doc.id, "missing")
    assert audit_count(session) == before


def test_delete_metadata_removes_key(session, principals):
    editor = principals["editor"]
    doc = create_document(session, editor, "Doc")
    set_metadata(session, editor, doc.id, "a", "1")
    set_metadata(session, editor, doc.id, "b", None)

    delete_metadata(session, editor, doc.id, "a")

    assert get_metadata(session, principals["viewer"], doc.id) == {"b": None}
    ev = session.scalars(select(AuditLog).order_by(AuditLog.id.desc()).limit(1)).one()
    assert ev.metadata_json == {"key": "a", "old": "1", "new": None, "change": "deleted"}


@pytest.mark.parametrize("key,value", [("", "x"), ("   ", "x"), ("k" * 256, "x"), ("k", 5), ("k", {"a": 1})])
def test_set_metadata_validation(session, principals, key, value):
    doc = create_document(session, principals["editor"], "Doc")
    with pytest.raises(ValidationError):
        set_metadata(session, principals["editor"], doc.id, key, value)


def test_metadata_on_missing_document(session, principals):
    with pytest.raises(NotFoundError):
        set_metadata(session, principals["editor"], 777, "k", "v")
    with pytest.raises(NotFoundError):
        get_metadata(session, principals["viewer"], 777)


def test_viewer_cannot_write_metadata(session, principals):
    doc = create_document(session, principals["editor"], "Doc")
    with pytest.raises(AuthorizationError):
        set_metadata(session, principals["viewer"], doc.id, "k", "v")
