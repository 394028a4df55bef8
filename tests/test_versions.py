import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import event, select
from sqlalchemy.exc import OperationalError

from app.docvault.errors import ConflictError, NotFoundError, StorageError, ValidationError
from app.docvault.models import AuditAction, AuditLog
from app.docvault.modules.documents import versions
from app.docvault.modules.documents.models import DocumentVersion
from app.docvault.modules.documents.service import create_document, download_version
from app.docvault.modules.documents.versions import (
    add_version,
    get_version,
    list_versions,
    restore_version,
    upload_version,
)
from conftest import audit_count


def _add(s, actor, doc_id, n):
    return add_version(
        s,
        actor,
        doc_id,
        file_name=f"file-v{n}.txt",
        file_path=f"blobs/xx/file-v{n}",
        file_size=100 + n,
        mime_type="text/plain",
    )


def test_versions_are_numbered_contiguously(session, principals):
    editor = principals["editor"]
    doc = create_document(session, editor, "Contract")

    numbers = [_add(session, editor, doc.id, i).version_number for i in range(1, 4)]
    assert numbers == [1, 2, 3]
    assert [v.version_number for v in list_versions(session, principals["viewer"], doc.id)] == [1, 2, 3]
    assert get_version(session, principals["viewer"], doc.id).version_number == 3
    assert get_version(session, principals["viewer"], doc.id, 2).file_name == "file-v2.txt"


def test_restore_appends_copy_and_leaves_history(session, principals):
    editor = principals["editor"]
    doc = create_document(session, editor, "Contract")
    for i in range(1, 4):
        _add(session, editor, doc.id, i)

    restored = restore_version(session, editor, doc.id, 1)
    assert restored.version_number == 4
    assert (restored.file_name, restored.file_path, restored.file_size) == ("file-v1.txt", "blobs/xx/file-v1", 101)

    v1 = get_version(session, principals["viewer"], doc.id, 1)
    assert (v1.version_number, v1.file_name) == (1, "file-v1.txt")

    ev = session.scalars(select(AuditLog).where(AuditLog.action == AuditAction.RESTORE_VERSION)).one()
    assert ev.document_version == 4
    assert ev.metadata_json["restored_from"] == 1


def test_restore_rejects_bad_targets(session, principals):
    editor = principals["editor"]
    doc = create_document(session, editor, "Contract")
    _add(session, editor, doc.id, 1)
    before = audit_count(session)

    with pytest.raises(NotFoundError):
        restore_version(session, editor, doc.id, 9)
    with pytest.raises(ValidationError):
        restore_version(session, editor, doc.id, 0)
    with pytest.raises(NotFoundError):
        restore_version(session, editor, 999, 1)
    assert audit_count(session) == before


@pytest.mark.parametrize(
    "file_name,file_path,file_size",
    [
        ("", "blobs/a", 10),
        ("a.txt", "", 10),
        ("a.txt", "blobs/a", 0),
        ("a.txt", "blobs/a", -5),
        ("a" * 256, "blobs/a", 10),
    ],
)
def test_add_version_validates_file_attributes(session, principals, file_name, file_path, file_size):
    doc = create_document(session, principals["editor"], "Doc")
    before = audit_count(session)
    with pytest.raises(ValidationError):
        add_version(
            session,
            principals["editor"],
            doc.id,
            file_name=file_name,
            file_path=file_path,
            file_size=file_size,
        )
    assert list_versions(session, principals["viewer"], doc.id) == []
    assert audit_count(session) == before


def test_add_version_to_missing_document(session, principals):
    with pytest.raises(NotFoundError):
        _add(session, principals["editor"], 404, 1)


def test_concurrent_adds_get_unique_contiguous_numbers(app, principals):
    sm = app.extensions["sqlalchemy_sessionmaker"]
    editor = principals["editor"]
    with sm() as s:
        doc_id = create_document(s, editor, "Busy").id

    workers = 8

    def worker(n):
        with sm() as s:
            return _add(s, editor, doc_id, n).version_number

    with ThreadPoolExecutor(max_workers=workers) as pool:
        numbers = list(pool.map(worker, range(1, workers + 1)))

    assert sorted(numbers) == list(range(1, workers + 1))
    with sm() as s:
        stored = s.scalars(
            select(DocumentVersion.version_number).where(DocumentVersion.document_id == doc_id)
        ).all()
        assert sorted(stored) == list(range(1, workers + 1))
        events = s.scalars(select(AuditLog).where(AuditLog.action == AuditAction.CREATE_VERSION)).all()
        assert sorted(ev.document_version for ev in events) == list(range(1, workers + 1))


def test_two_writers_at_version_two_get_three_and_four(app, principals):
    sm = app.extensions["sqlalchemy_sessionmaker"]
    editor = principals["editor"]
    with sm() as s:
        doc_id = create_document(s, editor, "Pair").id
        _add(s, editor, doc_id, 1)
        _add(s, editor, doc_id, 2)

    barrier = threading.Barrier(2)

    def worker(n):
        barrier.wait()
        with sm() as s:
            return _add(s, editor, doc_id, n).version_number

    with ThreadPoolExecutor(max_workers=2) as pool:
        numbers = list(pool.map(worker, (3, 4)))

    assert sorted(numbers) == [3, 4]


def test_exhausted_allocation_raises_conflict(session, principals, monkeypatch):
    editor = principals["editor"]
    doc = create_document(session, editor, "Doc")
    _add(session, editor, doc.id, 1)
    before = audit_count(session)

    # Every attempt collides with the existing version 1.
    monkeypatch.setattr(versions, "latest_version_number", lambda s, document_id: 0)

    with pytest.raises(ConflictError):
        _add(session, editor, doc.id, 2)

    monkeypatch.undo()
    assert [v.version_number for v in list_versions(session, principals["viewer"], doc.id)] == [1]
    assert audit_count(session) == before


def test_upload_version_stores_content_addressed_blob(session, principals, storage):
    editor = principals["editor"]
    doc = create_document(session, editor, "Report")

    v1 = upload_version(session, editor, doc.id, storage=storage, file_name="r.txt", data=b"same bytes")
    v2 = upload_version(session, editor, doc.id, storage=storage, file_name="r2.txt", data=b"same bytes")

    assert (v1.version_number, v2.version_number) == (1, 2)
    assert v1.file_path == v2.file_path
    assert v1.checksum == v2.checksum and len(v1.checksum) == 64
    assert v1.file_size == len(b"same bytes")
    assert storage.exists(v1.file_path)


def test_upload_empty_file_is_rejected(session, principals, storage):
    doc = create_document(session, principals["editor"], "Report")
    with pytest.raises(ValidationError):
        upload_version(session, principals["editor"], doc.id, storage=storage, file_name="e.txt", data=b"")


def test_download_records_version_served(session, principals, storage):
    editor = principals["editor"]
    doc = create_document(session, editor, "Report")
    upload_version(session, editor, doc.id, storage=storage, file_name="a.txt", data=b"first")
    upload_version(session, editor, doc.id, storage=storage, file_name="b.txt", data=b"second")

    version, fobj = download_version(session, principals["viewer"], doc.id, storage=storage)
    with fobj:
        assert fobj.read() == b"second"
    assert version.version_number == 2

    version, fobj = download_version(session, principals["viewer"], doc.id, storage=storage, version_number=1)
    with fobj:
        assert fobj.read() == b"first"

    served = session.scalars(
        select(AuditLog.document_version)
        .where(AuditLog.action == AuditAction.DOWNLOAD)
        .order_by(AuditLog.id.asc())
    ).all()
    assert served == [2, 1]


def test_download_of_missing_blob_is_not_audited(session, principals, storage):
    editor = principals["editor"]
    doc = create_document(session, editor, "Ghost")
    _add(session, editor, doc.id, 1)

    with pytest.raises(StorageError):
        download_version(session, principals["viewer"], doc.id, storage=storage)
    assert audit_count(session, action=AuditAction.DOWNLOAD) == 0


def test_collision_is_retried_with_the_next_number(session, principals, monkeypatch):
    editor = principals["editor"]
    doc = create_document(session, editor, "Doc")
    _add(session, editor, doc.id, 1)
    _add(session, editor, doc.id, 2)

    real = versions.latest_version_number
    calls = []

    def stale_then_real(s, document_id):
        calls.append(document_id)
        # The first read is stale, as if another writer slipped in.
        return 0 if len(calls) == 1 else real(s, document_id)

    monkeypatch.setattr(versions, "latest_version_number", stale_then_real)
    version = _add(session, editor, doc.id, 3)
    monkeypatch.undo()

    assert version.version_number == 3
    assert len(calls) == 2
    assert [v.version_number for v in list_versions(session, principals["viewer"], doc.id)] == [1, 2, 3]
    created = session.scalars(
        select(AuditLog.document_version).where(
            AuditLog.action == AuditAction.CREATE_VERSION, AuditLog.document_id == doc.id
        )
    ).all()
    assert sorted(created) == [1, 2, 3]


class _TrackingStorage:
    def __init__(self, inner):
        self.inner = inner
        self.opened = []

    def open(self, key):
        fobj = self.inner.open(key)
        self.opened.append(fobj)
        return fobj


def test_failed_download_commit_closes_the_blob(session, principals, storage):
    editor = principals["editor"]
    doc = create_document(session, editor, "Report")
    upload_version(session, editor, doc.id, storage=storage, file_name="a.txt", data=b"payload")
    tracking = _TrackingStorage(storage)

    def _fail(sess):
        if tracking.opened:
            raise OperationalError("COMMIT", {}, Exception("disk I/O error"))

    event.listen(session, "before_commit", _fail)
    try:
        with pytest.raises(StorageError):
            download_version(session, principals["viewer"], doc.id, storage=tracking)
    finally:
        event.remove(session, "before_commit", _fail)

    assert len(tracking.opened) == 1
    assert tracking.opened[0].closed
    assert audit_count(session, action=AuditAction.DOWNLOAD) == 0
