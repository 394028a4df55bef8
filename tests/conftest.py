import pytest
from sqlalchemy import func, select

from app.docvault import create_app
from app.docvault.auth import Principal
from app.docvault.db import session_scope
from app.docvault.models import AuditLog, Base, Role, User

API_KEYS = {
    "admin": "dv-test-admin",
    "editor": "dv-test-editor",
    "viewer": "dv-test-viewer",
    "nobody": "dv-test-nobody",
}

ROLES = {
    "admin": Role.ADMIN,
    "editor": Role.EDITOR,
    "viewer": Role.VIEWER,
    "nobody": Role.UNAUTHORIZED,
}


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        s.add_all(
            [User(username=name, api_key=API_KEYS[name], role=role.value) for name, role in ROLES.items()]
        )

    yield app
    engine.dispose()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def principals(app) -> dict[str, Principal]:
    with session_scope(app) as s:
        users = s.scalars(select(User)).all()
        return {u.username: Principal(user_id=str(u.id), username=u.username, role=Role(u.role)) for u in users}


@pytest.fixture()
def session(app):
    with app.app_context():
        s = app.extensions["sqlalchemy_sessionmaker"]()
        try:
            yield s
        finally:
            s.close()


@pytest.fixture()
def storage(app):
    return app.extensions["docvault_storage"]


def auth_headers(name: str) -> dict[str, str]:
    return {"X-API-Key": API_KEYS[name]}


def audit_count(s, **filters) -> int:
    stmt = select(func.count(AuditLog.id))
    for column, value in filters.items():
        stmt = stmt.where(getattr(AuditLog, column) == value)
    return s.scalar(stmt)
