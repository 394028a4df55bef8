import logging
import uuid

from dotenv import load_dotenv
from flask import Flask, g, request
from werkzeug.exceptions import HTTPException

from app.docvault.auth import PrincipalResolver, SqlPrincipalResolver
from app.docvault.config import load_config
from app.docvault.db import init_db, teardown_db_session
from app.docvault.errors import DocVaultError
from app.docvault.modules.documents.api import bp as documents_bp
from app.docvault.modules.folders.api import bp as folders_bp
from app.docvault.routes import bp as routes_bp
from app.docvault.storage import S3Storage, Storage, storage_from_config


def create_app(
    principal_resolver: PrincipalResolver | None = None,
    storage: Storage | None = None,
) -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())

    logging.basicConfig(
        level=app.config.get("LOG_LEVEL") or "INFO",
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        import os

        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    if principal_resolver is None:
        principal_resolver = SqlPrincipalResolver(app.extensions["sqlalchemy_sessionmaker"])
    app.extensions["principal_resolver"] = principal_resolver

    if storage is None:
        # Storage health check (fail loudly on misconfiguration)
        if app.config.get("STORAGE_BACKEND") == "s3":
            missing_s3 = [
                key
                for key in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")
                if not app.config.get(key)
            ]
            if missing_s3:
                app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))
        storage = storage_from_config(app.config)
        if isinstance(storage, S3Storage):
            app.logger.info("Using S3 storage bucket '%s'", storage.bucket)
    app.extensions["docvault_storage"] = storage

    app.register_blueprint(routes_bp)
    app.register_blueprint(documents_bp)
    app.register_blueprint(folders_bp)

    @app.before_request
    def _assign_request_id():
        g.request_id = (request.headers.get("X-Request-ID") or "").strip() or uuid.uuid4().hex

    @app.after_request
    def _echo_request_id(response):
        rid = getattr(g, "request_id", None)
        if rid:
            response.headers["X-Request-ID"] = rid
        return response

    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(DocVaultError)
    def _err_docvault(e: DocVaultError):  # type: ignore[no-redef]
        if e.status_code >= 500:
            app.logger.error("%s error (request_id=%s): %s", e.kind, getattr(g, "request_id", None), e.message)
        return {"error": e.to_dict()}, e.status_code

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        limit_mb = int(app.config.get("MAX_CONTENT_LENGTH") or 0) // (1024 * 1024)
        return {"error": {"kind": "validation", "message": f"File too large. Maximum size is {limit_mb}MB."}}, 413

    @app.errorhandler(HTTPException)
    def _err_http(e: HTTPException):  # type: ignore[no-redef]
        return {"error": {"kind": "http", "message": e.description}}, e.code

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        # Ensure stack trace shows in logs.
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return {"error": {"kind": "internal", "message": "Internal server error."}}, 500

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
