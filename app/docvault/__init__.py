import logging
from datetime import timedelta

from flask import Flask, g, jsonify, request
from dotenv import load_dotenv

# Models first: app.docvault.models pulls in the module models at import time.
from app.docvault import models  # noqa: F401
from app.docvault.config import load_config
from app.docvault.db import init_db, teardown_db_session
from app.docvault.routes import bp as routes_bp
from app.docvault.auth import load_current_user
from app.docvault.modules.documents.api import bp as documents_bp


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    logging.basicConfig(level=app.config.get("LOG_LEVEL") or "INFO")
    app.logger.setLevel(app.config.get("LOG_LEVEL") or "INFO")

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

    # Storage health check (fail loudly on misconfiguration)
    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = []
        for key in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
            if not app.config.get(key):
                missing_s3.append(key)
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))
        else:
            from app.docvault.storage import S3Storage, StorageError, storage_from_config

            try:
                storage = storage_from_config(app.config)
                if isinstance(storage, S3Storage):
                    storage.check_bucket()
                    app.logger.info("Storage health check PASSED: S3 bucket '%s' accessible", storage.bucket)
            except StorageError as e:
                app.logger.error("STORAGE CONFIG ERROR: Cannot access S3 bucket: %s", e)

    app.register_blueprint(routes_bp)
    app.register_blueprint(documents_bp, url_prefix="/api/v1/documents")

    app.before_request(load_current_user)
    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(401)
    def _err_401(e):  # type: ignore[no-redef]
        return jsonify({"error": "unauthenticated", "message": "Sign in required."}), 401

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None)
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        return jsonify({"error": "forbidden", "message": "Permission denied.", "missing_permission": missing}), 403

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return jsonify({"error": "not_found", "message": "Not found."}), 404

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        limit_mb = (app.config.get("MAX_CONTENT_LENGTH") or 0) // (1024 * 1024)
        app.logger.info("Upload rejected: body too large (%s) limit=%sMB", request.content_length, limit_mb)
        return jsonify({"error": "payload_too_large", "message": f"File too large. Maximum size is {limit_mb}MB."}), 413

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return jsonify({"error": "internal_error", "message": "Internal server error."}), 500

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
