import logging
import os
from datetime import timedelta

# Importing the models first registers every module table on Base.metadata.
import app.etmf.models  # noqa: F401

from flask import Flask, g, jsonify, request
from dotenv import load_dotenv

from app.etmf.config import load_config
from app.etmf.db import init_db, teardown_db_session
from app.etmf.errors import EtmfError, ValidationError
from app.etmf.routes import bp as routes_bp
from app.etmf.auth import bp as auth_bp, load_current_user
from app.etmf.roles import bp as roles_bp
from app.etmf.modules.tmf_reference.api import bp as tmf_reference_bp
from app.etmf.modules.documents.api import bp as documents_bp
from app.etmf.modules.trials.api import bp as trials_bp
from app.etmf.modules.workflows.api import bp as workflows_bp
from app.etmf.modules.milestones.api import bp as milestones_bp
from app.etmf.modules.deviations.api import bp as deviations_bp
from app.etmf.modules.esignatures.api import bp as esignatures_bp


def create_app(config_overrides: dict | None = None) -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    if config_overrides:
        app.config.update(config_overrides)
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True
    app.json.sort_keys = False

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
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    # Storage config check (fail loudly on misconfiguration)
    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [
            key
            for key in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")
            if not app.config.get(key)
        ]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    for bp in (
        tmf_reference_bp,
        documents_bp,
        trials_bp,
        workflows_bp,
        milestones_bp,
        deviations_bp,
        esignatures_bp,
        roles_bp,
    ):
        app.register_blueprint(bp, url_prefix="/api")

    app.before_request(load_current_user)
    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(EtmfError)
    def _err_etmf(e: EtmfError):
        if e.status_code >= 500:
            app.logger.error("%s: %s (request_id=%s)", e.code, e.message, getattr(g, "request_id", None))
        return jsonify(e.to_dict()), e.status_code

    def _simple(code: str, message: str, status: int):
        return jsonify({"error": code, "message": message}), status

    @app.errorhandler(400)
    def _err_400(e):
        return _simple("bad_request", getattr(e, "description", None) or "Bad request.", 400)

    @app.errorhandler(401)
    def _err_401(e):
        return _simple("unauthorized", "Login required.", 401)

    @app.errorhandler(403)
    def _err_403(e):
        missing = getattr(g, "missing_permission", None)
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        body = {"error": "forbidden", "message": "Permission denied."}
        if missing:
            body["details"] = {"missing_permission": missing}
        return jsonify(body), 403

    @app.errorhandler(404)
    def _err_404(e):
        return _simple("not_found", f"No route for {request.path}.", 404)

    @app.errorhandler(405)
    def _err_405(e):
        return _simple("method_not_allowed", f"{request.method} not allowed on {request.path}.", 405)

    @app.errorhandler(413)
    def _err_413(e):
        limit = int(app.config.get("MAX_UPLOAD_BYTES") or 0)
        err = ValidationError("Request body too large.", details={"max_bytes": limit})
        return jsonify(err.to_dict()), err.status_code

    @app.errorhandler(500)
    def _err_500(e):
        # Ensure stack trace shows in logs.
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return _simple("internal_error", "Internal server error.", 500)

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
