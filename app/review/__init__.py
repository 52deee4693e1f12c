import logging
import os
from datetime import timedelta

from flask import Flask, g, jsonify, request
from dotenv import load_dotenv

from app.review.config import load_config
from app.review.db import init_db, teardown_db_session
from app.review.mail import SmtpTransport, mail_transport_from_config
from app.review.routes import bp as routes_bp
from app.review.auth import bp as auth_bp, load_current_user
from app.review.modules.changes.admin import bp as changes_bp


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

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

    # Mail config check (log loudly on misconfiguration; abandon still works without mail)
    transport = mail_transport_from_config(app.config)
    if isinstance(transport, SmtpTransport) and not transport.host:
        app.logger.error("MAIL CONFIG ERROR: MAIL_BACKEND=smtp but SMTP_HOST is not set")
    app.extensions["mail_transport"] = transport

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(changes_bp, url_prefix="/changes")

    app.before_request(load_current_user)
    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return jsonify({"error": "internal error"}), 500

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return jsonify({"error": "not found", "path": request.path}), 404

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
