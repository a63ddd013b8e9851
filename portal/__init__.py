import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from flask import Flask, jsonify, request
from flask_migrate import upgrade as migrate_upgrade
from flask_wtf.csrf import CSRFError
from sqlalchemy import inspect
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from .config import INSTANCE_DIR, get_config_class
from .errors import PortalError, Unauthorized
from .extensions import csrf, db, login_manager, migrate
from .models import (
    ActivityLog,
    Asset,
    Category,
    EmailTemplate,
    Invoice,
    InvoicePayment,
    Package,
    SystemSetting,
    Ticket,
    TicketMessage,
    User,
)


def create_app(config_name: str | None = None) -> Flask:
    """Application factory that sets up extensions, config, and blueprints."""
    base_dir = Path(__file__).resolve().parent.parent
    load_dotenv(base_dir / ".env")

    app = Flask(__name__, instance_path=str(INSTANCE_DIR), instance_relative_config=True)

    app.config.from_object(get_config_class(config_name))

    if app.config.get("ENV") == "production" and app.config.get("SECRET_KEY") == "dev-insecure-key":
        raise RuntimeError("SECRET_KEY must be set via environment variables for production deployments.")

    if app.config.get("USE_PROXY_FIX"):
        app.wsgi_app = ProxyFix(  # type: ignore[attr-defined]
            app.wsgi_app,
            x_for=app.config.get("TRUSTED_PROXY_COUNT", 1),
            x_proto=app.config.get("TRUSTED_PROXY_COUNT", 1),
            x_host=app.config.get("TRUSTED_PROXY_COUNT", 1),
            x_port=app.config.get("TRUSTED_PROXY_COUNT", 1),
        )

    _configure_logging(app)

    os.makedirs(app.instance_path, exist_ok=True)

    db.init_app(app)
    migrations_dir = base_dir / "migrations"
    migrate.init_app(app, db, directory=str(migrations_dir))
    csrf.init_app(app)
    login_manager.init_app(app)
    login_manager.session_protection = "strong"

    @login_manager.unauthorized_handler
    def _on_unauthorized():
        raise Unauthorized("Authentication required.")

    @login_manager.user_loader
    def load_user(user_id: str):
        try:
            return db.session.get(User, int(user_id))
        except (TypeError, ValueError):
            return None

    from .routes import admin_bp, client_bp, dashboard_bp, main_bp, super_admin_bp
    app.register_blueprint(main_bp)
    app.register_blueprint(client_bp)
    app.register_blueprint(dashboard_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(super_admin_bp)

    from .commands import register_commands
    register_commands(app)

    with app.app_context():
        if app.config.get("RUN_DB_UPGRADE_ON_START"):
            try:
                if migrations_dir.exists() and any(migrations_dir.iterdir()):
                    migrate_upgrade(directory=str(migrations_dir))
                else:
                    app.logger.info(
                        "Skipping automatic database upgrade because the migrations directory is missing or empty."
                    )
            except Exception:
                app.logger.exception("Automatic database upgrade failed")
                raise

        # Create tables automatically when no schema exists (helps first run/local dev)
        inspector = inspect(db.engine)
        if not inspector.get_table_names():
            db.create_all()
            from .bootstrap import bootstrap_portal
            bootstrap_portal()

    @app.after_request
    def apply_security_headers(response):
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        response.headers.setdefault("Permissions-Policy", "camera=(), microphone=(), geolocation=()")
        if app.config.get("SESSION_COOKIE_SECURE") and request.is_secure:
            response.headers.setdefault("Strict-Transport-Security", "max-age=63072000; includeSubDomains")
        return response

    @app.shell_context_processor
    def shell_context():
        return {
            "db": db,
            "User": User,
            "Category": Category,
            "Package": Package,
            "Asset": Asset,
            "Ticket": Ticket,
            "TicketMessage": TicketMessage,
            "Invoice": Invoice,
            "InvoicePayment": InvoicePayment,
            "SystemSetting": SystemSetting,
            "EmailTemplate": EmailTemplate,
            "ActivityLog": ActivityLog,
        }

    @app.errorhandler(PortalError)
    def handle_portal_error(error: PortalError):
        if error.status_code >= 500:
            app.logger.warning("%s: %s", error.code, error.message)
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(CSRFError)
    def handle_csrf_error(error):
        return jsonify({"error": "csrf_failed", "message": error.description}), 403

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):
        return jsonify({"error": (error.name or "error").lower().replace(" ", "_"),
                        "message": error.description}), error.code or 500

    @app.errorhandler(Exception)
    def handle_exception(error):
        db.session.rollback()
        app.logger.exception("Unhandled server error", exc_info=error)
        return jsonify({"error": "server_error", "message": "An unexpected error occurred."}), 500

    return app


def _configure_logging(app: Flask) -> None:
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    logging.basicConfig(level=level, format=app.config.get("LOG_FORMAT"))
    app.logger.setLevel(level)
