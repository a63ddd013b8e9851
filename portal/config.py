import os
import tempfile
from datetime import timedelta
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
INSTANCE_DIR = BASE_DIR / "instance"

# Load .env before any config values are read so os.getenv sees them
load_dotenv(BASE_DIR / ".env")


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_list(name: str, default: str) -> frozenset[str]:
    raw = os.getenv(name, default)
    return frozenset(part.strip().lower() for part in raw.split(",") if part.strip())


def _database_uri() -> str:
    explicit = os.getenv("DATABASE_URL") or os.getenv("DATABASE_URI")
    if explicit:
        # Allow the common postgres:// prefix and normalize it for SQLAlchemy
        if explicit.startswith("postgres://"):
            explicit = explicit.replace("postgres://", "postgresql://", 1)
        return explicit
    db_path = Path(os.getenv("DATABASE_PATH", str(INSTANCE_DIR / "portal.db")))
    if not db_path.is_absolute():
        db_path = (BASE_DIR / db_path).resolve()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{db_path.as_posix()}"


class BaseConfig:
    SECRET_KEY = os.getenv("SECRET_KEY") or "dev-insecure-key"
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_DATABASE_URI = _database_uri()
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": int(os.getenv("DB_POOL_RECYCLE_SECONDS", "280")),
    }
    SESSION_COOKIE_HTTPONLY = True
    REMEMBER_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = os.getenv("SESSION_COOKIE_SAMESITE", "Lax")
    REMEMBER_COOKIE_SAMESITE = os.getenv("REMEMBER_COOKIE_SAMESITE", "Lax")
    SESSION_COOKIE_SECURE = _env_bool("SESSION_COOKIE_SECURE", True)
    REMEMBER_COOKIE_SECURE = SESSION_COOKIE_SECURE
    SESSION_REFRESH_EACH_REQUEST = True
    PERMANENT_SESSION_LIFETIME = timedelta(hours=int(os.getenv("SESSION_LIFETIME_HOURS", "72")))
    WTF_CSRF_ENABLED = True
    WTF_CSRF_TIME_LIMIT = 60 * 60
    WTF_CSRF_HEADERS = ["X-CSRFToken", "X-CSRF-Token"]
    PREFERRED_URL_SCHEME = os.getenv("PREFERRED_URL_SCHEME", "https")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_FORMAT = os.getenv(
        "LOG_FORMAT",
        "%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )
    TRUSTED_PROXY_COUNT = int(os.getenv("TRUSTED_PROXY_COUNT", "0"))
    USE_PROXY_FIX = _env_bool("USE_PROXY_FIX", False)
    RUN_DB_UPGRADE_ON_START = _env_bool("RUN_DB_UPGRADE_ON_START", False)
    MAX_CONTENT_LENGTH = int(os.getenv("MAX_CONTENT_LENGTH", str(16 * 1024 * 1024)))

    # Uploads (ticket attachments, invoice PDFs)
    UPLOAD_FOLDER = os.getenv("UPLOAD_FOLDER", str(INSTANCE_DIR / "uploads"))
    ALLOWED_ATTACHMENT_EXTENSIONS = _env_list(
        "ALLOWED_ATTACHMENT_EXTENSIONS", "pdf,png,jpg,jpeg,gif,txt,log,doc,docx,xls,xlsx,csv,zip"
    )
    MAX_TICKET_ATTACHMENTS = int(os.getenv("MAX_TICKET_ATTACHMENTS", "5"))

    # Email / SMTP
    MAIL_SENDER = os.getenv("MAIL_SENDER", "no-reply@kubikportal.local")
    MAIL_SMTP_HOST = os.getenv("MAIL_SMTP_HOST")
    MAIL_SMTP_PORT = int(os.getenv("MAIL_SMTP_PORT", "587"))
    MAIL_SMTP_USERNAME = os.getenv("MAIL_SMTP_USERNAME")
    MAIL_SMTP_PASSWORD = os.getenv("MAIL_SMTP_PASSWORD")
    MAIL_USE_TLS = _env_bool("MAIL_USE_TLS", True)
    MAIL_USE_SSL = _env_bool("MAIL_USE_SSL", False)
    MAIL_TIMEOUT = int(os.getenv("MAIL_TIMEOUT_SECONDS", "20"))
    MAIL_CONSOLE_FALLBACK = _env_bool("MAIL_CONSOLE_FALLBACK", False)
    MAIL_ADMIN_RECIPIENT = os.getenv("MAIL_ADMIN_RECIPIENT")

    LOGIN_MAX_FAILURES = int(os.getenv("LOGIN_MAX_FAILURES", "10"))
    LOGIN_LOCK_MINUTES = int(os.getenv("LOGIN_LOCK_MINUTES", "15"))

    # Initial super admin, created on first start when none exists
    BOOTSTRAP_SUPERADMIN = _env_bool("BOOTSTRAP_SUPERADMIN", True)
    SUPERADMIN_EMAIL = os.getenv("SUPERADMIN_EMAIL")
    SUPERADMIN_PASSWORD = os.getenv("SUPERADMIN_PASSWORD")
    SUPERADMIN_FIRST_NAME = os.getenv("SUPERADMIN_FIRST_NAME", "Portal")
    SUPERADMIN_LAST_NAME = os.getenv("SUPERADMIN_LAST_NAME", "Admin")

    # Billing defaults until an admin saves system settings
    DEFAULT_VAT_RATE = os.getenv("DEFAULT_VAT_RATE", "24")
    DEFAULT_PAYMENT_TERMS_DAYS = int(os.getenv("DEFAULT_PAYMENT_TERMS_DAYS", "30"))
    DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "EUR")
    DEFAULT_TICKET_PRICE_WITH_PACKAGE = os.getenv("DEFAULT_TICKET_PRICE_WITH_PACKAGE", "25.00")
    DEFAULT_TICKET_PRICE_WITHOUT_PACKAGE = os.getenv("DEFAULT_TICKET_PRICE_WITHOUT_PACKAGE", "75.00")
    INVOICE_NUMBER_PREFIX = os.getenv("INVOICE_NUMBER_PREFIX", "INV")


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    ENV = "development"
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False
    RUN_DB_UPGRADE_ON_START = _env_bool("RUN_DB_UPGRADE_ON_START", True)
    MAIL_CONSOLE_FALLBACK = _env_bool("MAIL_CONSOLE_FALLBACK", True)


class ProductionConfig(BaseConfig):
    DEBUG = False
    ENV = "production"
    SESSION_COOKIE_SECURE = True
    REMEMBER_COOKIE_SECURE = True
    RUN_DB_UPGRADE_ON_START = _env_bool("RUN_DB_UPGRADE_ON_START", False)
    PREFERRED_URL_SCHEME = "https"


class TestingConfig(BaseConfig):
    TESTING = True
    ENV = "testing"
    SECRET_KEY = "testing-secret-key"
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SQLALCHEMY_ENGINE_OPTIONS: dict = {}
    WTF_CSRF_ENABLED = False
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False
    MAIL_SMTP_HOST = None
    MAIL_CONSOLE_FALLBACK = False
    BOOTSTRAP_SUPERADMIN = False
    LOGIN_MAX_FAILURES = 3
    UPLOAD_FOLDER = os.path.join(tempfile.gettempdir(), "kubikportal-test-uploads")


def get_config_class(config_name: str | None = None):
    env = (config_name or os.getenv("APP_ENV") or os.getenv("FLASK_ENV", "development")).lower()
    if env == "production":
        return ProductionConfig
    if env == "testing":
        return TestingConfig
    return DevelopmentConfig
