import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str

    mail_backend: str
    smtp_host: str
    smtp_port: int
    smtp_username: str
    smtp_password: str
    smtp_use_tls: bool
    mail_from: str
    canonical_web_url: str


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_bool(name: str, default: bool = False) -> bool:
    raw = _getenv(name, "1" if default else "0").lower()
    return raw in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///review.db"),
        mail_backend=_getenv("MAIL_BACKEND", "log"),
        smtp_host=_getenv("SMTP_HOST", ""),
        smtp_port=int(_getenv("SMTP_PORT", "587") or "587"),
        smtp_username=_getenv("SMTP_USERNAME", ""),
        smtp_password=_getenv("SMTP_PASSWORD", ""),
        smtp_use_tls=_getenv_bool("SMTP_USE_TLS", True),
        mail_from=_getenv("MAIL_FROM", "review@localhost"),
        canonical_web_url=_getenv("CANONICAL_WEB_URL", "http://localhost:8080/"),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "MAIL_BACKEND": s.mail_backend,
        "SMTP_HOST": s.smtp_host,
        "SMTP_PORT": s.smtp_port,
        "SMTP_USERNAME": s.smtp_username,
        "SMTP_PASSWORD": s.smtp_password,
        "SMTP_USE_TLS": s.smtp_use_tls,
        "MAIL_FROM": s.mail_from,
        "CANONICAL_WEB_URL": s.canonical_web_url,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
    }
