from __future__ import annotations

import logging
import os
import secrets
from dataclasses import dataclass, field
from functools import lru_cache

from dotenv import load_dotenv


load_dotenv()

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name, "")
    values = [item.strip() for item in raw.split(",") if item.strip()]
    return values or default


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./helpdesk.db"
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 7 * 24 * 60
    reset_token_expire_minutes: int = 60
    allowed_origins: list[str] = field(
        default_factory=lambda: ["http://localhost:5173", "http://127.0.0.1:5173"]
    )
    app_env: str = "development"
    log_level: str = ""
    enforce_department_scope: bool = False
    superadmin_email: str | None = None
    superadmin_password: str | None = None
    superadmin_name: str = "Super Admin"
    max_attachment_bytes: int = 10 * 1024 * 1024
    max_attachments_per_request: int = 10
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    smtp_from: str | None = None
    smtp_use_tls: bool = True
    client_url: str = "http://localhost:5173"

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def email_enabled(self) -> bool:
        return bool(self.smtp_user)


def load_settings() -> Settings:
    jwt_secret = os.getenv("JWT_SECRET", "")
    if not jwt_secret:
        jwt_secret = secrets.token_urlsafe(32)
        logger.warning("JWT_SECRET is not set; using a per-process secret, tokens will not survive restarts")

    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./helpdesk.db"),
        jwt_secret=jwt_secret,
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
        access_token_expire_minutes=int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(7 * 24 * 60))),
        reset_token_expire_minutes=int(os.getenv("RESET_TOKEN_EXPIRE_MINUTES", "60")),
        allowed_origins=_env_list(
            "ALLOWED_ORIGINS", ["http://localhost:5173", "http://127.0.0.1:5173"]
        ),
        app_env=os.getenv("APP_ENV", "development").strip().lower(),
        log_level=os.getenv("LOG_LEVEL", "").strip().upper(),
        enforce_department_scope=_env_bool("ENFORCE_DEPARTMENT_SCOPE"),
        superadmin_email=os.getenv("SUPERADMIN_EMAIL") or None,
        superadmin_password=os.getenv("SUPERADMIN_PASSWORD") or None,
        superadmin_name=os.getenv("SUPERADMIN_NAME", "Super Admin"),
        max_attachment_bytes=int(os.getenv("MAX_ATTACHMENT_BYTES", str(10 * 1024 * 1024))),
        max_attachments_per_request=int(os.getenv("MAX_ATTACHMENTS_PER_REQUEST", "10")),
        smtp_host=os.getenv("SMTP_HOST", "smtp.gmail.com"),
        smtp_port=int(os.getenv("SMTP_PORT", "587")),
        smtp_user=os.getenv("SMTP_USER") or None,
        smtp_password=os.getenv("SMTP_PASSWORD") or os.getenv("SMTP_PASS") or None,
        smtp_from=os.getenv("SMTP_FROM") or None,
        smtp_use_tls=_env_bool("SMTP_USE_TLS", default=True),
        client_url=os.getenv("CLIENT_URL", "http://localhost:5173").rstrip("/"),
    )


@lru_cache
def get_settings() -> Settings:
    return load_settings()


def configure_logging(settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    level = settings.log_level or ("INFO" if settings.is_production else "DEBUG")
    logging.basicConfig(level=level, format=LOG_FORMAT)
    # SQL echo is far too chatty at DEBUG
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
