from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator, model_validator
from typing import Any, ClassVar
import json
import logging
from pathlib import Path
import os

logger = logging.getLogger(__name__)

# Environments where fingerprints are enforced and cookies are marked Secure.
PRODUCTION_ENVIRONMENTS = frozenset({"production", "staging"})

DEFAULT_FINGERPRINT_SECRET = "default-secret"


def _default_env_file() -> str:
    return os.getenv("ENV_FILE", str(Path(__file__).resolve().parents[2] / ".env"))


class Settings(BaseSettings):
    API_V1_STR: str = "/api/v1"

    ENVIRONMENT: str = "development"

    # Cookie signing key; also verifies legacy JWT credentials.
    SECRET_KEY: str = "fallback_secret_for_dev_only"
    ALGORITHM: str = "HS256"

    # Use an absolute path so running the app from different directories
    # (e.g., repo root or backend/) always resolves the same DB file.
    BASE_DIR: ClassVar[Path] = Path(__file__).resolve().parents[2]
    SQLALCHEMY_DATABASE_URL: str = f"sqlite:///{BASE_DIR / 'sessionguard.db'}"
    AUTO_CREATE_TABLES: bool = True

    CORS_ORIGINS: list[str] = ["http://localhost:3000"]

    LOG_LEVEL: str = "INFO"
    ENABLE_TRACING: bool = False
    ENABLE_CONSOLE_TRACING: bool = False

    # Enterprise session tier
    SESSION_FINGERPRINT_SECRET: str = DEFAULT_FINGERPRINT_SECRET
    SESSION_TIMEOUT_SECONDS: int = 3600
    CONCURRENT_SESSION_LIMIT: int = 3
    SESSION_ROTATION_INTERVAL_SECONDS: int = 300
    SESSION_COOKIE_NAME: str = "access_token"
    REFRESH_COOKIE_NAME: str = "refresh_token"
    # Optional cookie domain to scope session cookies across subdomains.
    COOKIE_DOMAIN: str = ""
    SESSION_RETENTION_HOURS: int = 24
    SESSION_CLEANUP_INTERVAL_SECONDS: int = 3600

    # Basic (idle timeout) tier
    IDLE_TIMEOUT_MINUTES: int = 30
    IDLE_TIMEOUT_PATH_PREFIXES: list[str] = []

    # Security event pipeline
    SECURITY_EVENT_BATCH_SIZE: int = 50
    SECURITY_EVENT_FLUSH_INTERVAL_SECONDS: float = 5.0
    SECURITY_EVENT_RETRY_DELAY_SECONDS: float = 1.0
    SECURITY_EVENT_RETENTION_DAYS: int = 90
    SECURITY_EVENT_CLEANUP_INTERVAL_SECONDS: int = 24 * 60 * 60

    model_config = SettingsConfigDict(
        extra="ignore",
        case_sensitive=True,
        env_file_encoding="utf-8",
    )

    @field_validator("CORS_ORIGINS", "IDLE_TIMEOUT_PATH_PREFIXES", mode="before")
    def split_list(cls, v: Any) -> list[str]:
        """Parse comma-separated or JSON list values from environment."""
        if isinstance(v, str):
            try:
                parsed = json.loads(v)
                if isinstance(parsed, list):
                    return parsed
            except json.JSONDecodeError:
                pass
            return [s.strip() for s in v.split(",") if s.strip()]
        return v

    @field_validator("ENVIRONMENT", mode="before")
    def normalize_environment(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("SESSION_FINGERPRINT_SECRET", "COOKIE_DOMAIN", mode="before")
    def strip_whitespace(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip()
        return v

    @model_validator(mode="after")
    def check_positive_limits(cls, values: "Settings") -> "Settings":
        if values.CONCURRENT_SESSION_LIMIT < 1:
            raise ValueError("CONCURRENT_SESSION_LIMIT must be at least 1")
        if values.SECURITY_EVENT_BATCH_SIZE < 1:
            raise ValueError("SECURITY_EVENT_BATCH_SIZE must be at least 1")
        return values

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT in PRODUCTION_ENVIRONMENTS

    @property
    def cookie_domain(self) -> str | None:
        return self.COOKIE_DOMAIN or None


def load_settings() -> "Settings":
    loaded = Settings(_env_file=_default_env_file())
    if loaded.is_production and loaded.SESSION_FINGERPRINT_SECRET == DEFAULT_FINGERPRINT_SECRET:
        logger.warning(
            "SESSION_FINGERPRINT_SECRET is the built-in default; set a real secret for %s",
            loaded.ENVIRONMENT,
        )
    return loaded


settings = load_settings()
