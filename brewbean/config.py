from __future__ import annotations

import contextlib
import os
import secrets
import tempfile
from pathlib import Path
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from brewbean.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service, read from the environment and ``.env``."""

    database_url: str = env_field(
        "postgresql://localhost:5432/brewbean", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/brewbean", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow in-process fallbacks and runtime resets for the test suite.",
    )

    # Tokens
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("brewbean-api", "JWT_ISSUER")
    jwt_audience: str = env_field("brewbean-client", "JWT_AUDIENCE")
    token_ttl_days: int = env_field(7, "TOKEN_TTL_DAYS")
    remember_me_ttl_days: int = env_field(
        30,
        "REMEMBER_ME_TTL_DAYS",
        description="Token lifetime with rememberMe; also bounds how long ledger entries are kept.",
    )

    # Account security
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS")
    lockout_minutes: int = env_field(30, "LOCKOUT_MINUTES")
    otp_ttl_minutes: int = env_field(10, "OTP_TTL_MINUTES")
    max_otp_attempts: int = env_field(3, "MAX_OTP_ATTEMPTS")
    reset_token_ttl_minutes: int = env_field(60, "RESET_TOKEN_TTL_MINUTES")
    max_active_sessions: int = env_field(5, "MAX_ACTIVE_SESSIONS")
    auth_cleanup_interval_seconds: int = env_field(
        900,
        "AUTH_CLEANUP_INTERVAL_SECONDS",
        description="How often the background sweep purges expired OTP, reset and ledger state.",
    )

    # Rate limits: requests allowed per window (windows are fixed per endpoint)
    register_rate_limit: int = env_field(5, "REGISTER_RATE_LIMIT")
    login_rate_limit: int = env_field(8, "LOGIN_RATE_LIMIT")
    forgot_password_rate_limit: int = env_field(3, "FORGOT_PASSWORD_RATE_LIMIT")
    verify_otp_rate_limit: int = env_field(2, "VERIFY_OTP_RATE_LIMIT")
    reset_password_rate_limit: int = env_field(5, "RESET_PASSWORD_RATE_LIMIT")
    change_password_rate_limit: int = env_field(5, "CHANGE_PASSWORD_RATE_LIMIT")
    logout_rate_limit: int = env_field(10, "LOGOUT_RATE_LIMIT")
    logout_all_rate_limit: int = env_field(5, "LOGOUT_ALL_RATE_LIMIT")
    profile_rate_limit: int = env_field(50, "PROFILE_RATE_LIMIT")
    update_profile_rate_limit: int = env_field(10, "UPDATE_PROFILE_RATE_LIMIT")

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field("noreply@brewbean.com", "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Brew&Bean Coffee", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    # HTTP
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator(
        "token_ttl_days",
        "remember_me_ttl_days",
        "max_login_attempts",
        "lockout_minutes",
        "otp_ttl_minutes",
        "max_otp_attempts",
        "reset_token_ttl_minutes",
        "max_active_sessions",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Tokens must survive restarts, so a generated secret is kept on disk
        root = Path(os.getenv("SHARED_FS_ROOT", "/srv/brewbean"))
        return _load_or_create_secret(root / JWT_SECRET_FILENAME)


JWT_SECRET_FILENAME = ".jwt_secret"
MIN_SECRET_LENGTH = 32


def _read_secret(path: Path) -> str | None:
    if path.is_symlink() or not path.is_file():
        return None
    try:
        secret = path.read_text().strip()
    except OSError as exc:
        logger.error("jwt_secret_unreadable", error=str(exc), path=str(path))
        return None
    return secret if len(secret) >= MIN_SECRET_LENGTH else None


def _load_or_create_secret(path: Path) -> str:
    """Return the secret stored at ``path``, creating it (mode 0600) when absent."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        os.chmod(path.parent, 0o700)
    except OSError as exc:
        # Pre-existing mounts may belong to another user
        logger.warning("jwt_secret_dir_permissions", error=str(exc), path=str(path.parent))

    existing = _read_secret(path)
    if existing:
        return existing

    secret = secrets.token_urlsafe(64)
    fd, staging = tempfile.mkstemp(dir=str(path.parent), prefix=f"{path.name}.", suffix=".new")
    try:
        with os.fdopen(fd, "w") as handle:
            os.fchmod(handle.fileno(), 0o600)
            handle.write(secret)
        os.replace(staging, path)
    except OSError as exc:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(staging)
        logger.error("jwt_secret_write_failed", error=str(exc), path=str(path))
        raise RuntimeError(
            f"cannot store a generated JWT secret in {path.parent}; "
            "set JWT_SECRET or make SHARED_FS_ROOT writable"
        ) from exc
    logger.info("jwt_secret_generated", path=str(path))
    return secret


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
