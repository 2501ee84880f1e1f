from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from walletauth.logging import get_logger

logger = get_logger(__name__)


class AuthStrategy(str, Enum):
    """How bearer credentials on incoming requests are authenticated."""

    TOKEN = "token"
    # Fixed principal for test harnesses; refused unless TEST_MODE is on
    STATIC = "static"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _persisted_secret(filename: str) -> str:
    """Load a generated secret from SHARED_FS_ROOT, creating it on first use.

    Tokens and encrypted MFA secrets must survive restarts, so a generated value
    is written once with 0600 permissions and reused afterwards.
    """
    fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/walletauth"))
    secret_path = fs_root / filename

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different ownership (e.g. in a container)
        pass
    except OSError as exc:
        logger.warning("secret_dir_setup", error=str(exc), path=str(fs_root))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if persisted and len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=f"{filename}_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {filename}; set the secret explicitly or make SHARED_FS_ROOT writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Runtime settings read from the environment and an optional ``.env`` file."""

    database_url: str = env_field("postgresql://localhost:5432/walletauth", "DATABASE_URL")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/walletauth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviours; enables runtime resets and the static auth strategy.",
    )
    auth_strategy: AuthStrategy = env_field(AuthStrategy.TOKEN, "AUTH_STRATEGY")
    static_auth_user_id: str | None = env_field(None, "STATIC_AUTH_USER_ID")

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str = env_field(None, "JWT_REFRESH_SECRET", validate_default=True)
    jwt_issuer: str = env_field("walletauth", "JWT_ISSUER")
    jwt_audience: str = env_field("wallet-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", gt=0)
    mfa_session_ttl_minutes: int = env_field(5, "MFA_SESSION_TTL_MINUTES", gt=0)
    step_up_ttl_minutes: int = env_field(10, "STEP_UP_TTL_MINUTES", gt=0)

    # Lockout
    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD", gt=0)
    lockout_cooldown_minutes: int = env_field(30, "LOCKOUT_COOLDOWN_MINUTES", gt=0)

    # MFA
    mfa_issuer: str = env_field("DwayBank", "MFA_ISSUER")
    mfa_secret_key: str = env_field(None, "MFA_SECRET_KEY", validate_default=True)
    backup_code_pepper: str = env_field(None, "BACKUP_CODE_PEPPER", validate_default=True)
    backup_code_count: int = env_field(10, "BACKUP_CODE_COUNT", gt=0)
    totp_window: int = env_field(1, "TOTP_WINDOW", ge=0, le=2)
    mfa_challenge_limit: int = env_field(3, "MFA_CHALLENGE_LIMIT", gt=0)
    mfa_challenge_window_seconds: int = env_field(300, "MFA_CHALLENGE_WINDOW_SECONDS", gt=0)
    otp_code_ttl_minutes: int = env_field(5, "OTP_CODE_TTL_MINUTES", gt=0)
    mfa_verify_max_failures: int = env_field(5, "MFA_VERIFY_MAX_FAILURES", gt=0)
    mfa_verify_window_seconds: int = env_field(900, "MFA_VERIFY_WINDOW_SECONDS", gt=0)

    # Account policy
    require_email_verification: bool = env_field(False, "REQUIRE_EMAIL_VERIFICATION")
    risk_threshold: int = env_field(30, "RISK_THRESHOLD", gt=0)
    password_reset_ttl_minutes: int = env_field(15, "PASSWORD_RESET_TTL_MINUTES", gt=0)
    email_verification_ttl_minutes: int = env_field(24 * 60, "EMAIL_VERIFICATION_TTL_MINUTES", gt=0)

    # Rate limits (per client IP unless noted)
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    register_rate_limit_per_minute: int = env_field(5, "REGISTER_RATE_LIMIT_PER_MINUTE")
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")
    mfa_rate_limit_per_minute: int = env_field(10, "MFA_RATE_LIMIT_PER_MINUTE")
    refresh_rate_limit_per_minute: int = env_field(30, "REFRESH_RATE_LIMIT_PER_MINUTE")

    # Timeouts for I/O boundaries
    storage_timeout_seconds: float = env_field(5.0, "STORAGE_TIMEOUT_SECONDS", gt=0)
    delivery_timeout_seconds: float = env_field(5.0, "DELIVERY_TIMEOUT_SECONDS", gt=0)

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("DwayBank", "EMAIL_FROM_NAME")

    # SMS delivery (Twilio REST API)
    twilio_account_sid: str | None = env_field(None, "TWILIO_ACCOUNT_SID")
    twilio_auth_token: str | None = env_field(None, "TWILIO_AUTH_TOKEN")
    sms_from_number: str | None = env_field(None, "TWILIO_PHONE_NUMBER")
    twilio_api_base: str = env_field("https://api.twilio.com", "TWILIO_API_BASE")

    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    cors_allow_origins: str = env_field("", "CORS_ALLOW_ORIGINS")

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

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        return value or _persisted_secret(".jwt_secret")

    @field_validator("jwt_refresh_secret", mode="before")
    @classmethod
    def _ensure_refresh_secret(cls, value: str | None) -> str:
        return value or _persisted_secret(".jwt_refresh_secret")

    @field_validator("mfa_secret_key", mode="before")
    @classmethod
    def _ensure_mfa_secret_key(cls, value: str | None) -> str:
        return value or _persisted_secret(".mfa_secret")

    @field_validator("backup_code_pepper", mode="before")
    @classmethod
    def _ensure_backup_code_pepper(cls, value: str | None) -> str:
        return value or _persisted_secret(".backup_code_pepper")

    @model_validator(mode="after")
    def _check_secrets_and_strategy(self) -> "Settings":
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
        if self.auth_strategy == AuthStrategy.STATIC and not self.test_mode:
            raise ValueError("AUTH_STRATEGY=static is only allowed with TEST_MODE=true")
        return self

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]

    @property
    def sms_configured(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token and self.sms_from_number)


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
