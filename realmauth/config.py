from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from realmauth.logging import get_logger

logger = get_logger(__name__)

# Floors for generated secrets; shorter values are rejected at startup
MIN_VERIFICATION_TOKEN_BYTES = 150
MIN_UNIQUE_HASH_BYTES = 64
MIN_INVITE_CODE_BYTES = 16


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Immutable runtime settings, injected into every service at construction."""

    database_url: str = env_field(
        "postgresql://localhost:5432/realmauth", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/realmauth", "SHARED_FS_ROOT")
    test_mode: bool = env_field(False, "TEST_MODE")

    # Admin secret gating invite-code generation; generation is refused when unset
    admin_secret: str | None = env_field(None, "ADMIN_SECRET")

    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("realmauth", "JWT_ISSUER")
    session_ttl_minutes: int = env_field(60 * 24 * 7, "SESSION_TTL_MINUTES", gt=0)

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Realm Hunter", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")

    # Password policy
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH", ge=8)
    password_max_length: int = env_field(128, "PASSWORD_MAX_LENGTH")

    # Token sizes in random bytes
    verification_token_bytes: int = env_field(
        MIN_VERIFICATION_TOKEN_BYTES, "VERIFICATION_TOKEN_BYTES"
    )
    reset_token_bytes: int = env_field(MIN_VERIFICATION_TOKEN_BYTES, "RESET_TOKEN_BYTES")
    unique_hash_bytes: int = env_field(MIN_UNIQUE_HASH_BYTES, "UNIQUE_HASH_BYTES")
    invite_code_bytes: int = env_field(MIN_INVITE_CODE_BYTES, "INVITE_CODE_BYTES")

    # Token lifetimes
    verification_token_ttl_hours: int = env_field(24, "VERIFICATION_TOKEN_TTL_HOURS", gt=0)
    email_change_token_ttl_hours: int = env_field(24, "EMAIL_CHANGE_TOKEN_TTL_HOURS", gt=0)
    password_reset_ttl_minutes: int = env_field(120, "PASSWORD_RESET_TTL_MINUTES", gt=0)
    email_change_cooldown_days: int = env_field(7, "EMAIL_CHANGE_COOLDOWN_DAYS", ge=0)

    # Login lockout escalation
    lockout_ban_threshold: int = env_field(4, "LOCKOUT_BAN_THRESHOLD", gt=0)
    lockout_base_ban_minutes: int = env_field(30, "LOCKOUT_BASE_BAN_MINUTES", gt=0)
    lockout_ban_step_minutes: int = env_field(30, "LOCKOUT_BAN_STEP_MINUTES", ge=0)
    lockout_permanent_threshold: int = env_field(9, "LOCKOUT_PERMANENT_THRESHOLD", gt=0)

    # Invite codes
    invite_default_ttl_days: int = env_field(7, "INVITE_DEFAULT_TTL_DAYS", gt=0)
    invite_max_batch: int = env_field(1000, "INVITE_MAX_BATCH", gt=0)
    alpha_access_purpose: str = env_field("ALPHA", "ALPHA_ACCESS_PURPOSE")

    # Maintenance jobs
    maintenance_enabled: bool = env_field(True, "MAINTENANCE_ENABLED")
    maintenance_interval_seconds: int = env_field(600, "MAINTENANCE_INTERVAL_SECONDS", gt=0)

    model_config = ConfigDict(extra="ignore", frozen=True)

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

    @field_validator("verification_token_bytes", "reset_token_bytes")
    @classmethod
    def _check_long_token_size(cls, value: int) -> int:
        if value < MIN_VERIFICATION_TOKEN_BYTES:
            raise ValueError(
                f"verification and reset tokens need at least {MIN_VERIFICATION_TOKEN_BYTES} bytes"
            )
        return value

    @field_validator("unique_hash_bytes")
    @classmethod
    def _check_unique_hash_size(cls, value: int) -> int:
        if value < MIN_UNIQUE_HASH_BYTES:
            raise ValueError(f"unique hash needs at least {MIN_UNIQUE_HASH_BYTES} bytes")
        return value

    @field_validator("invite_code_bytes")
    @classmethod
    def _check_invite_code_size(cls, value: int) -> int:
        if value < MIN_INVITE_CODE_BYTES:
            raise ValueError(f"invite codes need at least {MIN_INVITE_CODE_BYTES} bytes")
        return value

    @model_validator(mode="after")
    def _check_lockout_schedule(self) -> "Settings":
        if self.lockout_permanent_threshold <= self.lockout_ban_threshold:
            raise ValueError("permanent ban threshold must exceed the temporary ban threshold")
        return self

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so session tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/realmauth"))
        secret_path = fs_root / ".jwt_secret"
        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


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
