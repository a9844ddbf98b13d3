from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from yishan_auth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the admin auth service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/yishan_admin", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/yishan", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (sync Redis client, resettable runtime)",
    )
    environment: str = env_field("development", "APP_ENV")

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("yishan-admin", "JWT_ISSUER")
    jwt_audience: str = env_field("yishan-admin-clients", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(
        30, "JWT_LEEWAY_SECONDS", description="Clock skew allowance for token expiry", ge=0
    )

    access_token_ttl_seconds: int = env_field(
        24 * 60 * 60, "ACCESS_TOKEN_TTL_SECONDS", gt=0
    )
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 60 * 60, "REFRESH_TOKEN_TTL_SECONDS", gt=0
    )
    remember_me_access_token_ttl_seconds: int = env_field(
        30 * 24 * 60 * 60,
        "REMEMBER_ME_ACCESS_TOKEN_TTL_SECONDS",
        description="Access token TTL when the client asked to be remembered",
        gt=0,
    )
    remember_me_refresh_token_ttl_seconds: int = env_field(
        90 * 24 * 60 * 60,
        "REMEMBER_ME_REFRESH_TOKEN_TTL_SECONDS",
        description="Refresh token TTL when the client asked to be remembered",
        gt=0,
    )
    token_cache_ttl_seconds: int = env_field(
        3600,
        "TOKEN_CACHE_TTL_SECONDS",
        description="Upper bound for cached token records; clamped to the shorter token lifetime",
        gt=0,
    )
    menu_cache_ttl_seconds: int = env_field(300, "MENU_CACHE_TTL_SECONDS", gt=0)
    super_admin_role_id: int = env_field(1, "SUPER_ADMIN_ROLE_ID")
    max_login_failed_attempts: int = env_field(
        5,
        "MAX_LOGIN_FAILED_ATTEMPTS",
        description="Consecutive password failures before the account is locked; 0 disables",
        ge=0,
    )

    cleanup_api_key: str | None = env_field(None, "CLEANUP_API_KEY")
    token_cleanup_interval_seconds: int = env_field(
        3600,
        "TOKEN_CLEANUP_INTERVAL_SECONDS",
        description="Background expired-token sweep interval; 0 disables the sweep",
        ge=0,
    )

    cors_allow_origins: list[str] = env_field(
        ["http://localhost:8000"], "CORS_ALLOW_ORIGINS"
    )
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

    @field_validator("cleanup_api_key", mode="before")
    @classmethod
    def _blank_key_is_unset(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens stay valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/yishan"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except Exception as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
                message="Could not set directory permissions",
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except Exception as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
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
        except Exception as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    @model_validator(mode="after")
    def _clamp_token_cache_ttl(self) -> "Settings":
        # Cached token records must never outlive the shorter token lifetime
        ceiling = min(self.access_token_ttl_seconds, self.refresh_token_ttl_seconds)
        if self.token_cache_ttl_seconds > ceiling:
            self.token_cache_ttl_seconds = ceiling
        return self


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
