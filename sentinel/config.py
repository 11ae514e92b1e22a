from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from sentinel.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session and risk engine."""

    database_url: str = env_field(
        "postgresql://localhost:5432/sentinel", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/sentinel", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (in-process cache, inline defaults).",
    )

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("sentinel", "JWT_ISSUER")
    jwt_audience: str = env_field("sentinel-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS")
    revoke_link_ttl_minutes: int = env_field(60, "REVOKE_LINK_TTL_MINUTES")
    legacy_access_token_ttl_minutes: int = env_field(15, "LEGACY_ACCESS_TOKEN_TTL_MINUTES")
    legacy_refresh_token_ttl_minutes: int = env_field(
        15,
        "LEGACY_REFRESH_TOKEN_TTL_MINUTES",
        description="Lifetime of sessions synthesized for migrated legacy tokens",
    )

    # Session store
    max_active_sessions: int = env_field(
        3, "MAX_ACTIVE_SESSIONS", description="Concurrent ACTIVE sessions allowed per user"
    )
    max_retained_inactive_sessions: int = env_field(
        5,
        "MAX_RETAINED_INACTIVE_SESSIONS",
        description="Inactive/revoked sessions kept before older ones are scheduled for deletion",
    )
    inactive_retention_days: int = env_field(90, "INACTIVE_RETENTION_DAYS")
    expire_soon_hours: int = env_field(24, "EXPIRE_SOON_HOURS")
    session_cache_ttl_seconds: int = env_field(86400, "SESSION_CACHE_TTL_SECONDS")
    activity_write_interval_seconds: int = env_field(
        900,
        "ACTIVITY_WRITE_INTERVAL_SECONDS",
        description="Minimum spacing of durable lastActiveAt writes when the IP is unchanged",
    )
    session_purge_interval_seconds: int = env_field(3600, "SESSION_PURGE_INTERVAL_SECONDS")

    # Risk engine
    ip_velocity_window_seconds: int = env_field(600, "IP_VELOCITY_WINDOW_SECONDS")
    ip_velocity_threshold: int = env_field(5, "IP_VELOCITY_THRESHOLD")
    fingerprint_velocity_window_seconds: int = env_field(
        600, "FINGERPRINT_VELOCITY_WINDOW_SECONDS"
    )
    fingerprint_velocity_threshold: int = env_field(5, "FINGERPRINT_VELOCITY_THRESHOLD")
    risk_weight_ip_velocity: int = env_field(80, "RISK_WEIGHT_IP_VELOCITY")
    risk_weight_fingerprint_velocity: int = env_field(
        40, "RISK_WEIGHT_FINGERPRINT_VELOCITY"
    )
    risk_weight_new_device: int = env_field(30, "RISK_WEIGHT_NEW_DEVICE")
    risk_weight_geo_jump: int = env_field(50, "RISK_WEIGHT_GEO_JUMP")
    risk_weight_impossible_travel: int = env_field(100, "RISK_WEIGHT_IMPOSSIBLE_TRAVEL")
    risk_weight_elevated_user: int = env_field(30, "RISK_WEIGHT_ELEVATED_USER")
    user_risk_score_ceiling: int = env_field(50, "USER_RISK_SCORE_CEILING")
    challenge_threshold: int = env_field(
        40, "CHALLENGE_THRESHOLD", description="Scores strictly above this require an OTP"
    )
    impossible_travel_kmh: float = env_field(800.0, "IMPOSSIBLE_TRAVEL_KMH")
    legacy_migration_penalty: int = env_field(20, "LEGACY_MIGRATION_PENALTY")
    travel_risk_increment: int = env_field(40, "TRAVEL_RISK_INCREMENT")
    max_risk_score: int = env_field(
        100,
        "MAX_RISK_SCORE",
        description="Standing risk at or above which silent access-token renewal is refused",
    )

    # Challenge
    otp_length: int = env_field(6, "OTP_LENGTH")
    otp_ttl_seconds: int = env_field(300, "OTP_TTL_SECONDS")

    # Geo
    geo_api_url: str = env_field("https://ipinfo.io/{ip}/json", "GEO_API_URL")
    geo_timeout_seconds: float = env_field(2.0, "GEO_TIMEOUT_SECONDS")
    geo_cache_ttl_seconds: int = env_field(86400, "GEO_CACHE_TTL_SECONDS")

    # Notifier
    notifier_workers: int = env_field(2, "NOTIFIER_WORKERS")
    notifier_queue_size: int = env_field(1000, "NOTIFIER_QUEUE_SIZE")
    notifier_max_attempts: int = env_field(3, "NOTIFIER_MAX_ATTEMPTS")
    notifier_backoff_seconds: float = env_field(5.0, "NOTIFIER_BACKOFF_SECONDS")
    notifier_failure_log_size: int = env_field(50, "NOTIFIER_FAILURE_LOG_SIZE")

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Sentinel", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    super_admin_email: str | None = env_field(
        None,
        "SUPER_ADMIN_EMAIL",
        description="Account promoted to super_admin on registration",
    )

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    cookie_secure: bool = env_field(
        True, "COOKIE_SECURE", description="Set the Secure flag on token cookies"
    )
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

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
    def _split_origins(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return list(value)

    @field_validator("max_active_sessions", "otp_length", "notifier_workers", "notifier_max_attempts")
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/sentinel"))
        secret_path = fs_root / ".jwt_secret"
        try:
            fs_root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
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
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
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
