"""Application settings and configuration.

This module defines all configuration options for the CID portal security core.
Settings are loaded from environment variables (or a ``.env`` file) with
defaults suitable for a production deployment.
"""

from __future__ import annotations

import secrets
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _split_csv(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Every field can be overridden through its upper-case alias. Tests build
    isolated instances with keyword arguments (``populate_by_name`` is on).
    """

    # Application metadata
    app_name: str = Field(default="CID Portal", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    environment: str = Field(default="production", alias="NODE_ENV")
    debug: bool = Field(default=False, alias="DEBUG")

    # Database configuration
    database_url: str = Field(default="sqlite:///./cid_portal.db", alias="DATABASE_URL")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")

    # Shared state backend for sessions, CAPTCHA challenges, lockouts and nonces
    store_backend: str = Field(default="memory", alias="STORE_BACKEND")
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    # Sessions
    session_secret: str = Field(
        default_factory=lambda: secrets.token_hex(32),
        alias="SESSION_SECRET",
    )
    session_cookie_name: str = Field(default="cid.session.id", alias="SESSION_COOKIE_NAME")
    session_timeout_seconds: int = Field(default=20 * 60, alias="SESSION_TIMEOUT_SECONDS")
    session_warning_seconds: int = Field(default=15 * 60, alias="SESSION_WARNING_SECONDS")
    session_blacklist_retention_seconds: int = Field(
        default=24 * 60 * 60,
        alias="SESSION_BLACKLIST_RETENTION_SECONDS",
    )
    strict_session_binding: bool | None = Field(default=None, alias="STRICT_SESSION_BINDING")

    # Cookies
    allow_insecure_cookies: bool = Field(default=False, alias="ALLOW_INSECURE_COOKIES")
    cookie_samesite: str = Field(default="lax", alias="COOKIE_SAMESITE")
    cookie_domain: str | None = Field(default=None, alias="COOKIE_DOMAIN")
    cookie_path: str = Field(default="/", alias="COOKIE_PATH")

    # Request gatekeeping
    trusted_hosts: str = Field(default="", alias="TRUSTED_HOSTS")
    cors_allowed_origins: str = Field(default="", alias="CORS_ALLOWED_ORIGINS")
    allow_http_sessions: bool = Field(default=False, alias="ALLOW_HTTP_SESSIONS")
    trust_proxy: bool = Field(default=True, alias="TRUST_PROXY")

    # Credential transport
    enable_password_encryption: bool = Field(default=True, alias="ENABLE_PASSWORD_ENCRYPTION")
    keys_dir: str = Field(default=".keys", alias="KEYS_DIR")
    credential_max_age_seconds: int = Field(default=300, alias="CREDENTIAL_MAX_AGE_SECONDS")
    password_iterations: int = Field(default=100_000, alias="PASSWORD_ITERATIONS")

    # CAPTCHA
    captcha_ttl_seconds: int = Field(default=180, alias="CAPTCHA_TTL_SECONDS")
    captcha_max_attempts: int = Field(default=3, alias="CAPTCHA_MAX_ATTEMPTS")
    captcha_rate_limit: int = Field(default=100, alias="CAPTCHA_RATE_LIMIT")
    captcha_rate_window_seconds: int = Field(default=15 * 60, alias="CAPTCHA_RATE_WINDOW_SECONDS")

    # Account lockout
    max_login_attempts: int = Field(default=5, alias="MAX_LOGIN_ATTEMPTS")
    lockout_seconds: int = Field(default=15 * 60, alias="LOCKOUT_SECONDS")
    auth_record_retention_days: int = Field(default=30, alias="AUTH_RECORD_RETENTION_DAYS")

    # Audit logging
    log_dir: str = Field(default="logs", alias="LOG_DIR")
    audit_log_path: str | None = Field(default=None, alias="AUDIT_LOG_PATH")
    security_log_path: str | None = Field(default=None, alias="SECURITY_LOG_PATH")
    auth_log_path: str | None = Field(default=None, alias="AUTH_LOG_PATH")
    audit_number_file: str | None = Field(default=None, alias="AUDIT_NUMBER_FILE")
    report_path: str | None = Field(default=None, alias="REPORT_PATH")
    max_log_size_bytes: int = Field(default=10 * 1024 * 1024, alias="MAX_LOG_SIZE_BYTES")
    max_log_files: int = Field(default=10, alias="MAX_LOG_FILES")
    weekly_report_enabled: bool = Field(default=True, alias="WEEKLY_REPORT_ENABLED")

    # Uploads
    upload_dir: str = Field(default="uploads", alias="UPLOAD_DIR")
    uploads_per_hour: int = Field(default=10, alias="UPLOADS_PER_HOUR")

    # Maintenance intervals
    session_sweep_interval_seconds: float = Field(default=120.0, alias="SESSION_SWEEP_INTERVAL")
    captcha_sweep_interval_seconds: float = Field(default=120.0, alias="CAPTCHA_SWEEP_INTERVAL")
    nonce_sweep_interval_seconds: float = Field(default=60.0, alias="NONCE_SWEEP_INTERVAL")
    lockout_sweep_interval_seconds: float = Field(default=3600.0, alias="LOCKOUT_SWEEP_INTERVAL")
    log_rotation_interval_seconds: float = Field(default=86_400.0, alias="LOG_ROTATION_INTERVAL")
    weekly_report_interval_seconds: float = Field(
        default=7 * 86_400.0,
        alias="WEEKLY_REPORT_INTERVAL",
    )
    maintenance_enabled: bool = Field(default=True, alias="MAINTENANCE_ENABLED")

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"

    @property
    def strict_binding(self) -> bool:
        """Return whether sessions are pinned to their IP and User-Agent.

        Unset means "production only", matching the behaviour operators
        already rely on. An explicit value always wins.
        """
        if self.strict_session_binding is not None:
            return self.strict_session_binding
        return self.is_production

    @property
    def trusted_host_additions(self) -> list[str]:
        return _split_csv(self.trusted_hosts)

    @property
    def cors_origin_additions(self) -> list[str]:
        return _split_csv(self.cors_allowed_origins)

    @property
    def audit_paths(self) -> dict[str, Path]:
        """Return the resolved locations of every audit artefact.

        Returns:
            Mapping with ``audit``, ``security``, ``auth``, ``counter`` and
            ``reports`` entries.
        """
        base = Path(self.log_dir)
        return {
            "audit": Path(self.audit_log_path) if self.audit_log_path else base / "audit.log",
            "security": (
                Path(self.security_log_path) if self.security_log_path else base / "security.log"
            ),
            "auth": Path(self.auth_log_path) if self.auth_log_path else base / "auth.log",
            "counter": (
                Path(self.audit_number_file)
                if self.audit_number_file
                else base / "audit_number.txt"
            ),
            "reports": Path(self.report_path) if self.report_path else base / "reports",
        }


settings = Settings()
