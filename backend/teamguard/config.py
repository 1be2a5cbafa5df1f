"""Application configuration."""

import secrets
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Environment
    environment: str = "development"  # development, staging, production

    # Development mode (generates missing secrets) - MUST be False in production
    dev_mode: bool = False

    # Database (SQLite default is safe for dev; production must set a real connection string)
    database_url: str = "sqlite+aiosqlite:///./teamguard.db"

    # Database connection pool
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_recycle: int = 3600

    # Bearer tokens - NO hardcoded defaults. Production requires explicit values.
    jwt_secret_key: Optional[str] = None
    jwt_algorithm: str = "HS256"
    jwt_expiration_days: int = 7

    # Cookie transport for browser clients
    auth_cookie_name: str = "access_token"
    cookie_secure: bool = False  # Set True in production with HTTPS
    cookie_domain: str | None = None

    # Encryption of third-party credentials at rest
    credential_encryption_key: Optional[str] = None

    # Integration credential refresh policy
    credential_refresh_buffer_seconds: int = 300
    credential_max_refresh_errors: int = 3
    credential_refresh_interval_seconds: int = 60
    credential_refresh_timeout_seconds: float = 10.0

    # Revocation ledger maintenance
    revocation_purge_interval_hours: int = 24

    # strict, warn or skip; defaults to strict in production/staging, warn elsewhere
    startup_validation_level: Optional[str] = None

    # Periodic maintenance inside the API process
    background_jobs_enabled: bool = False

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    @model_validator(mode="after")
    def _set_dev_defaults(self) -> "Settings":
        """Generate random secrets in dev mode; require explicit secrets otherwise."""
        if self.dev_mode:
            if not self.jwt_secret_key:
                self.jwt_secret_key = secrets.token_hex(32)
            if not self.credential_encryption_key:
                self.credential_encryption_key = secrets.token_hex(32)
        else:
            missing = []
            if not self.jwt_secret_key:
                missing.append("JWT_SECRET_KEY")
            if not self.credential_encryption_key:
                missing.append("CREDENTIAL_ENCRYPTION_KEY")
            if missing:
                raise ValueError(f"Missing required secrets (set DEV_MODE=true for development): {', '.join(missing)}")
        return self

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"

    @property
    def is_strict_environment(self) -> bool:
        """Production-like environments where weak secrets are fatal."""
        return self.environment in ("production", "staging")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
