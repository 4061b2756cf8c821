"""Configuration from environment (no hardcoded secrets)."""

from pathlib import Path
from typing import List

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Server settings from env. One instance is passed to every component."""

    model_config = SettingsConfigDict(env_prefix="DAVBOX_", extra="ignore")

    # Complete URL of the server root; used for links and MOVE Destination parsing
    root_url: str = "http://localhost:8080/"

    # Storage: %s is replaced by the user id
    storage_path_template: str = "/data/storage/%s"
    db_path: Path = Path("/data/db.sqlite")

    enable_thumbnails: bool = True
    # Quota for newly provisioned users, in bytes. 0 = unlimited
    default_quota_bytes: int = 0
    # iOS WebDAV apps have been reported as not working
    block_ios_clients: bool = True

    # Sessions (default: 7 days)
    session_timeout_seconds: int = 60 * 60 * 24 * 7
    session_sweep_interval_seconds: int = 60 * 60
    secret_key: str = ""
    # Comma-separated keys still accepted for validation during a rotation
    previous_secret_keys: str = ""

    # Show exception details to clients (never in production)
    errors_show: bool = False

    # First admin (bootstrap)
    admin_login: str = ""
    admin_initial_password: str = ""

    cors_origins: str = "http://localhost:8080"
    rate_limit_enabled: bool = True

    # Server
    port: int = 8080

    # Logging (empty log_file = stderr only; level DEBUG|INFO|WARNING|ERROR)
    log_level: str = "INFO"
    log_file: str = ""

    @field_validator("root_url")
    @classmethod
    def _root_url_trailing_slash(cls, v: str) -> str:
        return v if v.endswith("/") else v + "/"

    @field_validator("default_quota_bytes", "session_timeout_seconds")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    @property
    def cors_origins_list(self) -> List[str]:
        """CORS origins as a list (split on comma)."""
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def signing_keys(self) -> List[str]:
        """Current secret key first, then keys still inside the rotation grace window."""
        previous = [k.strip() for k in self.previous_secret_keys.split(",") if k.strip()]
        return [self.secret_key] + [k for k in previous if k != self.secret_key]


def get_settings() -> Settings:
    """Return application settings."""
    return Settings()
