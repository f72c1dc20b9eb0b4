from __future__ import annotations

from functools import lru_cache
from urllib.parse import quote

from pydantic import computed_field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_WEAK_SECRETS = {
    "",
    "changeme",
    "change-me",
    "dev-change-me",
    "secret",
    "jwt-secret",
}


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "Stone Atlas API"
    app_env: str = "development"
    app_debug: bool = False
    app_host: str = "127.0.0.1"
    app_port: int = 8080
    app_log_level: str = "INFO"
    app_log_json: bool = True
    app_log_requests: bool = True
    app_docs_enabled: bool = True
    app_cors_origins: list[str] = []
    app_cors_allow_credentials: bool = True
    app_cors_allow_methods: list[str] = ["*"]
    app_cors_allow_headers: list[str] = ["*"]

    # If set, this value has priority over component-based database settings.
    database_url: str = ""

    db_host: str = "localhost"
    db_port: int = 5432
    db_name: str = "stone_atlas"
    db_user: str = "postgres"
    db_password: str = ""
    db_timezone: str = "UTC"

    # SQLAlchemy/asyncpg runtime tuning
    db_echo: bool = False
    db_pool_size: int = 10
    db_max_overflow: int = 10
    db_pool_timeout_s: int = 30
    db_pool_recycle_s: int = 1800

    # Auth/JWT
    auth_jwt_secret: str = ""
    auth_jwt_algorithm: str = "HS256"
    auth_access_token_ttl_minutes: int = 60
    auth_refresh_token_ttl_days: int = 270
    auth_rate_limit_enabled: bool = True
    auth_sign_in_rate_limit_requests: int = 10
    auth_sign_in_rate_limit_window_s: int = 60
    auth_refresh_rate_limit_requests: int = 20
    auth_refresh_rate_limit_window_s: int = 60

    # Third-party identity providers
    apple_bundle_ids: list[str] = ["com.marfodub.StoneAtlas.app"]
    apple_issuer: str = "https://appleid.apple.com"
    apple_keys_url: str = "https://appleid.apple.com/auth/keys"
    google_client_ids: list[str] = []
    google_issuers: list[str] = ["https://accounts.google.com", "accounts.google.com"]
    google_keys_url: str = "https://www.googleapis.com/oauth2/v3/certs"
    oauth_keys_cache_ttl_s: int = 3600
    oauth_http_timeout_s: float = 5.0
    oauth_clock_skew_s: int = 300

    # Username moderation. An empty key disables the check.
    openai_api_key: str = ""
    moderation_url: str = "https://api.openai.com/v1/moderations"
    moderation_model: str = "omni-moderation-latest"
    moderation_timeout_s: float = 5.0
    moderation_max_attempts: int = 3
    moderation_backoff_base_s: float = 1.0
    # Upper bound for one username check, retries included.
    moderation_deadline_s: float = 15.0

    provision_max_attempts: int = 5

    @model_validator(mode="after")
    def validate_auth_security(self) -> Settings:
        env = self.app_env.strip().lower()
        if env not in {"production", "prod"}:
            return self

        secret = self.auth_jwt_secret.strip()
        if secret.lower() in _WEAK_SECRETS:
            raise ValueError(
                "auth_jwt_secret is required in production and cannot be empty/weak."
            )
        if len(secret) < 32:
            raise ValueError(
                "auth_jwt_secret must be at least 32 characters in production."
            )
        return self

    @computed_field
    @property
    def sqlalchemy_database_url(self) -> str:
        if self.database_url.strip():
            return self.database_url
        return (
            f"postgresql+asyncpg://{quote(self.db_user, safe='')}:{quote(self.db_password, safe='')}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )

    @computed_field
    @property
    def moderation_enabled(self) -> bool:
        return bool(self.openai_api_key.strip())

    @computed_field
    @property
    def docs_url(self) -> str | None:
        return "/docs" if self.app_docs_enabled else None

    @computed_field
    @property
    def redoc_url(self) -> str | None:
        return "/redoc" if self.app_docs_enabled else None


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
