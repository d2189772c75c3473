import json
from pathlib import Path
from typing import Annotated, Any, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

ENV_FILE = Path(__file__).resolve().parent.parent.parent / ".env"


class DatabaseSettings(BaseSettings):
    """Database settings"""

    POSTGRES_HOST: str = Field("api-db", env="POSTGRES_HOST")
    POSTGRES_USER: str = Field("postgres", env="POSTGRES_USER")
    POSTGRES_PASSWORD: str = Field("password", env="POSTGRES_PASSWORD")
    POSTGRES_DB: str = Field("devplane", env="POSTGRES_DB")
    POSTGRES_PORT: int = Field(5432, env="POSTGRES_PORT")

    @property
    def POSTGRES_URL(self) -> str:
        """Construct PostgreSQL URL from components"""
        return f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"

    @property
    def POSTGRES_URL_SYNC(self) -> str:
        """Construct synchronous PostgreSQL URL for Alembic"""
        return f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        extra="ignore",
    )


class SecuritySettings(BaseSettings):
    """Security settings"""

    ENCRYPTION_MASTER_KEY: Optional[str] = Field(
        "test_encryption_master_key", env="ENCRYPTION_MASTER_KEY"
    )

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")


def _split_csv(value: Any) -> Any:
    if isinstance(value, str):
        return tuple(item.strip() for item in value.split(",") if item.strip())
    if isinstance(value, (list, tuple)):
        return tuple(value)
    return value


class PrebuildSettings(BaseSettings):
    """Prebuild trigger policies: rate limits, incremental builds, inactivity."""

    prebuild_rate_limits: dict[str, dict[str, int]] = Field(
        default_factory=dict,
        env="PREBUILD_RATE_LIMITS",
        description=(
            "JSON mapping of clone URL (or '*') to {limit, period}; period is in "
            "seconds. Unlisted repositories fall back to the built-in default."
        ),
    )
    incremental_prebuilds_repository_passlist: Annotated[tuple[str, ...], NoDecode] = Field(
        (),
        env="INCREMENTAL_PREBUILDS_REPOSITORY_PASSLIST",
        description="Clone URLs that always get incremental prebuilds.",
    )
    inactivity_period_for_projects_days: int = Field(
        7,
        env="INACTIVITY_PERIOD_FOR_PROJECTS_DAYS",
        ge=1,
    )
    inactivity_period_for_repos_days: Optional[int] = Field(
        None,
        env="INACTIVITY_PERIOD_FOR_REPOS_DAYS",
        description="Skip prebuilds for repositories without recent workspaces. Unset disables the check.",
    )
    max_commit_history_depth: int = Field(
        100, env="MAX_COMMIT_HISTORY_DEPTH", gt=0, le=1000
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("prebuild_rate_limits", mode="before")
    @classmethod
    def _parse_rate_limits(cls, value):
        """Accept JSON strings for the rate limit mapping."""
        if value in (None, ""):
            return {}
        if isinstance(value, str):
            return json.loads(value)
        return value

    @field_validator("incremental_prebuilds_repository_passlist", mode="before")
    @classmethod
    def _split_passlist(cls, value):
        """Allow comma-delimited strings for tuple fields."""
        return _split_csv(value)


class HostSettings(BaseSettings):
    """Source hosting providers the control plane talks to."""

    github_host: str = Field("github.com", env="GITHUB_HOST")
    github_api_url: str = Field("https://api.github.com", env="GITHUB_API_URL")
    github_token: Optional[str] = Field(None, env="GITHUB_TOKEN")
    github_auth_provider_id: str = Field("Public-GitHub", env="GITHUB_AUTH_PROVIDER_ID")

    gitlab_host: str = Field("gitlab.com", env="GITLAB_HOST")
    gitlab_api_url: str = Field("https://gitlab.com/api/v4", env="GITLAB_API_URL")
    gitlab_token: Optional[str] = Field(None, env="GITLAB_TOKEN")
    gitlab_auth_provider_id: str = Field("Public-GitLab", env="GITLAB_AUTH_PROVIDER_ID")

    bitbucket_host: str = Field("bitbucket.org", env="BITBUCKET_HOST")
    bitbucket_api_url: str = Field(
        "https://api.bitbucket.org/2.0", env="BITBUCKET_API_URL"
    )
    bitbucket_token: Optional[str] = Field(None, env="BITBUCKET_TOKEN")
    bitbucket_auth_provider_id: str = Field(
        "Public-Bitbucket", env="BITBUCKET_AUTH_PROVIDER_ID"
    )

    bitbucket_server_hosts: Annotated[tuple[str, ...], NoDecode] = Field(
        (),
        env="BITBUCKET_SERVER_HOSTS",
        description="Self-hosted Bitbucket Server hostnames.",
    )
    bitbucket_server_token: Optional[str] = Field(None, env="BITBUCKET_SERVER_TOKEN")

    repository_api_timeout_seconds: float = Field(
        10.0, env="REPOSITORY_API_TIMEOUT_SECONDS", gt=0
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("bitbucket_server_hosts", mode="before")
    @classmethod
    def _split_hosts(cls, value):
        """Allow comma-delimited strings for tuple fields."""
        return _split_csv(value)


class WebhookSettings(BaseSettings):
    """Webhook receiver settings."""

    github_app_enabled: bool = Field(False, env="GITHUB_APP_ENABLED")
    github_app_webhook_secret: Optional[str] = Field(
        None, env="GITHUB_APP_WEBHOOK_SECRET"
    )
    github_app_auth_provider_id: str = Field(
        "Public-GitHub", env="GITHUB_APP_AUTH_PROVIDER_ID"
    )
    webhook_token_auth_provider_id: str = Field(
        "Gitpod",
        env="WEBHOOK_TOKEN_AUTH_PROVIDER_ID",
        description="Auth provider of the identity owning webhook secret tokens.",
    )
    gitlab_prebuild_token_scope: str = Field(
        "function:triggerPrebuild", env="GITLAB_PREBUILD_TOKEN_SCOPE"
    )
    github_enterprise_prebuild_token_scope: str = Field(
        "function:triggerPrebuild", env="GITHUB_ENTERPRISE_PREBUILD_TOKEN_SCOPE"
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("github_app_enabled", mode="before")
    @classmethod
    def _coerce_enabled(cls, value):
        from devplane.utils.env_bool import env_to_bool

        return env_to_bool(value, default=False)


class WorkspaceSettings(BaseSettings):
    """Workspace runtime and image defaults."""

    default_image: str = Field(
        "gitpod/workspace-full:latest", env="WORKSPACE_DEFAULT_IMAGE"
    )
    runtime_url: Optional[str] = Field(
        None,
        env="WORKSPACE_RUNTIME_URL",
        description="Base URL of the workspace runtime start/stop API.",
    )
    runtime_timeout_seconds: float = Field(30.0, env="WORKSPACE_RUNTIME_TIMEOUT_SECONDS")
    default_region: str = Field("default", env="WORKSPACE_DEFAULT_REGION")
    default_feature_flags: Annotated[tuple[str, ...], NoDecode] = Field(
        ("full_workspace_backup",),
        env="WORKSPACE_DEFAULT_FEATURE_FLAGS",
    )

    model_config = SettingsConfigDict(
        env_prefix="WORKSPACE_",
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("default_feature_flags", mode="before")
    @classmethod
    def _split_flags(cls, value):
        """Allow comma-delimited strings for tuple fields."""
        return _split_csv(value)


class AppSettings(BaseSettings):
    """Main application settings"""

    # Sub-models
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    prebuilds: PrebuildSettings = Field(default_factory=PrebuildSettings)
    hosts: HostSettings = Field(default_factory=HostSettings)
    webhooks: WebhookSettings = Field(default_factory=WebhookSettings)
    workspaces: WorkspaceSettings = Field(default_factory=WorkspaceSettings)

    log_level: str = Field("INFO", env="LOG_LEVEL")
    public_url: str = Field("http://localhost:5000", env="PUBLIC_URL")

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        extra="ignore",
    )


# Create a global settings instance
settings = AppSettings()
