"""Configuration loading from YAML and environment.

Secrets (Bitbucket app password / API token) are taken from environment
variables or from files (Docker secrets). Never put real tokens in config
files committed to the repo.
"""

from pathlib import Path
from typing import Any

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _read_secret(env_key: str, file_env_key: str) -> str | None:
    """Read secret from env var or from file path in env (e.g. Docker
    secrets)."""
    value = _current_env.get(env_key)
    if value:
        return value.strip()
    file_path = _current_env.get(file_env_key)
    if file_path:
        return Path(file_path).read_text().strip()
    return None


# Injected by load_config so validators can read env/file
_current_env: dict[str, str] = {}


class BitbucketConfig(BaseSettings):
    """Bitbucket API credentials and workspaces to track."""

    model_config = SettingsConfigDict(env_prefix="BITBUCKET_", extra="ignore")

    username: str | None = Field(default=None, description="Bitbucket username for basic auth")
    token: str | None = Field(default=None, description="App password or API token; use env or secret file")
    api_url: str = Field(default="https://api.bitbucket.org/2.0", description="API base URL")
    workspaces: str = Field(default="", description="Comma-separated workspace slugs")
    connect_timeout: float = Field(default=5.0, gt=0, description="Connect timeout in seconds")
    timeout: float = Field(default=20.0, gt=0, description="Total read timeout in seconds")
    user_agent: str = Field(default="Hours-Sync/1.0", description="User-Agent header")

    @property
    def workspace_list(self) -> list[str]:
        """Workspace slugs with blanks removed."""
        return [w.strip() for w in self.workspaces.split(",") if w.strip()]


class StorageConfig(BaseSettings):
    """Local relational store and state directory."""

    model_config = SettingsConfigDict(env_prefix="STORAGE_", extra="ignore")

    database_url: str = Field(default="sqlite:///hours.db", description="SQLAlchemy database URL")
    state_dir: str = Field(default=".hours", description="Directory for job status, cache and queue files")


class SyncConfig(BaseSettings):
    """Fetch orchestration limits."""

    model_config = SettingsConfigDict(env_prefix="SYNC_", extra="ignore")

    max_repositories: int = Field(default=10, ge=1, description="Max repositories per refresh")
    max_repositories_per_job: int = Field(default=5, ge=1, description="Max repositories per background job")
    priority_repositories: list[str] = Field(
        default_factory=list, description="Repositories (full_name) processed first"
    )
    main_branches: list[str] = Field(
        default_factory=lambda: ["main", "master", "develop", "dev"],
        description="Branch candidates for direct commit fetch",
    )
    pr_max_pages: int = Field(default=10, ge=1, description="Max pull request pages per repository")
    pr_page_length: int = Field(default=50, ge=1, le=100, description="Pull requests per page")
    branch_max_pages: int = Field(default=2, ge=1, description="Max commit pages per branch")
    branch_page_length: int = Field(default=50, ge=1, le=100, description="Commits per page on a branch")
    stale_after_minutes: int = Field(default=30, ge=1, description="Local data older than this is stale")
    sync_time_budget: int = Field(default=110, ge=1, description="Seconds for an inline refresh")
    job_time_budget: int = Field(default=550, ge=1, description="Seconds for a background refresh job")
    branches_ttl_seconds: int = Field(default=4 * 3600, ge=0, description="Cache TTL for branch lists")


class CacheConfig(BaseSettings):
    """Response cache and job status TTLs."""

    model_config = SettingsConfigDict(env_prefix="CACHE_", extra="ignore")

    activity_ttl_minutes: int = Field(default=30, ge=0, description="TTL for cached activity responses")
    repositories_ttl_minutes: int = Field(default=60, ge=0, description="TTL for the remote repository list")
    job_ttl_minutes: int = Field(default=60, ge=1, description="TTL for refresh job status records")


class WorkerConfig(BaseSettings):
    """Background refresh worker settings."""

    model_config = SettingsConfigDict(env_prefix="WORKER_", extra="ignore")

    enabled: bool = Field(default=True, description="Queue refresh jobs for a worker instead of running inline")
    poll_interval: int = Field(default=5, ge=1, description="Seconds to wait when queue is empty")
    background_refresh: bool = Field(
        default=True, description="Queue a refresh when serving stale local data"
    )


class LoggingConfig(BaseSettings):
    """Logging settings."""

    model_config = SettingsConfigDict(env_prefix="LOGGING_", extra="ignore")

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(
        default="",
        description="Log format; empty uses the default with %(job_id)s",
    )


class AppConfig(BaseSettings):
    """Root application config from YAML + env."""

    model_config = SettingsConfigDict(extra="ignore")

    bitbucket: BitbucketConfig = Field(default_factory=BitbucketConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def bitbucket_token_resolved(self) -> str | None:
        """Resolve Bitbucket token from config, env or Docker secret file."""
        t = self.bitbucket.token
        if t and not t.startswith("${"):
            return t
        return _read_secret("BITBUCKET_TOKEN", "BITBUCKET_TOKEN_FILE")

    @property
    def bitbucket_username_resolved(self) -> str | None:
        """Resolve Bitbucket username from config or env."""
        u = self.bitbucket.username
        if u and not u.startswith("${"):
            return u
        return _read_secret("BITBUCKET_USERNAME", "BITBUCKET_USERNAME_FILE")

    @property
    def state_path(self) -> Path:
        """State directory as a Path."""
        return Path(self.storage.state_dir)


def _substitute_env(value: Any) -> Any:
    """Replace ${VAR} and $VAR in strings with os.environ."""
    if isinstance(value, str):
        if value.startswith("${") and value.endswith("}"):
            key = value[2:-1].strip()
            return _current_env.get(key, value)
        # Simple $VAR
        if value.startswith("$") and not value.startswith("${"):
            key = value[1:].strip()
            return _current_env.get(key, value)
        return value
    if isinstance(value, dict):
        return {k: _substitute_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_substitute_env(v) for v in value]
    return value


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load config from YAML file and environment.

    Secrets: BITBUCKET_TOKEN or BITBUCKET_TOKEN_FILE.
    """
    global _current_env
    import os

    _current_env = dict(os.environ)

    path = config_path or Path("config.yaml")
    if not path.is_file():
        return AppConfig()

    raw = yaml.safe_load(path.read_text()) or {}
    raw = _substitute_env(raw)

    return AppConfig(
        bitbucket=BitbucketConfig(**(raw.get("bitbucket") or {})),
        storage=StorageConfig(**(raw.get("storage") or {})),
        sync=SyncConfig(**(raw.get("sync") or {})),
        cache=CacheConfig(**(raw.get("cache") or {})),
        worker=WorkerConfig(**(raw.get("worker") or {})),
        logging=LoggingConfig(**(raw.get("logging") or {})),
    )
