from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field


class AppSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = "FeedMaker"
    # Public URL prefix under which the feeds directory is served.
    public_base_url: str
    info_url: str = ""


class FileRotationSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    # Number of dated log files kept after midnight rotation.
    backup_count: int


class FileLoggingSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    path: str
    rotation: FileRotationSettings


class LoggingSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    level: str
    file: FileLoggingSettings


class HttpSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    timeout_seconds: float = 18.0
    connect_timeout_seconds: float = 8.0
    max_redirects: int = 5
    cache_ttl_seconds: int = 900
    max_body_bytes: int = 8 * 1024 * 1024
    multi_fetch_concurrency: int = 6
    accept: str = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
    accept_language: str = "en-US,en;q=0.9"
    # Defaults to "<app name> Bot/1.0 (+<info url>)" when empty.
    user_agent: str = ""
    # Loopback and private-network targets are refused unless enabled.
    allow_private_hosts: bool = False


class StorageSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    feeds_dir: str
    jobs_dir: str
    cache_dir: str
    refresh_log_path: str
    lock_path: str = ""


class ExtractionSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    default_limit: int = 10
    max_limit: int = 50


class RefreshSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    default_interval_seconds: int = 3600
    min_interval_seconds: int = 900
    # 0 means no limit.
    max_per_run: int = 0
    failure_alert_threshold: int = 3
    # 0 disables the purge of stale jobs.
    retention_days: int = 0
    log_max_lines: int = 500
    # Regular expressions matched against the source URL; a match lets an empty result be skipped.
    auto_allow_empty_patterns: Sequence[str] = Field(default_factory=tuple)


class AppConfig(BaseModel):
    """Effective runtime configuration after applying all precedence rules."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    app: AppSettings
    logging: LoggingSettings
    http: HttpSettings = Field(default_factory=HttpSettings)
    storage: StorageSettings
    extraction: ExtractionSettings = Field(default_factory=ExtractionSettings)
    refresh: RefreshSettings = Field(default_factory=RefreshSettings)


@dataclass(frozen=True, slots=True)
class ConfigLoadRequest:
    """Where YamlConfigLoader reads the YAML file, the .env file and prefixed environment overrides."""

    yaml_path: str = "data/config/config.yaml"
    env_prefix: str = "FEEDMAKER__"
    dotenv_path: Optional[str] = "data/.env"
