from __future__ import annotations

import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Mapping, MutableMapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from croniter import CroniterBadCronError, croniter
from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator

from .github.api import DEFAULT_API_URL

DEFAULT_TOKEN_ENV = "GITHUB_TOKEN"
DEFAULT_MAX_RETRIES = 10
DEFAULT_RETRY_DELAY_SECONDS = 10.0

# Environment variable -> dotted path inside the configuration document.
ENV_OVERRIDES: Dict[str, str] = {
    "GITHUB_API_URL": "github.api_url",
    "BACKUP_LOCATION": "storage.backup_root",
    "TEMP_LOCATION": "storage.staging_root",
    "INTERVAL": "scheduler.interval_seconds",
    "SCHEDULE_CRON": "scheduler.cron",
    "BACKUPS": "retention_limit",
    "MAX_RETRIES": "export.max_retries",
    "RETRY_DELAY": "export.retry_delay_seconds",
    "EXPORT_WORKERS": "export.workers",
    "GIT_BINARY": "export.git_binary",
    "LOG_LEVEL": "logging.level",
}


class ConfigurationError(Exception):
    """Raised when the backup configuration is missing or invalid."""


# --- GitHub ------------------------------------------------------------------


class GitHubAuthConfig(BaseModel):
    token: SecretStr = Field(description="Bearer credential used for the API and git.")
    token_env: Optional[str] = Field(default=None, description="Environment variable containing token.")

    @field_validator("token")
    @classmethod
    def _require_token(cls, value: SecretStr) -> SecretStr:
        if not value.get_secret_value().strip():
            raise ValueError("GitHub token must not be empty.")
        return value


class GitHubConfig(BaseModel):
    auth: GitHubAuthConfig
    api_url: str = DEFAULT_API_URL


# --- Storage -----------------------------------------------------------------


class StorageConfig(BaseModel):
    backup_root: Path
    staging_root: Path

    @field_validator("backup_root", "staging_root")
    @classmethod
    def _expand(cls, value: Path) -> Path:
        return value.expanduser()


# --- Scheduling --------------------------------------------------------------


class SchedulerConfig(BaseModel):
    interval_seconds: int = Field(gt=0)
    cron: Optional[str] = None
    timezone: str = "UTC"
    run_on_startup: bool = True

    @field_validator("cron")
    @classmethod
    def _validate_cron(cls, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        try:
            croniter(value, datetime.now())
        except (CroniterBadCronError, ValueError) as exc:
            raise ValueError(f"Invalid cron expression '{value}': {exc}") from exc
        return value

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone '{value}'") from exc
        return value


# --- Export ------------------------------------------------------------------


class ExportConfig(BaseModel):
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=1)
    retry_delay_seconds: float = Field(default=DEFAULT_RETRY_DELAY_SECONDS, ge=0)
    workers: int = Field(default=1, ge=1)
    git_binary: str = "git"


class LoggingConfig(BaseModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        level = value.upper()
        if level not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(f"Unknown log level '{value}'")
        return level


class BackupConfig(BaseModel):
    github: GitHubConfig
    storage: StorageConfig
    scheduler: SchedulerConfig
    retention_limit: int = Field(ge=0, description="Highest generation index kept.")
    export: ExportConfig = ExportConfig()
    logging: LoggingConfig = LoggingConfig()

    @property
    def token(self) -> str:
        return self.github.auth.token.get_secret_value()


def load_config(
    path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
    *,
    require_file: bool = False,
) -> BackupConfig:
    """Build the configuration from an optional YAML file and the environment.

    Environment variables listed in ``ENV_OVERRIDES`` take precedence over the
    file. The credential is read from ``github.auth.token_env`` (default
    ``GITHUB_TOKEN``) and only falls back to an inline ``token``.
    """
    env = os.environ if environ is None else environ
    raw: Dict[str, Any] = {}

    if path is not None:
        if path.exists():
            raw = _read_yaml(path)
        elif require_file:
            raise ConfigurationError(f"Configuration file not found: {path}")

    for variable, dotted in ENV_OVERRIDES.items():
        value = env.get(variable)
        if value not in (None, ""):
            _set_dotted(raw, dotted, value)

    _resolve_token(raw, env)

    try:
        return BackupConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigurationError(_format_validation_error(exc)) from exc


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as fh:
            raw = yaml.safe_load(fh) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"Failed to read configuration file {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Configuration file {path} must contain a mapping")
    return raw


def _set_dotted(document: MutableMapping[str, Any], dotted: str, value: Any) -> None:
    *parents, leaf = dotted.split(".")
    node = document
    for key in parents:
        child = node.get(key)
        if not isinstance(child, dict):
            child = {}
            node[key] = child
        node = child
    node[leaf] = value


def _resolve_token(raw: Dict[str, Any], env: Mapping[str, str]) -> None:
    github = raw.get("github")
    if not isinstance(github, dict):
        github = {}
        raw["github"] = github
    auth = github.get("auth")
    if not isinstance(auth, dict):
        auth = {}
        github["auth"] = auth

    token_env = auth.get("token_env") or DEFAULT_TOKEN_ENV
    value = env.get(token_env)
    if value:
        auth["token"] = value


def _format_validation_error(exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        problems.append(f"{location}: {error.get('msg')}")
    return "; ".join(problems)
