"""YAML configuration loader with env var resolution and Pydantic validation.

Loads config from (priority order):
1. --config <path> CLI flag
2. ./rewardlink.yaml (working directory)
3. ~/.rewardlink/config.yaml (user home)

Environment variables override YAML: REWARDLINK_<SECTION>_<KEY>.
${VAR} references in YAML values resolve from environment at load time.
With no config file at all, defaults plus env overrides are used, so a
container can be configured from the environment alone.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger(__name__)

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")
ENV_PREFIX = "REWARDLINK_"


def resolve_env_vars(value: str) -> str:
    """Resolve ${VAR} references in a string from environment variables.

    Missing env vars resolve to empty string.
    """
    def _replace(match: re.Match) -> str:
        return os.environ.get(match.group(1), "")

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _resolve_env_vars_recursive(data: Any) -> Any:
    if isinstance(data, str):
        return resolve_env_vars(data)
    elif isinstance(data, dict):
        return {k: _resolve_env_vars_recursive(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_resolve_env_vars_recursive(item) for item in data]
    return data


class BotConfig(BaseModel):
    """Discord application credentials and public URLs."""

    token: str = ""
    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = ""
    oauth_secret: str = ""
    link_url: str | None = None
    site_url: str | None = None
    sync_guild_id: str | None = None


class BackendConfig(BaseModel):
    """Rewards backend API."""

    base_url: str = "http://localhost:5000"
    api_key: str = ""
    timeout: float = Field(10.0, gt=0)
    max_retries: int = Field(2, ge=0)
    base_delay: float = Field(0.5, ge=0)


class StorageConfig(BaseModel):
    database_url: str = "sqlite:///./rewardlink.db"


class KVConfig(BaseModel):
    """Key-value store; ``url`` defaults to the storage database."""

    url: str | None = None
    lock_ttl_seconds: float = Field(15.0, gt=0)


class LoggingConfig(BaseModel):
    level: str = "info"
    format: Literal["text", "json"] = "text"
    file: str | None = None


class ReconcilerConfig(BaseModel):
    """Reconciler cadence. Defaults: 30 s ± 10 %, 8 at a time, R_max 60 s."""

    interval_seconds: float = Field(30.0, gt=0)
    jitter: float = Field(0.1, ge=0, lt=1)
    concurrency: int = Field(8, ge=1)
    staleness_max_seconds: float = Field(60.0, gt=0)
    failure_cap_seconds: float = Field(3600.0, gt=0)
    archive_grace_hours: float = Field(24.0, ge=0)
    backoff_base_seconds: float = Field(30.0, gt=0)
    backoff_cap_seconds: float = Field(600.0, gt=0)

    @model_validator(mode="after")
    def interval_within_staleness(self) -> "ReconcilerConfig":
        """A sweep interval above R_max could never meet the staleness bound."""
        if self.interval_seconds * (1 + self.jitter) > self.staleness_max_seconds:
            raise ValueError(
                "reconciler.interval_seconds (with jitter) must not exceed staleness_max_seconds"
            )
        return self


class RateLimitConfig(BaseModel):
    max_attempts: int = Field(3, ge=1)
    window_seconds: float = Field(300.0, gt=0)


class PipelineConfig(BaseModel):
    budget_seconds: float = Field(8.0, gt=0)


class APIConfig(BaseModel):
    """Webhook/health HTTP surface."""

    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 8080
    webhook_secret: str = ""


class RetentionConfig(BaseModel):
    interaction_log_days: int = Field(30, ge=1)
    attempt_days: int = Field(7, ge=1)
    interval_seconds: float = Field(3600.0, gt=0)


class RewardLinkConfig(BaseModel):
    """Top-level configuration for the RewardLink bot."""

    bot: BotConfig = BotConfig()
    backend: BackendConfig = BackendConfig()
    storage: StorageConfig = StorageConfig()
    kv: KVConfig = KVConfig()
    logging: LoggingConfig = LoggingConfig()
    reconciler: ReconcilerConfig = ReconcilerConfig()
    rate_limit: RateLimitConfig = RateLimitConfig()
    pipeline: PipelineConfig = PipelineConfig()
    api: APIConfig = APIConfig()
    retention: RetentionConfig = RetentionConfig()

    @property
    def kv_url(self) -> str:
        return self.kv.url or self.storage.database_url


def _find_config_file() -> Path | None:
    """Search for config file in standard locations."""
    candidates = [
        Path.cwd() / "rewardlink.yaml",
        Path.cwd() / "rewardlink.yml",
        Path.home() / ".rewardlink" / "config.yaml",
        Path.home() / ".rewardlink" / "config.yml",
    ]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return None


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply REWARDLINK_<SECTION>_<KEY> env var overrides to config data.

    Matches section names by longest prefix so ``rate_limit`` wins over
    any shorter section sharing its start. For example,
    ``REWARDLINK_RATE_LIMIT_MAX_ATTEMPTS`` maps to section ``rate_limit``,
    field ``max_attempts``.
    """
    known_sections = sorted(
        RewardLinkConfig.model_fields.keys(), key=len, reverse=True
    )
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX):].lower()
        matched_section = None
        matched_field = None
        for section in known_sections:
            section_prefix = section + "_"
            if suffix.startswith(section_prefix):
                matched_section = section
                matched_field = suffix[len(section_prefix):]
                break
        if matched_section is None or not matched_field:
            continue
        if not isinstance(data.get(matched_section), dict):
            data[matched_section] = {}
        # Coerce to int or bool, otherwise leave the string for pydantic
        try:
            data[matched_section][matched_field] = int(value)
        except ValueError:
            if value.lower() in ("true", "false"):
                data[matched_section][matched_field] = value.lower() == "true"
            else:
                data[matched_section][matched_field] = value
    return data


def load_config(config_path: str | None = None) -> RewardLinkConfig:
    """Load RewardLink configuration.

    Args:
        config_path: Explicit path to config file. If None, searches
            standard locations (cwd, then ~/.rewardlink/).

    Returns:
        Parsed and validated RewardLinkConfig.

    Raises:
        FileNotFoundError: If ``config_path`` was given but does not exist.
        pydantic.ValidationError: If the merged config is invalid.
    """
    if config_path:
        path: Path | None = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        path = _find_config_file()

    raw_data: dict[str, Any] = {}
    if path is not None:
        logger.info("Loading config from %s", path)
        with open(path) as f:
            raw_data = yaml.safe_load(f) or {}
    else:
        logger.info("No config file found; using defaults and environment")

    data = _resolve_env_vars_recursive(raw_data)
    data = _apply_env_overrides(data)
    return RewardLinkConfig(**data)
