"""Shared runtime settings for the case pipeline and its worker."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

CONFIG_FILE_ENV = "CASEBOT_CONFIG_FILE"

# Environment variable -> (section, key) in the optional YAML config file.
_FILE_KEYS: dict[str, tuple[str, str]] = {
    "CASEBOT_DATA_DIR": ("storage", "data_dir"),
    "CASEBOT_SQLITE_PATH": ("storage", "sqlite_path"),
    "CASEBOT_REDIS_URL": ("queue", "redis_url"),
    "CASEBOT_QUEUE_NAME": ("queue", "name"),
    "CASEBOT_WORKER_CONCURRENCY": ("worker", "concurrency"),
    "CASEBOT_MAX_JOBS_PER_MINUTE": ("worker", "max_jobs_per_minute"),
    "CASEBOT_JOB_ATTEMPTS": ("jobs", "attempts"),
    "CASEBOT_JOB_BACKOFF_MS": ("jobs", "backoff_ms"),
    "CASEBOT_DEFAULT_MAX_RETRIES": ("cases", "max_retries"),
    "CASEBOT_LOG_LEVEL": ("logging", "level"),
}


def load_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    loaded = yaml.safe_load(path.read_text()) or {}
    if not isinstance(loaded, dict):
        raise ValueError(f"invalid_config_file:{path}")
    return loaded


def _flatten_config(config: Mapping[str, Any]) -> dict[str, str]:
    flat: dict[str, str] = {}
    for env_key, (section, key) in _FILE_KEYS.items():
        block = config.get(section)
        if isinstance(block, Mapping) and block.get(key) is not None:
            flat[env_key] = str(block[key])
    return flat


def _int(source: Mapping[str, str], key: str, default: int) -> int:
    raw = source.get(key, "")
    if not str(raw).strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"invalid_setting:{key}") from exc


@dataclass(frozen=True)
class CaseBotSettings:
    """Storage, queue, and worker settings resolved from env vars and an optional YAML file."""

    data_dir: Path
    sqlite_path: Path
    redis_url: str
    queue_name: str
    worker_concurrency: int
    max_jobs_per_minute: int
    job_attempts: int
    job_backoff_ms: int
    default_max_retries: int
    log_level: str

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "CaseBotSettings":
        source: dict[str, str] = {}
        env_source = env if env is not None else os.environ
        config_file = env_source.get(CONFIG_FILE_ENV, "")
        if config_file:
            source.update(_flatten_config(load_config_file(Path(config_file))))
        source.update({key: value for key, value in env_source.items() if key in _FILE_KEYS})

        data_dir = Path(source.get("CASEBOT_DATA_DIR", "./data"))
        sqlite_path = Path(
            source.get("CASEBOT_SQLITE_PATH", str(data_dir / "control_plane" / "case_bot.sqlite"))
        )
        return cls(
            data_dir=data_dir,
            sqlite_path=sqlite_path,
            redis_url=source.get("CASEBOT_REDIS_URL", ""),
            queue_name=source.get("CASEBOT_QUEUE_NAME", "casebot-cases"),
            worker_concurrency=_int(source, "CASEBOT_WORKER_CONCURRENCY", 2),
            max_jobs_per_minute=_int(source, "CASEBOT_MAX_JOBS_PER_MINUTE", 5),
            job_attempts=_int(source, "CASEBOT_JOB_ATTEMPTS", 3),
            job_backoff_ms=_int(source, "CASEBOT_JOB_BACKOFF_MS", 2000),
            default_max_retries=_int(source, "CASEBOT_DEFAULT_MAX_RETRIES", 3),
            log_level=source.get("CASEBOT_LOG_LEVEL", "INFO").upper(),
        )

    def ensure_directories(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.sqlite_path.parent.mkdir(parents=True, exist_ok=True)


def get_settings(env: Mapping[str, str] | None = None) -> CaseBotSettings:
    """Build settings and create the local data directories."""

    settings = CaseBotSettings.from_env(env)
    settings.ensure_directories()
    return settings


def configure_logging(settings: CaseBotSettings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
