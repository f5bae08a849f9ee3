"""
Configuration loader for the job queue service.
Reads settings from YAML file with environment variable substitution.

Sections:
  database    — store URL (sync URLs are mapped to async drivers)
  queue       — queue name, retry policy, lease duration
  worker      — pool concurrency, poll cadence, shutdown/job timeouts
  publish     — container status polling, media pre-flight
  graph_api   — third-party API endpoints
  rate_limits — per-action daily/hourly overrides
  logging     — level and rendering
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


class ConfigError(ValueError):
    """Raised when settings are internally inconsistent."""


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./jobqueue.db"        # postgresql:// | mysql:// | sqlite://
    echo: bool = False


@dataclass
class QueueConfig:
    name: str = "social-exchange"
    retry_attempts: int = 3                  # default max_attempts for new jobs
    retry_delay_seconds: float = 60.0        # base delay between attempts
    retry_delay_max_seconds: float = 3600.0  # cap for any single delay
    backoff: str = "linear"                  # "linear" | "exponential"
    lease_duration_seconds: float = 300.0


@dataclass
class WorkerConfig:
    concurrency: int = 3
    poll_interval_seconds: float = 5.0
    shutdown_timeout_seconds: float = 30.0
    job_timeout_seconds: float = 240.0


@dataclass
class PublishConfig:
    poll_interval_seconds: float = 3.0
    poll_attempts: int = 10
    video_poll_interval_seconds: float = 10.0
    video_poll_attempts: int = 20
    validate_media: bool = False


@dataclass
class GraphAPIConfig:
    base_url: str = "https://graph.facebook.com/v21.0"
    messaging_base_url: str = "https://graph.instagram.com/v21.0"
    timeout_seconds: float = 30.0


@dataclass
class LoggingConfig:
    level: str = "INFO"
    json: bool = False


@dataclass
class Settings:
    app_name: str = "SocialJobQueue"
    debug: bool = False
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    publish: PublishConfig = field(default_factory=PublishConfig)
    graph_api: GraphAPIConfig = field(default_factory=GraphAPIConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    # ActionType value → {"daily": int, "hourly": int}
    rate_limits: dict[str, dict[str, int]] = field(default_factory=dict)

    def validate(self) -> "Settings":
        """Check cross-field constraints. Returns self so calls can chain."""
        positive = {
            "queue.retry_attempts": self.queue.retry_attempts,
            "queue.retry_delay_seconds": self.queue.retry_delay_seconds,
            "queue.retry_delay_max_seconds": self.queue.retry_delay_max_seconds,
            "queue.lease_duration_seconds": self.queue.lease_duration_seconds,
            "worker.concurrency": self.worker.concurrency,
            "worker.poll_interval_seconds": self.worker.poll_interval_seconds,
            "worker.shutdown_timeout_seconds": self.worker.shutdown_timeout_seconds,
            "worker.job_timeout_seconds": self.worker.job_timeout_seconds,
            "publish.poll_interval_seconds": self.publish.poll_interval_seconds,
            "publish.poll_attempts": self.publish.poll_attempts,
            "publish.video_poll_interval_seconds": self.publish.video_poll_interval_seconds,
            "publish.video_poll_attempts": self.publish.video_poll_attempts,
        }
        for name, value in positive.items():
            if value is None or value <= 0:
                raise ConfigError(f"{name} must be positive, got {value!r}")

        if self.queue.backoff not in ("linear", "exponential"):
            raise ConfigError(f"queue.backoff must be 'linear' or 'exponential', got {self.queue.backoff!r}")

        lease = self.queue.lease_duration_seconds
        if self.worker.job_timeout_seconds >= lease:
            raise ConfigError(
                f"worker.job_timeout_seconds ({self.worker.job_timeout_seconds}) must be "
                f"shorter than queue.lease_duration_seconds ({lease})"
            )
        # An abandoned job stays LOCKED until its lease runs out, so shutdown
        # must never be the thing that decides when a job becomes reclaimable.
        if self.worker.shutdown_timeout_seconds >= lease:
            raise ConfigError(
                f"worker.shutdown_timeout_seconds ({self.worker.shutdown_timeout_seconds}) must be "
                f"shorter than queue.lease_duration_seconds ({lease})"
            )

        polling = max(
            self.publish.poll_attempts * self.publish.poll_interval_seconds,
            self.publish.video_poll_attempts * self.publish.video_poll_interval_seconds,
        )
        if polling >= self.worker.job_timeout_seconds:
            raise ConfigError(
                f"worst-case publish polling ({polling}s) does not fit inside "
                f"worker.job_timeout_seconds ({self.worker.job_timeout_seconds})"
            )

        for action, limits in self.rate_limits.items():
            for window in ("daily", "hourly"):
                value = limits.get(window)
                if value is None or int(value) < 0:
                    raise ConfigError(f"rate_limits.{action}.{window} must be a non-negative integer")
        return self


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _section(cls, raw: dict[str, Any], current):
    """Build a dataclass section, keeping current values for missing keys."""
    known = {k: v for k, v in raw.items() if k in cls.__dataclass_fields__}
    merged = {name: getattr(current, name) for name in cls.__dataclass_fields__}
    merged.update(known)
    return cls(**merged)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file and validate them."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "JOBQUEUE_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "database" in raw:
            settings.database = _section(DatabaseConfig, raw["database"], settings.database)
        if "queue" in raw:
            settings.queue = _section(QueueConfig, raw["queue"], settings.queue)
        if "worker" in raw:
            settings.worker = _section(WorkerConfig, raw["worker"], settings.worker)
        if "publish" in raw:
            settings.publish = _section(PublishConfig, raw["publish"], settings.publish)
        if "graph_api" in raw:
            settings.graph_api = _section(GraphAPIConfig, raw["graph_api"], settings.graph_api)
        if "logging" in raw:
            settings.logging = _section(LoggingConfig, raw["logging"], settings.logging)

        for action, limits in (raw.get("rate_limits") or {}).items():
            settings.rate_limits[str(action).upper()] = {
                "daily": int(limits.get("daily", 0)),
                "hourly": int(limits.get("hourly", 0)),
            }

    settings.validate()
    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
