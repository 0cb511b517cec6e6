"""
Configuration loading for Academic Batch Orchestrator

Settings are declared as pydantic models and loaded from a YAML document. Every
value has a default so that an empty file, or no file at all, yields a usable
configuration for local runs.
"""

import os
from pathlib import Path
from typing import Dict, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from typing_extensions import Literal

from ..core.exceptions import ConfigurationError


CONFIG_ENV_VAR = "ACADEMIC_BATCH_CONFIG"


class StoreSettings(BaseModel):
    """Connection settings for one owned data store."""
    dsn: str
    min_size: int = 2
    max_size: int = 10
    command_timeout: float = 60.0


class RetrySettings(BaseModel):
    """Retry and exponential backoff parameters shared by all steps."""
    max_attempts: int = Field(default=5, ge=0)
    initial_interval: float = Field(default=1.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1.0)
    max_interval: float = Field(default=16.0, ge=0)


class SkipSettings(BaseModel):
    """How failures that no rule classifies are treated."""
    unclassified: Literal["skip", "fail"] = "skip"


class JobSettings(BaseModel):
    """Per-job scheduling and chunking parameters."""
    enabled: bool = True
    cron: Optional[str] = None
    chunk_size: int = Field(default=100, ge=1)
    skip_limit: int = Field(default=10, ge=0)


class NotificationSettings(BaseModel):
    """Message bus topics, recipients and the stale notification window."""
    topic: str = "notifications"
    alerts_topic: str = "batch-alerts"
    staleness_hours: float = Field(default=24.0, gt=0)
    admin_recipient: str = "admin@doctorat.local"
    bus_url: Optional[str] = None
    bus_timeout: float = 10.0


class ConsistencySettings(BaseModel):
    """File storage and report locations used by the consistency job."""
    storage_root: str = "uploads"
    quarantine_dir: str = "quarantine"
    reports_dir: str = "reports"

    @field_validator("quarantine_dir")
    @classmethod
    def _relative_quarantine(cls, value: str) -> str:
        if not value or os.path.isabs(value) or ".." in Path(value).parts:
            raise ValueError("quarantine_dir must be a relative path inside storage_root")
        return value


class ThresholdSettings(BaseModel):
    """Business thresholds consumed by the jobs."""
    archive_after_days: int = 365
    duration_limit_years: int = 6
    duration_warning_years: int = 3
    duration_warning_months: int = 3
    log_retention_days: int = 90
    history_retention_days: int = 180


class LoggingSettings(BaseModel):
    level: str = "INFO"
    structured: bool = True
    log_file: Optional[str] = None


def _default_jobs() -> Dict[str, JobSettings]:
    return {
        "data-consistency": JobSettings(cron="0 23 * * *", chunk_size=1, skip_limit=0),
        "archive": JobSettings(cron="0 3 1 1,4,7,10 *", chunk_size=20, skip_limit=5),
        "duration-alert": JobSettings(cron="0 8 * * mon", chunk_size=50, skip_limit=10),
        "token-cleanup": JobSettings(cron="0 2 * * *", chunk_size=100, skip_limit=10),
        "history-cleanup": JobSettings(cron="30 4 * * sun", chunk_size=1, skip_limit=0),
        "monthly-report": JobSettings(cron="0 9 1 * *", chunk_size=1, skip_limit=0),
    }


class BatchSettings(BaseModel):
    """Root configuration object."""
    stores: Dict[str, StoreSettings] = Field(default_factory=dict)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    skip: SkipSettings = Field(default_factory=SkipSettings)
    jobs: Dict[str, JobSettings] = Field(default_factory=_default_jobs)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    consistency: ConsistencySettings = Field(default_factory=ConsistencySettings)
    thresholds: ThresholdSettings = Field(default_factory=ThresholdSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @field_validator("jobs")
    @classmethod
    def _merge_job_defaults(cls, value: Dict[str, JobSettings]) -> Dict[str, JobSettings]:
        merged = _default_jobs()
        merged.update(value)
        return merged

    def job(self, name: str) -> JobSettings:
        """Return the settings of a job, falling back to defaults."""
        return self.jobs.get(name) or JobSettings()

    def store(self, name: str) -> StoreSettings:
        """Return the settings of a store or raise ConfigurationError."""
        try:
            return self.stores[name]
        except KeyError:
            raise ConfigurationError(f"stores.{name}", "store is not configured") from None


def load_settings(path: Optional[Union[str, Path]] = None) -> BatchSettings:
    """
    Load settings from a YAML file.

    Args:
        path: YAML file path; defaults to $ACADEMIC_BATCH_CONFIG when unset

    Returns:
        Validated BatchSettings
    """
    path = path or os.environ.get(CONFIG_ENV_VAR)
    if not path:
        return BatchSettings()

    config_path = Path(path)
    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except FileNotFoundError:
        raise ConfigurationError(str(config_path), "file not found") from None
    except yaml.YAMLError as e:
        raise ConfigurationError(str(config_path), f"invalid YAML: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigurationError(str(config_path), "top level must be a mapping")

    try:
        return BatchSettings.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationError(str(config_path), str(e)) from e
