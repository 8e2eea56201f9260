"""
Configuration loading: YAML file, ``.env`` and environment overrides.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field

from .models import SignalType

logger = logging.getLogger(__name__)


class SchedulerSettings(BaseModel):
    cron: str = "0 6 * * *"
    timezone: str = "UTC"
    job_store_url: str = "sqlite:///db/scheduler_jobs.db"
    persist_jobs: bool = True
    max_contexts_per_target: int = 4
    max_total_checks: int = 50
    delay_between_checks: float = 3.0
    concurrency: int = Field(default=1, ge=1, le=4)
    signals: List[SignalType] = Field(default_factory=lambda: [SignalType.PRICING])


class TaskSettings(BaseModel):
    max_attempts: int = 2
    backoff_seconds: float = 5.0
    timeout_seconds: float = 120.0


class GuardrailSettings(BaseModel):
    hoarding_threshold: int = 20
    hoarding_window_hours: int = 24
    volatile_window: int = 10
    volatile_min_snapshots: int = 5
    volatile_rate: float = 0.7
    # below this alerts-per-snapshot rate a flapping pair counts as noise
    volatile_meaningful_rate: float = 0.02
    expected_daily_crawls: int = 10000
    throttle_factor: float = 1.5
    max_failures: int = 3
    failure_cooldown_hours: int = 24


class ExtractionSettings(BaseModel):
    http_timeout: float = 30.0
    http_max_retries: int = 3
    headless: bool = True
    browser_type: str = "chromium"
    browser_timeout_ms: float = 30_000
    browser_pool_size: int = 2
    pagespeed_api_key: Optional[str] = None
    pagespeed_strategy: str = "desktop"


class EnrichmentSettings(BaseModel):
    api_url: Optional[str] = None
    api_key: Optional[str] = None
    timeout: float = 20.0


class CurrencySettings(BaseModel):
    rates_url: Optional[str] = None
    cache_hours: float = 6.0
    timeout: float = 10.0


class StorageSettings(BaseModel):
    db_path: str = "db/monitor.db"
    evidence_dir: str = "evidence"


class Settings(BaseModel):
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    task: TaskSettings = Field(default_factory=TaskSettings)
    guardrail: GuardrailSettings = Field(default_factory=GuardrailSettings)
    extraction: ExtractionSettings = Field(default_factory=ExtractionSettings)
    enrichment: EnrichmentSettings = Field(default_factory=EnrichmentSettings)
    currency: CurrencySettings = Field(default_factory=CurrencySettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    # plan name -> entitlement field overrides
    plans: Dict[str, Dict[str, Any]] = Field(default_factory=dict)


# environment variable -> (section, key)
ENV_OVERRIDES = {
    "DB_PATH": ("storage", "db_path"),
    "EVIDENCE_DIR": ("storage", "evidence_dir"),
    "SCHEDULER_TIMEZONE": ("scheduler", "timezone"),
    "SCHEDULER_CRON": ("scheduler", "cron"),
    "EXPLAIN_API_URL": ("enrichment", "api_url"),
    "EXPLAIN_API_KEY": ("enrichment", "api_key"),
    "PAGESPEED_API_KEY": ("extraction", "pagespeed_api_key"),
    "EXCHANGE_RATES_URL": ("currency", "rates_url"),
}


def load_settings(config_path: Optional[str] = None) -> Settings:
    """Load settings from YAML, then apply environment overrides."""
    load_dotenv()

    config_path = config_path or os.getenv("MONITOR_CONFIG", "monitor.yml")
    path = Path(config_path)

    data: Dict[str, Any] = {}
    if path.exists():
        with path.open() as f:
            data = yaml.safe_load(f) or {}
    else:
        logger.warning(f"Config file not found: {config_path}, using defaults")

    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value:
            data.setdefault(section, {})[key] = value

    return Settings.model_validate(data)
