"""
Configuration for the job pipeline.

Provides typed configuration for:
- Per-tenant and per-group concurrency limits
- Job timeout and screenshot cadence
- Captcha retry limit and backoff
- Session expiry defaults
- Environment variable support
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Self

import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class PipelineConfig:
    """
    Scheduling and recovery constants for the job pipeline.

    Immutable after initialization; use ``with_overrides`` to derive variants.
    """

    tenant_concurrency: int = 3
    """Maximum jobs executing at once for a single tenant."""

    group_concurrency: int = 1
    """Maximum jobs executing at once for a single target account."""

    job_timeout_seconds: float = 60.0
    """Hard wall-clock deadline for one job."""

    screenshot_interval_seconds: float = 0.5
    """Delay between live screenshots while a job runs."""

    captcha_max_attempts: int = 5
    """Login rounds allowed before giving up on captcha errors."""

    captcha_backoff_seconds: float = 3.0
    """Wait between captcha rounds."""

    login_settle_seconds: float = 3.0
    """Wait after submitting the login form before checking the outcome."""

    default_session_ttl_seconds: int = 86400
    """Session lifetime when no cookie carries an expiry."""

    completed_retention: int = 100
    """Completed job records kept in memory per tenant."""

    failed_retention: int = 50
    """Failed or cancelled job records kept in memory per tenant."""

    job_store_max_records: int = 1000
    """Records the in-process job store keeps across all tenants."""

    unusable_page_threshold: int = 2
    """Consecutive page failures before a cached browser session is evicted."""

    headless: bool = True
    """Launch browsers without a visible window."""

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        if self.tenant_concurrency < 1:
            raise ValueError("tenant_concurrency must be at least 1")
        if self.group_concurrency != 1:
            raise ValueError("group_concurrency must be exactly 1")
        if self.job_timeout_seconds <= 0:
            raise ValueError("job_timeout_seconds must be positive")
        if self.screenshot_interval_seconds <= 0:
            raise ValueError("screenshot_interval_seconds must be positive")
        if self.captcha_max_attempts < 1:
            raise ValueError("captcha_max_attempts must be at least 1")
        if self.captcha_backoff_seconds < 0:
            raise ValueError("captcha_backoff_seconds must be non-negative")
        if self.login_settle_seconds < 0:
            raise ValueError("login_settle_seconds must be non-negative")
        if self.default_session_ttl_seconds <= 0:
            raise ValueError("default_session_ttl_seconds must be positive")
        if self.completed_retention < 0 or self.failed_retention < 0:
            raise ValueError("retention limits must be non-negative")
        if self.job_store_max_records < 1:
            raise ValueError("job_store_max_records must be at least 1")
        if self.unusable_page_threshold < 1:
            raise ValueError("unusable_page_threshold must be at least 1")

    def with_overrides(self, **changes: object) -> Self:
        """Copy with some fields changed; the copy is validated again."""
        return replace(self, **changes)


def load_pipeline_config(
    env_prefix: str = "PANELRUNNER_",
    defaults: PipelineConfig | None = None,
) -> PipelineConfig:
    """
    Load pipeline configuration from environment variables.

    Environment variables (all optional):
    - PANELRUNNER_TENANT_CONCURRENCY: Concurrent jobs per tenant
    - PANELRUNNER_JOB_TIMEOUT: Job deadline in seconds
    - PANELRUNNER_SCREENSHOT_INTERVAL: Screenshot cadence in seconds
    - PANELRUNNER_CAPTCHA_MAX_ATTEMPTS: Captcha rounds per login
    - PANELRUNNER_CAPTCHA_BACKOFF: Wait between captcha rounds
    - PANELRUNNER_LOGIN_SETTLE: Wait after submitting the login form
    - PANELRUNNER_SESSION_TTL: Fallback session lifetime in seconds
    - PANELRUNNER_COMPLETED_RETENTION: Completed records kept per tenant
    - PANELRUNNER_FAILED_RETENTION: Failed records kept per tenant
    - PANELRUNNER_JOB_STORE_MAX_RECORDS: Records kept by the in-process job store
    - PANELRUNNER_UNUSABLE_PAGE_THRESHOLD: Failures before eviction
    - PANELRUNNER_HEADLESS: Run browsers headless

    Args:
        env_prefix: Prefix for environment variables
        defaults: Default configuration to use as base

    Returns:
        Loaded and validated PipelineConfig
    """
    base = defaults or PipelineConfig()

    def get_int(key: str, default: int) -> int:
        value = os.environ.get(f"{env_prefix}{key}")
        if value is None:
            return default
        try:
            return int(value)
        except ValueError:
            logger.warning(
                "Invalid integer value for config",
                key=key,
                value=value,
                using_default=default,
            )
            return default

    def get_float(key: str, default: float) -> float:
        value = os.environ.get(f"{env_prefix}{key}")
        if value is None:
            return default
        try:
            return float(value)
        except ValueError:
            logger.warning(
                "Invalid float value for config",
                key=key,
                value=value,
                using_default=default,
            )
            return default

    def get_bool(key: str, default: bool) -> bool:
        value = os.environ.get(f"{env_prefix}{key}")
        if value is None:
            return default
        return value.lower() in ("true", "1", "yes", "on")

    config = PipelineConfig(
        tenant_concurrency=get_int("TENANT_CONCURRENCY", base.tenant_concurrency),
        group_concurrency=base.group_concurrency,
        job_timeout_seconds=get_float("JOB_TIMEOUT", base.job_timeout_seconds),
        screenshot_interval_seconds=get_float(
            "SCREENSHOT_INTERVAL", base.screenshot_interval_seconds
        ),
        captcha_max_attempts=get_int(
            "CAPTCHA_MAX_ATTEMPTS", base.captcha_max_attempts
        ),
        captcha_backoff_seconds=get_float(
            "CAPTCHA_BACKOFF", base.captcha_backoff_seconds
        ),
        login_settle_seconds=get_float("LOGIN_SETTLE", base.login_settle_seconds),
        default_session_ttl_seconds=get_int(
            "SESSION_TTL", base.default_session_ttl_seconds
        ),
        completed_retention=get_int(
            "COMPLETED_RETENTION", base.completed_retention
        ),
        failed_retention=get_int("FAILED_RETENTION", base.failed_retention),
        job_store_max_records=get_int(
            "JOB_STORE_MAX_RECORDS", base.job_store_max_records
        ),
        unusable_page_threshold=get_int(
            "UNUSABLE_PAGE_THRESHOLD", base.unusable_page_threshold
        ),
        headless=get_bool("HEADLESS", base.headless),
    )

    logger.info(
        "Loaded pipeline config",
        tenant_concurrency=config.tenant_concurrency,
        job_timeout=config.job_timeout_seconds,
        captcha_attempts=config.captcha_max_attempts,
        headless=config.headless,
    )

    return config
