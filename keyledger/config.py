"""
keyledger Application Configuration
=====================================

PURPOSE:
    Pydantic-Settings based configuration for the keyledger service.
    All settings can be overridden via environment variables (KEYLEDGER_ prefix).

SECTIONS:
    - Stripe billing (secret key, webhook secret, provider call timeout)
    - Reconciliation defaults (premium validity window, currency)
    - Credential tiers (default quotas) and rotation
    - Security heuristic thresholds and weekly report thresholds
    - Scheduler (job hours, weekly report day, batch size)
"""

import logging
from typing import List, Optional

from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Runtime configuration for webhook reconciliation and lifecycle jobs."""

    app_name: str = "keyledger"
    debug: bool = False

    # Persistence
    data_directory: str = "/data"
    log_directory: str = "logs"

    # Service-to-service auth for refund and manual job endpoints
    internal_api_key: Optional[str] = None

    # Stripe billing
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_webhook_tolerance_s: int = 300
    provider_timeout_s: float = 10.0

    # Reconciliation
    # Applied when an event carries no period end (checkout, payment intent).
    default_premium_validity_days: int = 30
    default_currency: str = "EUR"

    # Credential tier defaults (0 = unlimited)
    free_daily_quota: int = 500
    free_minute_quota: int = 5
    premium_daily_quota: int = 150_000
    premium_minute_quota: int = 100
    default_hourly_quota: int = 0
    default_monthly_quota: int = 0

    # Credential rotation
    rotation_issue_replacement: bool = True
    rotation_validity_days: int = 0  # 0 = replacement never expires

    # Security heuristic
    security_window_hours: int = 24
    security_marker_endpoint: str = "SECURITY_CHECK"
    security_max_distinct_ips: int = 5
    security_max_distinct_user_agents: int = 3
    security_max_suspicious: int = 5
    security_max_total_calls: int = 10_000
    security_deactivate_suspicious: int = 10

    # Weekly report
    report_window_days: int = 7
    report_suspicious_ratio: float = 0.10
    report_high_volume_calls: int = 100_000
    report_high_suspicious_count: int = 50

    # Scheduler
    scheduler_enabled: bool = True
    job_batch_size: int = 500
    quota_reset_hour: int = 0
    rotation_hour: int = 2
    security_analysis_hour: int = 6
    weekly_report_weekday: int = 0  # Monday
    weekly_report_hour: int = 8

    # CORS
    cors_origins: List[str] = ["http://localhost:3000"]

    class Config:
        env_file = ".env"
        env_prefix = "KEYLEDGER_"

    @property
    def stripe_configured(self) -> bool:
        return bool(self.stripe_secret_key)


settings = Settings()

if not settings.stripe_webhook_secret:
    logger.warning(
        "KEYLEDGER_STRIPE_WEBHOOK_SECRET not set, every Stripe webhook will be rejected."
    )
