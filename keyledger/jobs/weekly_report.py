"""
Weekly Security Report
======================

Aggregates credential counts and the last week of access-log activity into
a SecurityReport with a 0-100 score and plain-language recommendations.
The report is returned and logged; delivery (email, storage) happens
outside this service.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from keyledger.config import settings
from keyledger.core.clock import utcnow
from keyledger.jobs.runner import job_run
from keyledger.models.outcomes import JobResult, SecurityReport
from keyledger.services.access_log_source import AccessLogSource
from keyledger.services.credential_store import CredentialStore

logger = logging.getLogger(__name__)

JOB_NAME = "weekly_report"


def security_score(total_calls: int, suspicious_calls: int) -> float:
    """100 minus the suspicious percentage, clamped to [0, 100]; 100 with no traffic."""
    if total_calls <= 0:
        return 100.0
    score = 100.0 - (suspicious_calls / total_calls) * 100.0
    return round(min(100.0, max(0.0, score)), 2)


def recommendations(total_calls: int, suspicious_calls: int) -> List[str]:
    out = []
    if total_calls > 0 and suspicious_calls / total_calls > settings.report_suspicious_ratio:
        out.append(
            f"Suspicious activity is above {settings.report_suspicious_ratio:.0%} of traffic: "
            "review the flagged credentials."
        )
    if total_calls > settings.report_high_volume_calls:
        out.append("Call volume is high: consider tightening rate limits.")
    if suspicious_calls > settings.report_high_suspicious_count:
        out.append("Many suspicious calls this week: enable additional monitoring.")
    return out


def build_report(
    store: CredentialStore,
    source: AccessLogSource,
    now: datetime,
) -> SecurityReport:
    since = now - timedelta(days=settings.report_window_days)
    counts = store.counts()
    total_calls = source.count_total(None, since)
    suspicious_calls = source.count_suspicious(None, since)
    return SecurityReport(
        period_start=since,
        period_end=now,
        total_credentials=counts.total,
        active_credentials=counts.active,
        deactivated_credentials=counts.deactivated,
        total_calls=total_calls,
        suspicious_calls=suspicious_calls,
        security_score=security_score(total_calls, suspicious_calls),
        recommendations=recommendations(total_calls, suspicious_calls),
    )


def run_weekly_report(
    store: Optional[CredentialStore] = None,
    source: Optional[AccessLogSource] = None,
    now: Optional[datetime] = None,
) -> JobResult:
    store = store or CredentialStore()
    source = source or AccessLogSource()
    with job_run(JOB_NAME) as result:
        report = build_report(store, source, now or utcnow())
        result.report = report
        logger.info(
            "weekly_security_report",
            extra={
                "total_credentials": report.total_credentials,
                "active_credentials": report.active_credentials,
                "deactivated_credentials": report.deactivated_credentials,
                "total_calls": report.total_calls,
                "suspicious_calls": report.suspicious_calls,
                "security_score": report.security_score,
                "recommendations": report.recommendations,
            },
        )
    return result
