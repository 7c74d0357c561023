"""
Security Analysis Job
=====================

Scores each active credential's recent access-log activity.

A credential is flagged when any signal crosses its threshold within the
window (defaults: >5 distinct IPs, >3 distinct user agents, >5 hits on the
SECURITY_CHECK marker endpoint, >10 000 calls). More than 10 marker hits
deactivates it, attributed to the system actor.

This is a heuristic: false positives are expected. Deactivation is the only
side effect.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from keyledger.config import settings
from keyledger.core.clock import utcnow
from keyledger.jobs.runner import job_run
from keyledger.models.credential import ACTOR_SYSTEM
from keyledger.models.outcomes import ITEM_FAILED, ITEM_SUCCESS, ItemOutcome, JobResult
from keyledger.services.access_log_source import AccessLogSource
from keyledger.services.credential_store import CredentialStore

logger = logging.getLogger(__name__)

JOB_NAME = "security_analysis"
REASON_SUSPICIOUS = "suspicious_activity"

FLAG_DISTINCT_IPS = "distinct_ips"
FLAG_DISTINCT_USER_AGENTS = "distinct_user_agents"
FLAG_SUSPICIOUS_ACTIVITY = "suspicious_activity"
FLAG_HIGH_VOLUME = "high_volume"


@dataclass(frozen=True)
class ActivitySnapshot:
    distinct_ips: int
    distinct_user_agents: int
    suspicious: int
    total: int


@dataclass(frozen=True)
class Assessment:
    flags: List[str] = field(default_factory=list)
    deactivate: bool = False

    @property
    def suspicious(self) -> bool:
        return bool(self.flags)


def collect_activity(source: AccessLogSource, credential_id: int, since: datetime) -> ActivitySnapshot:
    return ActivitySnapshot(
        distinct_ips=source.count_distinct_ips(credential_id, since),
        distinct_user_agents=source.count_distinct_user_agents(credential_id, since),
        suspicious=source.count_suspicious(credential_id, since),
        total=source.count_total(credential_id, since),
    )


def assess(activity: ActivitySnapshot) -> Assessment:
    """Apply the configured thresholds to one credential's activity."""
    flags = []
    if activity.distinct_ips > settings.security_max_distinct_ips:
        flags.append(FLAG_DISTINCT_IPS)
    if activity.distinct_user_agents > settings.security_max_distinct_user_agents:
        flags.append(FLAG_DISTINCT_USER_AGENTS)
    if activity.suspicious > settings.security_max_suspicious:
        flags.append(FLAG_SUSPICIOUS_ACTIVITY)
    if activity.total > settings.security_max_total_calls:
        flags.append(FLAG_HIGH_VOLUME)
    return Assessment(flags=flags, deactivate=activity.suspicious > settings.security_deactivate_suspicious)


def run_security_analysis(
    store: Optional[CredentialStore] = None,
    source: Optional[AccessLogSource] = None,
    now: Optional[datetime] = None,
) -> JobResult:
    store = store or CredentialStore()
    source = source or AccessLogSource()
    since = (now or utcnow()) - timedelta(hours=settings.security_window_hours)

    with job_run(JOB_NAME) as result:
        for credential in store.list_active():
            try:
                outcome = _analyze(store, source, credential.id, since)
            except Exception as exc:
                logger.exception("security_analysis_failed", extra={"credential_id": credential.id})
                outcome = ItemOutcome(credential.id, ITEM_FAILED, str(exc))
            if outcome.detail == "deactivated":
                result.affected += 1
            result.items.append(outcome)
    return result


def _analyze(store: CredentialStore, source: AccessLogSource, credential_id: int, since: datetime) -> ItemOutcome:
    activity = collect_activity(source, credential_id, since)
    assessment = assess(activity)
    if not assessment.suspicious:
        return ItemOutcome(credential_id, ITEM_SUCCESS, "clean")

    logger.warning(
        "credential_flagged",
        extra={
            "credential_id": credential_id,
            "flags": assessment.flags,
            "distinct_ips": activity.distinct_ips,
            "distinct_user_agents": activity.distinct_user_agents,
            "suspicious": activity.suspicious,
            "total": activity.total,
        },
    )
    if assessment.deactivate and store.deactivate(credential_id, ACTOR_SYSTEM, reason=REASON_SUSPICIOUS):
        return ItemOutcome(credential_id, ITEM_SUCCESS, "deactivated", flags=assessment.flags)
    return ItemOutcome(credential_id, ITEM_SUCCESS, "flagged", flags=assessment.flags)
