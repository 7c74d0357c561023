"""Daily quota reset: zero ``daily_quota_used`` on every credential."""

from __future__ import annotations

from typing import Optional

from keyledger.jobs.runner import job_run
from keyledger.models.outcomes import JobResult
from keyledger.services.credential_store import CredentialStore

JOB_NAME = "quota_reset"


def run_quota_reset(store: Optional[CredentialStore] = None) -> JobResult:
    """Safe to run any number of times a day; only the daily counter changes."""
    store = store or CredentialStore()
    with job_run(JOB_NAME) as result:
        result.affected = store.reset_daily_counters()
    return result
