"""
Credential Rotation Job
=======================

Deactivates active credentials whose ``expires_at`` has passed and, when
``rotation_issue_replacement`` is on, issues a replacement with the same
owner, tier and limits.

Deactivation is a conditional update, and only the run that actually
flipped ``is_active`` issues the replacement. Both happen in one
transaction: a failed issuance leaves the credential active for the next
run. A second run over the same state changes nothing.

The replacement key is handed to ``on_replacement`` (delivery to the owner
lives outside this service); it is never logged or stored in clear.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from keyledger.config import settings
from keyledger.core.clock import utcnow
from keyledger.jobs.runner import job_run
from keyledger.models.credential import ACTOR_SYSTEM, Credential
from keyledger.models.outcomes import ITEM_FAILED, ITEM_SKIPPED, ITEM_SUCCESS, ItemOutcome, JobResult
from keyledger.services.credential_store import CredentialStore

logger = logging.getLogger(__name__)

JOB_NAME = "credential_rotation"
REASON_EXPIRED = "expired"

ReplacementCallback = Callable[[Credential, Credential, str], None]


def run_credential_rotation(
    store: Optional[CredentialStore] = None,
    now: Optional[datetime] = None,
    issue_replacement: Optional[bool] = None,
    on_replacement: Optional[ReplacementCallback] = None,
) -> JobResult:
    store = store or CredentialStore()
    now = now or utcnow()
    if issue_replacement is None:
        issue_replacement = settings.rotation_issue_replacement

    with job_run(JOB_NAME) as result:
        for credential in store.find_expired(now):
            try:
                outcome = _rotate(store, credential, now, issue_replacement, on_replacement)
            except Exception as exc:
                logger.exception("credential_rotation_failed", extra={"credential_id": credential.id})
                outcome = ItemOutcome(credential.id, ITEM_FAILED, str(exc))
            if outcome.status == ITEM_SUCCESS:
                result.affected += 1
            result.items.append(outcome)
    return result


def _rotate(
    store: CredentialStore,
    credential: Credential,
    now: datetime,
    issue_replacement: bool,
    on_replacement: Optional[ReplacementCallback],
) -> ItemOutcome:
    if not issue_replacement:
        if not store.deactivate(credential.id, ACTOR_SYSTEM, reason=REASON_EXPIRED):
            return ItemOutcome(credential.id, ITEM_SKIPPED, "already_inactive")
        return ItemOutcome(credential.id, ITEM_SUCCESS, "deactivated")

    expires_at = now + timedelta(days=settings.rotation_validity_days) if settings.rotation_validity_days > 0 else None
    rotated = store.rotate(credential, ACTOR_SYSTEM, reason=REASON_EXPIRED, expires_at=expires_at)
    if rotated is None:
        return ItemOutcome(credential.id, ITEM_SKIPPED, "already_inactive")

    replacement, full_key = rotated
    logger.info(
        "credential_rotated",
        extra={"credential_id": credential.id, "replacement_id": replacement.id},
    )
    if on_replacement is not None:
        on_replacement(credential, replacement, full_key)
    return ItemOutcome(credential.id, ITEM_SUCCESS, f"replaced_by:{replacement.id}")
