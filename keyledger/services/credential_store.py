"""
Credential Store
================

PURPOSE:
    Persistent API credentials: issuance, quota counter resets, expiry
    lookup and deactivation.

    Bulk and conditional writes go through SQLAlchemy Core statements on the
    ``credentials`` table so they touch exactly the columns they name.
    Iteration is keyset-paginated on ``id``; no call loads the whole table.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import string
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterator, Optional, Tuple

import sqlalchemy as sa
from sqlmodel import select

from keyledger.config import settings
from keyledger.core.clock import utcnow
from keyledger.core.database import get_engine, get_session_context, sqlite_retry, store_guard
from keyledger.models.credential import TIER_PREMIUM, Credential

logger = logging.getLogger(__name__)

KEY_PREFIX = "kl"
_ALPHABET = string.ascii_lowercase + string.digits


@dataclass(frozen=True)
class CredentialCounts:
    total: int
    active: int
    deactivated: int


def default_limits(tier: str) -> Dict[str, int]:
    """Quota limits a new credential of ``tier`` starts with."""
    if tier == TIER_PREMIUM:
        daily, minute = settings.premium_daily_quota, settings.premium_minute_quota
    else:
        daily, minute = settings.free_daily_quota, settings.free_minute_quota
    return {
        "daily_quota_limit": daily,
        "minute_quota_limit": minute,
        "hourly_quota_limit": settings.default_hourly_quota,
        "monthly_quota_limit": settings.default_monthly_quota,
    }


def hash_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def _generate_key() -> Tuple[str, str]:
    """Return (key_id, secret)."""
    key_id = secrets.token_hex(6)
    secret = "".join(secrets.choice(_ALPHABET) for _ in range(32))
    return key_id, secret


def _new_credential(
    owner_subscriber_id: str,
    tier: str,
    name: str,
    expires_at: Optional[datetime],
    rotated_from_id: Optional[int],
    limits: Optional[Dict[str, int]],
) -> Tuple[Credential, str]:
    key_id, secret = _generate_key()
    row = Credential(
        owner_subscriber_id=owner_subscriber_id,
        name=name,
        key_id=key_id,
        key_hash=hash_secret(secret),
        tier=tier,
        expires_at=expires_at,
        rotated_from_id=rotated_from_id,
        **(limits or default_limits(tier)),
    )
    return row, f"{KEY_PREFIX}_{key_id}_{secret}"


class CredentialStore:
    """SQL-backed credential store."""

    def __init__(self, batch_size: Optional[int] = None) -> None:
        self.batch_size = batch_size or settings.job_batch_size

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def issue(
        self,
        owner_subscriber_id: str,
        tier: str = "free",
        name: str = "Default",
        expires_at: Optional[datetime] = None,
        rotated_from_id: Optional[int] = None,
        limits: Optional[Dict[str, int]] = None,
    ) -> Tuple[Credential, str]:
        """Create a credential. Returns (credential, full_key); the key is not stored."""
        row, full_key = _new_credential(owner_subscriber_id, tier, name, expires_at, rotated_from_id, limits)
        with store_guard("credential_store.issue"), get_session_context() as session:
            session.add(row)
            session.commit()
            session.refresh(row)

        logger.info(
            "credential_issued",
            extra={"credential_id": row.id, "owner_subscriber_id": owner_subscriber_id, "tier": tier},
        )
        return row, full_key

    def rotate(
        self,
        credential: Credential,
        actor: str,
        reason: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> Optional[Tuple[Credential, str]]:
        """Deactivate ``credential`` and issue its replacement in one transaction.

        The replacement keeps the owner, tier and limits. Returns
        (replacement, full_key), or None when the credential was no longer
        active. If the replacement cannot be written the deactivation is
        rolled back with it, so a later run picks the credential up again.
        """
        t = Credential.__table__

        def _rotate() -> Optional[Tuple[Credential, str]]:
            now = utcnow()
            with get_session_context() as session:
                flipped = session.connection().execute(
                    t.update()
                    .where(t.c.id == credential.id)
                    .where(t.c.is_active == True)  # noqa: E712
                    .values(
                        is_active=False,
                        deactivated_at=now,
                        deactivated_by=actor,
                        deactivation_reason=reason,
                        updated_at=now,
                    )
                ).rowcount
                if flipped != 1:
                    session.rollback()
                    return None

                row, full_key = _new_credential(
                    credential.owner_subscriber_id,
                    credential.tier,
                    f"{credential.name} (rotated)",
                    expires_at,
                    credential.id,
                    {
                        "daily_quota_limit": credential.daily_quota_limit,
                        "minute_quota_limit": credential.minute_quota_limit,
                        "hourly_quota_limit": credential.hourly_quota_limit,
                        "monthly_quota_limit": credential.monthly_quota_limit,
                    },
                )
                session.add(row)
                session.commit()
                session.refresh(row)
                return row, full_key

        with store_guard("credential_store.rotate"):
            rotated = sqlite_retry(_rotate)

        if rotated is not None:
            logger.info(
                "credential_deactivated",
                extra={"credential_id": credential.id, "actor": actor, "reason": reason},
            )
            logger.info(
                "credential_issued",
                extra={
                    "credential_id": rotated[0].id,
                    "owner_subscriber_id": credential.owner_subscriber_id,
                    "tier": credential.tier,
                },
            )
        return rotated

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, credential_id: int) -> Optional[Credential]:
        with store_guard("credential_store.get"), get_session_context() as session:
            return session.get(Credential, credential_id)

    def list_active(self) -> Iterator[Credential]:
        """Yield every active credential, one page at a time."""
        return self._paginate(Credential.is_active == True)  # noqa: E712

    def find_expired(self, now: datetime) -> Iterator[Credential]:
        """Yield active credentials whose ``expires_at`` is strictly before ``now``."""
        return self._paginate(
            Credential.is_active == True,  # noqa: E712
            Credential.expires_at.is_not(None),
            Credential.expires_at < now,
        )

    def counts(self) -> CredentialCounts:
        t = Credential.__table__
        stmt = sa.select(
            sa.func.count(),
            sa.func.coalesce(sa.func.sum(sa.case((t.c.is_active == True, 1), else_=0)), 0),  # noqa: E712
        ).select_from(t)
        with store_guard("credential_store.counts"), get_engine().connect() as conn:
            total, active = conn.execute(stmt).one()
        return CredentialCounts(total=total, active=active, deactivated=total - active)

    def _paginate(self, *conditions) -> Iterator[Credential]:
        last_id = 0
        while True:
            with store_guard("credential_store.page"), get_session_context() as session:
                stmt = (
                    select(Credential)
                    .where(Credential.id > last_id, *conditions)
                    .order_by(Credential.id)
                    .limit(self.batch_size)
                )
                page = list(session.exec(stmt).all())
            if not page:
                return
            yield from page
            if len(page) < self.batch_size:
                return
            last_id = page[-1].id

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def reset_daily_counters(self) -> int:
        """Zero ``daily_quota_used`` on every credential in one statement.

        No other column changes, ``updated_at`` included. Returns the number
        of rows matched.
        """
        t = Credential.__table__

        def _reset() -> int:
            with get_engine().begin() as conn:
                result = conn.execute(t.update().values(daily_quota_used=0))
                return result.rowcount

        with store_guard("credential_store.reset_daily_counters"):
            return sqlite_retry(_reset)

    def deactivate(self, credential_id: int, actor: str, reason: Optional[str] = None) -> bool:
        """Deactivate an active credential.

        Conditional on ``is_active``: returns True only for the call that
        actually flipped the flag, so concurrent or repeated runs agree on
        who performed the deactivation.
        """
        t = Credential.__table__
        now = utcnow()

        def _deactivate() -> int:
            with get_engine().begin() as conn:
                result = conn.execute(
                    t.update()
                    .where(t.c.id == credential_id)
                    .where(t.c.is_active == True)  # noqa: E712
                    .values(
                        is_active=False,
                        deactivated_at=now,
                        deactivated_by=actor,
                        deactivation_reason=reason,
                        updated_at=now,
                    )
                )
                return result.rowcount

        with store_guard("credential_store.deactivate"):
            changed = sqlite_retry(_deactivate) == 1

        if changed:
            logger.info(
                "credential_deactivated",
                extra={"credential_id": credential_id, "actor": actor, "reason": reason},
            )
        return changed
