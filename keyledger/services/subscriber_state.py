"""
Subscriber State
================

Premium flag, premium expiry and Stripe customer reference per subscriber.

Writes are last-write-wins. Provider events for one subscriber may arrive
out of order, so a write that pulls ``premium_until`` backwards while the
subscriber stays premium is applied but logged as
``premium_until_regression``. The premium flag is stored exactly as
given; a window that has already ended is only logged.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from keyledger.core.clock import as_utc, utcnow
from keyledger.core.database import get_session_context, sqlite_retry, store_guard
from keyledger.models.subscriber import Subscriber

logger = logging.getLogger(__name__)


class _Unchanged:
    def __repr__(self) -> str:
        return "UNCHANGED"


UNCHANGED = _Unchanged()


class SubscriberState:
    """SQL-backed subscriber premium state."""

    def get(self, subscriber_id: str) -> Optional[Subscriber]:
        with store_guard("subscriber_state.get"), get_session_context() as session:
            return session.get(Subscriber, subscriber_id)

    def ensure_subscriber(self, subscriber_id: str) -> Subscriber:
        """Create the subscriber row if it does not exist yet.

        Registration normally owns row creation; this is the seed path for
        tests and back-office tooling.
        """
        with store_guard("subscriber_state.ensure"), get_session_context() as session:
            existing = session.get(Subscriber, subscriber_id)
            if existing is not None:
                return existing
            row = Subscriber(id=subscriber_id)
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return session.get(Subscriber, subscriber_id)
            session.refresh(row)
            return row

    def set_premium(
        self,
        subscriber_id: str,
        premium: bool,
        until=UNCHANGED,
        customer_ref: Optional[str] = None,
    ) -> Optional[Subscriber]:
        """Set the premium flag and, unless ``until`` is UNCHANGED, its expiry.

        ``until=None`` clears the expiry. Returns the updated row, or None
        when the subscriber is not registered.
        """
        with store_guard("subscriber_state.set_premium"):
            return sqlite_retry(lambda: self._set_premium(subscriber_id, premium, until, customer_ref))

    def _set_premium(self, subscriber_id, premium, until, customer_ref) -> Optional[Subscriber]:
        with get_session_context() as session:
            row = session.exec(
                select(Subscriber).where(Subscriber.id == subscriber_id).with_for_update()
            ).first()
            if row is None:
                logger.warning("subscriber_not_registered", extra={"subscriber_id": subscriber_id})
                return None

            now = utcnow()
            if until is not UNCHANGED:
                until = as_utc(until)
                current_until = as_utc(row.premium_until)
                if premium and row.premium and until is not None and current_until is not None and until < current_until:
                    logger.warning(
                        "premium_until_regression",
                        extra={
                            "subscriber_id": subscriber_id,
                            "stored_premium_until": current_until.isoformat(),
                            "incoming_premium_until": until.isoformat(),
                        },
                    )
                if premium and until is not None and until <= now:
                    logger.warning(
                        "premium_until_elapsed",
                        extra={"subscriber_id": subscriber_id, "incoming_premium_until": until.isoformat()},
                    )
                row.premium_until = until

            row.premium = premium
            if customer_ref and row.external_customer_ref != customer_ref:
                row.external_customer_ref = customer_ref
            row.updated_at = now

            session.add(row)
            session.commit()
            session.refresh(row)

            logger.info(
                "subscriber_premium_set",
                extra={
                    "subscriber_id": subscriber_id,
                    "premium": row.premium,
                    "premium_until": _iso(row.premium_until),
                },
            )
            return row


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None
