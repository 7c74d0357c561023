"""
Payment Ledger
==============

PURPOSE:
    Append/update store of PaymentRecord rows tied to a subscriber and a
    provider transaction reference.

IDEMPOTENCY:
    ``upsert`` inserts first and treats a UNIQUE violation on any external
    reference (payment intent, invoice, checkout session, refund) as the
    duplicate signal. The existing row is then locked and merged in place.
    Two workers racing on the same event therefore converge to one row;
    there is no lookup-then-insert window.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from keyledger.core.clock import utcnow
from keyledger.core.database import get_session_context, sqlite_retry, store_guard
from keyledger.core.errors import StoreFailure
from keyledger.models.payment import EXTERNAL_REF_COLUMNS, UNIQUE_REF_COLUMNS, PaymentRecord

logger = logging.getLogger(__name__)

# Status transitions that a late or duplicate delivery must not apply.
_NO_REGRESS = {("succeeded", "pending"), ("refunded", "pending"), ("refunded", "succeeded")}


class PaymentLedger:
    """SQL-backed payment record store."""

    def find_by_external_ref(self, kind: str, value: str) -> Optional[PaymentRecord]:
        """Return the record carrying ``value`` as its ``kind`` reference.

        ``kind`` is one of payment_intent, subscription, checkout_session,
        invoice or refund. Subscription references are not unique; the most
        recent record for the subscription is returned.
        """
        column_name = EXTERNAL_REF_COLUMNS.get(kind)
        if column_name is None:
            raise ValueError(f"Unknown external reference kind: {kind!r}")
        column = getattr(PaymentRecord, column_name)

        with store_guard("payment_ledger.find"), get_session_context() as session:
            stmt = select(PaymentRecord).where(column == value).order_by(PaymentRecord.created_at.desc())
            return session.exec(stmt).first()

    def get(self, record_id: str) -> Optional[PaymentRecord]:
        with store_guard("payment_ledger.get"), get_session_context() as session:
            return session.get(PaymentRecord, record_id)

    def list_for_subscriber(self, subscriber_id: str) -> List[PaymentRecord]:
        with store_guard("payment_ledger.list"), get_session_context() as session:
            stmt = (
                select(PaymentRecord)
                .where(PaymentRecord.subscriber_id == subscriber_id)
                .order_by(PaymentRecord.created_at)
            )
            return list(session.exec(stmt).all())

    def upsert(self, record: PaymentRecord, update_existing: bool = True) -> PaymentRecord:
        """Insert ``record`` or fold it into the row sharing one of its references.

        With ``update_existing=False`` a duplicate leaves the stored row as it
        is (used by events that only confirm an already-recorded charge).
        Returns the stored row.
        """
        refs = record.external_refs()
        if not refs and not record.subscription_ref:
            raise ValueError("PaymentRecord needs at least one external reference")

        with store_guard("payment_ledger.upsert"):
            return sqlite_retry(lambda: self._upsert(record, refs, update_existing))

    def annotate(self, record_id: str, metadata: Dict[str, Any]) -> Optional[PaymentRecord]:
        """Merge ``metadata`` into an existing record's metadata."""
        with store_guard("payment_ledger.annotate"), get_session_context() as session:
            row = session.exec(
                select(PaymentRecord).where(PaymentRecord.id == record_id).with_for_update()
            ).first()
            if row is None:
                return None
            row.metadata_json = {**(row.metadata_json or {}), **metadata}
            row.updated_at = utcnow()
            session.add(row)
            session.commit()
            session.refresh(row)
            return row

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _upsert(self, record: PaymentRecord, refs: Dict[str, str], update_existing: bool) -> PaymentRecord:
        with get_session_context() as session:
            session.add(record)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                conflict = exc
            else:
                session.refresh(record)
                logger.info(
                    "payment_record_created",
                    extra={"payment_record_id": record.id, "subscriber_id": record.subscriber_id, **refs},
                )
                return record

            existing = self._lock_existing(session, refs)
            if existing is None:
                # Conflict on a column other than the refs: nothing to merge into.
                logger.error("payment_record_conflict_unmerged", extra={**refs, "error": str(conflict.orig)})
                raise StoreFailure(
                    detail=f"payment_ledger.upsert: {conflict.orig}",
                    context={"operation": "payment_ledger.upsert", **refs},
                ) from conflict
            if not update_existing:
                logger.info("payment_record_duplicate", extra={"payment_record_id": existing.id, **refs})
                return existing

            if existing.subscriber_id != record.subscriber_id:
                logger.warning(
                    "payment_record_subscriber_mismatch",
                    extra={
                        "payment_record_id": existing.id,
                        "stored_subscriber_id": existing.subscriber_id,
                        "event_subscriber_id": record.subscriber_id,
                    },
                )

            existing_id = existing.id
            _merge_into(existing, record)
            session.add(existing)
            try:
                session.commit()
            except IntegrityError:
                # The merged refs point at two different rows; keep both untouched.
                session.rollback()
                logger.warning("payment_record_ref_conflict", extra={"payment_record_id": existing_id, **refs})
                return session.get(PaymentRecord, existing_id)

            session.refresh(existing)
            logger.info("payment_record_updated", extra={"payment_record_id": existing.id, **refs})
            return existing

    @staticmethod
    def _lock_existing(session: Session, refs: Dict[str, str]) -> Optional[PaymentRecord]:
        if not refs:
            return None
        clauses = [getattr(PaymentRecord, col) == value for col, value in refs.items()]
        stmt = (
            select(PaymentRecord)
            .where(sa.or_(*clauses))
            .order_by(PaymentRecord.created_at)
            .with_for_update()
        )
        return session.exec(stmt).first()


def _merge_into(existing: PaymentRecord, incoming: PaymentRecord) -> None:
    for col in (*UNIQUE_REF_COLUMNS, "subscription_ref", "customer_ref"):
        if getattr(existing, col) is None and getattr(incoming, col) is not None:
            setattr(existing, col, getattr(incoming, col))

    if incoming.amount:
        existing.amount = incoming.amount
    if incoming.currency:
        existing.currency = incoming.currency
    if incoming.kind:
        existing.kind = incoming.kind
    if (existing.status, incoming.status) not in _NO_REGRESS:
        existing.status = incoming.status

    existing.metadata_json = {**(existing.metadata_json or {}), **(incoming.metadata_json or {})}
    existing.updated_at = utcnow()
