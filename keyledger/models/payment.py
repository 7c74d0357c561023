"""
Payment Models
==============

PaymentRecord is the audit row for one charge, renewal or refund. Each
provider reference column is UNIQUE: the constraint, not a prior lookup,
is what keeps duplicate webhook deliveries down to one row.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlmodel import JSON, Column, Field, SQLModel

PAYMENT_STATUSES = (
    "pending",
    "succeeded",
    "failed",
    "canceled",
    "refunded",
    "partially_refunded",
)

# Lookup kinds accepted by PaymentLedger.find_by_external_ref, mapped to columns.
EXTERNAL_REF_COLUMNS = {
    "payment_intent": "payment_intent_ref",
    "subscription": "subscription_ref",
    "checkout_session": "checkout_session_ref",
    "invoice": "invoice_ref",
    "refund": "refund_ref",
}

# Columns that identify a row on their own.
UNIQUE_REF_COLUMNS = (
    "payment_intent_ref",
    "invoice_ref",
    "checkout_session_ref",
    "refund_ref",
)


class PaymentRecord(SQLModel, table=True):
    """One provider transaction tied to a subscriber."""

    __tablename__ = "payment_records"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True, max_length=36)
    subscriber_id: str = Field(index=True, max_length=128)

    payment_intent_ref: Optional[str] = Field(default=None, nullable=True, unique=True, max_length=255)
    invoice_ref: Optional[str] = Field(default=None, nullable=True, unique=True, max_length=255)
    checkout_session_ref: Optional[str] = Field(default=None, nullable=True, unique=True, max_length=255)
    refund_ref: Optional[str] = Field(default=None, nullable=True, unique=True, max_length=255)
    subscription_ref: Optional[str] = Field(default=None, nullable=True, index=True, max_length=255)
    customer_ref: Optional[str] = Field(default=None, nullable=True, max_length=255)

    amount: int = Field(default=0)
    currency: str = Field(default="EUR", max_length=8)
    status: str = Field(default="pending", max_length=32)
    kind: str = Field(default="", max_length=128)
    metadata_json: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def external_refs(self) -> Dict[str, str]:
        """Unique reference columns that are set on this record."""
        return {col: getattr(self, col) for col in UNIQUE_REF_COLUMNS if getattr(self, col)}
