"""
Subscriber Model
================

Premium state per registered account. Rows are created by account
registration; reconciliation only ever updates them.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlmodel import Field, SQLModel


class Subscriber(SQLModel, table=True):
    """Premium flag, expiry and Stripe customer reference for one account."""

    __tablename__ = "subscribers"

    id: str = Field(primary_key=True, max_length=128)
    premium: bool = Field(default=False)
    premium_until: Optional[datetime] = Field(default=None, nullable=True)
    external_customer_ref: Optional[str] = Field(default=None, nullable=True, max_length=255)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
