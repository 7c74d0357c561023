"""
Credential Model
================

Issued API key with its quota counters and activity window.
The raw key is shown once at issuance; only a SHA-256 hash is stored.
Credentials are deactivated, never deleted.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlmodel import Field, SQLModel

TIER_FREE = "free"
TIER_PREMIUM = "premium"

ACTOR_SYSTEM = "system"


class Credential(SQLModel, table=True):
    """Quota-bearing API credential owned by a subscriber."""

    __tablename__ = "credentials"

    id: Optional[int] = Field(default=None, primary_key=True)
    owner_subscriber_id: str = Field(index=True, max_length=128)
    name: str = Field(default="Default", max_length=255)
    key_id: str = Field(unique=True, max_length=32)
    key_hash: str = Field(max_length=128)
    tier: str = Field(default=TIER_FREE, max_length=16)

    daily_quota_used: int = Field(default=0)
    minute_quota_used: int = Field(default=0)
    daily_quota_limit: int = Field(default=0)
    minute_quota_limit: int = Field(default=0)
    hourly_quota_limit: int = Field(default=0)  # 0 = unlimited
    monthly_quota_limit: int = Field(default=0)  # 0 = unlimited

    is_active: bool = Field(default=True, index=True)
    expires_at: Optional[datetime] = Field(default=None, nullable=True, index=True)
    last_used_at: Optional[datetime] = Field(default=None, nullable=True)

    deactivated_at: Optional[datetime] = Field(default=None, nullable=True)
    deactivated_by: Optional[str] = Field(default=None, nullable=True, max_length=64)
    deactivation_reason: Optional[str] = Field(default=None, nullable=True, max_length=255)
    rotated_from_id: Optional[int] = Field(default=None, nullable=True)

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
