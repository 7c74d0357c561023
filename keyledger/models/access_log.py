"""
Access Log Model
================

One row per API call made with a credential. Written by the request
metering layer; the lifecycle jobs only aggregate it.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlmodel import Field, SQLModel


class AccessLogEntry(SQLModel, table=True):
    __tablename__ = "access_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), index=True)
    credential_id: int = Field(index=True)
    endpoint: str = Field(max_length=512)
    method: str = Field(default="GET", max_length=16)
    ip: Optional[str] = Field(default=None, nullable=True, max_length=64)
    user_agent: Optional[str] = Field(default=None, nullable=True, max_length=512)
    status_code: int = Field(default=200)
