"""
Access Log Source
=================

Aggregate queries over ``access_logs`` for the security jobs. Every count
is computed in SQL; rows are never loaded into memory.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

import sqlalchemy as sa

from keyledger.config import settings
from keyledger.core.database import get_engine, store_guard
from keyledger.models.access_log import AccessLogEntry

logger = logging.getLogger(__name__)


class AccessLogSource:
    """Read-only aggregation over the access log table."""

    def __init__(self, marker_endpoint: Optional[str] = None) -> None:
        self.marker_endpoint = marker_endpoint or settings.security_marker_endpoint
        self._t = AccessLogEntry.__table__

    def count_distinct_ips(self, credential_id: Optional[int], since: datetime) -> int:
        return self._scalar(sa.func.count(sa.distinct(self._t.c.ip)), credential_id, since)

    def count_distinct_user_agents(self, credential_id: Optional[int], since: datetime) -> int:
        return self._scalar(sa.func.count(sa.distinct(self._t.c.user_agent)), credential_id, since)

    def count_suspicious(self, credential_id: Optional[int], since: datetime) -> int:
        return self._scalar(
            sa.func.count(), credential_id, since, self._t.c.endpoint == self.marker_endpoint
        )

    def count_total(self, credential_id: Optional[int], since: datetime) -> int:
        return self._scalar(sa.func.count(), credential_id, since)

    def _scalar(self, aggregate, credential_id: Optional[int], since: datetime, *extra) -> int:
        """Run ``aggregate`` over rows since ``since``; ``credential_id=None`` spans all credentials."""
        t = self._t
        stmt = sa.select(aggregate).select_from(t).where(t.c.timestamp >= since, *extra)
        if credential_id is not None:
            stmt = stmt.where(t.c.credential_id == credential_id)
        with store_guard("access_log_source.count"), get_engine().connect() as conn:
            return int(conn.execute(stmt).scalar() or 0)
