"""
Outcome Types
=============

Typed results returned by webhook handlers and lifecycle jobs, so callers
and tests assert on values instead of log output.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

# HandlerOutcome.status
APPLIED = "applied"
SKIPPED = "skipped"
IGNORED = "ignored"

# ItemOutcome.status
ITEM_SUCCESS = "success"
ITEM_SKIPPED = "skipped"
ITEM_FAILED = "failed"

# JobResult.status
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"


@dataclass(frozen=True)
class HandlerOutcome:
    """What a reconciliation handler did with one event."""

    status: str
    reason: Optional[str] = None
    subscriber_id: Optional[str] = None
    payment_record_id: Optional[str] = None


@dataclass(frozen=True)
class ItemOutcome:
    """Per-credential result inside a job run."""

    item_id: Any
    status: str
    detail: Optional[str] = None
    flags: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class SecurityReport:
    """Weekly aggregate over credentials and access logs."""

    period_start: datetime
    period_end: datetime
    total_credentials: int
    active_credentials: int
    deactivated_credentials: int
    total_calls: int
    suspicious_calls: int
    security_score: float
    recommendations: List[str] = field(default_factory=list)


@dataclass
class JobResult:
    job_name: str
    run_id: str
    started_at: datetime
    status: str = JOB_COMPLETED
    finished_at: Optional[datetime] = None
    affected: int = 0
    items: List[ItemOutcome] = field(default_factory=list)
    error: Optional[str] = None
    report: Optional[SecurityReport] = None

    def count(self, status: str) -> int:
        return sum(1 for item in self.items if item.status == status)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        if self.report is not None:
            data["report"]["period_start"] = self.report.period_start.isoformat()
            data["report"]["period_end"] = self.report.period_end.isoformat()
        return data
