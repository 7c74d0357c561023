"""
Job run bookkeeping shared by the lifecycle jobs.

``job_run`` opens a JobResult, binds its run id into the logging context
and closes it out. An exception escaping the body marks the whole run as
failed; it is logged and not re-raised, so the job simply waits for its
next tick.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from typing import Iterator

from keyledger.core.clock import utcnow
from keyledger.core.structured_logging import job_run_id_var
from keyledger.models.outcomes import ITEM_FAILED, ITEM_SKIPPED, JOB_FAILED, JobResult

logger = logging.getLogger(__name__)


@contextmanager
def job_run(job_name: str) -> Iterator[JobResult]:
    result = JobResult(job_name=job_name, run_id=uuid.uuid4().hex, started_at=utcnow())
    token = job_run_id_var.set(result.run_id)
    logger.info("job_started", extra={"job": job_name})
    try:
        yield result
    except Exception as exc:
        result.status = JOB_FAILED
        result.error = str(exc)
        logger.exception("job_failed", extra={"job": job_name})
    finally:
        result.finished_at = utcnow()
        logger.info(
            "job_finished",
            extra={
                "job": job_name,
                "status": result.status,
                "affected": result.affected,
                "items": len(result.items),
                "failed_items": result.count(ITEM_FAILED),
                "skipped_items": result.count(ITEM_SKIPPED),
                "duration_ms": round((result.finished_at - result.started_at).total_seconds() * 1000, 2),
            },
        )
        job_run_id_var.reset(token)
