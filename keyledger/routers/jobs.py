"""
Manual job triggers.

- GET  /api/jobs  registered jobs and whether each is running
- POST /api/jobs/{job_name}/run  run a job now and return its JobResult
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from keyledger.core.auth import require_internal_key
from keyledger.jobs.scheduler import JobScheduler

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_internal_key)])


def get_scheduler(request: Request) -> JobScheduler:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        scheduler = JobScheduler()
        request.app.state.scheduler = scheduler
    return scheduler


@router.get("")
async def list_jobs(scheduler: JobScheduler = Depends(get_scheduler)):
    return {
        "jobs": [
            {"name": name, "running": scheduler.is_running(name)}
            for name in sorted(scheduler.jobs)
        ]
    }


@router.post("/{job_name}/run")
async def run_job_now(job_name: str, scheduler: JobScheduler = Depends(get_scheduler)):
    """Run a job immediately. 409 when the same job is already running."""
    result = await scheduler.trigger(job_name)
    if result is None:
        return JSONResponse(status_code=409, content={"success": False, "error": "job_already_running"})
    logger.info("job_triggered_manually", extra={"job": job_name, "run_id": result.run_id})
    return {"success": result.status != "failed", "result": result.to_dict()}
