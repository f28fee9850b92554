"""
Manual triggers for the reminder jobs
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from ..scheduler import JOB_NAMES
from ..system import LoanServicingSystem
from .dependencies import get_system


router = APIRouter()


@router.post("/jobs/{job_name}")
def run_notification_job(
    job_name: str,
    run_date: Optional[date] = None,
    system: LoanServicingSystem = Depends(get_system)
):
    """Run one job (billing, warning, due_date, overdue) or all of them"""
    if job_name == "all":
        results = system.scheduler.run_all(run_date)
        return {"results": {name: result.to_dict() for name, result in results.items()}}

    if job_name not in JOB_NAMES:
        raise HTTPException(status_code=404, detail=f"Unknown notification job: {job_name}")
    return system.scheduler.run_job(job_name, run_date).to_dict()
