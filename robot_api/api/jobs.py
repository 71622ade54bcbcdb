"""
Jobs API: listing, status and stored results
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from .. import errors
from ..auth import Caller
from ..auth.deps import require_key
from ..db import get_db
from ..errors import ApiError
from ..models.job import ALL_STATUSES, COMPLETED
from ..services import jobs
from ..services.storage import get_store
from .utils import route_prefix

logger = logging.getLogger("app")

router = APIRouter(tags=["Jobs"])


def _owned_job(db: Session, job_id: str, caller: Caller):
    job = jobs.get_job(db, job_id, caller.key_id)
    if job is None:
        raise ApiError(errors.NOT_FOUND, "Job not found")
    return job


@router.get("/jobs")
async def list_jobs(request: Request,
                    limit: int = Query(20, ge=1, le=100),
                    status: Optional[str] = Query(None),
                    caller: Caller = Depends(require_key),
                    db: Session = Depends(get_db)):
    if status is not None and status not in ALL_STATUSES:
        raise ApiError(errors.BAD_REQUEST, f"status must be one of {', '.join(ALL_STATUSES)}")
    prefix = route_prefix(request)
    rows = jobs.list_jobs(db, caller.key_id, limit=limit, status=status)
    return {"success": True, "jobs": [job.to_dict(prefix) for job in rows], "count": len(rows)}


@router.get("/jobs/{job_id}")
async def get_job(job_id: str, request: Request, caller: Caller = Depends(require_key),
                  db: Session = Depends(get_db)):
    job = _owned_job(db, job_id, caller)
    return {"success": True, "job": job.to_dict(route_prefix(request))}


@router.get("/jobs/{job_id}/result")
async def get_job_result(job_id: str, caller: Caller = Depends(require_key), db: Session = Depends(get_db)):
    """Raw stored result document; 409 until the job has completed"""
    job = _owned_job(db, job_id, caller)
    if job.status != COMPLETED:
        raise ApiError(errors.NOT_READY, f"Job is {job.status}; the result is available once it has completed")
    document = get_store().get_json(job.result_path) if job.result_path else None
    if document is None:
        raise ApiError(errors.NOT_FOUND, "No stored result for this job")
    return JSONResponse(document)
