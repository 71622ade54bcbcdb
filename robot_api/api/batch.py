"""
Batch endpoint: one queued job per URL
"""

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlalchemy.orm import Session

from ..auth.deps import authenticate
from ..db import get_db
from ..errors import ApiError
from ..services import idempotency, jobs, validation
from ..services.collaborators import Collaborators, get_collaborators
from ..services.jobs import JobSpec
from .utils import (charge, parse_body, release, replay_response, require_webhook_secret, reserve_idempotency,
                    respond, route_prefix)

router = APIRouter(tags=["Extract"])


@router.post("/batch")
async def batch(request: Request, background_tasks: BackgroundTasks, db: Session = Depends(get_db),
                collaborators: Collaborators = Depends(get_collaborators)):
    """Queue one job per URL; the caller is charged for every URL up front"""
    payload, req = await parse_body(request, validation.parse_batch_request)
    require_webhook_secret(req.webhook_url, req.webhook_secret)

    caller = authenticate(request, db, allow_anonymous=False)
    reservation = reserve_idempotency(request, db, caller, payload)
    if reservation is not None and reservation.state == idempotency.REPLAY:
        return replay_response(reservation)

    try:
        remaining = charge(db, caller, len(req.urls))
    except ApiError:
        release(db, reservation)
        raise

    prefix = route_prefix(request)
    created = [jobs.create_job(db, JobSpec.from_batch(req, url), owner_key_id=caller.key_id, mode="async")
               for url in req.urls]
    background_tasks.add_task(jobs.run_jobs, [job.id for job in created], collaborators)

    body = {
        "success": True,
        "jobs": [
            {"job_id": job.id, "url": job.url, "status": job.status, "status_url": f"{prefix}/jobs/{job.id}"}
            for job in created
        ],
        "meta": {"count": len(created), "remainingCredits": remaining},
    }
    return respond(db, reservation, 202, body)
