"""
Extraction endpoint: synchronous or queued single-URL extraction
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlalchemy.orm import Session

from .. import errors
from ..auth.deps import authenticate
from ..db import get_db
from ..models.job import BLOCKED, COMPLETED, PROCESSING
from ..services import idempotency, jobs, validation
from ..services.collaborators import Collaborators, get_collaborators
from ..services.jobs import JobOutcome, JobSpec, JobTimeout
from .utils import (charge, parse_body, release, replay_response, request_id, require_webhook_secret,
                    reserve_idempotency, respond, route_prefix)

logger = logging.getLogger("app")

router = APIRouter(tags=["Extract"])

CACHE_HIT_HEADER = "X-Cache-Hit"


def sync_body(outcome: JobOutcome, remaining: Optional[int]) -> Dict[str, Any]:
    meta: Dict[str, Any] = {
        "id": outcome.job_id,
        "latencyMs": outcome.latency_ms,
        "tokens": outcome.tokens,
        "blocked": False,
        "contentChars": outcome.content_chars,
        "remainingCredits": remaining,
    }
    if outcome.cache_hit:
        meta["cache"] = {"hit": True, "ageMs": outcome.cache_age_ms}
    return {"success": True, "data": outcome.data, "meta": meta}


def outcome_error(outcome: JobOutcome, rid: Optional[str]):
    """Status code and error body for a sync job that did not complete"""
    code = errors.BLOCKED if outcome.status == BLOCKED else errors.SERVER_ERROR
    body = errors.error_body(code, outcome.error or "Extraction failed", rid)
    body["meta"] = {"id": outcome.job_id, "latencyMs": outcome.latency_ms, "blocked": outcome.status == BLOCKED}
    return errors.STATUS_BY_CODE[code], body


@router.post("/extract")
async def extract(request: Request, background_tasks: BackgroundTasks, db: Session = Depends(get_db),
                  collaborators: Collaborators = Depends(get_collaborators)):
    """
    Extract structured data from one URL

    Sync requests answer with the data. ``async: true`` queues a job and answers 202.
    Anonymous callers (when enabled) may only make sync requests.
    """
    payload, req = await parse_body(request, validation.parse_extract_request)
    require_webhook_secret(req.webhook_url, req.webhook_secret)

    caller = authenticate(request, db, allow_anonymous=not req.run_async)
    reservation = reserve_idempotency(request, db, caller, payload)
    if reservation is not None and reservation.state == idempotency.REPLAY:
        return replay_response(reservation)

    try:
        remaining = charge(db, caller, 1)
        return await _accept(request, background_tasks, db, collaborators, caller.key_id, req,
                             reservation, remaining)
    except Exception:
        release(db, reservation)
        raise


async def _accept(request: Request, background_tasks: BackgroundTasks, db: Session, collaborators: Collaborators,
                  owner_key_id: Optional[str], req, reservation, remaining: Optional[int]):
    spec = JobSpec.from_request(req)
    if req.run_async:
        job = jobs.create_job(db, spec, owner_key_id=owner_key_id, mode="async")
        background_tasks.add_task(jobs.run_job, job.id, collaborators)
        body = {
            "success": True,
            "job_id": job.id,
            "status": job.status,
            "status_url": f"{route_prefix(request)}/jobs/{job.id}",
            "meta": {"remainingCredits": remaining},
        }
        return respond(db, reservation, 202, body)

    job = jobs.create_job(db, spec, owner_key_id=owner_key_id, mode="sync", status=PROCESSING)
    try:
        outcome = await jobs.run_sync(job.id, spec, collaborators, owner_key_id=owner_key_id)
    except JobTimeout:
        # the webhook goes out when the detached job finishes
        body = errors.error_body(errors.SERVER_ERROR, "Extraction timed out", request_id(request))
        body["meta"] = {"id": job.id}
        return respond(db, reservation, 504, body)

    if spec.webhook_url:
        background_tasks.add_task(jobs.notify, spec, outcome)

    headers = {CACHE_HIT_HEADER: "true" if outcome.cache_hit else "false"}
    if outcome.status == COMPLETED:
        return respond(db, reservation, 200, sync_body(outcome, remaining), headers)
    status_code, body = outcome_error(outcome, request_id(request))
    return respond(db, reservation, status_code, body, headers)
