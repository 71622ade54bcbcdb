"""
Schedules API: CRUD over the caller's cron schedules
"""

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from .. import errors
from ..auth import Caller
from ..auth.deps import require_key
from ..db import get_db
from ..errors import ApiError
from ..services import schedules, validation
from ..services.webhooks import resolve_secret
from .utils import parse_body, require_webhook_secret

router = APIRouter(tags=["Schedules"])


def _owned_schedule(db: Session, schedule_id: str, caller: Caller):
    schedule = schedules.get_schedule(db, schedule_id, caller.key_id)
    if schedule is None:
        raise ApiError(errors.NOT_FOUND, "Schedule not found")
    return schedule


@router.post("/schedules", status_code=201)
async def create_schedule(request: Request, caller: Caller = Depends(require_key), db: Session = Depends(get_db)):
    _, req = await parse_body(request, validation.parse_schedule_create)
    require_webhook_secret(req.webhook_url, req.webhook_secret)
    schedule = schedules.create_schedule(db, caller.key_id, req)
    return JSONResponse({"success": True, "schedule": schedule.to_dict()}, status_code=201)


@router.get("/schedules")
async def list_schedules(limit: int = Query(schedules.DEFAULT_LIST_LIMIT, ge=1, le=schedules.MAX_LIST_LIMIT),
                         caller: Caller = Depends(require_key), db: Session = Depends(get_db)):
    rows = schedules.list_schedules(db, caller.key_id, limit=limit)
    return {"success": True, "schedules": [s.to_dict() for s in rows], "count": len(rows)}


@router.get("/schedules/{schedule_id}")
async def get_schedule(schedule_id: str, caller: Caller = Depends(require_key), db: Session = Depends(get_db)):
    return {"success": True, "schedule": _owned_schedule(db, schedule_id, caller).to_dict()}


@router.patch("/schedules/{schedule_id}")
async def update_schedule(schedule_id: str, request: Request, caller: Caller = Depends(require_key),
                          db: Session = Depends(get_db)):
    """Partial update; ``is_active: false`` pauses and ``true`` resumes"""
    _, patch = await parse_body(request, validation.parse_schedule_update)
    schedule = _owned_schedule(db, schedule_id, caller)
    if "webhook_secret" in patch.model_fields_set and not resolve_secret(patch.webhook_secret):
        raise ApiError(errors.BAD_REQUEST, "webhook_secret cannot be removed when no server webhook secret is configured")
    schedule = schedules.update_schedule(db, schedule, patch)
    return {"success": True, "schedule": schedule.to_dict()}


@router.delete("/schedules/{schedule_id}")
async def delete_schedule(schedule_id: str, caller: Caller = Depends(require_key), db: Session = Depends(get_db)):
    if not schedules.delete_schedule(db, schedule_id, caller.key_id):
        raise ApiError(errors.NOT_FOUND, "Schedule not found")
    return {"success": True, "deleted": schedule_id}
