"""
Schedule engine

A tick is re-entered from an external timer; there is no in-process scheduler loop.
Selection of due schedules is the pure ``plan_tick``; ``fire_due`` claims them in the
database and creates their jobs; ``dispatch`` runs the jobs and their webhooks.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .. import config, errors
from ..db import SessionLocal
from ..models.job import FAILED, QUEUED
from ..models.schedule import Schedule
from ..schemas.extract import ExtractOptions
from ..schemas.schedule import ScheduleCreate, ScheduleUpdate
from ..utils.clock import utcnow
from . import cron, jobs, ledger, retention
from .collaborators import Collaborators
from .jobs import JobOutcome, JobSpec
from .prometheus_metrics import prometheus_metrics

log = logging.getLogger("robot")

DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 100


@dataclass
class TickPlan:
    due: List[Schedule]
    next_runs: Dict[str, Optional[datetime]]


@dataclass
class TickResult:
    now: datetime
    claimed: int = 0
    skipped: int = 0
    job_ids: List[str] = field(default_factory=list)
    unfunded: List[JobOutcome] = field(default_factory=list)
    specs: Dict[str, JobSpec] = field(default_factory=dict)
    schedule_ids: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, object]:
        return {
            "claimed": self.claimed,
            "skipped": self.skipped,
            "queued": len(self.job_ids),
            "failed": len(self.unfunded),
            "job_ids": self.job_ids + [o.job_id for o in self.unfunded],
        }


def spec_for(schedule: Schedule) -> JobSpec:
    return JobSpec(
        url=schedule.url,
        fields=schedule.fields_config,
        json_schema=schedule.schema_json,
        instructions=schedule.instructions,
        options=ExtractOptions(),
        webhook_url=schedule.webhook_url,
        webhook_secret=schedule.webhook_secret,
    )


# ----- CRUD -----

def create_schedule(db: Session, owner_key_id: str, req: ScheduleCreate,
                    now: Optional[datetime] = None) -> Schedule:
    now = now or utcnow()
    schedule = Schedule(
        id=str(uuid.uuid4()),
        owner_key_id=owner_key_id,
        url=req.url,
        cron=req.cron,
        fields_config=req.fields,
        schema_json=req.json_schema,
        instructions=req.instructions,
        webhook_url=req.webhook_url,
        webhook_secret=req.webhook_secret,
        is_active=True,
        next_run_at=cron.next_run(req.cron, now),
        created_at=now,
        updated_at=now,
    )
    db.add(schedule)
    db.commit()
    log.info("schedule created", extra={"component": "schedules", "schedule_id": schedule.id,
                                        "cron": schedule.cron})
    return schedule


def list_schedules(db: Session, owner_key_id: str, limit: int = DEFAULT_LIST_LIMIT) -> List[Schedule]:
    limit = max(1, min(limit, MAX_LIST_LIMIT))
    return list(db.execute(
        select(Schedule)
        .where(Schedule.owner_key_id == owner_key_id)
        .order_by(Schedule.created_at.desc())
        .limit(limit)
    ).scalars())


def get_schedule(db: Session, schedule_id: str, owner_key_id: str) -> Optional[Schedule]:
    return db.execute(
        select(Schedule).where(Schedule.id == schedule_id, Schedule.owner_key_id == owner_key_id)
    ).scalar_one_or_none()


def update_schedule(db: Session, schedule: Schedule, patch: ScheduleUpdate,
                    now: Optional[datetime] = None) -> Schedule:
    """
    Apply the keys present in ``patch``

    Explicit nulls clear ``instructions`` and ``webhook_secret`` and are ignored for
    required attributes. Setting ``fields`` clears ``schema`` and vice versa.
    """
    now = now or utcnow()
    present = patch.model_fields_set
    reschedule = False

    if "cron" in present and patch.cron is not None and patch.cron != schedule.cron:
        schedule.cron = patch.cron
        reschedule = True
    if "is_active" in present and patch.is_active is not None and patch.is_active != schedule.is_active:
        schedule.is_active = patch.is_active
        reschedule = True
    if "webhook_url" in present and patch.webhook_url is not None:
        schedule.webhook_url = patch.webhook_url
    if "webhook_secret" in present:
        schedule.webhook_secret = patch.webhook_secret
    if "instructions" in present:
        schedule.instructions = patch.instructions
    if "fields" in present and patch.fields is not None:
        schedule.fields_config = patch.fields
        schedule.schema_json = None
    if "json_schema" in present and patch.json_schema is not None:
        schedule.schema_json = patch.json_schema
        schedule.fields_config = None

    if reschedule:
        schedule.next_run_at = cron.next_run(schedule.cron, now) if schedule.is_active else None
    schedule.updated_at = now
    db.commit()
    log.info("schedule updated", extra={"component": "schedules", "schedule_id": schedule.id,
                                        "is_active": schedule.is_active})
    return schedule


def delete_schedule(db: Session, schedule_id: str, owner_key_id: str) -> bool:
    schedule = get_schedule(db, schedule_id, owner_key_id)
    if schedule is None:
        return False
    db.delete(schedule)
    db.commit()
    log.info("schedule deleted", extra={"component": "schedules", "schedule_id": schedule_id})
    return True


# ----- tick -----

def plan_tick(now: datetime, schedules: Iterable[Schedule]) -> TickPlan:
    """
    Pick the due schedules and compute where each one moves next

    Next runs are computed from ``now`` rather than from the missed slot, so a schedule
    that was not ticked for a while fires once instead of catching up.
    """
    due = [s for s in schedules if s.is_active and s.next_run_at is not None and s.next_run_at <= now]
    next_runs = {}
    for s in due:
        next_runs[s.id] = cron.safe_next_run(s.cron, now)
        if next_runs[s.id] is None:
            log.error("schedule cron never fires", extra={"component": "schedules", "schedule_id": s.id})
    return TickPlan(due=due, next_runs=next_runs)


def due_schedules(db: Session, now: datetime, limit: int) -> List[Schedule]:
    return list(db.execute(
        select(Schedule)
        .where(Schedule.is_active.is_(True), Schedule.next_run_at.is_not(None), Schedule.next_run_at <= now)
        .order_by(Schedule.next_run_at)
        .limit(limit)
    ).scalars())


def claim(db: Session, schedule: Schedule, next_run_at: Optional[datetime], now: datetime) -> bool:
    """Advance a schedule only if no concurrent tick advanced it first"""
    result = db.execute(
        update(Schedule)
        .where(
            Schedule.id == schedule.id,
            Schedule.is_active.is_(True),
            Schedule.next_run_at == schedule.next_run_at,
        )
        .values(next_run_at=next_run_at, last_run_at=now)
        .execution_options(synchronize_session=False)
    )
    claimed = result.rowcount == 1
    db.commit()
    return claimed


def fire_due(now: Optional[datetime] = None, limit: Optional[int] = None) -> TickResult:
    """Claim due schedules, create one queued job each and charge its owner"""
    now = now or utcnow()
    result = TickResult(now=now)
    with SessionLocal() as db:
        plan = plan_tick(now, due_schedules(db, now, limit or config.SCHEDULE_TICK_LIMIT))
        for schedule in plan.due:
            if not claim(db, schedule, plan.next_runs[schedule.id], now):
                result.skipped += 1
                continue
            result.claimed += 1
            spec = spec_for(schedule)
            job = jobs.create_job(db, spec, owner_key_id=schedule.owner_key_id, schedule_id=schedule.id, now=now)
            result.specs[job.id] = spec
            result.schedule_ids[job.id] = schedule.id

            charged, reason, _ = ledger.consume_credits(db, schedule.owner_key_id, 1, now)
            if charged:
                result.job_ids.append(job.id)
                continue
            message = errors.message_for(reason)
            jobs.transition(db, job.id, FAILED, (QUEUED,), error_msg=message, completed_at=now)
            result.unfunded.append(JobOutcome(job.id, FAILED, error=message))
            log.warning("scheduled job not funded", extra={"component": "schedules", "schedule_id": schedule.id,
                                                          "job_id": job.id, "reason": reason})

    if result.claimed:
        prometheus_metrics.increment_schedule_fired(result.claimed)
    log.info("cron tick", extra={"component": "schedules", "claimed": result.claimed, "skipped": result.skipped})
    return result


async def dispatch(tick: TickResult, collaborators: Collaborators) -> None:
    """Run a tick's jobs concurrently, notify unfunded ones, then clean up expired data"""
    await asyncio.gather(
        jobs.run_jobs(tick.job_ids, collaborators),
        *(jobs.notify(tick.specs[o.job_id], o, tick.schedule_ids[o.job_id]) for o in tick.unfunded),
    )
    with SessionLocal() as db:
        retention.cleanup_expired(db, tick.now)


async def run_tick(collaborators: Collaborators, now: Optional[datetime] = None,
                   limit: Optional[int] = None) -> TickResult:
    tick = fire_due(now, limit)
    await dispatch(tick, collaborators)
    return tick
