"""
Job manager: lifecycle of a single extraction

States: queued -> processing -> completed | failed | blocked. Synchronous requests are
created directly in ``processing``. Every status change is a compare-and-swap on the
current status, so a job is processed at most once and terminal rows never change.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .. import config
from ..db import SessionLocal
from ..models.job import BLOCKED, COMPLETED, FAILED, PROCESSING, QUEUED, Job
from ..models import usage as usage_status
from ..schemas.extract import BatchRequest, ExtractOptions, ExtractRequest
from ..security import sanitize_error_message
from ..utils.clock import utcnow
from . import ledger, result_cache, webhooks
from .collaborators import Collaborators
from .headers import build_request_headers
from .prometheus_metrics import prometheus_metrics
from .storage import content_key, get_store, result_key, screenshot_key
from .usage import record_usage

log = logging.getLogger("robot")

BLOCKED_MESSAGE = "Target site blocked rendering"


class JobTimeout(Exception):
    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} did not finish in time")
        self.job_id = job_id


@dataclass
class JobSpec:
    """What to extract; everything needed to run or re-run a job"""
    url: str
    fields: Optional[List[str]] = None
    json_schema: Optional[Dict[str, Any]] = None
    instructions: Optional[str] = None
    options: ExtractOptions = field(default_factory=ExtractOptions)
    webhook_url: Optional[str] = None
    webhook_secret: Optional[str] = None

    @classmethod
    def from_request(cls, req: ExtractRequest) -> "JobSpec":
        return cls(url=req.url, fields=req.fields, json_schema=req.json_schema, instructions=req.instructions,
                   options=req.options, webhook_url=req.webhook_url, webhook_secret=req.webhook_secret)

    @classmethod
    def from_batch(cls, req: BatchRequest, url: str) -> "JobSpec":
        return cls(url=url, fields=req.fields, json_schema=req.json_schema, instructions=req.instructions,
                   options=req.options, webhook_url=req.webhook_url, webhook_secret=req.webhook_secret)

    @classmethod
    def from_job(cls, job: Job) -> "JobSpec":
        return cls(url=job.url, fields=job.fields, json_schema=job.schema_json, instructions=job.instructions,
                   options=ExtractOptions.model_validate(job.options or {}),
                   webhook_url=job.webhook_url, webhook_secret=job.webhook_secret)

    def fingerprint(self) -> str:
        options = self.options.as_payload()
        if self.options.headers:
            options["headers"] = build_request_headers(self.options.headers)
        return result_cache.fingerprint(self.url, self.fields, self.json_schema, self.instructions, options)

    def render_options(self) -> Dict[str, Any]:
        options = self.options.as_payload()
        options.pop("storeContent", None)
        options["headers"] = build_request_headers(self.options.headers)
        return options


@dataclass
class JobOutcome:
    job_id: str
    status: str
    data: Any = None
    error: Optional[str] = None
    tokens: int = 0
    latency_ms: int = 0
    content_chars: int = 0
    cache_hit: bool = False
    cache_age_ms: Optional[int] = None
    result_path: Optional[str] = None


# ----- persistence -----

def create_job(db: Session, spec: JobSpec, *, owner_key_id: Optional[str], mode: str = "async",
               status: str = QUEUED, schedule_id: Optional[str] = None,
               now: Optional[datetime] = None) -> Job:
    now = now or utcnow()
    job = Job(
        id=str(uuid.uuid4()),
        owner_key_id=owner_key_id,
        schedule_id=schedule_id,
        url=spec.url,
        status=status,
        mode=mode,
        fields=spec.fields,
        schema_json=spec.json_schema,
        instructions=spec.instructions,
        options=spec.options.as_payload(),
        webhook_url=spec.webhook_url,
        webhook_secret=spec.webhook_secret,
        created_at=now,
        started_at=now if status == PROCESSING else None,
    )
    db.add(job)
    db.commit()
    log.info("job created", extra={"component": "jobs", "job_id": job.id, "status": status, "mode": mode})
    return job


def transition(db: Session, job_id: str, to_status: str, from_statuses: Iterable[str], **values) -> bool:
    """Move a job to ``to_status`` only if it is currently in one of ``from_statuses``"""
    result = db.execute(
        update(Job)
        .where(Job.id == job_id, Job.status.in_(tuple(from_statuses)))
        .values(status=to_status, **values)
        .execution_options(synchronize_session=False)
    )
    moved = result.rowcount == 1
    db.commit()
    if moved:
        log.info("job transition", extra={"component": "jobs", "job_id": job_id, "status": to_status})
    return moved


def get_job(db: Session, job_id: str, owner_key_id: str) -> Optional[Job]:
    return db.execute(
        select(Job).where(Job.id == job_id, Job.owner_key_id == owner_key_id)
    ).scalar_one_or_none()


def list_jobs(db: Session, owner_key_id: str, limit: int = 20, status: Optional[str] = None) -> List[Job]:
    stmt = select(Job).where(Job.owner_key_id == owner_key_id)
    if status:
        stmt = stmt.where(Job.status == status)
    return list(db.execute(stmt.order_by(Job.created_at.desc()).limit(limit)).scalars())


# ----- execution -----

def _finish(db: Session, outcome: JobOutcome, *, owner_key_id: Optional[str], url: str, mode: str,
            usage: str, **values) -> JobOutcome:
    moved = transition(db, outcome.job_id, outcome.status, (PROCESSING,), completed_at=utcnow(),
                       latency_ms=outcome.latency_ms, **values)
    if not moved:
        log.warning("job already finished elsewhere", extra={"component": "jobs", "job_id": outcome.job_id})
        return outcome
    record_usage(db, owner_key_id=owner_key_id, url=url, status=usage, job_id=outcome.job_id,
                 token_usage=outcome.tokens, latency_ms=outcome.latency_ms)
    if outcome.status in (BLOCKED, FAILED):
        ledger.refund_for_outcome(db, owner_key_id, outcome.status)
    prometheus_metrics.record_job(outcome.status, mode, outcome.latency_ms)
    return outcome


async def _produce(job_id: str, spec: JobSpec, collaborators: Collaborators, db: Session, store, fp: Optional[str],
                   persist: bool, elapsed) -> JobOutcome:
    if fp:
        cached = result_cache.lookup(db, store, fp, utcnow())
        if cached is not None:
            prometheus_metrics.increment_cache_hit()
            outcome = JobOutcome(job_id, COMPLETED, data=cached.data, tokens=0, latency_ms=elapsed(),
                                 content_chars=cached.content_chars, cache_hit=True, cache_age_ms=cached.age_ms)
            if persist:
                outcome.result_path = store.put_json(result_key(job_id), _result_document(spec, outcome))
            return outcome

    rendered = await collaborators.renderer.render(spec.url, spec.render_options())
    if rendered.blocked:
        return JobOutcome(job_id, BLOCKED, error=BLOCKED_MESSAGE, latency_ms=elapsed())

    content = (rendered.content or "")[:config.MAX_CONTENT_CHARS]
    if spec.options.store_content:
        store.put_text(content_key(job_id), content)
    if rendered.screenshot:
        store.put_bytes(screenshot_key(job_id, rendered.screenshot_type), rendered.screenshot)

    extracted = await collaborators.extractor.extract(content, spec.fields, spec.json_schema, spec.instructions)
    outcome = JobOutcome(job_id, COMPLETED, data=extracted.data, tokens=extracted.tokens,
                         latency_ms=elapsed(), content_chars=len(content))
    if persist:
        outcome.result_path = store.put_json(result_key(job_id), _result_document(spec, outcome))
    return outcome


async def execute(job_id: str, spec: JobSpec, collaborators: Collaborators, *,
                  owner_key_id: Optional[str], mode: str = "async") -> JobOutcome:
    """
    Run a job that is already ``processing`` to a terminal state

    Collaborator, cache and storage failures become ``failed`` or ``blocked`` outcomes;
    they are never raised.
    """
    started = time.monotonic()
    store = get_store()
    persist = mode == "async" or config.STORE_RESULTS

    def elapsed() -> int:
        return int((time.monotonic() - started) * 1000)

    with SessionLocal() as db:
        try:
            fp = spec.fingerprint() if config.CACHE_ENABLED else None
            outcome = await _produce(job_id, spec, collaborators, db, store, fp, persist, elapsed)
        except Exception as e:
            db.rollback()
            message = sanitize_error_message(str(e) or e.__class__.__name__)
            log.warning("job failed", extra={"component": "jobs", "job_id": job_id, "error": message})
            outcome = JobOutcome(job_id, FAILED, error=message, latency_ms=elapsed())
            return _finish(db, outcome, owner_key_id=owner_key_id, url=spec.url, mode=mode,
                           usage=usage_status.ERROR, error_msg=message)

        if outcome.status == BLOCKED:
            return _finish(db, outcome, owner_key_id=owner_key_id, url=spec.url, mode=mode,
                           usage=usage_status.BLOCKED, error_msg=BLOCKED_MESSAGE)

        usage = usage_status.CACHED if outcome.cache_hit else usage_status.SUCCESS
        _finish(db, outcome, owner_key_id=owner_key_id, url=spec.url, mode=mode, usage=usage,
                cache_hit=outcome.cache_hit, token_usage=outcome.tokens, result_path=outcome.result_path)
        if fp and not outcome.cache_hit:
            try:
                result_cache.save(db, store, fp, spec.url, outcome.data, outcome.tokens, outcome.content_chars,
                                  utcnow())
            except Exception as e:
                db.rollback()
                log.warning("result cache write failed", extra={"component": "jobs", "job_id": job_id,
                                                                "error": sanitize_error_message(str(e))})
        return outcome


def _result_document(spec: JobSpec, outcome: JobOutcome) -> Dict[str, Any]:
    return {
        "jobId": outcome.job_id,
        "url": spec.url,
        "data": outcome.data,
        "meta": {
            "tokens": outcome.tokens,
            "latencyMs": outcome.latency_ms,
            "contentChars": outcome.content_chars,
            "cacheHit": outcome.cache_hit,
        },
    }


def webhook_meta(spec: JobSpec, outcome: JobOutcome, schedule_id: Optional[str] = None) -> Dict[str, Any]:
    meta = {"url": spec.url, "tokens": outcome.tokens, "latencyMs": outcome.latency_ms}
    if outcome.result_path:
        meta["resultUrl"] = f"/jobs/{outcome.job_id}/result"
    if schedule_id:
        meta["scheduleId"] = schedule_id
    return meta


async def notify(spec: JobSpec, outcome: JobOutcome, schedule_id: Optional[str] = None):
    return await webhooks.notify_job(outcome.job_id, outcome.status, spec.webhook_url, spec.webhook_secret,
                                     data=outcome.data, error=outcome.error,
                                     meta=webhook_meta(spec, outcome, schedule_id))


async def run_job(job_id: str, collaborators: Collaborators) -> Optional[JobOutcome]:
    """Claim a queued job, run it and send its webhook"""
    with SessionLocal() as db:
        job = db.get(Job, job_id)
        if job is None:
            log.warning("job vanished before processing", extra={"component": "jobs", "job_id": job_id})
            return None
        if not transition(db, job_id, PROCESSING, (QUEUED,), started_at=utcnow()):
            return None
        spec = JobSpec.from_job(job)
        owner_key_id, schedule_id = job.owner_key_id, job.schedule_id

    outcome = await execute(job_id, spec, collaborators, owner_key_id=owner_key_id, mode="async")
    await notify(spec, outcome, schedule_id)
    return outcome


async def run_jobs(job_ids: Iterable[str], collaborators: Collaborators) -> List[Optional[JobOutcome]]:
    """Run independent jobs concurrently"""
    return list(await asyncio.gather(*(run_job(job_id, collaborators) for job_id in job_ids)))


# sync jobs that outlive their request; held here until they finish and notify
_detached: Set["asyncio.Task"] = set()


async def _notify_when_done(task: "asyncio.Future", spec: JobSpec):
    try:
        outcome = await task
        await notify(spec, outcome)
    except Exception:
        log.exception("late webhook failed", extra={"component": "jobs"})


async def run_sync(job_id: str, spec: JobSpec, collaborators: Collaborators, *,
                   owner_key_id: Optional[str]) -> JobOutcome:
    """
    Run a ``processing`` job within the caller's request

    Raises JobTimeout after ``timeoutMs`` plus the grace period. The job keeps running,
    still records its own terminal state and sends its webhook when it gets there.
    """
    timeout = (spec.options.timeout_ms + config.SYNC_TIMEOUT_GRACE_MS) / 1000
    task = asyncio.ensure_future(execute(job_id, spec, collaborators, owner_key_id=owner_key_id, mode="sync"))
    try:
        return await asyncio.wait_for(asyncio.shield(task), timeout)
    except asyncio.TimeoutError:
        log.warning("sync extraction timed out", extra={"component": "jobs", "job_id": job_id})
        follow_up = asyncio.ensure_future(_notify_when_done(task, spec))
        _detached.add(follow_up)
        follow_up.add_done_callback(_detached.discard)
        raise JobTimeout(job_id)
