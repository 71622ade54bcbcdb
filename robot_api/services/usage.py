"""
Usage recorder: append-only usage rows, dashboard aggregates and CSV export
"""
import csv
import io
import logging
import re
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from ..models.usage import BLOCKED, CACHED, ERROR, SUCCESS, UsageLog
from ..utils.clock import isoformat, utcnow

log = logging.getLogger("robot")

RANGES = {
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}
DEFAULT_RANGE = "7d"
SERIES_MAX_DAYS = 30
RECENT_LIMIT = 50
EXPORT_DEFAULT_LIMIT = 500
EXPORT_MAX_LIMIT = 5000
CSV_COLUMNS = ["id", "url", "status", "token_usage", "latency_ms", "created_at"]

_RANGE_RE = re.compile(r"^\s*(24h|7d|30d)\s*$")


def parse_range(value: Optional[str]) -> Tuple[bool, Any]:
    """
    Returns:
        Tuple of (is_valid, timedelta or error message)
    """
    if not value:
        return True, RANGES[DEFAULT_RANGE]
    match = _RANGE_RE.match(value)
    if not match:
        return False, "range must be one of 24h, 7d, 30d"
    return True, RANGES[match.group(1)]


def record_usage(db: Session, *, owner_key_id: Optional[str], url: str, status: str,
                 job_id: Optional[str] = None, token_usage: int = 0, latency_ms: int = 0,
                 now: Optional[datetime] = None) -> UsageLog:
    row = UsageLog(
        id=str(uuid.uuid4()),
        owner_key_id=owner_key_id,
        job_id=job_id,
        url=url,
        status=status,
        token_usage=token_usage or 0,
        latency_ms=latency_ms or 0,
        created_at=now or utcnow(),
    )
    db.add(row)
    db.commit()
    return row


def _window(owner_key_id: str, since: datetime, until: datetime):
    return (
        UsageLog.owner_key_id == owner_key_id,
        UsageLog.created_at >= since,
        UsageLog.created_at <= until,
    )


def summary(db: Session, owner_key_id: str, since: datetime, until: datetime) -> Dict[str, int]:
    row = db.execute(
        select(
            func.count(UsageLog.id),
            func.sum(case((UsageLog.status.in_((SUCCESS, CACHED)), 1), else_=0)),
            func.sum(case((UsageLog.status == CACHED, 1), else_=0)),
            func.sum(case((UsageLog.status == BLOCKED, 1), else_=0)),
            func.sum(case((UsageLog.status == ERROR, 1), else_=0)),
            func.sum(UsageLog.token_usage),
            func.avg(UsageLog.latency_ms),
        ).where(*_window(owner_key_id, since, until))
    ).one()
    total, success, cached, blocked, failed, tokens, avg_latency = row
    return {
        "total": total or 0,
        "success": int(success or 0),
        "cached": int(cached or 0),
        "blocked": int(blocked or 0),
        "failed": int(failed or 0),
        "tokens": int(tokens or 0),
        "avgLatencyMs": int(round(avg_latency)) if avg_latency else 0,
    }


def series(db: Session, owner_key_id: str, since: datetime, until: datetime) -> List[Dict[str, Any]]:
    day = func.date(UsageLog.created_at)
    rows = db.execute(
        select(
            day.label("day"),
            func.count(UsageLog.id),
            func.sum(case((UsageLog.status.in_((SUCCESS, CACHED)), 1), else_=0)),
            func.sum(case((UsageLog.status == ERROR, 1), else_=0)),
            func.sum(UsageLog.token_usage),
            func.avg(UsageLog.latency_ms),
        )
        .where(*_window(owner_key_id, since, until))
        .group_by(day)
        .order_by(day.desc())
        .limit(SERIES_MAX_DAYS)
    ).all()
    return [
        {
            "date": str(d),
            "total": total,
            "success": int(success or 0),
            "failed": int(failed or 0),
            "tokens": int(tokens or 0),
            "avgLatencyMs": int(round(avg)) if avg else 0,
        }
        for d, total, success, failed, tokens, avg in rows
    ]


def recent(db: Session, owner_key_id: str, since: datetime, until: datetime,
           limit: int = RECENT_LIMIT) -> List[UsageLog]:
    return list(db.execute(
        select(UsageLog)
        .where(*_window(owner_key_id, since, until))
        .order_by(UsageLog.created_at.desc())
        .limit(limit)
    ).scalars())


def usage_report(db: Session, owner_key_id: str, span: timedelta, now: Optional[datetime] = None) -> Dict[str, Any]:
    until = now or utcnow()
    since = until - span
    return {
        "range": {"from": isoformat(since), "to": isoformat(until)},
        "summary": summary(db, owner_key_id, since, until),
        "series": series(db, owner_key_id, since, until),
        "recent": [row.to_dict() for row in recent(db, owner_key_id, since, until)],
    }


def export_csv(db: Session, owner_key_id: str, span: timedelta, limit: int = EXPORT_DEFAULT_LIMIT,
               now: Optional[datetime] = None) -> Tuple[str, str]:
    """
    Returns:
        Tuple of (csv text, download filename)
    """
    until = now or utcnow()
    since = until - span
    rows = recent(db, owner_key_id, since, until, limit=max(1, min(limit, EXPORT_MAX_LIMIT)))

    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CSV_COLUMNS)
    for row in rows:
        writer.writerow([row.id, row.url, row.status, row.token_usage, row.latency_ms, isoformat(row.created_at)])

    filename = f"usage_{since.strftime('%Y%m%d')}_{until.strftime('%Y%m%d')}.csv"
    return buf.getvalue(), filename
