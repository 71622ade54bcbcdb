"""
Retention: expire cache entries, idempotency keys, old usage rows and old DLQ files
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from .. import config
from ..models.cache_entry import CacheEntry
from ..models.idempotency import IdempotencyEntry
from ..models.usage import UsageLog
from ..utils.clock import utcnow
from .dlq import get_dlq
from .storage import get_store

log = logging.getLogger("robot")


def cleanup_expired(db: Session, now: Optional[datetime] = None) -> Dict[str, int]:
    now = now or utcnow()
    store = get_store()

    expired = list(db.execute(select(CacheEntry).where(CacheEntry.expires_at <= now)).scalars())
    for entry in expired:
        store.delete(entry.object_key)
        db.delete(entry)

    idempotency = db.execute(
        delete(IdempotencyEntry).where(IdempotencyEntry.expires_at <= now)
    ).rowcount
    usage = db.execute(
        delete(UsageLog).where(UsageLog.created_at < now - timedelta(days=config.USAGE_RETENTION_DAYS))
    ).rowcount
    db.commit()

    counts = {
        "cache_entries": len(expired),
        "idempotency_entries": idempotency,
        "usage_logs": usage,
        "dlq_files": get_dlq().cleanup_old_records(),
    }
    if any(counts.values()):
        log.info("retention cleanup", extra={"component": "retention", **counts})
    return counts
