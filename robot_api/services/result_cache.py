"""
Result cache keyed by request fingerprint
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import config
from ..models.cache_entry import CacheEntry
from ..utils.canonical import digest
from .storage import ObjectStore, cache_key

log = logging.getLogger("robot")

# options that change what the renderer returns
FINGERPRINT_OPTIONS = ("waitUntil", "proxy", "headers", "cookies")


@dataclass
class CachedResult:
    data: Any
    tokens: int
    content_chars: int
    age_ms: int


def fingerprint(url: str, fields: Optional[List[str]], schema: Optional[Dict[str, Any]],
                instructions: Optional[str], options: Optional[Dict[str, Any]] = None) -> str:
    options = options or {}
    return digest({
        "url": url,
        "fields": sorted({f.strip() for f in fields}) if fields else None,
        "schema": schema,
        "instructions": (instructions or "").strip() or None,
        "options": {k: options[k] for k in FINGERPRINT_OPTIONS if options.get(k) is not None},
    })


def lookup(db: Session, store: ObjectStore, fp: str, now: datetime) -> Optional[CachedResult]:
    entry = db.get(CacheEntry, fp)
    if entry is None or entry.expires_at <= now:
        return None
    payload = store.get_json(entry.object_key)
    if payload is None:
        return None
    db.execute(
        update(CacheEntry)
        .where(CacheEntry.fingerprint == fp)
        .values(hit_count=CacheEntry.hit_count + 1)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return CachedResult(
        data=payload.get("data"),
        tokens=int(payload.get("tokens") or 0),
        content_chars=int(payload.get("contentChars") or 0),
        age_ms=int((now - entry.created_at).total_seconds() * 1000),
    )


def save(db: Session, store: ObjectStore, fp: str, url: str, data: Any, tokens: int,
         content_chars: int, now: datetime) -> None:
    key = store.put_json(cache_key(fp), {"url": url, "data": data, "tokens": tokens, "contentChars": content_chars})
    expires_at = now + timedelta(seconds=config.CACHE_TTL_SECONDS)
    entry = db.get(CacheEntry, fp)
    if entry is None:
        db.add(CacheEntry(fingerprint=fp, url=url, object_key=key, hit_count=0,
                          created_at=now, expires_at=expires_at))
    else:
        entry.object_key = key
        entry.created_at = now
        entry.expires_at = expires_at
    try:
        db.commit()
    except IntegrityError:
        # another job stored the same fingerprint first
        db.rollback()
        log.debug("cache entry already present", extra={"component": "cache", "fingerprint": fp})
