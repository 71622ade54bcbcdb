"""
Idempotency keys for extraction requests

A key is scoped to the caller. The first request reserves it before any credit is
charged; repeats with the same body replay the stored response, repeats with a
different body are refused.
"""
import hashlib
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import config
from ..models.idempotency import DONE, PENDING, IdempotencyEntry
from ..utils.canonical import canonical_json

MAX_KEY_LENGTH = 255

NEW = "new"
REPLAY = "replay"
CONFLICT = "conflict"
IN_PROGRESS = "in_progress"


@dataclass
class Reservation:
    state: str
    entry_id: str
    status_code: Optional[int] = None
    body: Optional[Any] = None


def entry_id(scope: str, key: str) -> str:
    return hashlib.sha256(f"{scope}:{key}".encode()).hexdigest()


def request_hash(key: str, body: Any) -> str:
    return hashlib.sha256(f"{key}:{canonical_json(body)}".encode()).hexdigest()


def _classify(entry: IdempotencyEntry, req_hash: str) -> Reservation:
    if entry.request_hash != req_hash:
        return Reservation(CONFLICT, entry.id)
    if entry.status == DONE:
        return Reservation(REPLAY, entry.id, entry.status_code, entry.response_body)
    return Reservation(IN_PROGRESS, entry.id)


def reserve(db: Session, scope: str, key: str, body: Any, now: datetime) -> Reservation:
    eid = entry_id(scope, key)
    req_hash = request_hash(key, body)

    entry = db.get(IdempotencyEntry, eid)
    if entry is not None and entry.expires_at <= now:
        db.delete(entry)
        db.commit()
        entry = None
    if entry is not None:
        return _classify(entry, req_hash)

    db.add(IdempotencyEntry(
        id=eid,
        request_hash=req_hash,
        status=PENDING,
        created_at=now,
        expires_at=now + timedelta(seconds=config.IDEMPOTENCY_TTL_SECONDS),
    ))
    try:
        db.commit()
    except IntegrityError:
        # a concurrent request reserved the key first
        db.rollback()
        return _classify(db.get(IdempotencyEntry, eid), req_hash)
    return Reservation(NEW, eid)


def complete(db: Session, eid: str, status_code: int, body: Any) -> None:
    entry = db.get(IdempotencyEntry, eid)
    if entry is None:
        return
    entry.status = DONE
    entry.status_code = status_code
    entry.response_body = body
    db.commit()


def release(db: Session, eid: str) -> None:
    """Drop a reservation whose request was refused before acceptance"""
    entry = db.get(IdempotencyEntry, eid)
    if entry is not None and entry.status == PENDING:
        db.delete(entry)
        db.commit()
