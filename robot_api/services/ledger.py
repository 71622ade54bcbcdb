"""
Key/Quota ledger: key resolution and atomic credit accounting

Credit changes are conditional UPDATEs evaluated by the database, so concurrent
requests against the same key can never drive the balance below zero or charge twice
for one decrement.
"""

import logging
import uuid
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .. import config, errors
from ..models.apikey import ApiKey
from ..utils.clock import utcnow
from ..utils.crypto import generate_api_key, hash_token
from .prometheus_metrics import prometheus_metrics

log = logging.getLogger("robot")


def resolve_key(db: Session, plaintext: Optional[str]) -> Tuple[Optional[ApiKey], Optional[str]]:
    """
    Look up a plaintext key by its digest

    Returns:
        Tuple of (key, error_code); error_code is one of missing, invalid, inactive
    """
    if not plaintext:
        return None, errors.MISSING
    key = db.execute(select(ApiKey).where(ApiKey.hash == hash_token(plaintext))).scalar_one_or_none()
    if key is None:
        return None, errors.INVALID
    if not key.is_active:
        return key, errors.INACTIVE
    return key, None


def _classify_failure(db: Session, key_id: str) -> str:
    row = db.execute(
        select(ApiKey.is_active).where(ApiKey.id == key_id)
    ).first()
    if row is None:
        return errors.INVALID
    if not row.is_active:
        return errors.INACTIVE
    return errors.INSUFFICIENT_CREDITS


def remaining_credits(db: Session, key_id: str) -> Optional[int]:
    return db.execute(select(ApiKey.remaining_credits).where(ApiKey.id == key_id)).scalar_one_or_none()


def consume_credits(db: Session, key_id: str, amount: int = 1,
                    now: Optional[datetime] = None) -> Tuple[bool, Optional[str], Optional[int]]:
    """
    Atomically take ``amount`` credits from an active key

    Returns:
        Tuple of (charged, error_code, remaining_credits)
    """
    result = db.execute(
        update(ApiKey)
        .where(
            ApiKey.id == key_id,
            ApiKey.is_active.is_(True),
            ApiKey.remaining_credits >= amount,
        )
        .values(
            remaining_credits=ApiKey.remaining_credits - amount,
            last_used_at=now or utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    charged = result.rowcount == 1
    db.commit()
    if not charged:
        reason = _classify_failure(db, key_id)
        prometheus_metrics.increment_credit_rejected(reason)
        log.info("credit charge refused", extra={"component": "ledger", "key_id": key_id, "reason": reason})
        return False, reason, remaining_credits(db, key_id)
    return True, None, remaining_credits(db, key_id)


def refund_credits(db: Session, key_id: str, amount: int = 1) -> None:
    db.execute(
        update(ApiKey)
        .where(ApiKey.id == key_id)
        .values(remaining_credits=ApiKey.remaining_credits + amount)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    log.info("credits refunded", extra={"component": "ledger", "key_id": key_id, "amount": amount})


def refund_for_outcome(db: Session, key_id: Optional[str], status: str) -> bool:
    """Apply the configured refund policy for a job that did not complete"""
    if not key_id:
        return False
    if (status == "blocked" and config.REFUND_BLOCKED) or (status == "failed" and config.REFUND_FAILED):
        refund_credits(db, key_id, 1)
        return True
    return False


# ----- key lifecycle -----

def create_key(db: Session, owner_id: str, tier: str = "free",
               credits: Optional[int] = None) -> Tuple[ApiKey, str]:
    """Create a key; the plaintext is returned here and never stored"""
    plaintext = generate_api_key()
    key = ApiKey(
        id=uuid.uuid4().hex,
        hash=hash_token(plaintext),
        prefix=plaintext[:8],
        owner_id=owner_id,
        tier=tier,
        is_active=True,
        remaining_credits=config.DEFAULT_CREDITS.get(tier, 0) if credits is None else credits,
        created_at=utcnow(),
    )
    db.add(key)
    db.commit()
    log.info("api key created", extra={"component": "ledger", "key_id": key.id, "tier": tier})
    return key, plaintext


def rotate_key(db: Session, key_id: str) -> Optional[Tuple[ApiKey, str]]:
    """Replace the secret of an existing key, keeping its balance"""
    key = db.get(ApiKey, key_id)
    if key is None:
        return None
    plaintext = generate_api_key()
    key.hash = hash_token(plaintext)
    key.prefix = plaintext[:8]
    key.is_active = True
    db.commit()
    log.info("api key rotated", extra={"component": "ledger", "key_id": key.id})
    return key, plaintext


def deactivate_key(db: Session, key_id: str) -> Optional[ApiKey]:
    key = db.get(ApiKey, key_id)
    if key is None:
        return None
    key.is_active = False
    db.commit()
    log.info("api key deactivated", extra={"component": "ledger", "key_id": key.id})
    return key


def grant_credits(db: Session, key_id: str, amount: int) -> Optional[int]:
    if db.get(ApiKey, key_id) is None:
        return None
    refund_credits(db, key_id, amount)
    return remaining_credits(db, key_id)
