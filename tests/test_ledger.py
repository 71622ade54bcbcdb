"""
Key/quota ledger tests
"""
from concurrent.futures import ThreadPoolExecutor

from robot_api import config
from robot_api.db import SessionLocal
from robot_api.models.apikey import ApiKey
from robot_api.services import ledger
from robot_api.services.cache import cache
from robot_api.services.ratelimit import check_limit, consume_anonymous_quota
from robot_api.utils.crypto import hash_token


def test_create_key_stores_only_digest(db):
    key, plaintext = ledger.create_key(db, "owner-1", "pro")
    assert plaintext.startswith("rs_")
    assert key.hash == hash_token(plaintext)
    assert plaintext not in (key.hash, key.prefix)
    assert key.remaining_credits == config.DEFAULT_CREDITS["pro"]


def test_resolve_key_errors(db):
    key, plaintext = ledger.create_key(db, "owner-1")
    assert ledger.resolve_key(db, None) == (None, "missing")
    assert ledger.resolve_key(db, "rs_not-a-key") == (None, "invalid")
    assert ledger.resolve_key(db, plaintext)[1] is None

    ledger.deactivate_key(db, key.id)
    assert ledger.resolve_key(db, plaintext)[1] == "inactive"


def test_consume_decrements_until_exhausted(db):
    key, _ = ledger.create_key(db, "owner-1", credits=2)
    assert ledger.consume_credits(db, key.id) == (True, None, 1)
    assert ledger.consume_credits(db, key.id) == (True, None, 0)
    assert ledger.consume_credits(db, key.id) == (False, "insufficient_credits", 0)


def test_consume_amount_is_all_or_nothing(db):
    key, _ = ledger.create_key(db, "owner-1", credits=3)
    charged, code, remaining = ledger.consume_credits(db, key.id, amount=5)
    assert not charged
    assert code == "insufficient_credits"
    assert remaining == 3


def test_inactive_key_is_not_charged(db):
    key, _ = ledger.create_key(db, "owner-1", credits=5)
    ledger.deactivate_key(db, key.id)
    assert ledger.consume_credits(db, key.id) == (False, "inactive", 5)


def test_consume_unknown_key(db):
    assert ledger.consume_credits(db, "no-such-key")[:2] == (False, "invalid")


def test_concurrent_charges_never_overdraw(db):
    key, _ = ledger.create_key(db, "owner-1", credits=5)

    def charge(_):
        with SessionLocal() as session:
            return ledger.consume_credits(session, key.id)[0]

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(charge, range(12)))

    assert results.count(True) == 5
    db.expire_all()
    assert db.get(ApiKey, key.id).remaining_credits == 0


def test_refund_policy(db, monkeypatch):
    key, _ = ledger.create_key(db, "owner-1", credits=1)
    ledger.consume_credits(db, key.id)

    assert ledger.refund_for_outcome(db, key.id, "blocked") is False
    monkeypatch.setattr(config, "REFUND_BLOCKED", True)
    assert ledger.refund_for_outcome(db, key.id, "blocked") is True
    assert ledger.remaining_credits(db, key.id) == 1
    assert ledger.refund_for_outcome(db, None, "blocked") is False


def test_rotate_keeps_balance(db):
    key, old = ledger.create_key(db, "owner-1", credits=7)
    key, new = ledger.rotate_key(db, key.id)
    assert new != old
    assert ledger.resolve_key(db, old)[1] == "invalid"
    assert ledger.resolve_key(db, new)[0].remaining_credits == 7
    assert ledger.rotate_key(db, "missing") is None


def test_grant_credits(db):
    key, _ = ledger.create_key(db, "owner-1", credits=0)
    assert ledger.grant_credits(db, key.id, 10) == 10
    assert ledger.grant_credits(db, "missing", 10) is None


def test_rate_limit_window():
    states = [check_limit("key:abc", 3, now=1000.0) for _ in range(4)]
    assert [s.allowed for s in states] == [True, True, True, False]
    assert states[0].remaining == 2
    assert states[0].headers()["X-RateLimit-Limit"] == "3"
    assert states[0].reset == 1020
    # next window starts fresh
    assert check_limit("key:abc", 3, now=1021.0).allowed


def test_anonymous_daily_quota(monkeypatch):
    monkeypatch.setattr(config, "ANON_DAILY_LIMIT", 2)
    assert consume_anonymous_quota("1.2.3.4", now=86400.0 * 10) == (True, 1)
    assert consume_anonymous_quota("1.2.3.4", now=86400.0 * 10 + 5) == (True, 0)
    assert consume_anonymous_quota("1.2.3.4", now=86400.0 * 10 + 9) == (False, 0)
    assert consume_anonymous_quota("5.6.7.8", now=86400.0 * 10)[0]


def test_expired_windows_are_dropped_from_memory():
    for minute in range(1000):
        assert check_limit("key-1", 100, now=minute * 60.0).allowed
    assert len(cache._counts) == 1
    assert len(cache._expires) == 1
