"""
Shared helpers for route handlers: body parsing, charging, idempotency and responses
"""
import json
import logging
from typing import Any, Callable, Dict, Optional, Tuple

from fastapi import Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from .. import config, errors
from ..auth import Caller
from ..errors import ApiError
from ..services import idempotency, ledger, ratelimit
from ..services.idempotency import Reservation
from ..services.webhooks import resolve_secret
from ..utils.clock import utcnow

log = logging.getLogger("app")

IDEMPOTENCY_HEADERS = ("idempotency-key", "x-idempotency-key")
REPLAY_HEADER = "X-Idempotent-Replay"


def request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)


def route_prefix(request: Request) -> str:
    """``/v1`` when the request came in on the versioned prefix"""
    path = request.url.path
    return config.API_PREFIX if path == config.API_PREFIX or path.startswith(config.API_PREFIX + "/") else ""


async def read_json(request: Request) -> Any:
    body = await request.body()
    if len(body) > config.MAX_REQUEST_BYTES:
        raise ApiError(errors.PAYLOAD_TOO_LARGE, f"Payload too large (max {config.MAX_REQUEST_BYTES} bytes)")
    if not body.strip():
        raise ApiError(errors.BAD_REQUEST, "Request body must be a JSON object")
    try:
        return json.loads(body)
    except ValueError:
        raise ApiError(errors.BAD_REQUEST, "Request body is not valid JSON")


async def parse_body(request: Request, parser: Callable[[Any], Tuple[bool, Any]]) -> Tuple[Any, Any]:
    """
    Read the JSON body and validate it with one of the ``validation.parse_*`` functions

    Validation resolves hostnames for the SSRF check, so it runs in the threadpool.
    """
    payload = await read_json(request)
    ok, value = await run_in_threadpool(parser, payload)
    if not ok:
        raise ApiError(errors.BAD_REQUEST, value)
    return payload, value


def require_webhook_secret(webhook_url: Optional[str], webhook_secret: Optional[str]) -> None:
    if webhook_url and not resolve_secret(webhook_secret):
        raise ApiError(errors.BAD_REQUEST, "webhook_secret is required when no server webhook secret is configured")


def charge(db: Session, caller: Caller, amount: int = 1) -> Optional[int]:
    """
    Take credits for an accepted request

    Anonymous callers draw on their daily quota instead of a balance.

    Returns:
        Remaining credits (or remaining anonymous requests today)
    """
    if caller.is_anonymous:
        allowed, remaining = ratelimit.consume_anonymous_quota(caller.client_id)
        if not allowed:
            raise ApiError(errors.RATE_LIMITED, "Anonymous daily limit reached. Create an API key to continue.")
        return remaining
    charged, code, remaining = ledger.consume_credits(db, caller.key_id, amount)
    if not charged:
        message = errors.message_for(code)
        if code == errors.INSUFFICIENT_CREDITS:
            message = f"Insufficient credits: {amount} required, {remaining or 0} remaining"
        raise ApiError(code, message)
    return remaining


def reserve_idempotency(request: Request, db: Session, caller: Caller, payload: Any) -> Optional[Reservation]:
    """Reserve the request's idempotency key, if it sent one"""
    key = None
    for header in IDEMPOTENCY_HEADERS:
        if request.headers.get(header):
            key = request.headers[header].strip()
            break
    if not key:
        return None
    if len(key) > idempotency.MAX_KEY_LENGTH:
        raise ApiError(errors.BAD_REQUEST, f"Idempotency key must be at most {idempotency.MAX_KEY_LENGTH} characters")

    reservation = idempotency.reserve(db, caller.identity, key, payload, utcnow())
    if reservation.state == idempotency.CONFLICT:
        raise ApiError(errors.IDEMPOTENCY_CONFLICT, "Idempotency key was already used with a different request body")
    if reservation.state == idempotency.IN_PROGRESS:
        raise ApiError(errors.IDEMPOTENCY_CONFLICT, "A request with this idempotency key is still being processed")
    return reservation


def replay_response(reservation: Reservation) -> JSONResponse:
    log.info("idempotent replay", extra={"entry_id": reservation.entry_id})
    return JSONResponse(reservation.body, status_code=reservation.status_code or 200,
                        headers={REPLAY_HEADER: "true"})


def respond(db: Session, reservation: Optional[Reservation], status_code: int, body: Dict[str, Any],
            headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    """Build the response and remember it under the idempotency key"""
    if reservation is not None:
        idempotency.complete(db, reservation.entry_id, status_code, body)
    return JSONResponse(body, status_code=status_code, headers=headers)


def release(db: Session, reservation: Optional[Reservation]) -> None:
    """Give the idempotency key back so the caller can retry"""
    db.rollback()
    if reservation is not None:
        idempotency.release(db, reservation.entry_id)
