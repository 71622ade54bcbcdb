import hmac
import logging

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from .. import config, errors
from ..db import get_db
from ..errors import ApiError
from ..services import ledger, ratelimit
from ..services.prometheus_metrics import prometheus_metrics
from . import Caller, client_address, extract_api_key

log = logging.getLogger("app")


def apply_rate_limit(request: Request, caller: Caller) -> None:
    state = ratelimit.check_limit(caller.identity, ratelimit.limit_for(caller.tier))
    headers = state.headers()
    # copied onto the response by TracingMiddleware
    request.state.rate_limit_headers = headers
    if not state.allowed:
        prometheus_metrics.increment_rate_limited()
        log.info("AUTH: rate limited", extra={"identity": caller.identity, "tier": caller.tier})
        raise ApiError(errors.RATE_LIMITED, errors.message_for(errors.RATE_LIMITED), headers=headers)


def authenticate(request: Request, db: Session, allow_anonymous: bool = False) -> Caller:
    """
    Resolve the caller of a request and apply its rate limit

    Without a key the caller is anonymous when both the route and ALLOW_ANON permit it;
    otherwise the request fails with ``missing``.
    """
    token = extract_api_key(request)
    if token is None and allow_anonymous and config.ALLOW_ANON:
        caller = Caller(key=None, client_id=client_address(request))
    else:
        key, code = ledger.resolve_key(db, token)
        if code is not None:
            log.warning("AUTH: key rejected", extra={"reason": code})
            raise ApiError(code, errors.message_for(code))
        caller = Caller(key=key, client_id=client_address(request))

    request.state.caller = caller
    apply_rate_limit(request, caller)
    return caller


def require_key(request: Request, db: Session = Depends(get_db)) -> Caller:
    return authenticate(request, db, allow_anonymous=False)


def _bearer_matches(request: Request, expected: str) -> bool:
    auth = request.headers.get("authorization", "")
    parts = auth.split(None, 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return False
    return hmac.compare_digest(parts[1].strip().encode(), expected.encode())


def require_admin(request: Request) -> bool:
    """Admin endpoints take ``Authorization: Bearer <ADMIN_TOKEN>``; disabled when unset"""
    if not config.ADMIN_TOKEN or not _bearer_matches(request, config.ADMIN_TOKEN):
        log.warning("AUTH: admin token rejected", extra={"path": request.url.path})
        raise ApiError(errors.UNAUTHORIZED, "Admin token required")
    return True


def require_cron(request: Request) -> bool:
    """The timer collaborator sends X-Cron-Secret; without CRON_SECRET the admin token is accepted"""
    if config.CRON_SECRET:
        supplied = request.headers.get("x-cron-secret", "")
        if hmac.compare_digest(supplied.encode(), config.CRON_SECRET.encode()):
            return True
        log.warning("AUTH: cron secret rejected")
        raise ApiError(errors.UNAUTHORIZED, "Invalid cron secret")
    return require_admin(request)
