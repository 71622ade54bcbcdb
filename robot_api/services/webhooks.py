"""
Webhook dispatcher: signed job notifications with retry

Every attempt re-runs the SSRF guard against the target before connecting, because
the hostname may resolve differently than it did when the webhook was registered.
Redirects are never followed.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from .. import config
from ..schemas.webhook import WebhookPayload
from ..utils.clock import isoformat, utcnow
from ..utils.crypto import sign_payload
from .dlq import get_dlq
from .prometheus_metrics import prometheus_metrics
from .ssrf import check_url_async

log = logging.getLogger("robot")

SIGNATURE_HEADER = "X-Robot-Signature"
EVENT_HEADER = "X-Robot-Event"
USER_AGENT = "RobotExtract-Webhook/1.0"

DELIVERED = "delivered"
HTTP_ERROR = "http_error"
NETWORK_ERROR = "network_error"
TIMEOUT = "timeout"
REJECTED = "rejected"


@dataclass
class WebhookDelivery:
    """One delivery attempt"""
    target_url: str
    payload: bytes
    signature: str
    attempt: int
    outcome: str = ""
    status_code: Optional[int] = None
    error: Optional[str] = None


@dataclass
class DeliveryResult:
    delivered: bool
    attempts: int
    status_code: Optional[int] = None
    error: Optional[str] = None
    deliveries: List[WebhookDelivery] = field(default_factory=list)


def resolve_secret(secret: Optional[str]) -> Optional[str]:
    return secret or config.WEBHOOK_SECRET or None


def build_payload(job_id: str, status: str, data: Any = None, error: Optional[str] = None,
                  meta: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    payload = WebhookPayload(jobId=job_id, status=status, data=data, error=error,
                             timestamp=isoformat(utcnow()), meta=meta)
    return payload.model_dump(exclude_none=True)


def serialize_payload(payload: Dict[str, Any]) -> bytes:
    """The exact bytes that are signed and sent"""
    return json.dumps(payload, separators=(",", ":"), default=str).encode("utf-8")


def _make_client(timeout: float) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=timeout, follow_redirects=False)


async def deliver(target_url: str, payload: Dict[str, Any], secret: str, *,
                  max_attempts: Optional[int] = None,
                  backoff_base: Optional[float] = None,
                  timeout: Optional[float] = None,
                  sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep) -> DeliveryResult:
    """
    POST a signed payload, retrying non-2xx responses and network failures

    Backoff between attempts is ``backoff_base * 2 ** (attempt - 1)`` seconds. A target
    rejected by the SSRF guard is not retried. Exhausted deliveries are dead-lettered.
    """
    max_attempts = max(1, max_attempts or config.WEBHOOK_MAX_ATTEMPTS)
    backoff_base = config.WEBHOOK_BACKOFF_BASE_SECONDS if backoff_base is None else backoff_base
    timeout = timeout or config.WEBHOOK_TIMEOUT_SECONDS

    body = serialize_payload(payload)
    signature = sign_payload(body, secret)
    headers = {
        "Content-Type": "application/json",
        "User-Agent": USER_AGENT,
        SIGNATURE_HEADER: signature,
        EVENT_HEADER: f"job.{payload.get('status', 'unknown')}",
    }

    result = DeliveryResult(delivered=False, attempts=0)
    for attempt in range(1, max_attempts + 1):
        delivery = WebhookDelivery(target_url=target_url, payload=body, signature=signature, attempt=attempt)
        result.deliveries.append(delivery)
        result.attempts = attempt

        allowed, reason = await check_url_async(target_url, https_only=not config.WEBHOOK_ALLOW_HTTP)
        if not allowed:
            delivery.outcome, delivery.error = REJECTED, reason
            result.error = reason
            log.warning("webhook target rejected", extra={"component": "webhook", "reason": reason,
                                                          "job_id": payload.get("jobId")})
            break

        try:
            async with _make_client(timeout) as client:
                r = await client.post(target_url, content=body, headers=headers)
            delivery.status_code = r.status_code
            result.status_code = r.status_code
            if 200 <= r.status_code < 300:
                delivery.outcome = DELIVERED
                result.delivered = True
                result.error = None
                break
            delivery.outcome = HTTP_ERROR
            delivery.error = f"HTTP {r.status_code}"
        except httpx.TimeoutException:
            delivery.outcome, delivery.error = TIMEOUT, "Delivery timed out"
        except httpx.HTTPError as e:
            delivery.outcome, delivery.error = NETWORK_ERROR, str(e) or e.__class__.__name__

        result.error = delivery.error
        log.info("webhook attempt failed", extra={
            "component": "webhook",
            "attempt": attempt,
            "outcome": delivery.outcome,
            "status": delivery.status_code,
            "job_id": payload.get("jobId"),
        })
        if attempt < max_attempts:
            await sleep(backoff_base * 2 ** (attempt - 1))

    prometheus_metrics.record_webhook(DELIVERED if result.delivered else "failed", result.attempts)
    if not result.delivered:
        dlq = get_dlq()
        dlq.write_failed_delivery(target_url, payload, result.error or "unknown error",
                                  last_status=result.status_code, attempts=result.attempts)
        prometheus_metrics.set_webhook_dlq_depth(dlq.get_dlq_stats()["total_files"])
    return result


async def notify_job(job_id: str, status: str, webhook_url: Optional[str], webhook_secret: Optional[str], *,
                     data: Any = None, error: Optional[str] = None,
                     meta: Optional[Dict[str, Any]] = None) -> Optional[DeliveryResult]:
    """Deliver a job notification if the job has a webhook; never raises"""
    if not webhook_url:
        return None
    secret = resolve_secret(webhook_secret)
    if not secret:
        log.warning("webhook skipped: no secret configured", extra={"component": "webhook", "job_id": job_id})
        return None
    try:
        return await deliver(webhook_url, build_payload(job_id, status, data=data, error=error, meta=meta), secret)
    except Exception:
        # delivery problems must never surface as job failures
        log.exception("webhook delivery crashed", extra={"component": "webhook", "job_id": job_id})
        return None
