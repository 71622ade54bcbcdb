"""
Webhook test delivery
"""

import uuid

from fastapi import APIRouter, Depends, Request

from .. import errors
from ..auth import Caller
from ..auth.deps import require_key
from ..errors import ApiError
from ..services import validation, webhooks
from .utils import parse_body

router = APIRouter(tags=["Webhooks"])


@router.post("/webhook/test")
async def test_webhook(request: Request, caller: Caller = Depends(require_key)):
    """
    Send one signed synthetic payload to a caller-supplied URL

    Uses the same signing and SSRF checks as job notifications, with a single attempt.
    """
    _, req = await parse_body(request, validation.parse_webhook_test)
    secret = webhooks.resolve_secret(req.secret)
    if not secret:
        raise ApiError(errors.BAD_REQUEST, "secret is required when no server webhook secret is configured")

    payload = webhooks.build_payload(
        f"test_{uuid.uuid4().hex[:12]}",
        "completed",
        data={"message": "This is a test webhook delivery"},
        meta={"test": True},
    )
    result = await webhooks.deliver(req.url, payload, secret, max_attempts=1)
    body = {
        "success": result.delivered,
        "delivered": result.delivered,
        "attempts": result.attempts,
        "status_code": result.status_code,
    }
    if result.error:
        body["error"] = result.error
    return body
