"""
Error taxonomy and response builders for consistent error bodies
"""
from typing import Any, Dict, Optional

from fastapi import HTTPException
from fastapi.responses import JSONResponse

from . import config

BAD_REQUEST = "bad_request"
MISSING = "missing"
INVALID = "invalid"
INACTIVE = "inactive"
INSUFFICIENT_CREDITS = "insufficient_credits"
BLOCKED = "blocked"
SERVER_ERROR = "server_error"
NOT_FOUND = "not_found"
NOT_READY = "not_ready"
IDEMPOTENCY_CONFLICT = "idempotency_conflict"
PAYLOAD_TOO_LARGE = "payload_too_large"
RATE_LIMITED = "rate_limited"
UNAUTHORIZED = "unauthorized"

STATUS_BY_CODE = {
    BAD_REQUEST: 400,
    MISSING: 401,
    INVALID: 401,
    UNAUTHORIZED: 401,
    INSUFFICIENT_CREDITS: 402,
    INACTIVE: 403,
    BLOCKED: 403,
    NOT_FOUND: 404,
    NOT_READY: 409,
    IDEMPOTENCY_CONFLICT: 409,
    PAYLOAD_TOO_LARGE: 413,
    RATE_LIMITED: 429,
    SERVER_ERROR: 500,
}

SUGGESTIONS = {
    MISSING: "Send your API key in the x-api-key header.",
    INVALID: "Check that the API key is copied correctly or create a new one.",
    INACTIVE: "This key was deactivated. Create or rotate a key.",
    INSUFFICIENT_CREDITS: "Add credits to this key or wait for your quota to reset.",
    BLOCKED: "The target site refused rendering. Try a different proxy type.",
    RATE_LIMITED: "Slow down and retry after the X-RateLimit-Reset time.",
    NOT_READY: "Poll the job status until it is completed.",
}

RETRYABLE = {RATE_LIMITED, SERVER_ERROR, NOT_READY}

MESSAGES = {
    MISSING: "API key required",
    INVALID: "Invalid API key",
    INACTIVE: "API key is inactive",
    INSUFFICIENT_CREDITS: "Insufficient credits",
    RATE_LIMITED: "Rate limit exceeded",
    UNAUTHORIZED: "Unauthorized",
    NOT_FOUND: "Not found",
    SERVER_ERROR: "Internal server error",
}


def message_for(code: str) -> str:
    return MESSAGES.get(code, code.replace("_", " ").capitalize())


class ApiError(HTTPException):
    """HTTPException carrying a taxonomy code for the error body"""

    def __init__(self, code: str, message: str, status_code: Optional[int] = None,
                 headers: Optional[Dict[str, str]] = None):
        super().__init__(status_code=status_code or STATUS_BY_CODE.get(code, 500),
                         detail=message, headers=headers)
        self.code = code
        self.message = message


def error_body(code: str, message: str, request_id: Optional[str] = None) -> Dict[str, Any]:
    error: Dict[str, Any] = {
        "code": code,
        "message": message,
        "requestId": request_id,
        "retryable": code in RETRYABLE,
        "docs_url": f"{config.DOCS_URL}/errors#{code}",
    }
    if code in SUGGESTIONS:
        error["suggestion"] = SUGGESTIONS[code]
    return {"success": False, "error": error}


def build_error_response(code: str, message: str, request_id: Optional[str] = None,
                         status_code: Optional[int] = None,
                         headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    """Build a JSON error response in the standard envelope"""
    return JSONResponse(
        status_code=status_code or STATUS_BY_CODE.get(code, 500),
        content=error_body(code, message, request_id),
        headers=headers,
    )
