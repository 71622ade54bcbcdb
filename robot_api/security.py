"""
Security helpers: response headers and message redaction
"""
import re
from typing import Dict

_REDACTIONS = [
    (re.compile(r"Bearer\s+[A-Za-z0-9._\-]+", re.IGNORECASE), "Bearer [REDACTED]"),
    (re.compile(r"\bsk-[A-Za-z0-9_\-]{8,}"), "[REDACTED_KEY]"),
    (re.compile(r"\brs_[A-Za-z0-9]{16,}"), "[REDACTED_KEY]"),
    (re.compile(r"[\w.+-]+@[\w-]+\.[\w.-]+"), "[REDACTED_EMAIL]"),
    (re.compile(r"(?:/[\w.\-]+){2,}\.(?:py|js|ts|json|txt|log)\b"), "[PATH]"),
]

MAX_ERROR_CHARS = 500


def get_security_headers() -> Dict[str, str]:
    """Get security headers"""
    return {
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "Referrer-Policy": "strict-origin-when-cross-origin",
    }


def sanitize_error_message(message: str) -> str:
    """Strip secrets, e-mail addresses and file paths from an error before it is stored or returned"""
    text = str(message or "")
    for pattern, replacement in _REDACTIONS:
        text = pattern.sub(replacement, text)
    if len(text) > MAX_ERROR_CHARS:
        text = text[:MAX_ERROR_CHARS] + "..."
    return text
