"""
Outbound header sanitization for requests made to the target site
"""

import logging
import re
from typing import Dict, Optional, Tuple
from urllib.parse import urlsplit

logger = logging.getLogger("robot")

MAX_HEADERS = 50
MAX_NAME_LENGTH = 100
MAX_VALUE_LENGTH = 8192

DEFAULT_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "DNT": "1",
}

FORBIDDEN_HEADERS = frozenset({
    # credentials
    "authorization", "proxy-authorization", "www-authenticate", "proxy-authenticate",
    "cookie", "set-cookie", "cookie2",
    # CORS
    "access-control-allow-origin", "access-control-allow-credentials",
    "access-control-allow-methods", "access-control-allow-headers",
    "access-control-expose-headers", "access-control-max-age",
    "access-control-request-method", "access-control-request-headers",
    "host",
    # connection control and framing
    "connection", "keep-alive", "proxy-connection", "upgrade",
    "transfer-encoding", "content-length", "te",
    # forwarding
    "forwarded", "x-forwarded-for", "x-forwarded-host", "x-forwarded-proto", "x-real-ip",
    # edge proxy
    "cf-connecting-ip", "cf-ray", "cf-visitor", "cf-ipcountry",
})

_NAME_RE = re.compile(r"^[a-zA-Z0-9\-_]+$")

# name -> (max length, value pattern or None, must parse as URL)
RESTRICTED_HEADERS = {
    "user-agent": (500, re.compile(r"^[\x20-\x7E]+$"), False),
    "referer": (2000, None, True),
    "accept": (500, re.compile(r"^[\x20-\x7E;,/=()*\[\].\-+]+$"), False),
    "accept-language": (200, re.compile(r"^[a-zA-Z0-9,\-\s;=*.]+$"), False),
    "accept-encoding": (100, re.compile(r"^[a-zA-Z0-9,\s;=.*\-]+$"), False),
}


def _is_url(value: str) -> bool:
    try:
        parts = urlsplit(value)
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.netloc)


def _check_header(name: str, value) -> Tuple[bool, str]:
    if not isinstance(name, str) or not isinstance(value, str):
        return False, "Header names and values must be strings"

    normalized = name.strip().lower()
    if normalized in FORBIDDEN_HEADERS:
        return False, f"Header '{name}' is not allowed"
    if not _NAME_RE.match(name):
        return False, f"Invalid header name '{name}'"
    if len(name) > MAX_NAME_LENGTH or len(value) > MAX_VALUE_LENGTH:
        return False, f"Header '{name}' exceeds size limits"
    if "\r" in value or "\n" in value:
        return False, f"Header '{name}' contains a line break"

    restriction = RESTRICTED_HEADERS.get(normalized)
    if restriction:
        max_length, pattern, must_be_url = restriction
        if len(value) > max_length:
            return False, f"Header '{name}' exceeds maximum length of {max_length}"
        if pattern is not None and not pattern.match(value):
            return False, f"Invalid {name} format"
        if must_be_url and not _is_url(value):
            return False, f"Header '{name}' must be a valid URL"

    return True, ""


def validate_custom_headers(headers: Optional[Dict[str, str]]) -> Tuple[bool, str, Dict[str, str]]:
    """
    Check a caller-supplied header map

    Returns:
        Tuple of (is_valid, error_message, sanitized). ``sanitized`` is empty unless
        every header passed.
    """
    if not headers:
        return True, "", {}
    if not isinstance(headers, dict):
        return False, "headers must be an object", {}
    if len(headers) > MAX_HEADERS:
        return False, f"Maximum {MAX_HEADERS} custom headers allowed", {}

    sanitized: Dict[str, str] = {}
    for name, value in headers.items():
        ok, error = _check_header(name, value)
        if not ok:
            return False, error, {}
        sanitized[name] = value.strip()
    return True, "", sanitized


def build_request_headers(headers: Optional[Dict[str, str]]) -> Dict[str, str]:
    """Defaults merged with the custom headers, or only the defaults if any header is rejected"""
    merged = dict(DEFAULT_HEADERS)
    ok, error, sanitized = validate_custom_headers(headers)
    if not ok:
        logger.info("custom headers discarded", extra={"component": "security", "reason": error})
        return merged

    # custom headers replace defaults case-insensitively
    for name, value in sanitized.items():
        for existing in list(merged):
            if existing.lower() == name.lower():
                del merged[existing]
        merged[name] = value
    return merged
