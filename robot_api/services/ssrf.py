"""
SSRF guard for target and webhook URLs
"""

import asyncio
import ipaddress
import logging
import re
import socket
from typing import Callable, Iterable, List, Optional, Tuple
from urllib.parse import urlsplit

from .. import config

logger = logging.getLogger("robot")

BLOCKED_HOSTNAMES = frozenset({
    "localhost",
    "localhost.localdomain",
    "ip6-localhost",
    "ip6-loopback",
    "localhost6",
    "localhost6.localdomain6",
})

METADATA_HOSTS = frozenset({
    "169.254.169.254",
    "metadata.google.internal",
    "metadata",
    "fd00:ec2::254",
})

# decimal, hex and octal shorthands such as 2130706433 or 0x7f.1
_LEGACY_IPV4_RE = re.compile(r"^(0x[0-9a-f]+|[0-9]+)(\.(0x[0-9a-f]+|[0-9]+)){0,3}$", re.IGNORECASE)


def resolve_host(hostname: str) -> List[str]:
    infos = socket.getaddrinfo(hostname, None, proto=socket.IPPROTO_TCP)
    return sorted({info[4][0] for info in infos})


def _parse_ip(hostname: str):
    try:
        return ipaddress.ip_address(hostname)
    except ValueError:
        pass
    if _LEGACY_IPV4_RE.match(hostname):
        try:
            return ipaddress.ip_address(socket.inet_aton(hostname))
        except OSError:
            return None
    return None


def is_private_ip(ip) -> bool:
    if isinstance(ip, str):
        ip = ipaddress.ip_address(ip.split("%", 1)[0])
    if ip.version == 6 and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_unspecified
        or ip.is_reserved
        or ip.is_multicast
        or (ip.version == 4 and ip in ipaddress.ip_network("100.64.0.0/10"))
    )


def check_url(url: str, *, https_only: bool = False, resolve: Optional[bool] = None,
              resolver: Optional[Callable[[str], Iterable[str]]] = None) -> Tuple[bool, str]:
    """
    Check that a URL is safe to fetch or deliver to

    Args:
        url: absolute URL
        https_only: reject plain http
        resolve: resolve the hostname and check every address (defaults to SSRF_RESOLVE_DNS)
        resolver: hostname -> addresses, for tests

    Returns:
        Tuple of (is_allowed, reason)
    """
    if not isinstance(url, str) or not url:
        return False, "URL is required"
    try:
        parts = urlsplit(url.strip())
        hostname = parts.hostname
    except ValueError:
        return False, "Invalid URL"

    allowed_schemes = ("https",) if https_only else ("http", "https")
    if parts.scheme.lower() not in allowed_schemes:
        return False, f"URL scheme must be {' or '.join(allowed_schemes)}"
    if not hostname:
        return False, "URL must include a hostname"
    if parts.username or parts.password:
        return False, "URL must not contain credentials"

    hostname = hostname.rstrip(".").lower()
    if hostname in BLOCKED_HOSTNAMES or hostname.endswith(".localhost"):
        return False, "URL points to a private address (localhost)"
    if hostname in METADATA_HOSTS:
        return False, "URL points to a private address (cloud metadata endpoint)"

    ip = _parse_ip(hostname)
    if ip is not None:
        if is_private_ip(ip):
            return False, f"URL points to a private address ({ip})"
        return True, ""

    if resolve is None:
        resolve = config.SSRF_RESOLVE_DNS
    if not resolve:
        return True, ""

    try:
        addresses = list((resolver or resolve_host)(hostname))
    except (OSError, UnicodeError) as e:
        logger.info("hostname resolution failed", extra={"component": "security", "host": hostname, "error": str(e)})
        return False, "URL hostname could not be resolved"
    if not addresses:
        return False, "URL hostname could not be resolved"
    for address in addresses:
        if is_private_ip(address):
            return False, f"URL resolves to a private address ({address})"
    return True, ""


async def check_url_async(url: str, **kwargs) -> Tuple[bool, str]:
    """check_url without blocking the event loop on DNS"""
    return await asyncio.to_thread(check_url, url, **kwargs)
