# robot_api/auth/__init__.py
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from .. import config
from ..models.apikey import ApiKey

ANONYMOUS = "anonymous"


@dataclass
class Caller:
    """The party a request is charged to: an API key, or an anonymous client address"""
    key: Optional[ApiKey]
    client_id: str

    @property
    def is_anonymous(self) -> bool:
        return self.key is None

    @property
    def key_id(self) -> Optional[str]:
        return self.key.id if self.key is not None else None

    @property
    def tier(self) -> str:
        return self.key.tier if self.key is not None else ANONYMOUS

    @property
    def identity(self) -> str:
        """Rate-limit bucket"""
        return f"key:{self.key.id}" if self.key is not None else f"ip:{self.client_id}"


def extract_api_key(request: Request) -> Optional[str]:
    """Extract API key from x-api-key, falling back to Authorization: Bearer"""
    x_key = request.headers.get("x-api-key")
    if x_key and x_key.strip():
        return x_key.strip()

    auth = request.headers.get("authorization", "")
    parts = auth.split(None, 1)
    if len(parts) == 2 and parts[0].lower() == "bearer" and parts[1].strip():
        return parts[1].strip()
    return None


def client_address(request: Request) -> str:
    if config.TRUST_PROXY:
        forwarded = request.headers.get("x-forwarded-for", "")
        if forwarded.strip():
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"
