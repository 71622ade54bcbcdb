import re
from typing import Any, Dict, List, Literal, Optional
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .. import config
from ..services.ssrf import check_url

MAX_FIELDS = 50
MAX_INSTRUCTIONS = 5000
MAX_URL_LENGTH = 2048

_COOKIE_DOMAIN_RE = re.compile(r"^[a-zA-Z0-9]([a-zA-Z0-9\-_.]*[a-zA-Z0-9])?$")


def target_url(value: str) -> str:
    """http/https URL outside private address space"""
    value = value.strip()
    if len(value) > MAX_URL_LENGTH:
        raise ValueError(f"URL must be at most {MAX_URL_LENGTH} characters")
    try:
        parts = urlsplit(value)
    except ValueError:
        raise ValueError("must be a valid absolute URL")
    if parts.scheme.lower() not in ("http", "https"):
        raise ValueError("URL must use http or https")
    if not parts.netloc:
        raise ValueError("must be a valid absolute URL")
    ok, reason = check_url(value)
    if not ok:
        raise ValueError(reason)
    return value


def webhook_url(value: str) -> str:
    """Like target_url but https only unless WEBHOOK_ALLOW_HTTP"""
    value = value.strip()
    try:
        parts = urlsplit(value)
    except ValueError:
        raise ValueError("must be a valid absolute URL")
    if not parts.netloc or not parts.scheme:
        raise ValueError("must be a valid absolute URL")
    ok, reason = check_url(value, https_only=not config.WEBHOOK_ALLOW_HTTP)
    if not ok:
        raise ValueError(reason)
    return value


def normalize_fields(value: Any) -> Optional[List[str]]:
    """Trim entries and drop blanks; an empty result counts as absent"""
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValueError("must be an array of strings")
    cleaned = [item.strip() for item in value if item.strip()]
    if len(cleaned) > MAX_FIELDS:
        raise ValueError(f"at most {MAX_FIELDS} fields are allowed")
    return cleaned or None


def require_one_spec(fields: Optional[List[str]], json_schema: Optional[Dict[str, Any]]) -> None:
    if fields is None and json_schema is None:
        raise ValueError("Either fields or schema must be provided.")
    if fields is not None and json_schema is not None:
        raise ValueError("Provide either fields or schema, not both.")


class Cookie(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: str = Field(..., min_length=1, max_length=200)
    value: str = Field(..., max_length=4096)
    domain: Optional[str] = Field(None, max_length=253)
    path: Optional[str] = Field(None, max_length=1024)
    expires: Optional[int] = None
    http_only: Optional[bool] = Field(None, alias="httpOnly")
    secure: Optional[bool] = None
    same_site: Optional[Literal["Strict", "Lax", "None"]] = Field(None, alias="sameSite")

    @field_validator("domain")
    @classmethod
    def _domain(cls, v):
        if v is None:
            return v
        if not _COOKIE_DOMAIN_RE.match(v.lstrip(".")):
            raise ValueError("invalid cookie domain")
        return v

    @field_validator("path")
    @classmethod
    def _path(cls, v):
        if v is not None and not v.startswith("/"):
            raise ValueError("cookie path must start with '/'")
        return v


class ProxyConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    type: Literal["browser", "proxy_grid", "residential", "datacenter"] = "browser"
    country: Optional[str] = Field(None, pattern=r"^[A-Za-z]{2}$")
    session_id: Optional[str] = Field(None, alias="sessionId", max_length=100)


class ExtractOptions(BaseModel):
    """Rendering options. Unknown keys are rejected."""
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    screenshot: bool = False
    store_content: bool = Field(False, alias="storeContent")
    wait_until: Literal["domcontentloaded", "networkidle0"] = Field("domcontentloaded", alias="waitUntil")
    timeout_ms: int = Field(15000, alias="timeoutMs", ge=1000, le=60000, strict=True)
    proxy: Optional[ProxyConfig] = None
    headers: Optional[Dict[str, str]] = None
    cookies: Optional[List[Cookie]] = Field(None, max_length=50)

    def as_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ExtractRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    url: str
    fields: Optional[List[str]] = None
    json_schema: Optional[Dict[str, Any]] = Field(None, alias="schema")
    instructions: Optional[str] = Field(None, max_length=MAX_INSTRUCTIONS)
    run_async: bool = Field(False, alias="async", strict=True)
    webhook_url: Optional[str] = None
    webhook_secret: Optional[str] = Field(None, min_length=16, max_length=256)
    options: ExtractOptions = Field(default_factory=ExtractOptions)

    @field_validator("url")
    @classmethod
    def _url(cls, v):
        return target_url(v)

    @field_validator("fields", mode="before")
    @classmethod
    def _fields(cls, v):
        return normalize_fields(v)

    @field_validator("webhook_url")
    @classmethod
    def _webhook_url(cls, v):
        return webhook_url(v) if v is not None else v

    @model_validator(mode="after")
    def _one_spec(self):
        require_one_spec(self.fields, self.json_schema)
        return self


class BatchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    urls: List[str] = Field(..., min_length=1)
    fields: Optional[List[str]] = None
    json_schema: Optional[Dict[str, Any]] = Field(None, alias="schema")
    instructions: Optional[str] = Field(None, max_length=MAX_INSTRUCTIONS)
    webhook_url: Optional[str] = None
    webhook_secret: Optional[str] = Field(None, min_length=16, max_length=256)
    options: ExtractOptions = Field(default_factory=ExtractOptions)

    @field_validator("fields", mode="before")
    @classmethod
    def _fields(cls, v):
        return normalize_fields(v)

    @field_validator("urls")
    @classmethod
    def _urls(cls, v):
        if len(v) > config.MAX_BATCH_SIZE:
            raise ValueError(f"at most {config.MAX_BATCH_SIZE} URLs per batch")
        checked = []
        for i, item in enumerate(v):
            try:
                checked.append(target_url(item))
            except ValueError as e:
                raise ValueError(f"URL at index {i}: {e}")
        return checked

    @field_validator("webhook_url")
    @classmethod
    def _webhook_url(cls, v):
        return webhook_url(v) if v is not None else v

    @model_validator(mode="after")
    def _one_spec(self):
        require_one_spec(self.fields, self.json_schema)
        return self
