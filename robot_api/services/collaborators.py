"""
Clients for the external render and extract services

Render contract:  POST {RENDER_SERVICE_URL}/render  {url, options}
                  -> {content, title, blocked, screenshot?, screenshotType?}
Extract contract: POST {EXTRACT_SERVICE_URL}/extract {content, fields|schema, instructions}
                  -> {data | raw, usage}
"""

import base64
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from .. import config

log = logging.getLogger("robot")

_FENCE_START = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_END = re.compile(r"\s*```$")


class CollaboratorError(Exception):
    pass


class RenderError(CollaboratorError):
    pass


class ExtractionError(CollaboratorError):
    pass


class CircuitOpenError(CollaboratorError):
    def __init__(self, name: str, retry_in: float):
        super().__init__(f"{name} service unavailable, retrying in {int(retry_in) + 1}s")
        self.retry_in = retry_in


CLOSED, OPEN, HALF_OPEN = "closed", "open", "half_open"


class CircuitBreaker:
    """
    Stops calling a collaborator that keeps failing

    After ``failure_threshold`` consecutive failures the breaker opens and calls fail fast
    for ``reset_seconds``. It then lets calls through half-open: one failure reopens it,
    ``half_open_calls`` successes close it.
    """

    def __init__(self, name: str, failure_threshold: Optional[int] = None, reset_seconds: Optional[float] = None,
                 half_open_calls: Optional[int] = None, clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.failure_threshold = failure_threshold or config.BREAKER_FAILURE_THRESHOLD
        self.reset_seconds = config.BREAKER_RESET_SECONDS if reset_seconds is None else reset_seconds
        self.half_open_calls = half_open_calls or config.BREAKER_HALF_OPEN_CALLS
        self.clock = clock
        self.state = CLOSED
        self.failures = 0
        self.successes = 0
        self.opened_at = 0.0

    def before_call(self) -> None:
        if self.state != OPEN:
            return
        waited = self.clock() - self.opened_at
        if waited < self.reset_seconds:
            raise CircuitOpenError(self.name, self.reset_seconds - waited)
        self.state = HALF_OPEN
        self.successes = 0
        log.info("circuit half-open", extra={"component": self.name})

    def record_success(self) -> None:
        if self.state == HALF_OPEN:
            self.successes += 1
            if self.successes >= self.half_open_calls:
                self.state = CLOSED
                self.failures = 0
                log.info("circuit closed", extra={"component": self.name})
        else:
            self.failures = 0

    def record_failure(self) -> None:
        self.failures += 1
        if self.state == HALF_OPEN or self.failures >= self.failure_threshold:
            if self.state != OPEN:
                log.warning("circuit opened", extra={"component": self.name, "failures": self.failures})
            self.state = OPEN
            self.opened_at = self.clock()


@dataclass
class RenderResult:
    content: str
    title: Optional[str] = None
    blocked: bool = False
    screenshot: Optional[bytes] = None
    screenshot_type: str = "png"


@dataclass
class ExtractResult:
    data: Any
    usage: Dict[str, int] = field(default_factory=dict)

    @property
    def tokens(self) -> int:
        if "total_tokens" in self.usage:
            return int(self.usage["total_tokens"] or 0)
        return int(self.usage.get("input_tokens", 0) or 0) + int(self.usage.get("output_tokens", 0) or 0)


def safe_json_parse(raw: str) -> Tuple[Optional[Any], Optional[str]]:
    """
    Parse model output that should be JSON

    Strips markdown code fences, then falls back to the outermost ``{...}`` slice.

    Returns:
        Tuple of (parsed value or None, error message or None)
    """
    if not raw or not raw.strip():
        return None, "empty model output"
    cleaned = _FENCE_END.sub("", _FENCE_START.sub("", raw.strip())).strip()
    try:
        return json.loads(cleaned), None
    except ValueError as e:
        first_error = str(e)
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start == -1 or end <= start:
        return None, first_error
    try:
        return json.loads(cleaned[start:end + 1]), None
    except ValueError as e:
        return None, str(e)


def _auth_headers() -> Dict[str, str]:
    if config.COLLABORATOR_TOKEN:
        return {"Authorization": f"Bearer {config.COLLABORATOR_TOKEN}"}
    return {}


class HttpRenderer:
    def __init__(self, base_url: str, transport: Optional[httpx.AsyncBaseTransport] = None,
                 breaker: Optional[CircuitBreaker] = None):
        self.base_url = base_url.rstrip("/")
        self.transport = transport
        self.breaker = breaker or CircuitBreaker("render")

    async def _post(self, url: str, options: Dict[str, Any]) -> httpx.Response:
        timeout = options.get("timeoutMs", 15000) / 1000 + 5
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
                r = await client.post(f"{self.base_url}/render", json={"url": url, "options": options},
                                      headers=_auth_headers())
        except httpx.TimeoutException:
            raise RenderError("Rendering timed out")
        except httpx.HTTPError as e:
            raise RenderError(f"Render service unreachable: {e}")
        if r.status_code >= 400:
            raise RenderError(f"Render service returned HTTP {r.status_code}")
        return r

    async def render(self, url: str, options: Dict[str, Any]) -> RenderResult:
        self.breaker.before_call()
        try:
            r = await self._post(url, options)
        except RenderError:
            self.breaker.record_failure()
            raise
        self.breaker.record_success()

        try:
            body = r.json()
        except ValueError:
            raise RenderError("Render service returned invalid JSON")

        screenshot = None
        if body.get("screenshot"):
            try:
                screenshot = base64.b64decode(body["screenshot"])
            except (ValueError, TypeError):
                log.warning("discarding undecodable screenshot", extra={"component": "render", "url": url})
        return RenderResult(
            content=body.get("content") or "",
            title=body.get("title"),
            blocked=bool(body.get("blocked")),
            screenshot=screenshot,
            screenshot_type=body.get("screenshotType") or "png",
        )


class HttpExtractor:
    def __init__(self, base_url: str, transport: Optional[httpx.AsyncBaseTransport] = None,
                 breaker: Optional[CircuitBreaker] = None):
        self.base_url = base_url.rstrip("/")
        self.transport = transport
        self.breaker = breaker or CircuitBreaker("extract")

    async def _post(self, payload: Dict[str, Any]) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=config.EXTRACT_TIMEOUT_SECONDS, transport=self.transport) as client:
                r = await client.post(f"{self.base_url}/extract", json=payload, headers=_auth_headers())
        except httpx.TimeoutException:
            raise ExtractionError("Extraction timed out")
        except httpx.HTTPError as e:
            raise ExtractionError(f"Extract service unreachable: {e}")
        if r.status_code >= 400:
            raise ExtractionError(f"Extract service returned HTTP {r.status_code}")
        return r

    async def extract(self, content: str, fields: Optional[List[str]], schema: Optional[Dict[str, Any]],
                      instructions: Optional[str]) -> ExtractResult:
        payload = {"content": content, "fields": fields, "schema": schema, "instructions": instructions}
        self.breaker.before_call()
        try:
            r = await self._post(payload)
        except ExtractionError:
            self.breaker.record_failure()
            raise
        # malformed model output below is not the service being down
        self.breaker.record_success()

        try:
            body = r.json()
        except ValueError:
            raise ExtractionError("Extract service returned invalid JSON")

        usage = body.get("usage") or {}
        if isinstance(body.get("data"), (dict, list)):
            return ExtractResult(data=body["data"], usage=usage)

        data, error = safe_json_parse(body.get("raw") or "")
        if error is not None:
            raise ExtractionError(f"Model returned malformed JSON: {error}")
        return ExtractResult(data=data, usage=usage)


@dataclass
class Collaborators:
    renderer: Any
    extractor: Any


_collaborators: Optional[Collaborators] = None


def get_collaborators() -> Collaborators:
    """FastAPI dependency; tests override it with fakes"""
    global _collaborators
    if _collaborators is None:
        _collaborators = Collaborators(
            renderer=HttpRenderer(config.RENDER_SERVICE_URL),
            extractor=HttpExtractor(config.EXTRACT_SERVICE_URL),
        )
    return _collaborators
