from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

from .extract import webhook_url


class WebhookTestRequest(BaseModel):
    url: str
    secret: Optional[str] = Field(None, min_length=16, max_length=256)

    @field_validator("url")
    @classmethod
    def _url(cls, v):
        return webhook_url(v)


class WebhookPayload(BaseModel):
    jobId: str
    status: str
    data: Optional[Any] = None
    error: Optional[str] = None
    timestamp: str
    meta: Optional[Dict[str, Any]] = None
