from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..services import cron
from .extract import MAX_INSTRUCTIONS, normalize_fields, require_one_spec, target_url, webhook_url


def cron_expression(value: str) -> str:
    ok, reason = cron.validate(value)
    if not ok:
        raise ValueError(reason)
    return " ".join(value.split())


class ScheduleCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    url: str
    fields: Optional[List[str]] = None
    json_schema: Optional[Dict[str, Any]] = Field(None, alias="schema")
    instructions: Optional[str] = Field(None, max_length=MAX_INSTRUCTIONS)
    cron: str
    webhook_url: str
    webhook_secret: Optional[str] = Field(None, min_length=16, max_length=256)

    @field_validator("url")
    @classmethod
    def _url(cls, v):
        return target_url(v)

    @field_validator("fields", mode="before")
    @classmethod
    def _fields(cls, v):
        return normalize_fields(v)

    @field_validator("cron")
    @classmethod
    def _cron(cls, v):
        return cron_expression(v)

    @field_validator("webhook_url")
    @classmethod
    def _webhook_url(cls, v):
        return webhook_url(v)

    @model_validator(mode="after")
    def _one_spec(self):
        require_one_spec(self.fields, self.json_schema)
        return self


class ScheduleUpdate(BaseModel):
    """Partial update; only keys present in the payload are applied"""
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    is_active: Optional[bool] = None
    cron: Optional[str] = None
    webhook_url: Optional[str] = None
    webhook_secret: Optional[str] = Field(None, min_length=16, max_length=256)
    fields: Optional[List[str]] = None
    json_schema: Optional[Dict[str, Any]] = Field(None, alias="schema")
    instructions: Optional[str] = Field(None, max_length=MAX_INSTRUCTIONS)

    @field_validator("cron")
    @classmethod
    def _cron(cls, v):
        return cron_expression(v) if v is not None else v

    @field_validator("webhook_url")
    @classmethod
    def _webhook_url(cls, v):
        return webhook_url(v) if v is not None else v

    @field_validator("fields", mode="before")
    @classmethod
    def _fields(cls, v):
        cleaned = normalize_fields(v)
        if v is not None and cleaned is None:
            raise ValueError("must contain at least one non-empty field")
        return cleaned

    @model_validator(mode="after")
    def _check(self):
        if not self.model_fields_set:
            raise ValueError("No fields to update.")
        if self.fields is not None and self.json_schema is not None:
            raise ValueError("Provide either fields or schema, not both.")
        return self
