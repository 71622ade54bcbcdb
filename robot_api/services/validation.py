"""
Request validation: untyped payloads in, typed requests or a single error message out
"""

from typing import Any, Tuple, Type

from pydantic import BaseModel, ValidationError

from ..schemas.extract import BatchRequest, ExtractRequest
from ..schemas.schedule import ScheduleCreate, ScheduleUpdate
from ..schemas.webhook import WebhookTestRequest

_VALUE_ERROR_PREFIXES = ("Value error, ", "Assertion failed, ")


def format_validation_error(error: ValidationError) -> str:
    """First error as ``path: message``; model-level errors carry no path"""
    first = error.errors(include_url=False)[0]
    message = first.get("msg", "Invalid value")
    for prefix in _VALUE_ERROR_PREFIXES:
        if message.startswith(prefix):
            message = message[len(prefix):]
    path = ".".join(str(part) for part in first.get("loc", ()))
    return f"{path}: {message}" if path else message


def parse_payload(model: Type[BaseModel], payload: Any) -> Tuple[bool, Any]:
    """
    Validate a decoded JSON body against a request model

    Returns:
        Tuple of (is_valid, model instance or error message)
    """
    if not isinstance(payload, dict):
        return False, "Request body must be a JSON object"
    try:
        return True, model.model_validate(payload)
    except ValidationError as e:
        return False, format_validation_error(e)


def parse_extract_request(payload: Any) -> Tuple[bool, Any]:
    return parse_payload(ExtractRequest, payload)


def parse_batch_request(payload: Any) -> Tuple[bool, Any]:
    return parse_payload(BatchRequest, payload)


def parse_schedule_create(payload: Any) -> Tuple[bool, Any]:
    return parse_payload(ScheduleCreate, payload)


def parse_schedule_update(payload: Any) -> Tuple[bool, Any]:
    return parse_payload(ScheduleUpdate, payload)


def parse_webhook_test(payload: Any) -> Tuple[bool, Any]:
    return parse_payload(WebhookTestRequest, payload)
