import logging
import logging.config
import os
import json
from datetime import datetime, timezone
from typing import Optional
import contextvars

import yaml

from . import config

# Context variable for trace ID
trace_id_var = contextvars.ContextVar('trace_id', default=None)

_RESERVED = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename', 'module',
    'lineno', 'funcName', 'created', 'msecs', 'relativeCreated', 'thread', 'threadName',
    'processName', 'process', 'taskName', 'getMessage', 'exc_info', 'exc_text', 'stack_info',
    'message', 'asctime',
}


def get_trace_id() -> Optional[str]:
    """Get the current trace ID from context"""
    return trace_id_var.get()


class JsonFormatter(logging.Formatter):
    """JSON formatter with the request trace ID and any ``extra=`` fields"""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "trace_id": get_trace_id(),
            "component": getattr(record, 'component', 'api'),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED and key not in log_entry:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


def _default_config(log_level: str, log_format: str) -> dict:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {"()": JsonFormatter},
            "text": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S"
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": log_level,
                "formatter": log_format,
                "stream": "ext://sys.stdout"
            }
        },
        "loggers": {
            "app": {"level": log_level, "handlers": ["console"], "propagate": False},
            "robot": {"level": log_level, "handlers": ["console"], "propagate": False},
            "uvicorn": {"level": log_level, "handlers": ["console"], "propagate": False},
        },
        "root": {"level": log_level, "handlers": ["console"]}
    }


def setup_logging(path: str = "LOGGING.yaml") -> dict:
    """Setup logging configuration from YAML file or environment"""
    log_format = config.LOG_FORMAT if config.LOG_FORMAT in ("json", "text") else "json"
    log_level = config.LOG_LEVEL

    cfg = None
    if os.path.exists(path):
        try:
            with open(path, 'r') as f:
                cfg = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            logging.getLogger("app").warning("Could not load %s: %s", path, e)

    if not cfg:
        cfg = _default_config(log_level, log_format)

    for logger in cfg.get("loggers", {}).values():
        logger["level"] = log_level

    logging.config.dictConfig(cfg)
    return cfg
