"""Structured logging for the memory engine, with secret redaction."""

import json
import logging
import re
import sys
from typing import Any

import structlog

# Provider keys that can leak through litellm error strings.
_SECRET_PATTERNS = [
    re.compile(r"sk-[A-Za-z0-9_-]{10,}"),
    re.compile(r"Bearer\s+[A-Za-z0-9_\-.]{10,}"),
    re.compile(r"AIza[A-Za-z0-9_-]{10,}"),
    re.compile(r"hf_[A-Za-z0-9]{10,}"),
    re.compile(r"gsk_[A-Za-z0-9]{10,}"),
]

# Event fields masked whatever their value looks like.
_SECRET_FIELDS = frozenset({"api_key", "authorization"})

# Third-party loggers that are noisy at INFO.
_QUIET_LOGGERS = ("LiteLLM", "LiteLLM Router", "LiteLLM Proxy", "httpx")


def mask_secret(value: str) -> str:
    """Keep the first and last 4 characters of *value*.

    >>> mask_secret("sk-abc123456789xyz")
    'sk-a****9xyz'
    """
    if len(value) <= 8:
        return "****"
    return value[:4] + "****" + value[-4:]


def _redact(value: Any) -> Any:
    if isinstance(value, str):
        for pattern in _SECRET_PATTERNS:
            value = pattern.sub(lambda m: mask_secret(m.group(0)), value)
        return value
    if isinstance(value, dict):
        return {
            k: mask_secret(str(v)) if k in _SECRET_FIELDS and v else _redact(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return type(value)(_redact(v) for v in value)
    return value


def _redact_event(logger: logging.Logger, method_name: str, event_dict: dict) -> dict:
    return _redact(event_dict)


def setup_logging(json_output: bool = True, level: str = "INFO") -> None:
    """Route ``chatmemory`` loggers through structlog.

    Args:
        json_output: JSON lines when True, console rendering otherwise.
        level: Level for the ``chatmemory`` logger hierarchy.
    """
    shared_processors = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
        _redact_event,
    ]

    if json_output:
        renderer = structlog.processors.JSONRenderer(serializer=lambda obj, **kw: json.dumps(obj, ensure_ascii=False, **kw))
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root = logging.getLogger("chatmemory")
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper()))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str = "chatmemory") -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
