from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# ties together the log lines of one authentication request
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# values under these keys are secrets and are never logged, not even partly
_SECRET_KEYS = ("password", "secret", "token", "authorization", "code")
_REDACTED = "[redacted]"


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Use ``correlation_id`` (or a fresh uuid4) for the current context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def bind_request_context(correlation_id: Optional[str] = None, **fields: Any) -> str:
    """Start a logging context for one request or job.

    Sets the correlation id and binds ``fields`` onto every later log line
    of this context. Returns the correlation id in use.
    """
    structlog.contextvars.clear_contextvars()
    if fields:
        structlog.contextvars.bind_contextvars(**fields)
    return set_correlation_id(correlation_id)


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _mask_email(value: str) -> str:
    local, at, domain = value.partition("@")
    if not at:
        return _REDACTED
    return f"{local[:1]}***@{domain}"


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Drop secrets outright; keep only the domain and first letter of emails."""
    for key, value in list(event_dict.items()):
        if key == "event" or value is None:
            continue
        lowered = key.lower()
        if any(secret in lowered for secret in _SECRET_KEYS):
            event_dict[key] = _REDACTED
        elif "email" in lowered and isinstance(value, str):
            event_dict[key] = _mask_email(value)
    return event_dict


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
    else:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    level = getattr(logging, log_level.upper(), logging.INFO)
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", True),
    development_mode=_env_flag("LOG_DEV_MODE", False),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
