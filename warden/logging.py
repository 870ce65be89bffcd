from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Request ID for the request being handled; echoed back as X-Request-ID
_request_id: ContextVar[Optional[str]] = ContextVar("warden_request_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}
_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}

# Any event key containing one of these fragments gets masked
_SENSITIVE_FRAGMENTS = ("password", "secret", "token", "authorization", "email", "cookie")


def get_correlation_id() -> Optional[str]:
    return _request_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh UUID) to the current context and return it."""
    value = correlation_id or str(uuid.uuid4())
    _request_id.set(value)
    return value


def _attach_request_id(_logger: Any, _method: str, event: Dict[str, Any]) -> Dict[str, Any]:
    request_id = _request_id.get()
    if request_id:
        event.setdefault("correlation_id", request_id)
    return event


def _mask(value: str) -> str:
    if len(value) <= 4:
        return value
    return f"{value[:2]}***{value[-2:]}"


def _redact_pii(_logger: Any, _method: str, event: Dict[str, Any]) -> Dict[str, Any]:
    """Mask string values under credential or address keys, keeping two chars each side."""
    for key, value in event.items():
        if not isinstance(value, str):
            continue
        if any(fragment in key.lower() for fragment in _SENSITIVE_FRAGMENTS):
            event[key] = _mask(value)
    return event


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUTHY


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, dev_mode: bool = False
) -> None:
    """Install the structlog pipeline.

    JSON lines by default; ``dev_mode`` (or ``json_output=False``) switches to
    the colored console renderer.
    """
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _attach_request_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            _LEVELS.get(level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    dev_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def mask_email(email: str) -> str:
    """Shorten an address to something safe to log."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"
