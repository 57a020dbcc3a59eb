"""structlog setup shared by every lexgate module.

Configured once at import from ``LOG_LEVEL``, ``LOG_JSON`` and
``LOG_DEV_MODE``. Request-scoped values such as the correlation id travel in
structlog's context variables.
"""

from __future__ import annotations

import logging
import os
import uuid
from typing import Any, Dict, Optional

import structlog

_SENSITIVE_KEYS = ("password", "secret", "token", "authorization", "email", "phone", "code")
_TRUTHY = {"1", "true", "yes", "on"}


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the request's correlation id to the logging context, minting one if absent."""
    cid = correlation_id or str(uuid.uuid4())
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(correlation_id=cid)
    return cid


def _redact_sensitive(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in event_dict.items():
        if key in ("event", "correlation_id") or not isinstance(value, str):
            continue
        if "***" in value or not any(s in key.lower() for s in _SENSITIVE_KEYS):
            continue
        event_dict[key] = value[:2] + "***" + value[-2:] if len(value) > 4 else "***"
    return event_dict


def _configure(level: str, json_output: bool) -> None:
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _redact_sensitive,
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


_configure(
    os.getenv("LOG_LEVEL", "INFO"),
    os.getenv("LOG_JSON", "true").lower() in _TRUTHY
    and os.getenv("LOG_DEV_MODE", "false").lower() not in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def mask_email(email: Optional[str]) -> str:
    """Mask an email address for log output, e.g. ``ab***@example.com``."""
    if not email or "@" not in email:
        return "***"
    local, domain = email.rsplit("@", 1)
    return f"{local[:2]}***@{domain}"


def mask_identifier(identifier: Optional[str]) -> str:
    """Mask an email address or phone number for log output."""
    if identifier and "@" in identifier:
        return mask_email(identifier)
    if not identifier or len(identifier) <= 4:
        return "***"
    return "***" + identifier[-4:]
