"""structlog setup shared by every chatauth module.

Request-scoped fields (``request_id``, ``session_state``, ``user_id``) live in
structlog's context variables: the correlation middleware resets them at the
start of each request and the session middleware adds the auth outcome, so
every event logged while serving the request carries them.
"""

from __future__ import annotations

import logging
import os
import uuid
from typing import Any, Dict, Optional

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars, get_contextvars

REQUEST_ID_KEY = "request_id"

# Only this many hex chars of a session lookup id are ever written out
LOOKUP_ID_LOG_CHARS = 12

_SECRET_MARKERS = ("password", "secret", "token", "cookie", "authorization")


def get_correlation_id() -> Optional[str]:
    return get_contextvars().get(REQUEST_ID_KEY)


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Start a fresh request log context tagged with ``correlation_id``.

    A new UUID is generated when the client did not send one.
    """
    cid = correlation_id or str(uuid.uuid4())
    clear_contextvars()
    bind_contextvars(**{REQUEST_ID_KEY: cid})
    return cid


def bind_auth_state(state: str, user_id: Optional[str] = None) -> None:
    """Attach the session outcome of the current request to later log events."""
    if user_id is None:
        bind_contextvars(session_state=state)
    else:
        bind_contextvars(session_state=state, user_id=user_id)


def _mask_email(value: str) -> str:
    _, sep, domain = value.rpartition("@")
    return f"***@{domain}" if sep else "***"


def _redact_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Drop bearer material, keep only the domain of emails, shorten lookup ids."""
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        lower_key = key.lower()
        if lower_key == "lookup_id":
            event_dict[key] = value[:LOOKUP_ID_LOG_CHARS]
        elif "email" in lower_key:
            event_dict[key] = _mask_email(value)
        elif any(marker in lower_key for marker in _SECRET_MARKERS):
            event_dict[key] = "***"
    return event_dict


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, dev_mode: bool = False
) -> None:
    min_level = logging.getLevelName(level.upper())
    if not isinstance(min_level, int):
        min_level = logging.INFO
    renderer = (
        structlog.dev.ConsoleRenderer(colors=True)
        if dev_mode or not json_output
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _redact_sensitive,
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(min_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", True),
    dev_mode=_env_flag("LOG_DEV_MODE", False),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
