from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Request id for the current HTTP call; the middleware sets it from X-Request-ID
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the running context and return it."""
    value = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(value)
    return value


# Compact signed tokens: three base64url segments, header starts with '{"'
_COMPACT_TOKEN = re.compile(r"eyJ[\w-]+\.[\w-]+\.[\w-]*")
_DSN_CREDENTIALS = re.compile(r"(?i)\b([a-z][a-z0-9+.-]*://[^:/\s@]+):[^@\s]+@")

# Keys whose values are credential material
_REDACTED_KEYS = ("password", "secret", "token", "authorization", "cookie")
# Identifiers that mention "token" but are safe to log in full
_SAFE_KEYS = frozenset({"token_id", "token_kind", "kind", "jti"})


def _bind_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    request_id = get_correlation_id()
    if request_id:
        event_dict.setdefault("correlation_id", request_id)
    return event_dict


def _scrub_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credential-named fields and any signed token embedded in a string value."""
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        lowered = key.lower()
        if lowered not in _SAFE_KEYS and any(marker in lowered for marker in _REDACTED_KEYS):
            # first and last two characters are enough to correlate entries
            event_dict[key] = value[:2] + "***" + value[-2:] if len(value) > 4 else "***"
            continue
        scrubbed = _COMPACT_TOKEN.sub("[token]", value)
        event_dict[key] = _DSN_CREDENTIALS.sub(r"\1:***@", scrubbed)
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def configure_logging(
    level: Optional[str] = None,
    *,
    json_output: Optional[bool] = None,
    dev_mode: Optional[bool] = None,
) -> None:
    """Configure structlog for the process.

    Arguments left as ``None`` come from ``LOG_LEVEL``, ``LOG_JSON`` and
    ``LOG_DEV_MODE``. JSON lines go to stdout unless dev mode or
    ``json_output=False`` selects the console renderer.
    """
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    json_output = _env_flag("LOG_JSON", "true") if json_output is None else json_output
    dev_mode = _env_flag("LOG_DEV_MODE", "false") if dev_mode is None else dev_mode

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _bind_correlation_id,
        _scrub_credentials,
        structlog.processors.StackInfoRenderer(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=dev_mode))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


_CLIENT_UNSAFE_PATTERNS = [
    re.compile(r"(?i)\b(select|insert|update|delete)\b.{0,80}"),
    re.compile(r"(?i)\bauth_token\b"),
    re.compile(r"(?i)(password|secret|token|key)\s*[:=]\s*\S+"),
    re.compile(r"(?i)/(?:home|var|etc|usr|opt|tmp|root)/\S+"),
    re.compile(r"(?i)traceback \(most recent call last\)"),
]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Return ``error`` with SQL, table names, credentials, DSNs, paths and tokens removed.

    Used before an exception's text is logged from the catch-all handler.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"
    result = _DSN_CREDENTIALS.sub(r"\1:***@", _COMPACT_TOKEN.sub("[token]", error))
    for pattern in _CLIENT_UNSAFE_PATTERNS:
        result = pattern.sub(replacement, result)
    return result if len(result) <= 500 else result[:497] + "..."
