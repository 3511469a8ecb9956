from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

SERVICE_NAME = "brewbean-auth"

# Per-request correlation ID, set by the HTTP middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _add_service(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


# Substrings of event keys whose values are credentials or contact details
_SECRET_KEYS = ("password", "secret", "token", "otp", "authorization")
_CONTACT_KEYS = ("email", "phone")


def _mask(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return value[:2] + "***" + value[-2:]


def _mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return _mask(value)
    return f"{local[:2]}***@{domain}"


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials and customer contact details before rendering.

    Keys ending in ``_id`` or ``_hash`` are identifiers, not secrets, and are
    left alone. Email values keep their domain so delivery problems can still
    be traced to a provider.
    """
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        lower_key = key.lower()
        if lower_key.endswith(("_id", "_hash")):
            continue
        if "email" in lower_key:
            event_dict[key] = _mask_email(value)
        elif any(part in lower_key for part in _SECRET_KEYS + _CONTACT_KEYS):
            event_dict[key] = _mask(value)
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog for the service.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        json_output: Render one JSON object per line
        development_mode: Colored console output, overrides ``json_output``
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_service,
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Fragments that must never reach a client in an error message
_LEAKY_FRAGMENTS = [
    re.compile(r"(?i)(sql|query|select|insert|update|delete|where|from|join)\s+.{0,50}"),
    re.compile(r"(?i)database\s+error"),
    re.compile(r"(?i)connection\s+.*\s+(failed|refused|timeout)"),
    re.compile(r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/[^\s]+"),
    re.compile(r"(?i)(password|secret|token|key|otp)\s*[:=]\s*[^\s]+"),
    re.compile(r"(?i)traceback\s*\(most recent call last\)"),
]

_MAX_ERROR_LENGTH = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip queries, paths, credentials and stack traces from ``error``.

    Used on storage and driver messages before they are logged next to a
    client-visible response.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _LEAKY_FRAGMENTS:
        result = pattern.sub(replacement, result)
    if len(result) > _MAX_ERROR_LENGTH:
        result = result[: _MAX_ERROR_LENGTH - 3] + "..."
    return result
