from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

SERVICE_NAME = "movieauth"

# Per-request correlation id, set by the HTTP middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current request context."""
    cid = (correlation_id or "").strip()[:128] or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def mask_email(value: str) -> str:
    """Keep the first two characters of the local part and the whole domain."""
    local, sep, domain = value.partition("@")
    if not sep:
        return "***"
    return f"{local[:2]}***@{domain}"


_CREDENTIAL_KEYS = ("password", "secret", "token", "authorization", "cookie")

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


def _mask_credential(value: str) -> str:
    if len(value) <= 8:
        return "***"
    return value[:2] + "***" + value[-2:]


def _stamp_request(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    event_dict.setdefault("service", SERVICE_NAME)
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials and contact addresses before rendering.

    Keys ending in ``_prefix`` or ``_hash`` were already reduced by the caller.
    """
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        lower_key = key.lower()
        if lower_key.endswith(("_prefix", "_hash")):
            continue
        if "email" in lower_key:
            event_dict[key] = mask_email(value)
        elif any(marker in lower_key for marker in _CREDENTIAL_KEYS):
            event_dict[key] = _mask_credential(value)
    return event_dict


def configure_logging(
    level: str = "INFO",
    *,
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the structlog pipeline.

    JSON lines in production; colored console output when ``development_mode``
    is set or JSON is switched off.
    """
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _stamp_request,
        _redact_credentials,
        structlog.processors.StackInfoRenderer(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend([structlog.processors.format_exc_info, structlog.processors.JSONRenderer()])

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(_LEVELS.get(level.upper(), logging.INFO)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Scrubbed from exception text before it is echoed back in development mode
_SENSITIVE_ERROR_PATTERNS = {
    "sql": r"(?i)\b(select|insert|update|delete)\b\s+.{0,80}",
    "dsn": r"(?i)\b(postgres(?:ql)?|redis)://\S+",
    "connection": r"(?i)connection\s+.*\s+(failed|refused|timeout|reset)",
    "path": r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/\S+",
    "credential": r"(?i)(password|secret|token|key|credential)\s*[:=]\s*\S+",
    "traceback": r"(?i)traceback\s*\(most recent call last\)",
}

_SENSITIVE_PATTERNS_COMPILED = [re.compile(p) for p in _SENSITIVE_ERROR_PATTERNS.values()]

MAX_SANITIZED_LENGTH = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Scrub queries, connection strings, paths and credentials from an error string."""
    if not error or not isinstance(error, str):
        return "An error occurred"
    result = error
    for pattern in _SENSITIVE_PATTERNS_COMPILED:
        result = pattern.sub(replacement, result)
    if len(result) > MAX_SANITIZED_LENGTH:
        result = result[: MAX_SANITIZED_LENGTH - 3] + "..."
    return result
