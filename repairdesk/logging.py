from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# One id per sign-in, renewal or switch so its log lines can be grouped
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
tenant_id_var: ContextVar[Optional[int]] = ContextVar("tenant_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}

_MASKED_KEYS = ("token", "password", "secret", "authorization", "credential", "email")

# Compact JWS: three base64url segments, the first always starting with "eyJ"
_JWT_RE = re.compile(r"eyJ[A-Za-z0-9_-]{4,}\.[A-Za-z0-9_-]*\.?[A-Za-z0-9_-]*")


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Start a new operation scope; later log lines in this task carry its id."""
    cid = correlation_id or uuid.uuid4().hex[:16]
    correlation_id_var.set(cid)
    return cid


def bind_tenant(tenant_id: Optional[int]) -> None:
    """Tag subsequent log lines with the active tenant (``None`` to stop)."""
    tenant_id_var.set(tenant_id)


def _add_operation_context(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = correlation_id_var.get()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    tenant_id = tenant_id_var.get()
    if tenant_id is not None:
        event_dict.setdefault("tenant_id", tenant_id)
    return event_dict


def _mask(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return value[:2] + "***" + value[-2:]


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials and emails; scrub bearer tokens embedded in free text."""
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        if any(marker in key.lower() for marker in _MASKED_KEYS):
            event_dict[key] = _mask(value)
        elif key != "event" and _JWT_RE.search(value):
            event_dict[key] = _JWT_RE.sub("[jwt]", value)
    return event_dict


def _configure_structlog(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structlog processors.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        log_format: ``json`` for machine-readable lines, ``console`` for a
            colored developer view
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_operation_context,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "console":
        processors = shared_processors + [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _log_format_from_env() -> str:
    fmt = os.getenv("REPAIRDESK_LOG_FORMAT", "").lower()
    if fmt in {"json", "console"}:
        return fmt
    # Older deployments only set the dev-mode switch
    if os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY:
        return "console"
    return "json"


_configure_structlog(
    log_level=os.getenv("REPAIRDESK_LOG_LEVEL", os.getenv("LOG_LEVEL", "INFO")),
    log_format=_log_format_from_env(),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Fragments of backend or provider error text that must not reach a user
_SENSITIVE_ERROR_PATTERNS = [
    r"(?i)bearer\s+[^\s]+",
    r"eyJ[A-Za-z0-9_-]{4,}\.[A-Za-z0-9_-]*\.?[A-Za-z0-9_-]*",
    r"(?i)(password|secret|token|api.?key)\s*[:=]\s*[^\s,;]+",
    r"(?i)(?:select|insert|update|delete)\s+.{0,50}\s+(?:from|into|set|where)\s+[^\s]+",
    r"(?i)/(?:home|var|etc|usr|opt|tmp|root)/[^\s]+",
    r"(?i)traceback\s*\(most recent call last\).*",
]

_SENSITIVE_PATTERNS_COMPILED = [re.compile(p, re.DOTALL) for p in _SENSITIVE_ERROR_PATTERNS]

MAX_ERROR_MESSAGE_LENGTH = 300


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip tokens, queries, paths and stack traces from an error message.

    Used on backend response bodies before they are stored on an exception,
    so a raw server error never ends up in a notice shown to the user.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _SENSITIVE_PATTERNS_COMPILED:
        result = pattern.sub(replacement, result)

    if len(result) > MAX_ERROR_MESSAGE_LENGTH:
        result = result[: MAX_ERROR_MESSAGE_LENGTH - 3] + "..."
    return result.strip()
