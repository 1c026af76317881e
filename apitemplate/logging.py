from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation id, echoed back in X-Request-ID
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

REDACTED = "[redacted]"

# Signed tokens always start with a base64url '{"' header.
_TOKEN_RE = re.compile(r"\beyJ[A-Za-z0-9_-]*\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]*")
_BEARER_RE = re.compile(r"(?i)\bbearer\s+\S+")
_EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
_ASSIGNED_SECRET_RE = re.compile(r"(?i)\b(password|secret|token)\s*[:=]\s*\S+")

# Event keys whose values are never written out.
_CREDENTIAL_KEYS = ("password", "secret", "token", "authorization")
# Event keys holding an address; only a short prefix and the domain survive.
_ADDRESS_KEYS = frozenset({"email", "to"})

_MAX_CLIENT_MESSAGE = 200


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def mask_email(address: str) -> str:
    """``alice@example.com`` -> ``al***@example.com``."""
    if "@" not in address:
        return "redacted"
    local, domain = address.split("@", 1)
    return f"{local[:2]}***@{domain}"


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _mask_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Keep tokens, secrets and full addresses out of log lines.

    Credential-named keys are replaced outright; address keys are shortened
    with :func:`mask_email`; any other string that carries a signed token has
    the token cut out.
    """
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        lower_key = key.lower()
        if any(part in lower_key for part in _CREDENTIAL_KEYS):
            event_dict[key] = REDACTED
        elif lower_key in _ADDRESS_KEYS:
            event_dict[key] = mask_email(value)
        elif key != "event" and "eyJ" in value:
            event_dict[key] = _TOKEN_RE.sub(REDACTED, value)
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        json_output: JSON lines when True, key=value console output otherwise
        development_mode: coloured console output regardless of ``json_output``
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _mask_credentials,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        renderers = [structlog.dev.ConsoleRenderer(colors=development_mode)]
    else:
        renderers = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=shared_processors + renderers,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def scrub_client_message(message: str) -> str:
    """Remove bearer values, signed tokens, ``token=...`` pairs and addresses.

    Used on free-form ``HTTPException`` details before they reach a client.
    """
    if not message or not isinstance(message, str):
        return "request failed"

    result = _BEARER_RE.sub(REDACTED, message)
    result = _TOKEN_RE.sub(REDACTED, result)
    result = _ASSIGNED_SECRET_RE.sub(lambda m: f"{m.group(1)}={REDACTED}", result)
    result = _EMAIL_RE.sub(lambda m: mask_email(m.group(0)), result)

    if len(result) > _MAX_CLIENT_MESSAGE:
        result = result[: _MAX_CLIENT_MESSAGE - 3] + "..."
    return result
