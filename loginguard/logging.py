from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Request id from X-Request-ID; also used as the trace id of revocation jobs
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Values under these keys never reach the log in clear
_SECRET_KEYS = ("password", "secret", "token", "authorization", "private_key")
# Values under these keys are identifiers and keep a recognizable shape
_ADDRESS_KEYS = ("phone", "address", "username", "recipient")


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Use the given id for the current context, or mint one."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def mask_address(address: Optional[str]) -> str:
    """Mask a phone number or e-mail so it can appear in a log field value."""
    if not address:
        return "redacted"
    if "@" in address:
        local, domain = address.split("@", 1)
        return f"{local[:2]}***@{domain}"
    return f"{address[:3]}***{address[-2:]}" if len(address) > 5 else "***"


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = cid
    return event_dict


def _redact_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Hide secrets outright and mask identifiers logged under an address-like key."""
    for key, value in list(event_dict.items()):
        if not isinstance(value, str) or key == "event":
            continue
        lower_key = key.lower()
        if any(marker in lower_key for marker in _SECRET_KEYS):
            event_dict[key] = "***"
        elif any(marker in lower_key for marker in _ADDRESS_KEYS) and "***" not in value:
            event_dict[key] = mask_address(value)
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the structlog pipeline.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        json_output: JSON lines when True, key=value console output otherwise
        development_mode: colored console output regardless of json_output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_sensitive,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        renderer = [structlog.dev.ConsoleRenderer(colors=development_mode)]
    else:
        renderer = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=shared_processors + renderer,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
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
