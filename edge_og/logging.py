"""
Structured logging for the Edge-OG gateway.
"""

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
account_id_var: ContextVar[Optional[str]] = ContextVar("account_id", default=None)


def configure_logging(log_level: str = "info") -> None:
    """Configure structlog to emit one JSON object per event."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            add_correlation_context,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


def add_correlation_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    request_id = request_id_var.get()
    if request_id and "request_id" not in event_dict:
        event_dict["request_id"] = request_id

    account_id = account_id_var.get()
    if account_id and "account_id" not in event_dict:
        event_dict["account_id"] = account_id

    return event_dict


def set_request_id(request_id: Optional[str] = None) -> str:
    if not request_id:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


def get_request_id() -> Optional[str]:
    return request_id_var.get()


def set_account_context(account_id: Optional[str]) -> None:
    account_id_var.set(account_id)


def clear_context() -> None:
    request_id_var.set(None)
    account_id_var.set(None)


def redact(value: Optional[str], keep: int = 8) -> Optional[str]:
    """Truncate secrets, hashes and tokens before they reach a log line."""
    if not value:
        return value
    if len(value) <= keep:
        return "..."
    return f"{value[:keep]}..."


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
