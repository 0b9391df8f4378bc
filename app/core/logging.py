# app/core/logging.py
"""
One structlog stack for the ledger, its store and the scripts.

Every event is a single JSON line on stderr carrying `ts`, `level`, `service`
and whatever correlation ids are active (script run id, award scope).
"""
from __future__ import annotations

import logging
import re
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog

from app.config import settings
from app.core.request_id import get_award_scope, get_run_id

EventDict = Dict[str, Any]


# -------- Processors ---------------------------------------------------------

def _add_ts(_: Any, __: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("ts", datetime.now(timezone.utc).isoformat(timespec="milliseconds"))
    return event_dict


def _add_level(_: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict["level"] = str(event_dict.get("level") or method_name or "info").lower()
    return event_dict


def _add_service(service_name: str):
    def _inner(_: Any, __: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service", service_name)
        return event_dict
    return _inner


def _add_correlation_ids(_: Any, __: str, event_dict: EventDict) -> EventDict:
    run_id = get_run_id()
    if run_id:
        event_dict.setdefault("run_id", run_id)
    scope = get_award_scope()
    if scope is not None:
        event_dict.setdefault("award_scope", scope.scope_id)
        event_dict.setdefault("user_id", scope.user_id)
        event_dict.setdefault("activity_id", scope.activity_id)
    return event_dict


# Credentials only reach the logs through the database settings.
_SECRET_KEYS = {"password", "dsn", "database_url", "token", "api_key", "secret"}
_DSN_PASSWORD = re.compile(r"(://[^:/@]+:)[^@]+@")


def _redact_secrets(_: Any, __: str, event_dict: EventDict) -> EventDict:
    for key, value in list(event_dict.items()):
        if str(key).lower() in _SECRET_KEYS:
            event_dict[key] = "***redacted***"
        elif isinstance(value, str) and "://" in value:
            event_dict[key] = _DSN_PASSWORD.sub(r"\1***@", value)
    return event_dict


def _round_floats(_: Any, __: str, event_dict: EventDict) -> EventDict:
    # weighted scores carry float noise such as 79.99999999
    for key, value in list(event_dict.items()):
        if isinstance(value, float):
            event_dict[key] = round(value, 4)
    return event_dict


# -------- Public API ---------------------------------------------------------

def _level_from_settings() -> int:
    level = logging.getLevelName(settings.LOG_LEVEL.upper())
    return level if isinstance(level, int) else logging.INFO


_configured = False


def configure_logging(service_name: str = "xp-ledger", *, level: Optional[int] = None) -> None:
    global _configured
    level = _level_from_settings() if level is None else level

    logging.basicConfig(level=level, format="%(message)s", stream=sys.stderr, force=True)

    structlog.configure(
        processors=[
            _add_ts,
            _add_level,
            _add_service(service_name),
            _add_correlation_ids,
            _redact_secrets,
            _round_floats,
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(sort_keys=True),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )
    _configured = True


def get_logger(name: Optional[str] = None) -> structlog.BoundLogger:
    """Return a bound logger, configuring the default stack on first use."""
    if not _configured:
        configure_logging()
    logger = structlog.get_logger()
    return logger.bind(logger=name) if name else logger
