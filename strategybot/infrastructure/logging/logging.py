"""Logging setup using structlog.

Goal:
- Structured logs per bot so a run can be audited trade by trade.
- Consistent context fields (component, bot_id, session_id, trade_id).
- Account tokens never reach the log stream.
"""

from __future__ import annotations

import logging
import sys
from typing import Any, MutableMapping

import structlog

_SECRET_KEYS = frozenset({"token", "api_token", "account_token", "accountToken", "authorize", "auth_token"})


def _mask_secrets(_: Any, __: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    for key in _SECRET_KEYS.intersection(event_dict):
        value = str(event_dict[key] or "")
        event_dict[key] = f"***{value[-4:]}" if len(value) > 8 else "***"
    return event_dict


def configure_logging(log_level: str = "INFO", *, json_logs: bool = True) -> None:
    level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )

    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _mask_secrets,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(component: str, **kwargs: Any) -> structlog.BoundLogger:
    return structlog.get_logger().bind(component=component, **kwargs)


def bind_session(bot_id: str, session_id: str) -> None:
    """Tag every log line of the current task (and tasks it spawns) with the trading session."""
    structlog.contextvars.bind_contextvars(bot_id=bot_id, session_id=session_id)


def clear_session() -> None:
    structlog.contextvars.unbind_contextvars("bot_id", "session_id")
