"""Per-instance publish/subscribe channel.

Every Manager and Executor owns its own channel; bots never share listeners.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Generic, List, Optional, Tuple, TypeVar

from strategybot.infrastructure.logging.logging import get_logger
from strategybot.infrastructure.utils.timeutils import utc_now


class ManagerEvent(str, Enum):
    STATUS_CHANGED = "status_changed"
    TRADE_WON = "trade_won"
    TRADE_LOST = "trade_lost"
    STAKE_UPDATED = "stake_updated"
    STRATEGY_RESET = "strategy_reset"
    RECOVERY_TRIGGERED = "recovery_triggered"
    RECOVERY_STEP_CHANGED = "recovery_step_changed"
    STOP_LOSS_TRIGGERED = "stop_loss_triggered"
    TAKE_PROFIT_TRIGGERED = "take_profit_triggered"
    RISK_LIMIT_HIT = "risk_limit_hit"
    EMERGENCY_STOP = "emergency_stop"
    COOLDOWN_STARTED = "cooldown_started"
    COOLDOWN_ENDED = "cooldown_ended"
    SCHEDULE_PAUSED = "schedule_paused"
    VOLATILITY_PAUSE = "volatility_pause"
    PROFIT_LOCKED = "profit_locked"
    PROFIT_PROTECTION_TRIGGERED = "profit_protection_triggered"
    ERROR = "error"
    PERSIST_ERROR = "persist_error"
    LOG = "log"


class ExecutorEvent(str, Enum):
    TRADE_ATTEMPT = "trade_attempt"
    TRADE_ALL_ATTEMPTS_FAILED = "trade_all_attempts_failed"
    TRADE_EXECUTED = "trade_executed"
    TRADE_UNRESOLVED = "trade_unresolved"
    TRADE_PERSIST_ERROR = "trade_persist_error"
    SESSION_STARTED = "session_started"
    SESSION_ENDED = "session_ended"


E = TypeVar("E", bound=Enum)


@dataclass(frozen=True)
class Event(Generic[E]):
    name: E
    payload: Dict[str, Any]
    timestamp: datetime = field(default_factory=utc_now)


Handler = Callable[[Event], None]


class Subscription:
    def __init__(self, channel: "EventChannel", key: Optional[Enum], handler: Handler) -> None:
        self._channel = channel
        self._key = key
        self._handler = handler
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._channel._remove(self._key, self._handler)
            self.active = False


class EventChannel(Generic[E]):
    def __init__(self, event_type: type, *, owner: str = "") -> None:
        self._event_type = event_type
        self._handlers: Dict[Optional[Enum], List[Handler]] = {}
        self._logger = get_logger("events", owner=owner)

    def subscribe(self, name: E, handler: Handler) -> Subscription:
        if not isinstance(name, self._event_type):
            name = self._event_type(name)
        self._handlers.setdefault(name, []).append(handler)
        return Subscription(self, name, handler)

    def subscribe_all(self, handler: Handler) -> Subscription:
        self._handlers.setdefault(None, []).append(handler)
        return Subscription(self, None, handler)

    def _remove(self, key: Optional[Enum], handler: Handler) -> None:
        handlers = self._handlers.get(key, [])
        if handler in handlers:
            handlers.remove(handler)

    def emit(self, name: E, payload: Optional[Dict[str, Any]] = None) -> Event:
        event: Event = Event(name=name, payload=dict(payload or {}))
        targets: Tuple[Handler, ...] = tuple(self._handlers.get(name, ())) + tuple(self._handlers.get(None, ()))
        for handler in targets:
            try:
                handler(event)
            except Exception as e:
                # A broken listener must not take the trade loop down with it.
                self._logger.error("event_handler_error", event=name.value, error=str(e))
        return event
