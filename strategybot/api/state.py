# strategybot/api/state.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional

from strategybot.services.events import Event, Subscription
from strategybot.services.manager.trading_bot_manager import TradingBotManager
from strategybot.services.risk.killswitch import KillSwitch


@dataclass
class AppState:
    manager: TradingBotManager
    killswitch: KillSwitch
    recent_events: Deque[Dict[str, Any]] = field(default_factory=lambda: deque(maxlen=500))
    _subscriptions: List[Subscription] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._subscriptions.append(self.manager.events.subscribe_all(self._record))
        self._subscriptions.append(self.manager.executor.events.subscribe_all(self._record))

    def _record(self, event: Event) -> None:
        self.recent_events.append(
            {"event": event.name.value, "payload": event.payload, "timestamp": event.timestamp.isoformat()}
        )

    def close(self) -> None:
        for sub in self._subscriptions:
            sub.unsubscribe()
        self._subscriptions.clear()


_state: Optional[AppState] = None


def set_state(state: Optional[AppState]) -> None:
    global _state
    if _state is not None and _state is not state:
        _state.close()
    _state = state


def get_state() -> AppState:
    if _state is None:
        raise RuntimeError("API state not initialized. Start engine first (or init state).")
    return _state
