"""Operator emergency switch (in-memory, optionally persisted to JSON).

The risk manager reads it once per cycle; engaging it while a bot runs moves
the bot to ERROR at the next cycle boundary.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional

from strategybot.infrastructure.utils.timeutils import utc_now


@dataclass
class KillSwitchState:
    engaged: bool = False
    reason: str = ""
    engaged_at_iso: Optional[str] = None


class KillSwitch:
    def __init__(self, state_path: Optional[Path] = None) -> None:
        self._path = state_path
        self._state = KillSwitchState()
        self.reload()

    @property
    def state(self) -> KillSwitchState:
        return self._state

    @property
    def engaged(self) -> bool:
        return self._state.engaged

    def reload(self) -> None:
        # another process (the API) may flip the file between cycles
        if self._path is None or not self._path.exists():
            return
        data = json.loads(self._path.read_text(encoding="utf-8"))
        self._state = KillSwitchState(
            engaged=bool(data.get("engaged", False)),
            reason=str(data.get("reason", "")),
            engaged_at_iso=data.get("engaged_at_iso"),
        )

    def _save(self) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(asdict(self._state), indent=2, sort_keys=True), encoding="utf-8")

    def engage(self, reason: str = "manual") -> None:
        if self._state.engaged:
            return
        self._state = KillSwitchState(engaged=True, reason=reason, engaged_at_iso=utc_now().isoformat())
        self._save()

    def release(self, reason: str = "manual_reset") -> None:
        self._state = KillSwitchState(engaged=False, reason=reason)
        self._save()
