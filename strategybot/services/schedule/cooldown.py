from __future__ import annotations

from typing import Optional

from strategybot.models.bot_config import CooldownSpec

_UNIT_SECONDS = {
    "s": 1.0, "sec": 1.0, "second": 1.0, "seconds": 1.0,
    "m": 60.0, "min": 60.0, "minute": 60.0, "minutes": 60.0,
    "h": 3600.0, "hour": 3600.0, "hours": 3600.0,
    "d": 86400.0, "day": 86400.0, "days": 86400.0,
}


def duration_to_seconds(duration: float, unit: str) -> float:
    if not duration:
        return 0.0
    # unknown units are read as seconds
    return float(duration) * _UNIT_SECONDS.get(str(unit).strip().lower(), 1.0)


def cooldown_seconds(spec: Optional[CooldownSpec]) -> float:
    if spec is None:
        return 0.0
    return duration_to_seconds(spec.duration, spec.unit)
