"""Recovery ladder: loss-streak thresholds that override the strategy stake."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence

from strategybot.models.bot_config import RecoveryAction, RecoveryStep


@dataclass(frozen=True)
class RecoveryDecision:
    step_index: Optional[int]
    step: Optional[RecoveryStep]
    triggered: bool = False     # first activation within the current loss streak
    escalated: bool = False     # moved to a higher rung


class RecoveryLadder:
    """Maps a consecutive-loss count to the active recovery step.

    Steps are ordered by ``loss_streak``; the active step is the highest one
    whose threshold the streak has reached.
    """

    def __init__(
        self,
        steps: Sequence[RecoveryStep],
        *,
        enabled: bool = True,
        progressive: bool = False,
        recovery_multiplier: Optional[float] = None,
    ) -> None:
        self.steps: List[RecoveryStep] = sorted(steps, key=lambda s: s.loss_streak)
        self.enabled = enabled and bool(self.steps)
        self.progressive = progressive
        self.recovery_multiplier = float(recovery_multiplier or 1.0)

    def _index_for(self, consecutive_losses: int) -> Optional[int]:
        found: Optional[int] = None
        for i, step in enumerate(self.steps):
            if consecutive_losses >= step.loss_streak:
                found = i
        return found

    def evaluate(self, consecutive_losses: int, active_index: Optional[int]) -> RecoveryDecision:
        if not self.enabled:
            return RecoveryDecision(None, None)

        if consecutive_losses == 0:
            # a win ends the streak
            if self.progressive and active_index is not None and active_index > 0:
                index = active_index - 1
                return RecoveryDecision(index, self.steps[index])
            return RecoveryDecision(None, None)

        index = self._index_for(consecutive_losses)
        if index is None:
            if self.progressive and active_index is not None:
                return RecoveryDecision(active_index, self.steps[active_index])
            return RecoveryDecision(None, None)

        if self.progressive and active_index is not None and active_index > index:
            index = active_index

        triggered = active_index is None
        escalated = active_index is not None and index > active_index
        return RecoveryDecision(index, self.steps[index], triggered=triggered, escalated=escalated)

    def apply(self, stake: float, step: Optional[RecoveryStep], base_stake: float) -> float:
        if step is None:
            return stake
        if step.action == RecoveryAction.RESET:
            return base_stake
        if step.action == RecoveryAction.DECREASE:
            factor = step.multiplier
            return stake / factor if factor > 1 else stake * factor
        return stake * step.multiplier * self.recovery_multiplier
