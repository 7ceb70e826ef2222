"""Staking progressions.

Each strategy is a pure transform ``(params, context, counters) -> StakeDecision``.
Nothing here emits, sleeps or touches the network: events and stop requests
are returned to the manager, which owns the side effects.

Clamping to [min_stake, max_stake] is NOT done here (see position_sizer).
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional, Tuple

from strategybot.models.bot_config import (
    DalembertParams,
    MartingaleParams,
    OscarsGrindParams,
    ReverseMartingaleParams,
    StrategyParams,
    System1326Params,
)
from strategybot.models.runtime_state import StrategyCounters
from strategybot.models.trade_models import TradeOutcome
from strategybot.services.events import ManagerEvent


@dataclass(frozen=True)
class StakeContext:
    base_stake: float
    session_profit: float
    outcome: Optional[TradeOutcome]     # None before the first trade of a session
    balance: Optional[float] = None


@dataclass(frozen=True)
class StrategyEvent:
    name: ManagerEvent
    payload: Dict[str, Any]


@dataclass(frozen=True)
class StakeDecision:
    stake: float
    counters: StrategyCounters
    lock_amount: float = 0.0
    events: Tuple[StrategyEvent, ...] = ()
    stop_reason: Optional[str] = None


STOP_CYCLE_COMPLETE = "system_1326_cycle_complete"
STOP_MAX_CYCLES = "system_1326_max_cycles"
STOP_GRIND_TARGET = "oscars_grind_target_reached"


def _reset_event(message: str) -> StrategyEvent:
    return StrategyEvent(ManagerEvent.STRATEGY_RESET, {"message": message})


def martingale(p: MartingaleParams, ctx: StakeContext, c: StrategyCounters) -> StakeDecision:
    step = c.martingale_step
    if ctx.outcome is None:
        step = 0
    elif not ctx.outcome.is_win:
        step = min(step + 1, p.martingale_max_steps)
    elif p.martingale_reset_on_profit:
        step = 0

    stake = ctx.base_stake * (p.martingale_multiplier ** step)
    if p.martingale_safety_net and ctx.balance:
        stake = min(stake, ctx.balance * p.martingale_safety_net / 100.0)

    return StakeDecision(stake=stake, counters=replace(c, martingale_step=step))


def dalembert(p: DalembertParams, ctx: StakeContext, c: StrategyCounters) -> StakeDecision:
    base = ctx.base_stake
    previous = c.dalembert_stake if c.dalembert_stake is not None else base

    if ctx.outcome is None:
        stake = base
    elif ctx.outcome.is_win:
        stake = max(base, previous - p.dalembert_decrement)
    else:
        stake = min(previous + p.dalembert_increment, base * p.dalembert_max_units)

    events: Tuple[StrategyEvent, ...] = ()
    threshold = p.dalembert_reset_threshold
    if threshold and ctx.session_profit >= threshold and stake > base:
        stake = base
        events = (_reset_event("D'Alembert reset at profit threshold"),)

    return StakeDecision(stake=stake, counters=replace(c, dalembert_stake=stake), events=events)


def reverse_martingale(p: ReverseMartingaleParams, ctx: StakeContext, c: StrategyCounters) -> StakeDecision:
    wins = c.reverse_wins
    lock_amount = 0.0
    events: Tuple[StrategyEvent, ...] = ()

    if ctx.outcome is None:
        wins = 0
    elif ctx.outcome.is_win:
        wins += 1
        if p.reverse_martingale_profit_lock and ctx.outcome.profit > 0:
            lock_amount = ctx.outcome.profit * p.reverse_martingale_profit_lock / 100.0
        if wins > p.reverse_martingale_max_wins:
            wins = 0
            events = (_reset_event(f"Reverse Martingale reset after {p.reverse_martingale_max_wins} wins"),)
    elif p.reverse_martingale_reset_on_loss:
        wins = 0

    stake = ctx.base_stake * (p.reverse_martingale_multiplier ** wins)
    return StakeDecision(
        stake=stake,
        counters=replace(c, reverse_wins=wins),
        lock_amount=lock_amount,
        events=events,
    )


def system_1326(p: System1326Params, ctx: StakeContext, c: StrategyCounters) -> StakeDecision:
    sequence = p.system_1326_sequence
    position = c.system_1326_position
    cycles = c.system_1326_cycles
    events: Tuple[StrategyEvent, ...] = ()
    stop_reason: Optional[str] = None

    if ctx.outcome is None:
        position = 0
    elif ctx.outcome.is_win:
        position += 1
        if position >= len(sequence):
            position = 0
            cycles += 1
            if p.system_1326_stop_on_cycle_complete:
                events = (_reset_event("1-3-2-6 cycle complete - stopping"),)
                stop_reason = STOP_CYCLE_COMPLETE
            else:
                events = (_reset_event("1-3-2-6 cycle complete - restarting"),)
    elif p.system_1326_reset_on_loss:
        # a loss ends the running cycle wherever it was
        position = 0
        cycles += 1

    if stop_reason is None and p.system_1326_max_cycles and cycles >= p.system_1326_max_cycles:
        stop_reason = STOP_MAX_CYCLES

    stake = ctx.base_stake * sequence[position]
    return StakeDecision(
        stake=stake,
        counters=replace(c, system_1326_position=position, system_1326_cycles=cycles),
        events=events,
        stop_reason=stop_reason,
    )


def oscars_grind(p: OscarsGrindParams, ctx: StakeContext, c: StrategyCounters) -> StakeDecision:
    unit = ctx.base_stake
    target = p.oscars_grind_profit_target or unit
    units = c.oscars_units
    cycle_profit = c.oscars_cycle_profit
    events: Tuple[StrategyEvent, ...] = ()
    stop_reason: Optional[str] = None

    if ctx.outcome is None:
        units, cycle_profit = 1, 0.0
    else:
        cycle_profit += ctx.outcome.profit
        if cycle_profit >= target:
            if p.oscars_grind_auto_stop_on_target:
                stop_reason = STOP_GRIND_TARGET
            elif p.oscars_grind_reset_on_target:
                units, cycle_profit = 1, 0.0
                events = (_reset_event("Oscar's Grind reset at profit target"),)
        elif ctx.outcome.is_win:
            units = min(units + 1, p.oscars_grind_max_bet_units)
        # loss: stake stays flat

    # never bet more than what is needed to close the cycle at target
    needed_units = math.ceil(max(target - cycle_profit, 0.0) / unit) if unit > 0 else 1
    bet_units = max(1, min(units, needed_units))

    return StakeDecision(
        stake=unit * bet_units,
        counters=replace(c, oscars_units=units, oscars_cycle_profit=cycle_profit),
        events=events,
        stop_reason=stop_reason,
    )


def next_stake(params: StrategyParams, ctx: StakeContext, counters: StrategyCounters) -> StakeDecision:
    if isinstance(params, MartingaleParams):
        return martingale(params, ctx, counters)
    if isinstance(params, DalembertParams):
        return dalembert(params, ctx, counters)
    if isinstance(params, ReverseMartingaleParams):
        return reverse_martingale(params, ctx, counters)
    if isinstance(params, System1326Params):
        return system_1326(params, ctx, counters)
    if isinstance(params, OscarsGrindParams):
        return oscars_grind(params, ctx, counters)
    raise TypeError(f"Unsupported strategy params: {type(params).__name__}")
