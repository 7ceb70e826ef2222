"""Declarative bot configuration.

Shape follows the bot record exchanged with the persistence API: snake_case in
Python, camelCase aliases where the API uses them (``lossStreak``,
``daysOfWeek``, ...). Models are frozen; runtime changes go through the
manager's typed setters which rebuild the relevant group.
"""

from __future__ import annotations

from datetime import date as date_type, datetime, time
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


DIGIT_CONTRACT_TYPES = frozenset({"DIGITMATCH", "DIGITDIFF", "DIGITOVER", "DIGITUNDER"})
DURATION_UNITS = ("t", "s", "m", "h", "d")


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")


class AmountType(str, Enum):
    FIXED = "fixed"
    PERCENTAGE = "percentage"
    DYNAMIC = "dynamic"


class AmountSpec(_Model):
    """A money amount that may depend on balance or win rate."""

    type: AmountType = Field(default=AmountType.FIXED)
    value: float = Field(default=0.0, ge=0)
    balance_percentage: Optional[float] = Field(default=None, ge=0, le=100, alias="balancePercentage")

    @classmethod
    def fixed(cls, value: float) -> "AmountSpec":
        return cls(type=AmountType.FIXED, value=value)


class Amounts(_Model):
    base_stake: AmountSpec = Field(default_factory=lambda: AmountSpec.fixed(1.0))
    maximum_stake: AmountSpec = Field(default_factory=lambda: AmountSpec.fixed(100.0))
    take_profit: AmountSpec = Field(default_factory=lambda: AmountSpec.fixed(10.0))
    stop_loss: AmountSpec = Field(default_factory=lambda: AmountSpec.fixed(5.0))


class ContractSpec(_Model):
    market: str = Field(default="", description="Underlying symbol, e.g. R_100")
    contract_type: str = Field(default="CALL", alias="contractType")
    prediction: Optional[str] = Field(default=None, description="Barrier / predicted digit")
    duration: int = Field(default=1, ge=0)
    duration_unit: str = Field(default="t", alias="durationUnit")
    delay: float = Field(default=1.0, ge=0, description="Seconds to wait between trades")
    alternate_after: int = Field(default=1, ge=1, alias="alternateAfter")
    multiplier: Optional[float] = Field(default=None, gt=0)
    basis: Literal["stake", "payout"] = Field(default="stake")

    @field_validator("contract_type")
    @classmethod
    def normalize_contract_type(cls, v: str) -> str:
        return str(v).strip().upper()

    @field_validator("prediction", mode="before")
    @classmethod
    def normalize_prediction(cls, v: object) -> Optional[str]:
        if v is None or str(v).strip() == "":
            return None
        return str(v).strip()

    @property
    def contract_types(self) -> List[str]:
        return [t for t in self.contract_type.split("|") if t]


class RecoveryAction(str, Enum):
    INCREASE = "increase"
    DECREASE = "decrease"
    RESET = "reset"


class RecoveryStep(_Model):
    loss_streak: int = Field(..., ge=1, alias="lossStreak")
    multiplier: float = Field(default=1.0, gt=0)
    action: RecoveryAction = Field(default=RecoveryAction.INCREASE)


class ScheduleType(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"


class ScheduleExclusion(_Model):
    date: date_type
    reason: str = ""

    @field_validator("date", mode="before")
    @classmethod
    def accept_datetime(cls, v: object) -> object:
        if isinstance(v, datetime):
            return v.date()
        if isinstance(v, str) and "T" in v:
            return datetime.fromisoformat(v.replace("Z", "+00:00")).date()
        return v


class Schedule(_Model):
    id: str = ""
    name: str = ""
    type: ScheduleType = Field(default=ScheduleType.CUSTOM)
    is_enabled: bool = Field(default=False, alias="isEnabled")
    start_date: Optional[datetime] = Field(default=None, alias="startDate")
    end_date: Optional[datetime] = Field(default=None, alias="endDate")
    start_time: Optional[time] = Field(default=None, alias="startTime")
    end_time: Optional[time] = Field(default=None, alias="endTime")
    days_of_week: List[int] = Field(default_factory=list, alias="daysOfWeek")
    """0 = Sunday ... 6 = Saturday."""
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31, alias="dayOfMonth")
    exclusions: List[ScheduleExclusion] = Field(default_factory=list)

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def accept_iso_datetime(cls, v: object) -> object:
        # The API stores times as full ISO timestamps; only the clock part matters.
        if isinstance(v, datetime):
            return v.time()
        if isinstance(v, str) and "T" in v:
            return datetime.fromisoformat(v.replace("Z", "+00:00")).time()
        return v

    @field_validator("days_of_week")
    @classmethod
    def validate_days(cls, v: List[int]) -> List[int]:
        for day in v:
            if day < 0 or day > 6:
                raise ValueError("days_of_week values must be in 0..6 (0 = Sunday)")
        return sorted(set(v))


class CooldownSpec(_Model):
    duration: float = Field(..., ge=0)
    unit: str = Field(default="s")


class GeneralSettings(_Model):
    maximum_number_of_trades: Optional[int] = Field(default=None, ge=1)
    maximum_running_time: Optional[float] = Field(default=None, gt=0, description="Seconds")
    cooldown_period: Optional[CooldownSpec] = None
    compound_stake: bool = False
    auto_restart: bool = False

    @field_validator("cooldown_period", mode="before")
    @classmethod
    def accept_seconds_string(cls, v: object) -> object:
        if isinstance(v, (int, float)) or (isinstance(v, str) and v.strip().isdigit()):
            return {"duration": float(v), "unit": "s"}
        return v


class RiskManagementSettings(_Model):
    max_daily_loss: Optional[AmountSpec] = None
    max_daily_profit: Optional[AmountSpec] = None
    max_consecutive_losses: Optional[int] = Field(default=None, ge=1)
    max_drawdown_percentage: Optional[float] = Field(default=None, gt=0, le=100)
    risk_per_trade: Optional[float] = Field(default=None, gt=0, le=100, description="% of balance")
    emergency_stop: bool = False


class VolatilityControls(_Model):
    volatility_filter: bool = False
    min_volatility: Optional[float] = None
    max_volatility: Optional[float] = None
    pause_on_high_volatility: bool = False


class RecoverySettings(_Model):
    recovery_type: Optional[str] = None
    progressive_recovery: bool = False
    recovery_multiplier: Optional[float] = Field(default=None, gt=0)
    max_recovery_attempts: Optional[int] = Field(default=None, ge=1)
    recovery_cooldown: Optional[CooldownSpec] = None

    @property
    def enabled(self) -> bool:
        return (self.recovery_type or "").lower() != "off"


class AdvancedSettings(_Model):
    general: GeneralSettings = Field(default_factory=GeneralSettings, alias="general_settings_section")
    risk_management: RiskManagementSettings = Field(
        default_factory=RiskManagementSettings, alias="risk_management_section"
    )
    volatility_controls: VolatilityControls = Field(
        default_factory=VolatilityControls, alias="volatility_controls_section"
    )
    recovery_settings: RecoverySettings = Field(default_factory=RecoverySettings, alias="recovery_settings_section")


# --------- Strategy variants ---------


class StrategyKind(str, Enum):
    MARTINGALE = "martingale"
    DALEMBERT = "dalembert"
    REVERSE_MARTINGALE = "reverse_martingale"
    SYSTEM_1326 = "system_1326"
    OSCARS_GRIND = "oscars_grind"


class MartingaleParams(_Model):
    kind: Literal["martingale"] = "martingale"
    martingale_multiplier: float = Field(default=2.0, gt=1)
    martingale_max_steps: int = Field(default=10, ge=1)
    martingale_reset_on_profit: bool = True
    martingale_safety_net: Optional[float] = Field(default=None, gt=0, le=100, description="% of balance")


class DalembertParams(_Model):
    kind: Literal["dalembert"] = "dalembert"
    dalembert_increment: float = Field(default=1.0, gt=0)
    dalembert_decrement: float = Field(default=1.0, gt=0)
    dalembert_max_units: int = Field(default=50, ge=1)
    dalembert_reset_threshold: Optional[float] = Field(default=None, gt=0)


class ReverseMartingaleParams(_Model):
    kind: Literal["reverse_martingale"] = "reverse_martingale"
    reverse_martingale_multiplier: float = Field(default=2.0, gt=1)
    reverse_martingale_max_wins: int = Field(default=5, ge=1)
    reverse_martingale_profit_lock: Optional[float] = Field(default=None, gt=0, le=100)
    reverse_martingale_reset_on_loss: bool = True


class System1326Params(_Model):
    kind: Literal["system_1326"] = "system_1326"
    system_1326_sequence: List[float] = Field(default_factory=lambda: [1.0, 3.0, 2.0, 6.0])
    system_1326_max_cycles: Optional[int] = Field(default=None, ge=1)
    system_1326_stop_on_cycle_complete: bool = False
    system_1326_reset_on_loss: bool = True

    @field_validator("system_1326_sequence", mode="before")
    @classmethod
    def parse_sequence(cls, v: object) -> object:
        if isinstance(v, str):
            return [float(x) for x in v.split("-") if x.strip()]
        return v

    @field_validator("system_1326_sequence")
    @classmethod
    def validate_sequence(cls, v: List[float]) -> List[float]:
        if not v or any(x <= 0 for x in v):
            raise ValueError("system_1326_sequence must be a non-empty list of positive unit multiples")
        return v


class OscarsGrindParams(_Model):
    kind: Literal["oscars_grind"] = "oscars_grind"
    oscars_grind_profit_target: Optional[float] = Field(default=None, gt=0)
    oscars_grind_max_bet_units: int = Field(default=10, ge=1)
    oscars_grind_reset_on_target: bool = True
    oscars_grind_auto_stop_on_target: bool = False


StrategyParams = Annotated[
    Union[MartingaleParams, DalembertParams, ReverseMartingaleParams, System1326Params, OscarsGrindParams],
    Field(discriminator="kind"),
]


class BotConfiguration(_Model):
    bot_id: str = Field(default="", alias="botId")
    bot_uuid: str = Field(default="", alias="botUUID")
    bot_name: str = Field(default="Untitled Bot", alias="botName")
    currency: str = Field(default="USD")
    account_token: str = Field(default="", alias="accountToken", repr=False)

    strategy: StrategyParams = Field(default_factory=MartingaleParams)
    contract: ContractSpec = Field(default_factory=ContractSpec)
    amounts: Amounts = Field(default_factory=Amounts)
    recovery_steps: List[RecoveryStep] = Field(default_factory=list)
    advanced_settings: AdvancedSettings = Field(default_factory=AdvancedSettings)
    schedule: Optional[Schedule] = None

    @model_validator(mode="before")
    @classmethod
    def unwrap_api_shapes(cls, data: object) -> object:
        # The API nests risk steps and the schedule one level deeper than we do.
        if not isinstance(data, dict):
            return data
        data = dict(data)
        steps = data.get("recovery_steps")
        if isinstance(steps, dict):
            data["recovery_steps"] = steps.get("risk_steps") or []
        advanced = data.get("advanced_settings")
        if isinstance(advanced, dict) and "schedule" not in data:
            wrapped = (advanced.get("bot_schedule") or {}).get("bot_schedule")
            if wrapped:
                data["schedule"] = wrapped
        return data

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        return str(v).upper() or "USD"

    @property
    def identity(self) -> str:
        return self.bot_uuid or self.bot_id

    def validation_errors(self) -> List[str]:
        """Problems that must block ``start()``. Empty list means ready."""

        errors: List[str] = []
        c = self.contract
        if not c.market:
            errors.append("contract.market is required")
        if not c.contract_types:
            errors.append("contract.contract_type is required")
        if c.duration <= 0:
            errors.append("contract.duration must be greater than 0")
        if c.duration_unit not in DURATION_UNITS:
            errors.append(f"contract.duration_unit must be one of {list(DURATION_UNITS)}")
        if any(t in DIGIT_CONTRACT_TYPES for t in c.contract_types) and not c.prediction:
            errors.append("contract.prediction is required for digit contracts")
        if self.amounts.base_stake.value <= 0 and not self.amounts.base_stake.balance_percentage:
            errors.append("amounts.base_stake must be greater than 0")
        if not self.account_token:
            errors.append("account_token is required")
        return errors

    def to_api_payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude={"account_token"})
