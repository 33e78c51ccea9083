"""Data model shared by the surplus decision and balancing engines."""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional


class OutputState(str, Enum):
    """Desired state of a surplus output channel."""

    ON = "on"
    OFF = "off"

    @classmethod
    def from_bool(cls, value: bool) -> "OutputState":
        return cls.ON if value else cls.OFF


class InputRole(str, Enum):
    """Semantic role of a subscribed input entity.

    The value doubles as the state holder key and the snapshot field name.
    """

    PRODUCTION_POWER = "production_power"
    GRID_POWER = "grid_power"
    STORAGE_SOC = "storage_soc"
    STORAGE_POWER = "storage_power"
    MIN_STORAGE_SOC = "min_storage_soc"
    MAX_STORAGE_SOC = "max_storage_soc"
    ELECTRICITY_PRICE = "electricity_price"


class EvaluationMode(str, Enum):
    """How a cycle walked the output channels."""

    SURPLUS = "surplus"
    LOAD_SHEDDING = "load_shedding"


@dataclass(frozen=True)
class InputSnapshot:
    """Immutable view of all inputs, built once per evaluation cycle."""

    production_power: Decimal
    grid_power: Decimal
    storage_soc: Optional[Decimal] = None
    storage_power: Optional[Decimal] = None
    min_storage_soc: Optional[Decimal] = None
    max_storage_soc: Optional[Decimal] = None
    electricity_price: Optional[Decimal] = None

    def as_dict(self) -> dict[str, Optional[float]]:
        """Return a JSON friendly representation."""
        return {
            field: float(value) if value is not None else None
            for field, value in (
                ("production_power", self.production_power),
                ("grid_power", self.grid_power),
                ("storage_soc", self.storage_soc),
                ("storage_power", self.storage_power),
                ("min_storage_soc", self.min_storage_soc),
                ("max_storage_soc", self.max_storage_soc),
                ("electricity_price", self.electricity_price),
            )
        }


@dataclass(frozen=True)
class OutputChannelConfig:
    """User parameters of one surplus output channel."""

    channel_id: str
    load_power: int
    priority: int = 0
    name: Optional[str] = None
    switching_power: Optional[int] = None
    min_runtime_minutes: Optional[int] = None
    min_cooldown_minutes: Optional[int] = None
    max_electricity_price: Optional[Decimal] = None
    target_entity: Optional[str] = None

    @property
    def effective_switching_power(self) -> int:
        """Power needed to switch the load on."""
        if self.switching_power is None:
            return self.load_power
        return self.switching_power

    @property
    def display_name(self) -> str:
        return self.name or self.channel_id


@dataclass(frozen=True)
class EvaluationResult:
    """Outcome of one balancing cycle, kept for sensors and diagnostics."""

    available_surplus: float
    mode: EvaluationMode
    evaluated: tuple[str, ...] = ()
    changed_channel: Optional[str] = None
