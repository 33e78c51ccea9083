"""Translation of raw configuration into typed manager and channel settings."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Mapping, Optional, Union

import voluptuous as vol

from homeassistant.helpers import config_validation as cv

from .const import (
    CONF_CHANNEL_ID,
    CONF_CHANNEL_NAME,
    CONF_ELECTRICITY_PRICE_ENTITY,
    CONF_ENABLE_INVERTER_LIMITING_HEURISTIC,
    CONF_GRID_POWER_ENTITY,
    CONF_INITIAL_DELAY,
    CONF_LOAD_POWER,
    CONF_MAX_ELECTRICITY_PRICE,
    CONF_MAX_STORAGE_SOC,
    CONF_MIN_AVAILABLE_SURPLUS,
    CONF_MIN_COOLDOWN_MINUTES,
    CONF_MIN_RUNTIME_MINUTES,
    CONF_MIN_STORAGE_SOC,
    CONF_OUTPUT_CHANNELS,
    CONF_PEAK_PRODUCTION_POWER,
    CONF_PRIORITY,
    CONF_PRODUCTION_POWER_ENTITY,
    CONF_REFRESH_INTERVAL,
    CONF_STORAGE_POWER_ENTITY,
    CONF_STORAGE_SOC_ENTITY,
    CONF_SWITCHING_POWER,
    CONF_TARGET_ENTITY,
    CONF_TOGGLE_ON_NEGATIVE_PRICE,
    CONF_TOLERATED_POWER_DRAW,
    DEFAULT_ENABLE_INVERTER_LIMITING_HEURISTIC,
    DEFAULT_INITIAL_DELAY,
    DEFAULT_MAX_STORAGE_SOC,
    DEFAULT_MIN_AVAILABLE_SURPLUS,
    DEFAULT_MIN_STORAGE_SOC,
    DEFAULT_TOGGLE_ON_NEGATIVE_PRICE,
    DEFAULT_TOLERATED_POWER_DRAW,
    MIN_REFRESH_INTERVAL,
)
from .exceptions import SurplusManagerConfigError
from .models import InputRole, OutputChannelConfig
from .state_values import parse_decimal

_LOGGER = logging.getLogger(__name__)

ThresholdSource = Union[Decimal, str]


def _decimal(value: Any) -> Decimal:
    """Voluptuous validator producing a finite Decimal."""
    parsed = parse_decimal(value)
    if parsed is None:
        raise vol.Invalid(f"expected a number, got {value!r}")
    return parsed


def resolve_threshold_source(value: Any) -> ThresholdSource:
    """Return a literal threshold, or the entity id delivering it.

    A value that parses as a number is a constant; anything else must name an
    entity whose state is used instead.
    """
    number = parse_decimal(value)
    if number is not None:
        return number
    return cv.entity_id(value)


def _drop_empty(config: Mapping[str, Any]) -> dict[str, Any]:
    """Forms store cleared optional fields as None or empty strings."""
    return {key: value for key, value in config.items() if value not in (None, "")}


CHANNEL_SCHEMA = vol.Schema(
    {
        vol.Required(CONF_CHANNEL_ID): cv.string,
        vol.Optional(CONF_CHANNEL_NAME): cv.string,
        vol.Required(CONF_PRIORITY): vol.Coerce(int),
        vol.Required(CONF_LOAD_POWER): vol.All(vol.Coerce(int), vol.Range(min=1)),
        vol.Optional(CONF_SWITCHING_POWER): vol.All(vol.Coerce(int), vol.Range(min=0)),
        vol.Optional(CONF_MIN_RUNTIME_MINUTES): vol.All(vol.Coerce(int), vol.Range(min=0)),
        vol.Optional(CONF_MIN_COOLDOWN_MINUTES): vol.All(vol.Coerce(int), vol.Range(min=0)),
        vol.Optional(CONF_MAX_ELECTRICITY_PRICE): _decimal,
        vol.Optional(CONF_TARGET_ENTITY): cv.entity_id,
    },
    extra=vol.REMOVE_EXTRA,
)

MANAGER_SCHEMA = vol.Schema(
    {
        vol.Required(CONF_REFRESH_INTERVAL): vol.All(
            vol.Coerce(int),
            vol.Range(min=MIN_REFRESH_INTERVAL, msg="Invalid refresh interval"),
        ),
        vol.Optional(CONF_INITIAL_DELAY, default=DEFAULT_INITIAL_DELAY): vol.All(
            vol.Coerce(int), vol.Range(min=0)
        ),
        vol.Required(CONF_PEAK_PRODUCTION_POWER): _decimal,
        vol.Required(CONF_PRODUCTION_POWER_ENTITY): cv.entity_id,
        vol.Required(CONF_GRID_POWER_ENTITY): cv.entity_id,
        vol.Optional(CONF_STORAGE_SOC_ENTITY): cv.entity_id,
        vol.Optional(CONF_STORAGE_POWER_ENTITY): cv.entity_id,
        vol.Optional(CONF_ELECTRICITY_PRICE_ENTITY): cv.entity_id,
        vol.Optional(CONF_MIN_STORAGE_SOC, default=DEFAULT_MIN_STORAGE_SOC): resolve_threshold_source,
        vol.Optional(CONF_MAX_STORAGE_SOC, default=DEFAULT_MAX_STORAGE_SOC): resolve_threshold_source,
        vol.Optional(CONF_MIN_AVAILABLE_SURPLUS, default=DEFAULT_MIN_AVAILABLE_SURPLUS): _decimal,
        vol.Optional(CONF_TOLERATED_POWER_DRAW, default=DEFAULT_TOLERATED_POWER_DRAW): vol.All(
            _decimal, vol.Range(min=0)
        ),
        vol.Optional(CONF_TOGGLE_ON_NEGATIVE_PRICE, default=DEFAULT_TOGGLE_ON_NEGATIVE_PRICE): cv.boolean,
        vol.Optional(
            CONF_ENABLE_INVERTER_LIMITING_HEURISTIC,
            default=DEFAULT_ENABLE_INVERTER_LIMITING_HEURISTIC,
        ): cv.boolean,
        vol.Optional(CONF_OUTPUT_CHANNELS, default=list): vol.All(cv.ensure_list, [dict]),
    },
    extra=vol.ALLOW_EXTRA,
)


def parse_output_channel(raw: Mapping[str, Any]) -> Optional[OutputChannelConfig]:
    """Build typed channel parameters, or None if the channel cannot be used."""
    try:
        params = CHANNEL_SCHEMA(_drop_empty(raw))
    except vol.Invalid as err:
        _LOGGER.error("Could not read output channel %s parameters (%s), ignoring it",
                      raw.get(CONF_CHANNEL_ID, "<unnamed>"), err)
        return None

    channel = OutputChannelConfig(
        channel_id=params[CONF_CHANNEL_ID],
        name=params.get(CONF_CHANNEL_NAME),
        priority=params[CONF_PRIORITY],
        load_power=params[CONF_LOAD_POWER],
        switching_power=params.get(CONF_SWITCHING_POWER),
        min_runtime_minutes=params.get(CONF_MIN_RUNTIME_MINUTES),
        min_cooldown_minutes=params.get(CONF_MIN_COOLDOWN_MINUTES),
        max_electricity_price=params.get(CONF_MAX_ELECTRICITY_PRICE),
        target_entity=params.get(CONF_TARGET_ENTITY),
    )
    if channel.switching_power is not None and channel.switching_power > channel.load_power:
        _LOGGER.error(
            "Switching power %sW of channel %s exceeds its load power %sW, behaviour is undefined",
            channel.switching_power, channel.channel_id, channel.load_power,
        )
    return channel


@dataclass(frozen=True)
class ManagerConfig:
    """Validated configuration of one manager instance."""

    refresh_interval: int
    initial_delay: int
    peak_production_power: Decimal
    production_power_entity: str
    grid_power_entity: str
    storage_soc_entity: Optional[str] = None
    storage_power_entity: Optional[str] = None
    electricity_price_entity: Optional[str] = None
    min_storage_soc: ThresholdSource = Decimal(DEFAULT_MIN_STORAGE_SOC)
    max_storage_soc: ThresholdSource = Decimal(DEFAULT_MAX_STORAGE_SOC)
    min_available_surplus: Decimal = Decimal(DEFAULT_MIN_AVAILABLE_SURPLUS)
    tolerated_power_draw: Decimal = Decimal(DEFAULT_TOLERATED_POWER_DRAW)
    toggle_on_negative_price: bool = DEFAULT_TOGGLE_ON_NEGATIVE_PRICE
    enable_inverter_limiting_heuristic: bool = DEFAULT_ENABLE_INVERTER_LIMITING_HEURISTIC
    output_channels: tuple[OutputChannelConfig, ...] = field(default_factory=tuple)

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "ManagerConfig":
        """Validate raw configuration.

        Raises:
            SurplusManagerConfigError: a required field is missing or invalid.
        """
        try:
            values = MANAGER_SCHEMA(_drop_empty(config))
        except vol.Invalid as err:
            raise SurplusManagerConfigError(f"Invalid configuration: {err}") from err

        channels: list[OutputChannelConfig] = []
        seen: set[str] = set()
        for raw_channel in values[CONF_OUTPUT_CHANNELS]:
            channel = parse_output_channel(raw_channel)
            if channel is None:
                continue
            if channel.channel_id in seen:
                _LOGGER.error("Duplicate output channel id %s, ignoring it", channel.channel_id)
                continue
            seen.add(channel.channel_id)
            channels.append(channel)

        return cls(
            refresh_interval=values[CONF_REFRESH_INTERVAL],
            initial_delay=values[CONF_INITIAL_DELAY],
            peak_production_power=values[CONF_PEAK_PRODUCTION_POWER],
            production_power_entity=values[CONF_PRODUCTION_POWER_ENTITY],
            grid_power_entity=values[CONF_GRID_POWER_ENTITY],
            storage_soc_entity=values.get(CONF_STORAGE_SOC_ENTITY),
            storage_power_entity=values.get(CONF_STORAGE_POWER_ENTITY),
            electricity_price_entity=values.get(CONF_ELECTRICITY_PRICE_ENTITY),
            min_storage_soc=values[CONF_MIN_STORAGE_SOC],
            max_storage_soc=values[CONF_MAX_STORAGE_SOC],
            min_available_surplus=values[CONF_MIN_AVAILABLE_SURPLUS],
            tolerated_power_draw=values[CONF_TOLERATED_POWER_DRAW],
            toggle_on_negative_price=values[CONF_TOGGLE_ON_NEGATIVE_PRICE],
            enable_inverter_limiting_heuristic=values[CONF_ENABLE_INVERTER_LIMITING_HEURISTIC],
            output_channels=tuple(channels),
        )

    def input_bindings(self) -> dict[str, InputRole]:
        """Map subscribed entity ids to their input role.

        Literal SOC thresholds are constants and need no subscription.
        """
        candidates = (
            (self.production_power_entity, InputRole.PRODUCTION_POWER),
            (self.grid_power_entity, InputRole.GRID_POWER),
            (self.storage_soc_entity, InputRole.STORAGE_SOC),
            (self.storage_power_entity, InputRole.STORAGE_POWER),
            (self.electricity_price_entity, InputRole.ELECTRICITY_PRICE),
            (self.min_storage_soc, InputRole.MIN_STORAGE_SOC),
            (self.max_storage_soc, InputRole.MAX_STORAGE_SOC),
        )
        bindings: dict[str, InputRole] = {}
        for source, role in candidates:
            if not isinstance(source, str):
                continue
            if source in bindings:
                _LOGGER.warning(
                    "Entity %s is bound to both %s and %s, only %s will be updated",
                    source, bindings[source].value, role.value, role.value,
                )
            bindings[source] = role
        return bindings

    def literal_threshold(self, role: InputRole) -> Optional[Decimal]:
        """Return the configured constant for a SOC threshold role, if any."""
        source = self.min_storage_soc if role is InputRole.MIN_STORAGE_SOC else self.max_storage_soc
        return source if isinstance(source, Decimal) else None
