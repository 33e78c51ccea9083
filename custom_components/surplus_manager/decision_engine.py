"""Surplus calculation and per-channel switching decisions."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Union

from .config_util import ManagerConfig
from .models import InputSnapshot, OutputChannelConfig, OutputState

_LOGGER = logging.getLogger(__name__)

_ZERO = Decimal(0)


class SurplusDecisionEngine:
    """Pure decision logic, free of Home Assistant state.

    Sign conventions: negative ``grid_power`` is feed-in, positive
    ``storage_power`` is discharging. Charging the storage is treated as
    surplus that is already spent, it neither adds to nor subtracts from the
    available figure.
    """

    def __init__(self, config: ManagerConfig) -> None:
        """Initialize the engine."""
        self.config = config

    def calculate_available_surplus(
        self,
        snapshot: InputSnapshot,
        active_load_power: Union[int, Decimal] = 0,
    ) -> Decimal:
        """Return the power available for managed loads in W, negative on deficit.

        ``active_load_power`` is the summed load of channels that are switched
        on right now; it is added back so the evaluation can redistribute it by
        priority on every cycle.
        """
        if snapshot.production_power <= 0:
            return _ZERO

        # Feed-in is surplus, grid consumption is a deficit
        surplus = -snapshot.grid_power

        if snapshot.storage_power is not None and snapshot.storage_power > 0:
            surplus -= snapshot.storage_power

        tolerated = self.config.tolerated_power_draw
        if surplus < 0 and -surplus <= tolerated:
            _LOGGER.debug("Clamping draw of %sW within tolerated %sW to zero", -surplus, tolerated)
            surplus = _ZERO

        surplus += Decimal(active_load_power)

        if self.config.enable_inverter_limiting_heuristic:
            surplus += self._inverter_limited_surplus(snapshot)

        # Keep headroom for loads the manager does not control
        if surplus > 0:
            surplus -= self.config.min_available_surplus

        _LOGGER.debug(
            "Calculated surplus %sW (production=%s grid=%s storage=%s active=%s)",
            surplus, snapshot.production_power, snapshot.grid_power,
            snapshot.storage_power, active_load_power,
        )
        return surplus

    def _inverter_limited_surplus(self, snapshot: InputSnapshot) -> Decimal:
        """Estimate production the inverter is holding back.

        With the storage full, no grid exchange, no discharge and production
        under the rated peak, the inverter is most likely limiting output. The
        missing production is assumed to be available; if it is not, the load
        starts drawing from grid or storage and is shed on a later cycle.
        """
        if snapshot.storage_soc is None or snapshot.max_storage_soc is None:
            return _ZERO
        if snapshot.storage_soc < snapshot.max_storage_soc:
            return _ZERO
        if abs(snapshot.grid_power) > self.config.tolerated_power_draw:
            return _ZERO
        if snapshot.storage_power is not None and snapshot.storage_power > 0:
            return _ZERO

        peak = self.config.peak_production_power
        if snapshot.production_power >= peak:
            return _ZERO

        shortfall = peak - snapshot.production_power
        _LOGGER.debug("Inverter limiting suspected, assuming %sW extra surplus", shortfall)
        return shortfall

    def determine_desired_state(
        self,
        channel: OutputChannelConfig,
        snapshot: InputSnapshot,
        available_surplus: Decimal,
        current_state: OutputState,
        now: datetime,
        last_activation: datetime,
        last_deactivation: datetime,
    ) -> OutputState:
        """Return the state a channel should be in for the given surplus."""
        if (
            self.config.toggle_on_negative_price
            and snapshot.electricity_price is not None
            and snapshot.electricity_price < 0
        ):
            return OutputState.ON

        switching_power = channel.effective_switching_power
        if current_state is OutputState.OFF:
            has_surplus = available_surplus >= switching_power
        else:
            if channel.load_power < switching_power:
                _LOGGER.error(
                    "Load power of channel %s is lower than its switching power, behaviour is undefined",
                    channel.channel_id,
                )
            # A running load may dip into a deficit as large as its start margin
            if available_surplus < 0 and -available_surplus >= channel.load_power - switching_power:
                has_surplus = False
            else:
                return current_state

        price_ok = self._is_price_acceptable(channel, snapshot)
        _LOGGER.debug(
            "Channel %s: surplus=%sW switching=%sW load=%sW enough=%s price_ok=%s",
            channel.channel_id, available_surplus, switching_power,
            channel.load_power, has_surplus, price_ok,
        )

        desired = OutputState.from_bool(has_surplus and price_ok)
        return self._apply_hysteresis(
            channel, current_state, desired, now, last_activation, last_deactivation
        )

    def _is_price_acceptable(self, channel: OutputChannelConfig, snapshot: InputSnapshot) -> bool:
        max_price = channel.max_electricity_price
        if max_price is None:
            return True
        if snapshot.electricity_price is None:
            _LOGGER.error(
                "Channel %s has a price limit but no electricity price is available, ignoring the limit",
                channel.channel_id,
            )
            return True
        return snapshot.electricity_price <= max_price

    @staticmethod
    def _apply_hysteresis(
        channel: OutputChannelConfig,
        current_state: OutputState,
        desired: OutputState,
        now: datetime,
        last_activation: datetime,
        last_deactivation: datetime,
    ) -> OutputState:
        """Hold a channel in its state until cooldown or runtime have elapsed.

        Boundaries are inclusive: a window that elapsed exactly now permits
        the transition.
        """
        result = desired
        if (
            channel.min_cooldown_minutes is not None
            and current_state is OutputState.OFF
            and desired is OutputState.ON
            and last_deactivation > now - timedelta(minutes=channel.min_cooldown_minutes)
        ):
            result = OutputState.OFF
        if (
            channel.min_runtime_minutes is not None
            and current_state is OutputState.ON
            and desired is OutputState.OFF
            and last_activation > now - timedelta(minutes=channel.min_runtime_minutes)
        ):
            result = OutputState.ON

        if result is not desired:
            _LOGGER.debug(
                "Channel %s held %s (cooldown=%s runtime=%s)",
                channel.channel_id, result.value,
                channel.min_cooldown_minutes, channel.min_runtime_minutes,
            )
        return result

