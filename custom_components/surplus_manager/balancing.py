"""Evaluation cycle walking all output channels of one manager."""
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional, Sequence

from homeassistant.util import dt as dt_util

from .config_util import ManagerConfig
from .const import DEFAULT_MAX_STORAGE_SOC, DEFAULT_MIN_STORAGE_SOC
from .decision_engine import SurplusDecisionEngine
from .exceptions import SurplusManagerStateError
from .models import (
    EvaluationMode,
    EvaluationResult,
    InputRole,
    InputSnapshot,
    OutputChannelConfig,
    OutputState,
)
from .state_holder import StateHolder

_LOGGER = logging.getLogger(__name__)

StateVerifier = Callable[[Optional[InputSnapshot]], bool]
OutputUpdater = Callable[[OutputChannelConfig, OutputState], None]


def stored_output_state(state_holder: StateHolder, channel_id: str) -> OutputState:
    """Return the last stored state of a channel, OFF if it was never stored."""
    value = state_holder.get_state(channel_id)
    if value is None:
        return OutputState.OFF
    if not isinstance(value, OutputState):
        raise SurplusManagerStateError(
            f"Stored state of channel {channel_id} has unexpected type {type(value).__name__}"
        )
    return value


def _threshold(
    config: ManagerConfig, state_holder: StateHolder, role: InputRole, default: int
) -> Decimal:
    literal = config.literal_threshold(role)
    if literal is not None:
        return literal
    value = state_holder.get_state(role.value)
    if value is None:
        _LOGGER.debug("No value for %s yet, using default %s", role.value, default)
        return Decimal(default)
    return value


def build_snapshot(config: ManagerConfig, state_holder: StateHolder) -> Optional[InputSnapshot]:
    """Assemble the inputs of one cycle, or None while a required one is missing."""
    production = state_holder.get_state(InputRole.PRODUCTION_POWER.value)
    grid = state_holder.get_state(InputRole.GRID_POWER.value)
    if production is None or grid is None:
        _LOGGER.debug(
            "Required inputs missing: %s=%s %s=%s",
            InputRole.PRODUCTION_POWER.value, production, InputRole.GRID_POWER.value, grid,
        )
        return None

    return InputSnapshot(
        production_power=production,
        grid_power=grid,
        storage_soc=state_holder.get_state(InputRole.STORAGE_SOC.value),
        storage_power=state_holder.get_state(InputRole.STORAGE_POWER.value),
        min_storage_soc=_threshold(config, state_holder, InputRole.MIN_STORAGE_SOC, DEFAULT_MIN_STORAGE_SOC),
        max_storage_soc=_threshold(config, state_holder, InputRole.MAX_STORAGE_SOC, DEFAULT_MAX_STORAGE_SOC),
        electricity_price=state_holder.get_state(InputRole.ELECTRICITY_PRICE.value),
    )


class EnergyBalancingEngine:
    """Decide which output channel to switch in one evaluation cycle.

    At most one channel changes state per cycle. With a positive surplus the
    channels are walked by ascending priority number to find the next load to
    start; with a deficit they are walked by descending priority number so the
    least important running load is shed first.
    """

    def __init__(self, decision_engine: SurplusDecisionEngine, state_holder: StateHolder) -> None:
        """Initialize the balancing engine."""
        self.decision_engine = decision_engine
        self.state_holder = state_holder

    def evaluate_energy_balance(
        self,
        config: ManagerConfig,
        channels: Sequence[OutputChannelConfig],
        verify_state: StateVerifier,
        update_output: OutputUpdater,
        now: Optional[datetime] = None,
    ) -> Optional[EvaluationResult]:
        """Run one cycle.

        ``verify_state`` decides whether the snapshot may be used and handles
        status updates and global overrides; returning False ends the cycle.
        ``update_output`` receives the desired state of every evaluated channel
        and is responsible for skipping updates that change nothing.
        """
        snapshot = build_snapshot(config, self.state_holder)
        if not verify_state(snapshot) or snapshot is None:
            return None

        active_load_power = sum(
            channel.load_power
            for channel in channels
            if stored_output_state(self.state_holder, channel.channel_id) is OutputState.ON
        )
        surplus = self.decision_engine.calculate_available_surplus(snapshot, active_load_power)

        if not channels:
            _LOGGER.info("No output channels configured, nothing to evaluate")
            return EvaluationResult(float(surplus), EvaluationMode.SURPLUS)

        now = now or dt_util.utcnow()
        load_shedding = surplus < 0
        mode = EvaluationMode.LOAD_SHEDDING if load_shedding else EvaluationMode.SURPLUS
        # Stable in both directions, equal priorities keep their configured order
        ordered = sorted(channels, key=lambda channel: channel.priority, reverse=load_shedding)

        initial_surplus = surplus
        evaluated: list[str] = []
        changed: Optional[str] = None
        for channel in ordered:
            current = stored_output_state(self.state_holder, channel.channel_id)
            if load_shedding and current is OutputState.OFF:
                update_output(channel, OutputState.OFF)
                continue

            desired = self.decision_engine.determine_desired_state(
                channel,
                snapshot,
                surplus,
                current,
                now,
                self.state_holder.get_last_activation_time(channel.channel_id),
                self.state_holder.get_last_deactivation_time(channel.channel_id),
            )
            evaluated.append(channel.channel_id)
            update_output(channel, desired)

            if desired is not current:
                changed = channel.channel_id
                _LOGGER.debug("Channel %s switched %s, ending cycle", channel.channel_id, desired.value)
                break
            if desired is OutputState.ON:
                surplus -= channel.load_power

        return EvaluationResult(
            available_surplus=float(initial_surplus),
            mode=mode,
            evaluated=tuple(evaluated),
            changed_channel=changed,
        )
