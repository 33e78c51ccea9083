"""Data coordinator for Surplus Manager."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from homeassistant.config_entries import ConfigEntry
from homeassistant.const import ATTR_ENTITY_ID, SERVICE_TURN_OFF, SERVICE_TURN_ON
from homeassistant.core import HomeAssistant, State, callback
from homeassistant.exceptions import HomeAssistantError
from homeassistant.helpers.event import async_call_later
from homeassistant.helpers.update_coordinator import DataUpdateCoordinator, UpdateFailed
from homeassistant.util import dt as dt_util

from .balancing import EnergyBalancingEngine, stored_output_state
from .config_util import ManagerConfig
from .const import (
    DOMAIN,
    STATUS_ERROR,
    STATUS_INITIALIZING,
    STATUS_NOT_READY,
    STATUS_OFFLINE,
    STATUS_READY,
    TARGET_SERVICE_DOMAIN,
)
from .decision_engine import SurplusDecisionEngine
from .event_subscriber import SurplusEventSubscriber
from .exceptions import SurplusManagerStateError
from .models import EvaluationResult, InputRole, InputSnapshot, OutputChannelConfig, OutputState
from .state_holder import StateHolder
from .state_values import state_to_decimal

_LOGGER = logging.getLogger(__name__)


class SurplusManagerCoordinator(DataUpdateCoordinator[Optional[EvaluationResult]]):
    """Runs the periodic surplus evaluation of one config entry."""

    def __init__(
        self,
        hass: HomeAssistant,
        entry: ConfigEntry,
        subscriber: SurplusEventSubscriber,
    ) -> None:
        """Initialize the coordinator.

        Raises:
            SurplusManagerConfigError: the entry holds an invalid configuration.
        """
        self.entry = entry
        merged_config: dict[str, Any] = dict(entry.data)
        if entry.options:
            merged_config.update(entry.options)
        self.config = ManagerConfig.from_config(merged_config)

        self.subscriber = subscriber
        self.state_holder = StateHolder()
        self.decision_engine = SurplusDecisionEngine(self.config)
        self.balancing_engine = EnergyBalancingEngine(self.decision_engine, self.state_holder)

        self.status: str = STATUS_INITIALIZING
        self.status_detail: str | None = None
        self.last_result: EvaluationResult | None = None
        self.last_snapshot: InputSnapshot | None = None
        self.last_evaluation: datetime | None = None

        self._was_not_ready = False
        self._evaluation_lock = asyncio.Lock()
        self._pending_commands: list[tuple[str, OutputState]] = []
        self._unsub_first_tick: Optional[Callable[[], None]] = None
        self._periodic_started = False

        # Polling starts only after the initial delay has passed
        super().__init__(
            hass,
            _LOGGER,
            config_entry=entry,
            name=f"{DOMAIN} {entry.title}",
            update_interval=None,
        )

    @property
    def channels(self) -> tuple[OutputChannelConfig, ...]:
        return self.config.output_channels

    async def async_start(self) -> None:
        """Switch every output off, bind inputs and schedule the first cycle."""
        await self._async_initialize()
        self._unsub_first_tick = async_call_later(
            self.hass, self.config.initial_delay, self._async_start_periodic
        )
        _LOGGER.info(
            "Scheduling surplus evaluation for %s in %ss, then every %ss",
            self.entry.title, self.config.initial_delay, self.config.refresh_interval,
        )

    async def async_reinitialize(self) -> None:
        """Start over from all outputs off and re-evaluate right away."""
        _LOGGER.info("Re-initialising surplus manager %s", self.entry.title)
        self.status = STATUS_INITIALIZING
        self.status_detail = None
        # A running cycle finishes flushing its commands first
        async with self._evaluation_lock:
            await self._async_initialize()
        if self._periodic_started:
            await self.async_refresh()
        else:
            self.async_update_listeners()

    async def _async_initialize(self) -> None:
        self._was_not_ready = False
        self._update_all_outputs(OutputState.OFF, force_update=True)
        await self._async_flush_commands()

        bindings = self.config.input_bindings()
        self.subscriber.register_events_for(self.entry.entry_id, bindings, self.async_handle_input)
        # Entities keep their state across our restarts, seed it instead of waiting for a change
        for entity_id, role in bindings.items():
            state = self.hass.states.get(entity_id)
            if state is not None:
                self.state_holder.save_state(role.value, state_to_decimal(state))

    @callback
    def _async_start_periodic(self, _now: datetime) -> None:
        self._unsub_first_tick = None
        self._periodic_started = True
        self.update_interval = timedelta(seconds=self.config.refresh_interval)
        self.hass.async_create_task(self.async_refresh(), f"{DOMAIN} first evaluation")

    async def async_stop(self) -> None:
        """Stop evaluating and release everything this manager holds."""
        if self._unsub_first_tick is not None:
            self._unsub_first_tick()
            self._unsub_first_tick = None
        self._periodic_started = False
        self.update_interval = None
        await self.async_shutdown()

        self.subscriber.unregister_events_for(self.entry.entry_id)
        self.state_holder.clear()
        self._pending_commands.clear()
        self._set_status(STATUS_OFFLINE)
        self.async_update_listeners()
        _LOGGER.info("Stopped surplus evaluation for %s", self.entry.title)

    async def async_handle_input(self, role: InputRole, state: State) -> None:
        """Store a new input value delivered by the event subscriber."""
        value = state_to_decimal(state)
        _LOGGER.debug("Input %s from %s: %s", role.value, state.entity_id, value)
        self.state_holder.save_state(role.value, value)

    async def _async_update_data(self) -> Optional[EvaluationResult]:
        """Run one evaluation cycle."""
        async with self._evaluation_lock:
            try:
                result = self.balancing_engine.evaluate_energy_balance(
                    self.config,
                    self.channels,
                    self._verify_state,
                    self._update_output,
                )
            except SurplusManagerStateError:
                self._set_status(STATUS_ERROR, "Output state store is corrupted")
                raise
            except Exception as err:
                self._set_status(STATUS_ERROR, str(err))
                raise UpdateFailed(f"Error evaluating surplus: {err}") from err
            finally:
                await self._async_flush_commands()

        self.last_evaluation = dt_util.utcnow()
        if result is not None:
            self.last_result = result
        return result

    def _verify_state(self, snapshot: Optional[InputSnapshot]) -> bool:
        """Handle readiness and global overrides before channels are evaluated."""
        self.last_snapshot = snapshot
        if snapshot is None:
            _LOGGER.debug("Required inputs of %s are not available", self.entry.title)
            if not self._was_not_ready:
                _LOGGER.warning(
                    "Surplus manager %s is waiting for production and grid power values",
                    self.entry.title,
                )
                self._set_status(
                    STATUS_NOT_READY,
                    "One or more required inputs have not received a valid value yet",
                )
                self._was_not_ready = True
            return False

        if self._was_not_ready or self.status != STATUS_READY:
            self._set_status(STATUS_READY)
            self._was_not_ready = False

        price = snapshot.electricity_price
        if self.config.toggle_on_negative_price and price is not None and price < 0:
            _LOGGER.info("Electricity price is negative (%s), switching all loads on", price)
            self._update_all_outputs(OutputState.ON)
            return False

        soc = snapshot.storage_soc
        min_soc = snapshot.min_storage_soc
        if soc is not None and min_soc is not None and soc < min_soc:
            _LOGGER.info("Storage SOC %s%% is below minimum %s%%, switching all loads off", soc, min_soc)
            self._update_all_outputs(OutputState.OFF)
            return False

        return True

    def _set_status(self, status: str, detail: str | None = None) -> None:
        if status != self.status:
            _LOGGER.debug("Status of %s: %s -> %s", self.entry.title, self.status, status)
        self.status = status
        self.status_detail = detail

    def _update_output(
        self,
        channel: OutputChannelConfig,
        new_state: OutputState,
        force_update: bool = False,
    ) -> None:
        """Persist a channel state if it changed and queue the target service call."""
        previous = stored_output_state(self.state_holder, channel.channel_id)
        if not force_update and new_state is previous:
            _LOGGER.debug("Channel %s state (%s) unchanged", channel.channel_id, new_state.value)
            return

        self.state_holder.save_state(channel.channel_id, new_state, track_timers=True)
        if channel.target_entity:
            self._pending_commands.append((channel.target_entity, new_state))
        _LOGGER.debug("Updated channel %s to %s", channel.channel_id, new_state.value)

    def _update_all_outputs(self, new_state: OutputState, force_update: bool = False) -> None:
        for channel in self.channels:
            self._update_output(channel, new_state, force_update)
        _LOGGER.debug("Set all outputs to %s (forced: %s)", new_state.value, force_update)

    async def _async_flush_commands(self) -> None:
        commands, self._pending_commands = self._pending_commands, []
        for entity_id, state in commands:
            service = SERVICE_TURN_ON if state is OutputState.ON else SERVICE_TURN_OFF
            try:
                await self.hass.services.async_call(
                    TARGET_SERVICE_DOMAIN,
                    service,
                    {ATTR_ENTITY_ID: entity_id},
                    blocking=False,
                )
            except HomeAssistantError as err:
                _LOGGER.error("Could not switch %s %s: %s", entity_id, state.value, err)

    def get_output_state(self, channel_id: str) -> OutputState:
        """Return the current desired state of a channel."""
        return stored_output_state(self.state_holder, channel_id)

    def as_diagnostics(self) -> dict[str, Any]:
        """Return internal state for diagnostics."""
        channels = {}
        for channel in self.channels:
            last_on = self.state_holder.get_last_activation_time(channel.channel_id)
            last_off = self.state_holder.get_last_deactivation_time(channel.channel_id)
            channels[channel.channel_id] = {
                "state": self.get_output_state(channel.channel_id).value,
                "priority": channel.priority,
                "load_power": channel.load_power,
                "switching_power": channel.effective_switching_power,
                "target_entity": channel.target_entity,
                "last_activation": last_on.isoformat(),
                "last_deactivation": last_off.isoformat(),
            }

        result = self.last_result
        return {
            "status": self.status,
            "status_detail": self.status_detail,
            "last_evaluation": self.last_evaluation.isoformat() if self.last_evaluation else None,
            "inputs": self.last_snapshot.as_dict() if self.last_snapshot else None,
            "registered_inputs": self.subscriber.registered_entities(self.entry.entry_id),
            "last_result": {
                "available_surplus": result.available_surplus,
                "mode": result.mode.value,
                "evaluated": list(result.evaluated),
                "changed_channel": result.changed_channel,
            } if result else None,
            "channels": channels,
        }
