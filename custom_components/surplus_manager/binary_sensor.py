"""Binary sensor platform for Surplus Manager."""
from __future__ import annotations

from typing import Any

from homeassistant.components.binary_sensor import (
    BinarySensorDeviceClass,
    BinarySensorEntity,
)
from homeassistant.config_entries import ConfigEntry
from homeassistant.core import HomeAssistant
from homeassistant.helpers.entity_platform import AddEntitiesCallback
from homeassistant.helpers.update_coordinator import CoordinatorEntity

from .const import (
    ATTR_LAST_ACTIVATION,
    ATTR_LAST_DEACTIVATION,
    ATTR_LOAD_POWER,
    ATTR_PRIORITY,
    ATTR_SWITCHING_POWER,
    ATTR_TARGET_ENTITY,
    DOMAIN,
    INTEGRATION_VERSION,
)
from .coordinator import SurplusManagerCoordinator
from .models import OutputChannelConfig, OutputState
from .state_holder import NEVER


async def async_setup_entry(
    hass: HomeAssistant,
    entry: ConfigEntry,
    async_add_entities: AddEntitiesCallback,
) -> None:
    """Set up one binary sensor per output channel."""
    coordinator: SurplusManagerCoordinator = hass.data[DOMAIN][entry.entry_id]
    async_add_entities(
        [SurplusOutputBinarySensor(coordinator, entry, channel) for channel in coordinator.channels],
        False,
    )


def device_info_for(entry: ConfigEntry) -> dict[str, Any]:
    """Device grouping all entities of one manager."""
    return {
        "identifiers": {(DOMAIN, entry.entry_id)},
        "name": entry.title,
        "manufacturer": "Custom",
        "model": "Surplus Manager",
        "sw_version": INTEGRATION_VERSION,
    }


class SurplusOutputBinarySensor(CoordinatorEntity, BinarySensorEntity):
    """Desired state of a surplus output channel."""

    def __init__(
        self,
        coordinator: SurplusManagerCoordinator,
        entry: ConfigEntry,
        channel: OutputChannelConfig,
    ) -> None:
        """Initialize the output sensor."""
        super().__init__(coordinator)
        self.channel = channel
        self._attr_has_entity_name = True
        self._attr_name = channel.display_name
        self._attr_unique_id = f"{entry.entry_id}_output_{channel.channel_id}"
        self._attr_icon = "mdi:solar-power-variant"
        self._attr_device_class = BinarySensorDeviceClass.POWER
        self._attr_device_info = device_info_for(entry)

    @property
    def is_on(self) -> bool:
        """Return true if the load should run."""
        return self.coordinator.get_output_state(self.channel.channel_id) is OutputState.ON

    @property
    def extra_state_attributes(self) -> dict[str, Any]:
        """Return the channel parameters and switching times."""
        holder = self.coordinator.state_holder
        last_on = holder.get_last_activation_time(self.channel.channel_id)
        last_off = holder.get_last_deactivation_time(self.channel.channel_id)
        return {
            ATTR_PRIORITY: self.channel.priority,
            ATTR_LOAD_POWER: self.channel.load_power,
            ATTR_SWITCHING_POWER: self.channel.effective_switching_power,
            ATTR_TARGET_ENTITY: self.channel.target_entity,
            ATTR_LAST_ACTIVATION: last_on.isoformat() if last_on != NEVER else None,
            ATTR_LAST_DEACTIVATION: last_off.isoformat() if last_off != NEVER else None,
        }
