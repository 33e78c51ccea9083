"""Sensor platform for Surplus Manager."""
from __future__ import annotations

from typing import Any

from homeassistant.components.sensor import (
    SensorDeviceClass,
    SensorEntity,
    SensorStateClass,
)
from homeassistant.config_entries import ConfigEntry
from homeassistant.const import EntityCategory, UnitOfPower
from homeassistant.core import HomeAssistant
from homeassistant.helpers.entity_platform import AddEntitiesCallback
from homeassistant.helpers.update_coordinator import CoordinatorEntity

from .binary_sensor import device_info_for
from .const import DOMAIN, MANAGER_STATUSES
from .coordinator import SurplusManagerCoordinator


async def async_setup_entry(
    hass: HomeAssistant,
    entry: ConfigEntry,
    async_add_entities: AddEntitiesCallback,
) -> None:
    """Set up the sensor platform."""
    coordinator: SurplusManagerCoordinator = hass.data[DOMAIN][entry.entry_id]
    async_add_entities(
        [
            ManagerStatusSensor(coordinator, entry),
            AvailableSurplusSensor(coordinator, entry),
        ],
        False,
    )


class SurplusManagerSensorBase(CoordinatorEntity, SensorEntity):
    """Base class for Surplus Manager sensors."""

    def __init__(self, coordinator: SurplusManagerCoordinator, entry: ConfigEntry) -> None:
        """Initialize the sensor."""
        super().__init__(coordinator)
        self.entry = entry
        self._attr_has_entity_name = True
        self._attr_device_info = device_info_for(entry)


class ManagerStatusSensor(SurplusManagerSensorBase):
    """Coarse status of the manager."""

    def __init__(self, coordinator: SurplusManagerCoordinator, entry: ConfigEntry) -> None:
        super().__init__(coordinator, entry)
        self._attr_name = "Status"
        self._attr_unique_id = f"{entry.entry_id}_status"
        self._attr_icon = "mdi:state-machine"
        self._attr_device_class = SensorDeviceClass.ENUM
        self._attr_options = list(MANAGER_STATUSES)
        self._attr_entity_category = EntityCategory.DIAGNOSTIC

    @property
    def available(self) -> bool:
        # Failed cycles are reported through the status itself
        return True

    @property
    def native_value(self) -> str:
        return self.coordinator.status

    @property
    def extra_state_attributes(self) -> dict[str, Any]:
        return {
            "detail": self.coordinator.status_detail,
            "last_evaluation": (
                self.coordinator.last_evaluation.isoformat()
                if self.coordinator.last_evaluation
                else None
            ),
        }


class AvailableSurplusSensor(SurplusManagerSensorBase):
    """Surplus computed by the last full evaluation."""

    def __init__(self, coordinator: SurplusManagerCoordinator, entry: ConfigEntry) -> None:
        super().__init__(coordinator, entry)
        self._attr_name = "Available Surplus"
        self._attr_unique_id = f"{entry.entry_id}_available_surplus"
        self._attr_icon = "mdi:solar-power"
        self._attr_native_unit_of_measurement = UnitOfPower.WATT
        self._attr_device_class = SensorDeviceClass.POWER
        self._attr_state_class = SensorStateClass.MEASUREMENT

    @property
    def native_value(self) -> float | None:
        """Return the surplus of the last evaluated cycle."""
        result = self.coordinator.last_result
        if result is None:
            return None
        return round(result.available_surplus, 1)

    @property
    def extra_state_attributes(self) -> dict[str, Any]:
        result = self.coordinator.last_result
        if result is None:
            return {}
        return {
            "mode": result.mode.value,
            "evaluated_channels": list(result.evaluated),
            "changed_channel": result.changed_channel,
        }
