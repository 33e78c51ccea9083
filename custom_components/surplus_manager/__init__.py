"""The Surplus Manager integration."""
from __future__ import annotations

import logging

import voluptuous as vol

from homeassistant.config_entries import ConfigEntry
from homeassistant.const import Platform
from homeassistant.core import HomeAssistant, ServiceCall
from homeassistant.exceptions import ConfigEntryError, HomeAssistantError

from .const import ATTR_ENTRY_ID, DOMAIN, SERVICE_REEVALUATE
from .coordinator import SurplusManagerCoordinator
from .event_subscriber import async_get_subscriber, async_release_subscriber
from .exceptions import SurplusManagerConfigError

_LOGGER = logging.getLogger(__name__)

PLATFORMS: list[Platform] = [Platform.BINARY_SENSOR, Platform.SENSOR]

REEVALUATE_SERVICE_SCHEMA = vol.Schema(
    {
        vol.Optional(ATTR_ENTRY_ID): str,
    }
)


def _coordinators(hass: HomeAssistant) -> dict[str, SurplusManagerCoordinator]:
    """Return mapping of entry_id to coordinator, ignoring auxiliary keys."""
    return {
        entry_id: coordinator
        for entry_id, coordinator in hass.data.get(DOMAIN, {}).items()
        if isinstance(coordinator, SurplusManagerCoordinator)
    }


async def async_setup_entry(hass: HomeAssistant, entry: ConfigEntry) -> bool:
    """Set up Surplus Manager from a config entry."""
    subscriber = async_get_subscriber(hass)
    try:
        coordinator = SurplusManagerCoordinator(hass, entry, subscriber)
    except SurplusManagerConfigError as err:
        _LOGGER.error("Surplus manager %s has an invalid configuration: %s", entry.title, err)
        if not _coordinators(hass):
            async_release_subscriber(hass)
        raise ConfigEntryError(str(err)) from err

    hass.data[DOMAIN][entry.entry_id] = coordinator
    _register_services_once(hass)

    await hass.config_entries.async_forward_entry_setups(entry, PLATFORMS)
    await coordinator.async_start()

    entry.async_on_unload(entry.add_update_listener(async_reload_entry))
    return True


async def async_unload_entry(hass: HomeAssistant, entry: ConfigEntry) -> bool:
    """Unload a config entry."""
    if unload_ok := await hass.config_entries.async_unload_platforms(entry, PLATFORMS):
        coordinator: SurplusManagerCoordinator = hass.data[DOMAIN].pop(entry.entry_id)
        await coordinator.async_stop()
        if not _coordinators(hass):
            async_release_subscriber(hass)

    return unload_ok


async def async_reload_entry(hass: HomeAssistant, entry: ConfigEntry) -> None:
    """Handle an options update."""
    await hass.config_entries.async_reload(entry.entry_id)


def _register_services_once(hass: HomeAssistant) -> None:
    """Register domain services if not already registered."""
    registry = hass.data.setdefault(DOMAIN, {})
    if registry.get("services_registered"):
        return

    def _resolve_coordinators(provided_id: str | None) -> list[SurplusManagerCoordinator]:
        """Resolve which managers a service call targets."""
        coordinators = _coordinators(hass)
        if provided_id:
            if provided_id in coordinators:
                return [coordinators[provided_id]]
            raise HomeAssistantError(f"No Surplus Manager config entry with id {provided_id}")

        if not coordinators:
            raise HomeAssistantError("No Surplus Manager config entries loaded.")
        return list(coordinators.values())

    async def _async_handle_reevaluate(call: ServiceCall) -> None:
        for coordinator in _resolve_coordinators(call.data.get(ATTR_ENTRY_ID)):
            await coordinator.async_reinitialize()

    hass.services.async_register(
        DOMAIN,
        SERVICE_REEVALUATE,
        _async_handle_reevaluate,
        schema=REEVALUATE_SERVICE_SCHEMA,
    )

    registry["services_registered"] = True
