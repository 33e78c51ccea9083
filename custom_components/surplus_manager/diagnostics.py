"""Diagnostics helpers for Surplus Manager."""
from __future__ import annotations

from typing import Any

from homeassistant.config_entries import ConfigEntry
from homeassistant.core import HomeAssistant

from .const import DOMAIN


async def async_get_config_entry_diagnostics(
    hass: HomeAssistant, entry: ConfigEntry
) -> dict[str, Any]:
    """Return diagnostics for a given config entry."""
    coordinator = hass.data.get(DOMAIN, {}).get(entry.entry_id)
    if coordinator is None:
        return {"error": "coordinator_unavailable"}

    return {
        "config_entry": {
            "entry_id": entry.entry_id,
            "data": dict(entry.data),
            "options": dict(entry.options),
        },
        "manager": coordinator.as_diagnostics(),
    }
