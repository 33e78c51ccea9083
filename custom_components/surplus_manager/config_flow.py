"""Config flow for Surplus Manager integration."""
from __future__ import annotations

from typing import Any

import voluptuous as vol
from homeassistant import config_entries
from homeassistant.const import CONF_NAME
from homeassistant.data_entry_flow import FlowResult
from homeassistant.helpers import selector

from .config_util import ManagerConfig, parse_output_channel
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
    DEFAULT_REFRESH_INTERVAL,
    DEFAULT_TOGGLE_ON_NEGATIVE_PRICE,
    DEFAULT_TOLERATED_POWER_DRAW,
    DOMAIN,
    MIN_REFRESH_INTERVAL,
)
from .exceptions import SurplusManagerConfigError

CONF_ADD_ANOTHER = "add_another"

_POWER_ENTITY = selector.EntitySelector(selector.EntitySelectorConfig(domain="sensor"))
_SWITCHABLE_ENTITY = selector.EntitySelector(
    selector.EntitySelectorConfig(domain=["switch", "light", "input_boolean", "fan", "climate"])
)
_OPTIONAL_ENTITIES = (CONF_STORAGE_SOC_ENTITY, CONF_STORAGE_POWER_ENTITY, CONF_ELECTRICITY_PRICE_ENTITY)


def _watts(maximum: int = 100000) -> selector.NumberSelector:
    return selector.NumberSelector(
        selector.NumberSelectorConfig(
            min=0, max=maximum, step=1, unit_of_measurement="W",
            mode=selector.NumberSelectorMode.BOX,
        )
    )


def _minutes() -> selector.NumberSelector:
    return selector.NumberSelector(
        selector.NumberSelectorConfig(
            min=0, max=1440, step=1, unit_of_measurement="min",
            mode=selector.NumberSelectorMode.BOX,
        )
    )


def _settings_schema(defaults: dict[str, Any]) -> dict[Any, Any]:
    """Fields shared by the initial setup and the options flow."""
    return {
        vol.Required(
            CONF_REFRESH_INTERVAL,
            default=defaults.get(CONF_REFRESH_INTERVAL, DEFAULT_REFRESH_INTERVAL),
        ): selector.NumberSelector(
            selector.NumberSelectorConfig(
                min=MIN_REFRESH_INTERVAL, max=3600, step=1, unit_of_measurement="s",
                mode=selector.NumberSelectorMode.BOX,
            )
        ),
        vol.Optional(
            CONF_INITIAL_DELAY,
            default=defaults.get(CONF_INITIAL_DELAY, DEFAULT_INITIAL_DELAY),
        ): selector.NumberSelector(
            selector.NumberSelectorConfig(
                min=0, max=3600, step=1, unit_of_measurement="s",
                mode=selector.NumberSelectorMode.BOX,
            )
        ),
        vol.Required(
            CONF_PEAK_PRODUCTION_POWER,
            default=defaults.get(CONF_PEAK_PRODUCTION_POWER, 0),
        ): _watts(),
        # Either a number or the entity id providing it
        vol.Optional(
            CONF_MIN_STORAGE_SOC,
            default=str(defaults.get(CONF_MIN_STORAGE_SOC, DEFAULT_MIN_STORAGE_SOC)),
        ): selector.TextSelector(),
        vol.Optional(
            CONF_MAX_STORAGE_SOC,
            default=str(defaults.get(CONF_MAX_STORAGE_SOC, DEFAULT_MAX_STORAGE_SOC)),
        ): selector.TextSelector(),
        vol.Optional(
            CONF_MIN_AVAILABLE_SURPLUS,
            default=defaults.get(CONF_MIN_AVAILABLE_SURPLUS, DEFAULT_MIN_AVAILABLE_SURPLUS),
        ): _watts(),
        vol.Optional(
            CONF_TOLERATED_POWER_DRAW,
            default=defaults.get(CONF_TOLERATED_POWER_DRAW, DEFAULT_TOLERATED_POWER_DRAW),
        ): _watts(10000),
        vol.Optional(
            CONF_TOGGLE_ON_NEGATIVE_PRICE,
            default=defaults.get(CONF_TOGGLE_ON_NEGATIVE_PRICE, DEFAULT_TOGGLE_ON_NEGATIVE_PRICE),
        ): selector.BooleanSelector(),
        vol.Optional(
            CONF_ENABLE_INVERTER_LIMITING_HEURISTIC,
            default=defaults.get(
                CONF_ENABLE_INVERTER_LIMITING_HEURISTIC,
                DEFAULT_ENABLE_INVERTER_LIMITING_HEURISTIC,
            ),
        ): selector.BooleanSelector(),
    }


def _entities_schema(defaults: dict[str, Any]) -> dict[Any, Any]:
    schema: dict[Any, Any] = {
        vol.Required(
            CONF_PRODUCTION_POWER_ENTITY,
            default=defaults.get(CONF_PRODUCTION_POWER_ENTITY),
        ): _POWER_ENTITY,
        vol.Required(
            CONF_GRID_POWER_ENTITY,
            default=defaults.get(CONF_GRID_POWER_ENTITY),
        ): _POWER_ENTITY,
    }
    for key in _OPTIONAL_ENTITIES:
        if defaults.get(key):
            schema[vol.Optional(key, default=defaults[key])] = _POWER_ENTITY
        else:
            schema[vol.Optional(key)] = _POWER_ENTITY
    return schema


def _validate_settings(data: dict[str, Any]) -> dict[str, str]:
    try:
        ManagerConfig.from_config(data)
    except SurplusManagerConfigError:
        return {"base": "invalid_config"}
    return {}


class ConfigFlow(config_entries.ConfigFlow, domain=DOMAIN):
    """Handle a config flow for Surplus Manager."""

    VERSION = 1

    def __init__(self):
        """Initialize the config flow."""
        self.data: dict[str, Any] = {}
        self.channels: list[dict[str, Any]] = []

    async def async_step_user(
        self, user_input: dict[str, Any] | None = None
    ) -> FlowResult:
        """Collect input entities and manager settings."""
        errors: dict[str, str] = {}
        if user_input is not None:
            data = dict(user_input)
            title = data.pop(CONF_NAME)
            errors = _validate_settings(data)
            if not errors:
                self.data = data
                self.data[CONF_NAME] = title
                return await self.async_step_channel()

        schema = vol.Schema(
            {
                vol.Required(CONF_NAME, default=self.data.get(CONF_NAME, "Surplus Manager")): str,
                **_entities_schema(self.data),
                **_settings_schema(self.data),
            }
        )
        return self.async_show_form(step_id="user", data_schema=schema, errors=errors)

    async def async_step_channel(
        self, user_input: dict[str, Any] | None = None
    ) -> FlowResult:
        """Add one output channel, repeated until the user is done."""
        errors: dict[str, str] = {}
        if user_input is not None:
            raw = dict(user_input)
            add_another = raw.pop(CONF_ADD_ANOTHER, False)
            channel = parse_output_channel(raw)
            if channel is None:
                errors["base"] = "invalid_channel"
            elif any(existing[CONF_CHANNEL_ID] == channel.channel_id for existing in self.channels):
                errors[CONF_CHANNEL_ID] = "duplicate_channel"
            else:
                self.channels.append(raw)
                if not add_another:
                    return self._async_create_manager_entry()

        schema = vol.Schema(
            {
                vol.Required(CONF_CHANNEL_ID): str,
                vol.Optional(CONF_CHANNEL_NAME): str,
                vol.Required(CONF_PRIORITY, default=len(self.channels) + 1): selector.NumberSelector(
                    selector.NumberSelectorConfig(min=0, max=100, step=1, mode=selector.NumberSelectorMode.BOX)
                ),
                vol.Required(CONF_LOAD_POWER): _watts(),
                vol.Optional(CONF_SWITCHING_POWER): _watts(),
                vol.Optional(CONF_MIN_RUNTIME_MINUTES): _minutes(),
                vol.Optional(CONF_MIN_COOLDOWN_MINUTES): _minutes(),
                vol.Optional(CONF_MAX_ELECTRICITY_PRICE): selector.NumberSelector(
                    selector.NumberSelectorConfig(min=-10, max=10, step=0.001, mode=selector.NumberSelectorMode.BOX)
                ),
                vol.Optional(CONF_TARGET_ENTITY): _SWITCHABLE_ENTITY,
                vol.Optional(CONF_ADD_ANOTHER, default=False): selector.BooleanSelector(),
            }
        )
        return self.async_show_form(step_id="channel", data_schema=schema, errors=errors)

    def _async_create_manager_entry(self) -> FlowResult:
        data = dict(self.data)
        title = data.pop(CONF_NAME)
        data[CONF_OUTPUT_CHANNELS] = list(self.channels)
        return self.async_create_entry(title=title, data=data)

    @staticmethod
    def async_get_options_flow(config_entry):
        """Return the options flow."""
        return OptionsFlowHandler()


class OptionsFlowHandler(config_entries.OptionsFlow):
    """Change the settings of a manager, the entry reloads afterwards."""

    async def async_step_init(
        self, user_input: dict[str, Any] | None = None
    ) -> FlowResult:
        """Single form with the input entities and settings."""
        existing_config = {**self.config_entry.data, **self.config_entry.options}
        errors: dict[str, str] = {}

        if user_input is not None:
            options = dict(user_input)
            # Cleared fields are omitted from the form data
            for key in _OPTIONAL_ENTITIES:
                options.setdefault(key, None)
            errors = _validate_settings({**existing_config, **options})
            if not errors:
                return self.async_create_entry(title="", data=options)

        schema = vol.Schema(
            {
                **_entities_schema(existing_config),
                **_settings_schema(existing_config),
            }
        )
        return self.async_show_form(step_id="init", data_schema=schema, errors=errors)
