"""Tests for configuration parsing."""
from __future__ import annotations

from decimal import Decimal

import pytest

from custom_components.surplus_manager.config_util import (
    ManagerConfig,
    parse_output_channel,
    resolve_threshold_source,
)
from custom_components.surplus_manager.const import (
    CONF_ELECTRICITY_PRICE_ENTITY,
    CONF_GRID_POWER_ENTITY,
    CONF_MAX_STORAGE_SOC,
    CONF_MIN_STORAGE_SOC,
    CONF_OUTPUT_CHANNELS,
    CONF_PEAK_PRODUCTION_POWER,
    CONF_PRODUCTION_POWER_ENTITY,
    CONF_REFRESH_INTERVAL,
    CONF_STORAGE_SOC_ENTITY,
)
from custom_components.surplus_manager.exceptions import SurplusManagerConfigError
from custom_components.surplus_manager.models import InputRole


def _raw_config(**overrides):
    config = {
        CONF_REFRESH_INTERVAL: 30,
        CONF_PEAK_PRODUCTION_POWER: 5000,
        CONF_PRODUCTION_POWER_ENTITY: "sensor.pv_power",
        CONF_GRID_POWER_ENTITY: "sensor.grid_power",
        CONF_OUTPUT_CHANNELS: [
            {"id": "boiler", "priority": 1, "load_power": 2000, "switching_power": 1500},
            {"id": "pool", "priority": 2, "load_power": 800},
        ],
    }
    config.update(overrides)
    return config


def test_from_config_applies_defaults():
    config = ManagerConfig.from_config(_raw_config())

    assert config.refresh_interval == 30
    assert config.initial_delay == 0
    assert config.peak_production_power == Decimal("5000")
    assert config.min_storage_soc == Decimal("30")
    assert config.max_storage_soc == Decimal("100")
    assert config.tolerated_power_draw == Decimal("0")
    assert config.toggle_on_negative_price is False
    assert [channel.channel_id for channel in config.output_channels] == ["boiler", "pool"]
    assert config.output_channels[1].effective_switching_power == 800


def test_refresh_interval_below_floor_is_rejected():
    with pytest.raises(SurplusManagerConfigError, match="Invalid refresh interval"):
        ManagerConfig.from_config(_raw_config(**{CONF_REFRESH_INTERVAL: 5}))


def test_missing_required_entity_is_rejected():
    raw = _raw_config()
    del raw[CONF_GRID_POWER_ENTITY]
    with pytest.raises(SurplusManagerConfigError):
        ManagerConfig.from_config(raw)


def test_empty_optional_entities_are_ignored():
    config = ManagerConfig.from_config(
        _raw_config(**{CONF_STORAGE_SOC_ENTITY: "", CONF_ELECTRICITY_PRICE_ENTITY: None})
    )
    assert config.storage_soc_entity is None
    assert config.electricity_price_entity is None


def test_resolve_threshold_source():
    assert resolve_threshold_source("30") == Decimal("30")
    assert resolve_threshold_source(95) == Decimal("95")
    assert resolve_threshold_source("input_number.min_soc") == "input_number.min_soc"


def test_input_bindings_skip_literal_thresholds():
    config = ManagerConfig.from_config(
        _raw_config(
            **{
                CONF_STORAGE_SOC_ENTITY: "sensor.battery_soc",
                CONF_MIN_STORAGE_SOC: "30",
                CONF_MAX_STORAGE_SOC: "input_number.max_soc",
            }
        )
    )

    bindings = config.input_bindings()

    assert bindings == {
        "sensor.pv_power": InputRole.PRODUCTION_POWER,
        "sensor.grid_power": InputRole.GRID_POWER,
        "sensor.battery_soc": InputRole.STORAGE_SOC,
        "input_number.max_soc": InputRole.MAX_STORAGE_SOC,
    }
    assert config.literal_threshold(InputRole.MIN_STORAGE_SOC) == Decimal("30")
    assert config.literal_threshold(InputRole.MAX_STORAGE_SOC) is None


def test_parse_output_channel_full():
    channel = parse_output_channel(
        {
            "id": "heater",
            "name": "Heat pump",
            "priority": "3",
            "load_power": 2500.0,
            "switching_power": 1000,
            "min_runtime_minutes": 10,
            "min_cooldown_minutes": 5,
            "max_electricity_price": 0.25,
            "target_entity": "switch.heat_pump",
        }
    )

    assert channel is not None
    assert channel.priority == 3
    assert channel.load_power == 2500
    assert channel.max_electricity_price == Decimal("0.25")
    assert channel.display_name == "Heat pump"
    assert channel.target_entity == "switch.heat_pump"


@pytest.mark.parametrize(
    "raw",
    [
        {"id": "x", "priority": 1},
        {"id": "x", "priority": 1, "load_power": 0},
        {"id": "x", "load_power": 100},
        {"id": "x", "priority": 1, "load_power": "lots"},
    ],
)
def test_parse_output_channel_invalid(raw, caplog):
    assert parse_output_channel(raw) is None
    assert "ignoring it" in caplog.text


def test_invalid_and_duplicate_channels_are_skipped():
    config = ManagerConfig.from_config(
        _raw_config(
            **{
                CONF_OUTPUT_CHANNELS: [
                    {"id": "boiler", "priority": 1, "load_power": 2000},
                    {"id": "boiler", "priority": 2, "load_power": 500},
                    {"id": "broken", "priority": 3},
                ]
            }
        )
    )
    assert [channel.channel_id for channel in config.output_channels] == ["boiler"]
    assert config.output_channels[0].load_power == 2000
