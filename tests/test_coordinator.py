"""Integration-oriented tests for the Surplus Manager coordinator."""
from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from pytest_homeassistant_custom_component.common import MockConfigEntry

from homeassistant.core import State
from homeassistant.helpers.update_coordinator import UpdateFailed

from custom_components.surplus_manager import coordinator as coordinator_module
from custom_components.surplus_manager.const import (
    CONF_ELECTRICITY_PRICE_ENTITY,
    CONF_GRID_POWER_ENTITY,
    CONF_INITIAL_DELAY,
    CONF_MIN_STORAGE_SOC,
    CONF_OUTPUT_CHANNELS,
    CONF_PEAK_PRODUCTION_POWER,
    CONF_PRODUCTION_POWER_ENTITY,
    CONF_REFRESH_INTERVAL,
    CONF_STORAGE_SOC_ENTITY,
    CONF_TOGGLE_ON_NEGATIVE_PRICE,
    DOMAIN,
    STATUS_ERROR,
    STATUS_INITIALIZING,
    STATUS_NOT_READY,
    STATUS_OFFLINE,
    STATUS_READY,
)
from custom_components.surplus_manager.coordinator import SurplusManagerCoordinator
from custom_components.surplus_manager.exceptions import (
    SurplusManagerConfigError,
    SurplusManagerStateError,
)
from custom_components.surplus_manager.models import InputRole, OutputState
from custom_components.surplus_manager.state_holder import NEVER


class FakeStates:
    def __init__(self):
        self._states: dict[str, State] = {}

    def set(self, entity_id: str, value, attributes: dict | None = None) -> None:
        self._states[entity_id] = State(entity_id, str(value), attributes or {})

    def get(self, entity_id: str) -> State | None:
        return self._states.get(entity_id)


class FakeServices:
    def __init__(self):
        self.calls: list[tuple[str, str, dict]] = []
        self.registered: dict[tuple[str, str], dict] = {}

    async def async_call(self, domain, service, data, blocking=False, context=None):
        self.calls.append((domain, service, data))

    def async_register(self, domain, service, handler, schema=None):
        self.registered[(domain, service)] = {
            "handler": handler,
            "schema": schema,
        }


class FakeBus:
    def async_listen(self, event_type, listener, event_filter=None):
        return lambda: None

    def async_listen_once(self, event_type, listener):
        return lambda: None


class FakeHass:
    def __init__(self):
        self.bus = FakeBus()
        self.states = FakeStates()
        self.services = FakeServices()
        self.data: dict = {}
        self.tasks: list = []

    def async_create_task(self, coro, name=None):
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self.tasks.append(task)
        return task


class FakeSubscriber:
    def __init__(self):
        self.bindings: dict[str, dict] = {}
        self.consumers: dict[str, object] = {}

    def register_events_for(self, owner_id, bindings, consumer):
        self.bindings[owner_id] = dict(bindings)
        self.consumers[owner_id] = consumer

    def unregister_events_for(self, owner_id):
        self.bindings.pop(owner_id, None)
        self.consumers.pop(owner_id, None)

    def registered_entities(self, owner_id=None):
        bindings = self.bindings.get(owner_id, {})
        return {entity_id: [role.value] for entity_id, role in bindings.items()}


@pytest.fixture
def fake_hass():
    return FakeHass()


@pytest.fixture
def subscriber():
    return FakeSubscriber()


@pytest.fixture
def scheduled(monkeypatch):
    """Capture the delayed start instead of arming a real timer."""
    calls: list = []

    def _fake_call_later(hass, delay, action):
        calls.append({"delay": delay, "action": action, "cancelled": False})

        def _cancel():
            calls[-1]["cancelled"] = True

        return _cancel

    monkeypatch.setattr(coordinator_module, "async_call_later", _fake_call_later)
    return calls


def _base_config(**overrides):
    config = {
        CONF_REFRESH_INTERVAL: 30,
        CONF_INITIAL_DELAY: 5,
        CONF_PEAK_PRODUCTION_POWER: 5000,
        CONF_PRODUCTION_POWER_ENTITY: "sensor.pv_power",
        CONF_GRID_POWER_ENTITY: "sensor.grid_power",
        CONF_STORAGE_SOC_ENTITY: "sensor.battery_soc",
        CONF_MIN_STORAGE_SOC: "30",
        CONF_OUTPUT_CHANNELS: [
            {
                "id": "boiler",
                "priority": 1,
                "load_power": 2000,
                "target_entity": "switch.boiler",
            },
            {"id": "pool", "priority": 2, "load_power": 800},
        ],
    }
    config.update(overrides)
    return config


def _create_coordinator(fake_hass, subscriber, config=None, options=None):
    entry = MockConfigEntry(domain=DOMAIN, data=config or _base_config(), options=options or {})
    return SurplusManagerCoordinator(fake_hass, entry, subscriber)


async def _feed(coordinator, role: InputRole, entity_id: str, value) -> None:
    await coordinator.async_handle_input(role, State(entity_id, str(value)))


def test_coordinator_merges_entry_options(fake_hass, subscriber):
    coordinator = _create_coordinator(
        fake_hass, subscriber, options={CONF_REFRESH_INTERVAL: 60}
    )

    assert coordinator.config.refresh_interval == 60
    assert coordinator.update_interval is None
    assert coordinator.status == STATUS_INITIALIZING
    assert [channel.channel_id for channel in coordinator.channels] == ["boiler", "pool"]


def test_invalid_configuration_is_rejected(fake_hass, subscriber):
    with pytest.raises(SurplusManagerConfigError):
        _create_coordinator(fake_hass, subscriber, _base_config(**{CONF_REFRESH_INTERVAL: 1}))


@pytest.mark.asyncio
async def test_start_forces_outputs_off_and_binds_inputs(fake_hass, subscriber, scheduled):
    fake_hass.states.set("sensor.pv_power", "1500", {"unit_of_measurement": "W"})
    fake_hass.states.set("sensor.grid_power", "unavailable")
    coordinator = _create_coordinator(fake_hass, subscriber)

    await coordinator.async_start()

    entry_id = coordinator.entry.entry_id
    # Literal thresholds are not subscribed
    assert subscriber.bindings[entry_id] == {
        "sensor.pv_power": InputRole.PRODUCTION_POWER,
        "sensor.grid_power": InputRole.GRID_POWER,
        "sensor.battery_soc": InputRole.STORAGE_SOC,
    }
    assert coordinator.state_holder.get_state("production_power") == 1500
    assert coordinator.state_holder.get_state("grid_power") is None
    assert coordinator.get_output_state("boiler") is OutputState.OFF
    assert coordinator.get_output_state("pool") is OutputState.OFF
    assert fake_hass.services.calls == [
        ("homeassistant", "turn_off", {"entity_id": "switch.boiler"})
    ]
    assert scheduled[0]["delay"] == 5


@pytest.mark.asyncio
async def test_periodic_evaluation_starts_after_delay(fake_hass, subscriber, scheduled):
    coordinator = _create_coordinator(fake_hass, subscriber)
    coordinator.async_refresh = AsyncMock()

    await coordinator.async_start()
    assert coordinator.update_interval is None

    scheduled[0]["action"](None)
    await asyncio.gather(*fake_hass.tasks)

    assert coordinator.update_interval == timedelta(seconds=30)
    coordinator.async_refresh.assert_awaited_once()


@pytest.mark.asyncio
async def test_not_ready_is_reported_once_then_ready(fake_hass, subscriber, caplog):
    coordinator = _create_coordinator(fake_hass, subscriber)

    assert await coordinator._async_update_data() is None
    assert await coordinator._async_update_data() is None
    assert coordinator.status == STATUS_NOT_READY
    assert caplog.text.count("is waiting for production and grid power values") == 1

    await _feed(coordinator, InputRole.PRODUCTION_POWER, "sensor.pv_power", 3000)
    await _feed(coordinator, InputRole.GRID_POWER, "sensor.grid_power", -2500)
    result = await coordinator._async_update_data()

    assert coordinator.status == STATUS_READY
    assert result.available_surplus == 2500
    assert result.changed_channel == "boiler"
    assert coordinator.get_output_state("boiler") is OutputState.ON
    assert coordinator.last_result is result
    assert fake_hass.services.calls == [
        ("homeassistant", "turn_on", {"entity_id": "switch.boiler"})
    ]


@pytest.mark.asyncio
async def test_negative_price_switches_every_output_on(fake_hass, subscriber):
    config = _base_config(
        **{
            CONF_ELECTRICITY_PRICE_ENTITY: "sensor.price",
            CONF_TOGGLE_ON_NEGATIVE_PRICE: True,
        }
    )
    coordinator = _create_coordinator(fake_hass, subscriber, config)
    await _feed(coordinator, InputRole.PRODUCTION_POWER, "sensor.pv_power", 100)
    await _feed(coordinator, InputRole.GRID_POWER, "sensor.grid_power", 800)
    await _feed(coordinator, InputRole.ELECTRICITY_PRICE, "sensor.price", "-5")

    result = await coordinator._async_update_data()

    assert result is None
    assert coordinator.get_output_state("boiler") is OutputState.ON
    assert coordinator.get_output_state("pool") is OutputState.ON


@pytest.mark.asyncio
async def test_low_storage_switches_every_output_off(fake_hass, subscriber):
    coordinator = _create_coordinator(fake_hass, subscriber)
    coordinator._update_all_outputs(OutputState.ON)
    await _feed(coordinator, InputRole.PRODUCTION_POWER, "sensor.pv_power", 4000)
    await _feed(coordinator, InputRole.GRID_POWER, "sensor.grid_power", -3000)
    await _feed(coordinator, InputRole.STORAGE_SOC, "sensor.battery_soc", 20)

    result = await coordinator._async_update_data()

    assert result is None
    assert coordinator.status == STATUS_READY
    assert coordinator.get_output_state("boiler") is OutputState.OFF
    assert coordinator.get_output_state("pool") is OutputState.OFF


@pytest.mark.asyncio
async def test_unchanged_output_is_not_sent_twice(fake_hass, subscriber):
    coordinator = _create_coordinator(fake_hass, subscriber)
    boiler = coordinator.channels[0]

    coordinator._update_output(boiler, OutputState.ON)
    coordinator._update_output(boiler, OutputState.ON)
    await coordinator._async_flush_commands()

    assert fake_hass.services.calls == [
        ("homeassistant", "turn_on", {"entity_id": "switch.boiler"})
    ]


@pytest.mark.asyncio
async def test_corrupted_output_state_sets_error(fake_hass, subscriber):
    coordinator = _create_coordinator(fake_hass, subscriber)
    await _feed(coordinator, InputRole.PRODUCTION_POWER, "sensor.pv_power", 3000)
    await _feed(coordinator, InputRole.GRID_POWER, "sensor.grid_power", -500)
    coordinator.state_holder.save_state("pool", "on")

    with pytest.raises(SurplusManagerStateError):
        await coordinator._async_update_data()

    assert coordinator.status == STATUS_ERROR


@pytest.mark.asyncio
async def test_reinitialize_restarts_from_all_off(fake_hass, subscriber, scheduled):
    coordinator = _create_coordinator(fake_hass, subscriber)
    await coordinator.async_start()
    coordinator._update_all_outputs(OutputState.ON)
    coordinator.status = STATUS_READY

    await coordinator.async_reinitialize()

    assert coordinator.status == STATUS_INITIALIZING
    assert coordinator.get_output_state("boiler") is OutputState.OFF
    assert coordinator.entry.entry_id in subscriber.bindings


@pytest.mark.asyncio
async def test_stop_releases_manager(fake_hass, subscriber, scheduled):
    coordinator = _create_coordinator(fake_hass, subscriber)
    await coordinator.async_start()

    await coordinator.async_stop()

    assert scheduled[0]["cancelled"] is True
    assert coordinator.status == STATUS_OFFLINE
    assert subscriber.bindings == {}
    assert coordinator.state_holder.snapshot() == {}


@pytest.mark.asyncio
async def test_diagnostics_snapshot(fake_hass, subscriber):
    coordinator = _create_coordinator(fake_hass, subscriber)
    await _feed(coordinator, InputRole.PRODUCTION_POWER, "sensor.pv_power", 3000)
    await _feed(coordinator, InputRole.GRID_POWER, "sensor.grid_power", -2500)
    await coordinator._async_update_data()

    diagnostics = coordinator.as_diagnostics()

    assert diagnostics["status"] == STATUS_READY
    assert diagnostics["inputs"]["grid_power"] == -2500.0
    assert diagnostics["inputs"]["min_storage_soc"] == 30.0
    assert diagnostics["last_result"]["mode"] == "surplus"
    assert diagnostics["channels"]["boiler"]["state"] == "on"
    assert diagnostics["channels"]["pool"]["switching_power"] == 800


@pytest.mark.asyncio
async def test_forced_off_at_start_holds_cooldown(fake_hass, subscriber, scheduled):
    config = _base_config()
    config[CONF_OUTPUT_CHANNELS][0]["min_cooldown_minutes"] = 10
    coordinator = _create_coordinator(fake_hass, subscriber, config)
    await coordinator.async_start()

    await _feed(coordinator, InputRole.PRODUCTION_POWER, "sensor.pv_power", 4000)
    await _feed(coordinator, InputRole.GRID_POWER, "sensor.grid_power", -3000)
    result = await coordinator._async_update_data()

    assert coordinator.state_holder.get_last_deactivation_time("boiler") != NEVER
    assert coordinator.get_output_state("boiler") is OutputState.OFF
    assert result.changed_channel == "pool"
    assert fake_hass.services.calls == [
        ("homeassistant", "turn_off", {"entity_id": "switch.boiler"})
    ]


@pytest.mark.asyncio
async def test_failed_cycle_recovers_on_next_cycle(fake_hass, subscriber, monkeypatch):
    coordinator = _create_coordinator(fake_hass, subscriber)
    await _feed(coordinator, InputRole.PRODUCTION_POWER, "sensor.pv_power", 3000)
    await _feed(coordinator, InputRole.GRID_POWER, "sensor.grid_power", -2500)

    evaluate = coordinator.balancing_engine.evaluate_energy_balance
    failures = [RuntimeError("inverter glitch")]

    def _fail_once(*args, **kwargs):
        if failures:
            raise failures.pop()
        return evaluate(*args, **kwargs)

    monkeypatch.setattr(coordinator.balancing_engine, "evaluate_energy_balance", _fail_once)

    with pytest.raises(UpdateFailed):
        await coordinator._async_update_data()
    assert coordinator.status == STATUS_ERROR
    assert coordinator.status_detail == "inverter glitch"

    result = await coordinator._async_update_data()

    assert coordinator.status == STATUS_READY
    assert result.changed_channel == "boiler"
    assert coordinator.get_output_state("boiler") is OutputState.ON


@pytest.mark.asyncio
async def test_reinitialize_waits_for_running_cycle(fake_hass, subscriber):
    coordinator = _create_coordinator(fake_hass, subscriber)
    coordinator._update_all_outputs(OutputState.ON)
    await coordinator._async_flush_commands()
    fake_hass.services.calls.clear()

    await coordinator._evaluation_lock.acquire()
    reinit = asyncio.get_running_loop().create_task(coordinator.async_reinitialize())
    await asyncio.sleep(0)

    assert not reinit.done()
    assert coordinator.get_output_state("boiler") is OutputState.ON
    assert fake_hass.services.calls == []

    coordinator._evaluation_lock.release()
    await reinit

    assert coordinator.get_output_state("boiler") is OutputState.OFF
    assert fake_hass.services.calls == [
        ("homeassistant", "turn_off", {"entity_id": "switch.boiler"})
    ]
