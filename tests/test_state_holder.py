"""Tests for the state holder and its channel timers."""
from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

from homeassistant.util import dt as dt_util

from custom_components.surplus_manager.models import OutputState
from custom_components.surplus_manager.state_holder import NEVER, StateHolder


def test_unknown_key_defaults():
    holder = StateHolder()
    assert holder.get_state("missing") is None
    assert holder.get_last_activation_time("missing") == NEVER
    assert holder.get_last_deactivation_time("missing") == NEVER


def test_tracked_writes_move_matching_timer():
    holder = StateHolder()
    first = dt_util.utcnow()
    later = first + timedelta(minutes=5)

    holder.save_state("boiler", OutputState.ON, track_timers=True, now=first)
    assert holder.get_last_activation_time("boiler") == first
    assert holder.get_last_deactivation_time("boiler") == NEVER

    holder.save_state("boiler", OutputState.OFF, track_timers=True, now=later)
    assert holder.get_last_deactivation_time("boiler") == later
    assert holder.get_last_activation_time("boiler") == first


def test_forced_initial_off_starts_cooldown():
    holder = StateHolder()
    now = dt_util.utcnow()

    holder.save_state("boiler", OutputState.OFF, track_timers=True, now=now)

    assert holder.get_state("boiler") is OutputState.OFF
    assert holder.get_last_deactivation_time("boiler") == now
    assert holder.get_last_activation_time("boiler") == NEVER


def test_inputs_never_touch_timers():
    holder = StateHolder()
    holder.save_state("grid_power", Decimal("-100"))
    holder.save_state("boiler", OutputState.ON)
    assert holder.get_state("grid_power") == Decimal("-100")
    assert holder.get_last_activation_time("boiler") == NEVER


def test_clear_drops_values_and_timers():
    holder = StateHolder()
    holder.save_state("boiler", OutputState.ON, track_timers=True)
    holder.save_state("grid_power", Decimal("0"))

    holder.clear()

    assert holder.snapshot() == {}
    assert holder.get_last_activation_time("boiler") == NEVER
