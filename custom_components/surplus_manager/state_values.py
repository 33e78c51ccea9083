"""Coercion of Home Assistant entity states into numeric input values.

Entity states arrive as strings with optional unit metadata. They are first
classified into a small closed set of value kinds and then converted to a
canonical ``Decimal`` by a single function, so every numeric input follows the
same rules:

* plain numbers and dimensioned quantities unwrap to their raw number,
* percentages unwrap to the number of percent (``"55 %"`` -> ``55``),
* on/off states are rejected for numeric inputs,
* anything else gets one last chance as a string parse.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Union

from homeassistant.const import (
    ATTR_UNIT_OF_MEASUREMENT,
    PERCENTAGE,
    STATE_OFF,
    STATE_ON,
    STATE_UNAVAILABLE,
    STATE_UNKNOWN,
    UnitOfPower,
)
from homeassistant.core import State

_LOGGER = logging.getLogger(__name__)

# "1200 W", "-3.5kW": a leading number followed by a unit suffix
_NUMBER_WITH_SUFFIX = re.compile(r"^\s*([-+]?\d+(?:\.\d+)?)\s*([^\d\s]+)\s*$")
# Suffixes that need no scaling
_UNSCALED_SUFFIXES = frozenset({UnitOfPower.WATT.value, PERCENTAGE})


@dataclass(frozen=True)
class DecimalValue:
    value: Decimal


@dataclass(frozen=True)
class PercentValue:
    value: Decimal


@dataclass(frozen=True)
class QuantityValue:
    value: Decimal
    unit: str


@dataclass(frozen=True)
class OnOffValue:
    is_on: bool


@dataclass(frozen=True)
class OtherValue:
    raw: str


StateValue = Union[DecimalValue, PercentValue, QuantityValue, OnOffValue, OtherValue]


def parse_decimal(raw: Any) -> Optional[Decimal]:
    """Parse a number, returning None for anything that is not a finite number."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, Decimal):
        return raw if raw.is_finite() else None
    try:
        value = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        return None
    return value if value.is_finite() else None


def _strip_unit(raw: str, unit: str) -> str:
    text = raw.strip()
    if unit and text.endswith(unit):
        text = text[: -len(unit)].strip()
    return text


def classify_state(state: State) -> Optional[StateValue]:
    """Classify a Home Assistant state; None when the entity has no usable value."""
    raw = state.state
    if raw in (None, "", STATE_UNAVAILABLE, STATE_UNKNOWN):
        return None

    lowered = str(raw).strip().lower()
    if lowered in (STATE_ON, STATE_OFF):
        return OnOffValue(lowered == STATE_ON)

    unit = state.attributes.get(ATTR_UNIT_OF_MEASUREMENT)
    number = parse_decimal(_strip_unit(str(raw), unit or ""))
    if number is None:
        return OtherValue(str(raw))
    if unit == PERCENTAGE:
        return PercentValue(number)
    if unit:
        return QuantityValue(number, unit)
    return DecimalValue(number)


def as_decimal(value: Optional[StateValue], source: str = "input") -> Optional[Decimal]:
    """Convert a classified value to its canonical decimal form."""
    if value is None:
        return None
    if isinstance(value, (DecimalValue, PercentValue, QuantityValue)):
        return value.value
    if isinstance(value, OnOffValue):
        _LOGGER.warning(
            "%s delivered an on/off state where a number is expected, ignoring it",
            source,
        )
        return None
    if isinstance(value, OtherValue):
        parsed = parse_decimal(value.raw)
        if parsed is None:
            match = _NUMBER_WITH_SUFFIX.match(value.raw)
            if match and match.group(2) in _UNSCALED_SUFFIXES:
                parsed = parse_decimal(match.group(1))
            elif match:
                _LOGGER.warning(
                    "%s reported %s with unit %s in its state, ignoring it",
                    source, value.raw, match.group(2),
                )
                return None
        if parsed is None:
            _LOGGER.debug("Could not convert state of %s to a number: %s", source, value.raw)
        return parsed
    raise TypeError(f"Unsupported state value {value!r}")


def state_to_decimal(state: Optional[State]) -> Optional[Decimal]:
    """Shortcut used by input consumers."""
    if state is None:
        return None
    return as_decimal(classify_state(state), state.entity_id)
