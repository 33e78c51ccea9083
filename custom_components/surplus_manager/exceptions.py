"""Exceptions raised by the Surplus Manager integration."""
from __future__ import annotations

from homeassistant.exceptions import HomeAssistantError


class SurplusManagerConfigError(HomeAssistantError):
    """The manager configuration is missing a field or holds an invalid value."""


class SurplusManagerStateError(HomeAssistantError):
    """The state holder contains a value of an unexpected type.

    This is a programming error, the manager does not try to recover from it.
    """
