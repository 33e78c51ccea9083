"""Last-known input and output values of one surplus manager instance."""
from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any, Optional

from homeassistant.util import dt as dt_util

from .models import OutputState

_LOGGER = logging.getLogger(__name__)

# Sentinel for "never happened"
NEVER = dt_util.utc_from_timestamp(0)


class StateHolder:
    """Thread-safe key/value store with per-channel activation timers.

    Keys are input roles for measured values and channel ids for outputs.
    Timers are only tracked for output channels. Every tracked write moves the
    matching timer, callers skip writes that change nothing unless forced.
    """

    def __init__(self) -> None:
        """Initialize an empty holder."""
        self._lock = threading.Lock()
        self._states: dict[str, Any] = {}
        self._last_activation: dict[str, datetime] = {}
        self._last_deactivation: dict[str, datetime] = {}

    def save_state(
        self,
        key: str,
        value: Any,
        track_timers: bool = False,
        now: Optional[datetime] = None,
    ) -> None:
        """Store a value, updating channel timers when requested."""
        with self._lock:
            self._states[key] = value
            if track_timers and isinstance(value, OutputState):
                now = now or dt_util.utcnow()
                if value is OutputState.ON:
                    self._last_activation[key] = now
                else:
                    self._last_deactivation[key] = now
                _LOGGER.debug("Channel %s switched %s at %s", key, value.value, now.isoformat())

    def get_state(self, key: str) -> Optional[Any]:
        """Return the last saved value for a key."""
        return self._states.get(key)

    def get_last_activation_time(self, key: str) -> datetime:
        """Return the last activation of a channel or the epoch if it never happened."""
        return self._last_activation.get(key, NEVER)

    def get_last_deactivation_time(self, key: str) -> datetime:
        """Return the last deactivation of a channel or the epoch if it never happened."""
        return self._last_deactivation.get(key, NEVER)

    def clear(self) -> None:
        """Drop all values and timers."""
        with self._lock:
            self._states.clear()
            self._last_activation.clear()
            self._last_deactivation.clear()

    def snapshot(self) -> dict[str, Any]:
        """Return a copy of the stored values."""
        with self._lock:
            return dict(self._states)
