"""Fan-out of entity state events to the surplus managers bound to them."""
from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional

from homeassistant.const import EVENT_STATE_CHANGED, EVENT_STATE_REPORTED
from homeassistant.core import CALLBACK_TYPE, Event, HomeAssistant, State, callback

from .const import DATA_EVENT_SUBSCRIBER, DOMAIN
from .models import InputRole

_LOGGER = logging.getLogger(__name__)

InputConsumer = Callable[[InputRole, State], Awaitable[None]]


@dataclass(frozen=True)
class _Registration:
    owner_id: str
    role: InputRole
    consumer: InputConsumer


class SurplusEventSubscriber:
    """Single bus listener shared by every manager of a Home Assistant instance.

    Each matching registration runs as its own task, so a slow or failing
    consumer never blocks the bus or the other consumers.
    """

    def __init__(self, hass: HomeAssistant) -> None:
        """Initialize the subscriber."""
        self.hass = hass
        self._lock = threading.Lock()
        self._registrations: dict[str, list[_Registration]] = {}
        self._unsub: list[CALLBACK_TYPE] = []
        self._tasks: set[asyncio.Task] = set()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @callback
    def async_start(self) -> None:
        """Start listening to state events."""
        if self._running:
            return
        for event_type in (EVENT_STATE_CHANGED, EVENT_STATE_REPORTED):
            self._unsub.append(
                self.hass.bus.async_listen(
                    event_type,
                    self._async_handle_event,
                    event_filter=self._async_filter_event,
                )
            )
        self._running = True
        _LOGGER.debug("Surplus event subscriber started")

    @callback
    def async_shutdown(self) -> None:
        """Stop listening and cancel pending dispatch tasks."""
        for unsub in self._unsub:
            unsub()
        self._unsub.clear()
        self._running = False
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        with self._lock:
            self._registrations.clear()
        _LOGGER.debug("Surplus event subscriber stopped")

    def register_events_for(
        self,
        owner_id: str,
        bindings: Mapping[str, InputRole],
        consumer: InputConsumer,
    ) -> None:
        """Bind entity ids to roles for an owner, replacing its previous bindings."""
        with self._lock:
            self._remove_owner(owner_id)
            for entity_id, role in bindings.items():
                self._registrations.setdefault(entity_id, []).append(
                    _Registration(owner_id, role, consumer)
                )
        _LOGGER.debug("Registered %d input entities for %s", len(bindings), owner_id)

    def unregister_events_for(self, owner_id: str) -> None:
        """Remove every binding of an owner."""
        with self._lock:
            self._remove_owner(owner_id)
        _LOGGER.debug("Unregistered input entities of %s", owner_id)

    def registered_entities(self, owner_id: Optional[str] = None) -> dict[str, list[str]]:
        """Return registered roles per entity id, optionally limited to one owner."""
        with self._lock:
            return {
                entity_id: [reg.role.value for reg in regs if owner_id in (None, reg.owner_id)]
                for entity_id, regs in self._registrations.items()
                if any(owner_id in (None, reg.owner_id) for reg in regs)
            }

    def _remove_owner(self, owner_id: str) -> None:
        for entity_id in list(self._registrations):
            remaining = [
                reg for reg in self._registrations[entity_id] if reg.owner_id != owner_id
            ]
            if remaining:
                self._registrations[entity_id] = remaining
            else:
                del self._registrations[entity_id]

    @callback
    def _async_filter_event(self, event_data: Mapping[str, Any]) -> bool:
        """Only let through events for registered entities that carry a state."""
        if event_data.get("new_state") is None:
            return False
        return event_data.get("entity_id") in self._registrations

    @callback
    def _async_handle_event(self, event: Event) -> None:
        entity_id = event.data.get("entity_id")
        new_state: Optional[State] = event.data.get("new_state")
        if new_state is None:
            return
        with self._lock:
            registrations = list(self._registrations.get(entity_id, ()))

        for registration in registrations:
            self._async_submit(registration, new_state)

    @callback
    def _async_submit(self, registration: _Registration, state: State) -> None:
        if not self._running:
            _LOGGER.debug(
                "Dropping %s update of %s, subscriber is shut down",
                state.entity_id, registration.owner_id,
            )
            return
        try:
            task = self.hass.async_create_task(
                self._async_dispatch(registration, state),
                f"{DOMAIN} input {state.entity_id}",
            )
        except RuntimeError as err:
            _LOGGER.error(
                "Could not dispatch %s update to %s: %s",
                state.entity_id, registration.owner_id, err,
            )
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _async_dispatch(self, registration: _Registration, state: State) -> None:
        try:
            await registration.consumer(registration.role, state)
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001
            _LOGGER.exception(
                "Error handling %s update (%s) for %s",
                state.entity_id, registration.role.value, registration.owner_id,
            )


@callback
def async_get_subscriber(hass: HomeAssistant) -> SurplusEventSubscriber:
    """Return the shared subscriber, starting it on first use."""
    domain_data = hass.data.setdefault(DOMAIN, {})
    subscriber: Optional[SurplusEventSubscriber] = domain_data.get(DATA_EVENT_SUBSCRIBER)
    if subscriber is None:
        subscriber = SurplusEventSubscriber(hass)
        domain_data[DATA_EVENT_SUBSCRIBER] = subscriber
    subscriber.async_start()
    return subscriber


@callback
def async_release_subscriber(hass: HomeAssistant) -> None:
    """Shut the shared subscriber down when no manager uses it anymore."""
    domain_data = hass.data.get(DOMAIN, {})
    subscriber: Optional[SurplusEventSubscriber] = domain_data.pop(DATA_EVENT_SUBSCRIBER, None)
    if subscriber is not None:
        subscriber.async_shutdown()
