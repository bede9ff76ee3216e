"""
Routing lifecycle hooks.
========================
Components that change shared state (circuits, experiments, the lineage
buffer) or finish a request announce it through a HookRegistry. Observers
subscribe by event name; callbacks run synchronously in the routing task
and receive keyword arguments only.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from enum import Enum
from typing import Callable, Optional, Union

logger = logging.getLogger("governed_router.hooks")


class EventType(str, Enum):
    """
    Events fired by the router, with the kwargs each one carries:

      CIRCUIT_STATE_CHANGED   provider, model, old, new, reason
      FALLBACK_ADVANCED       audit_id, from_model, to_model (None when the chain ends), error_class
      FIREWALL_ACTION         audit_id, state, violations, degraded
      EXPERIMENT_ROLLED_BACK  experiment_id, reason
      LINEAGE_BUFFERED        audit_id, error
      REQUEST_COMPLETED       audit_id, status, reason
    """
    CIRCUIT_STATE_CHANGED  = "circuit_state_changed"
    FALLBACK_ADVANCED      = "fallback_advanced"
    FIREWALL_ACTION        = "firewall_action"
    EXPERIMENT_ROLLED_BACK = "experiment_rolled_back"
    LINEAGE_BUFFERED       = "lineage_buffered"
    REQUEST_COMPLETED      = "request_completed"


EventKey = Union[str, EventType]


def _event_name(event: EventKey) -> str:
    return event.value if isinstance(event, EventType) else str(event)


class HookRegistry:
    """
    Event name → ordered callbacks.

        hooks = HookRegistry()
        hooks.add(EventType.CIRCUIT_STATE_CHANGED, lambda model, new, **_: alert(model, new))

    A callback that raises is logged and skipped; the remaining callbacks
    for that event still run.
    """

    def __init__(self) -> None:
        self._callbacks: dict[str, list[Callable[..., None]]] = defaultdict(list)

    def add(self, event: EventKey, callback: Callable[..., None]) -> None:
        self._callbacks[_event_name(event)].append(callback)

    def fire(self, event: EventKey, **payload) -> None:
        name = _event_name(event)
        for callback in list(self._callbacks.get(name, ())):
            try:
                callback(**payload)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Hook %r failed on %s: %s", callback, name, exc)

    def clear(self, event: Optional[EventKey] = None) -> None:
        """Drop the callbacks of one event, or of every event."""
        if event is None:
            self._callbacks.clear()
            return
        self._callbacks.pop(_event_name(event), None)

    def registered_events(self) -> list[str]:
        return [name for name, callbacks in self._callbacks.items() if callbacks]

    def __len__(self) -> int:
        return sum(map(len, self._callbacks.values()))
