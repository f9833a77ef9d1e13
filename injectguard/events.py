from typing import Callable

from .models import GuidanceEvent, GuidanceKind
from .utils import audit

GuidanceHandler = Callable[[GuidanceEvent], None]


def _kind(value):
    return value if isinstance(value, GuidanceKind) else GuidanceKind(str(value))


class GuidanceEventBus:
    """
    Publish/subscribe channel for soft degradations.
    Dispatch is synchronous and fire-and-forget: a failing handler is
    logged and skipped, the publisher never sees the error.
    """

    def __init__(self):
        self._listeners: dict[GuidanceKind, list[GuidanceHandler]] = {}

    def subscribe(self, kind, handler: GuidanceHandler):
        kind = _kind(kind)
        self._listeners.setdefault(kind, []).append(handler)
        audit(
            "GUIDANCE_BUS",
            {"event": "subscribe", "kind": kind.value, "listeners": len(self._listeners[kind])},
            "DEBUG",
        )

    def unsubscribe(self, kind, handler: GuidanceHandler):
        listeners = self._listeners.get(_kind(kind))
        if not listeners or handler not in listeners:
            return False
        listeners.remove(handler)
        return True

    def publish(self, kind, data=None):
        kind = _kind(kind)
        event = GuidanceEvent(kind=kind, data=dict(data or {}))
        listeners = list(self._listeners.get(kind, ()))
        if not listeners:
            audit("GUIDANCE_BUS", {"event": "publish", "kind": kind.value, "listeners": 0}, "DEBUG")
            return event

        for handler in listeners:
            try:
                handler(event)
            except Exception as exc:
                audit("GUIDANCE_BUS", f"Listener for {kind.value} failed: {exc}", "ERROR")
        return event

    def listener_count(self, kind):
        return len(self._listeners.get(_kind(kind), ()))

    def registered_kinds(self):
        return [kind for kind, listeners in self._listeners.items() if listeners]

    def clear_all(self):
        self._listeners.clear()
        audit("GUIDANCE_BUS", "All listeners cleared", "DEBUG")
