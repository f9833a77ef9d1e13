from dataclasses import dataclass, field
from typing import Optional

from .models import GuidanceKind
from .probe import (
    REASON_FUNCTIONAL_FAILED,
    REASON_METHOD_MISSING,
    REASON_OBJECT_MISSING,
    REASON_PERMISSION_DENIED,
)
from .utils import audit

ACTION_ENABLE_PERMISSION = "enable_permission"
ACTION_RETRY_DETECTION = "retry_detection"
ACTION_DISMISS = "dismiss"


@dataclass(frozen=True)
class GuidanceAction:
    label: str
    action: str
    primary: bool = False


@dataclass(frozen=True)
class GuidanceMessage:
    type: str  # permission | configuration | browser | feature
    severity: str  # info | warning | error
    title: str
    message: str
    actions: tuple = field(default_factory=tuple)
    reason: str = ""


def _unavailable_parts(reason):
    if reason == REASON_OBJECT_MISSING:
        return (
            "The host does not expose the script registration primitive.",
            (GuidanceAction("Retry detection", ACTION_RETRY_DETECTION, primary=True),),
        )
    if reason == REASON_PERMISSION_DENIED:
        return (
            "The registration permission is not granted. Enable it in the host's extension settings.",
            (
                GuidanceAction("Enable permission", ACTION_ENABLE_PERMISSION, primary=True),
                GuidanceAction("Dismiss", ACTION_DISMISS),
            ),
        )
    if reason == REASON_METHOD_MISSING:
        return (
            "The registration primitive is present but cannot register scripts on this host version.",
            (GuidanceAction("Retry detection", ACTION_RETRY_DETECTION, primary=True),),
        )
    if reason == REASON_FUNCTIONAL_FAILED:
        return (
            "The registration primitive exists but did not respond. This is often temporary.",
            (GuidanceAction("Retry detection", ACTION_RETRY_DETECTION, primary=True),),
        )
    return (
        "The registration primitive is unavailable; scripts run through isolated execution instead.",
        (GuidanceAction("Retry detection", ACTION_RETRY_DETECTION, primary=True),),
    )


def explain(event):
    """Plain-language summary of a guidance event."""
    reason = str((event.data or {}).get("reason", "unknown"))
    detail, _actions = _unavailable_parts(reason)
    if event.kind == GuidanceKind.PERMISSION_DENIED:
        what = "Script registration is blocked by a missing permission."
    elif event.kind == GuidanceKind.COMPATIBILITY_NOTICE:
        what = "This host lacks the isolated script registration feature."
    else:
        what = "Script registration is degraded."
    return (
        f"What happened: {what} "
        f"Why: {detail} "
        "Impact: scripts still run, with a lower isolation level. "
        f"Technical reason: {reason}"
    )


class GuidanceService:
    """
    Subscribes to the guidance bus and queues messages for whatever UI
    shows them. Rendering is left to that UI.
    """

    def __init__(self, bus, probe=None, permissions=None, permission_name="userScripts"):
        self.bus = bus
        self.probe = probe
        self.permissions = permissions
        self.permission_name = permission_name
        self._queue: list[GuidanceMessage] = []
        self._subscribed = False

    def start(self):
        if self._subscribed:
            return
        self.bus.subscribe(GuidanceKind.PERMISSION_DENIED, self._on_permission_denied)
        self.bus.subscribe(GuidanceKind.CAPABILITY_UNAVAILABLE, self._on_unavailable)
        self.bus.subscribe(GuidanceKind.COMPATIBILITY_NOTICE, self._on_compatibility)
        self._subscribed = True

    def stop(self):
        if not self._subscribed:
            return
        self.bus.unsubscribe(GuidanceKind.PERMISSION_DENIED, self._on_permission_denied)
        self.bus.unsubscribe(GuidanceKind.CAPABILITY_UNAVAILABLE, self._on_unavailable)
        self.bus.unsubscribe(GuidanceKind.COMPATIBILITY_NOTICE, self._on_compatibility)
        self._subscribed = False

    def add(self, message: GuidanceMessage):
        self._queue.append(message)
        audit(
            "GUIDANCE",
            {"title": message.title, "severity": message.severity, "queue": len(self._queue)},
            "INFO",
        )

    def _on_permission_denied(self, event):
        message, actions = _unavailable_parts(REASON_PERMISSION_DENIED)
        self.add(
            GuidanceMessage(
                type="permission",
                severity="warning",
                title="Registration permission not enabled",
                message=message,
                actions=actions,
                reason=str(event.data.get("reason", REASON_PERMISSION_DENIED)),
            )
        )

    def _on_unavailable(self, event):
        reason = str(event.data.get("reason", "unknown"))
        message, actions = _unavailable_parts(reason)
        self.add(
            GuidanceMessage(
                type="feature",
                severity="warning",
                title="Script registration unavailable",
                message=message,
                actions=actions,
                reason=reason,
            )
        )

    def _on_compatibility(self, event):
        self.add(
            GuidanceMessage(
                type="browser",
                severity="info",
                title="Host compatibility notice",
                message="Script injection works best on hosts that support isolated script registration.",
                actions=(GuidanceAction("Retry detection", ACTION_RETRY_DETECTION, primary=True),),
                reason=str(event.data.get("reason", REASON_OBJECT_MISSING)),
            )
        )

    def pending(self):
        return list(self._queue)

    def pop(self) -> Optional[GuidanceMessage]:
        if not self._queue:
            return None
        return self._queue.pop(0)

    def status(self):
        head = self._queue[0] if self._queue else None
        return {
            "queue_length": len(self._queue),
            "next": (
                {"type": head.type, "severity": head.severity, "title": head.title} if head else None
            ),
        }

    async def handle_action(self, action):
        audit("GUIDANCE_ACTION", {"action": action}, "INFO")
        if action == ACTION_RETRY_DETECTION:
            if self.probe is not None:
                self.probe.invalidate()
            return True
        if action == ACTION_ENABLE_PERMISSION:
            return await self._request_permission()
        if action == ACTION_DISMISS:
            return True
        audit("GUIDANCE_ACTION", f"Unknown guidance action: {action}", "WARNING")
        return False

    async def _request_permission(self):
        if self.permissions is None:
            return False
        granted = bool(await self.permissions.request_permission(self.permission_name))
        if granted:
            if self.probe is not None:
                self.probe.invalidate()
            self.add(
                GuidanceMessage(
                    type="permission",
                    severity="info",
                    title="Permission enabled",
                    message="The registration permission is enabled. Reload the page to use isolated registration.",
                )
            )
        else:
            self.add(
                GuidanceMessage(
                    type="permission",
                    severity="warning",
                    title="Permission denied",
                    message="Scripts keep running through isolated execution, some features may be limited.",
                    actions=(GuidanceAction("Try again", ACTION_ENABLE_PERMISSION),),
                )
            )
        return granted
