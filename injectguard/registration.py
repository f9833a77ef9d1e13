import asyncio

from .errors import CapabilityUnavailable, ExecutionFailure
from .models import Isolation
from .utils import audit

_WORLDS = {
    Isolation.ISOLATED_SANDBOX: "USER_SCRIPT",
    Isolation.SHARED: "MAIN",
}

_TIMINGS = {
    "start": "document_start",
    "end": "document_end",
    "idle": "document_idle",
}


def host_world(isolation):
    return _WORLDS.get(isolation, "MAIN")


def host_timing(run_at):
    return _TIMINGS.get(getattr(run_at, "value", run_at), "document_end")


class RegistrationManager:
    """Wraps the host registration port and tracks what this process registered."""

    def __init__(self, port, probe):
        self.port = port
        self.probe = probe
        self._registered = {}
        self._pending = {}

    async def _require_available(self):
        state = await self.probe.state()
        if not state.available:
            raise CapabilityUnavailable(
                f"Registration primitive is not available ({state.reason})",
                reason=state.reason,
            )

    def _entry(self, script, descriptor, code):
        return {
            "id": script.id,
            "source": code,
            "matches": list(script.meta.match),
            "timing": host_timing(descriptor.timing),
            "world": host_world(descriptor.isolation),
            "all_frames": True,
        }

    async def register_compliant(self, script, descriptor):
        """
        Registers the script content verbatim, with no code-synthesising wrapper.

        A call for an id waits out any registration of that id already in
        flight. An identical entry that is already registered counts as
        success, so batch items sharing a script never trip the host's
        duplicate-id check.
        """
        await self._require_available()
        entry = self._entry(script, descriptor, script.content)
        while True:
            if self._registered.get(script.id) == entry:
                audit("REGISTER_SCRIPT", {"script_id": script.id, "reused": True}, "DEBUG")
                return entry
            pending = self._pending.get(script.id)
            if pending is None or pending.done():
                break
            await asyncio.wait({pending})

        task = asyncio.ensure_future(self._replace(script, entry))
        self._pending[script.id] = task
        return await asyncio.shield(task)

    async def _replace(self, script, entry):
        await self.unregister(script.id)
        try:
            await self.port.register(
                entry["id"],
                entry["source"],
                entry["matches"],
                entry["timing"],
                entry["world"],
            )
        except Exception as exc:
            audit(
                "REGISTER_SCRIPT",
                {"script_id": script.id, "error": exc},
                "ERROR",
            )
            raise ExecutionFailure(f"Registration failed for {script.meta.name}: {exc}") from exc
        self._registered[script.id] = entry
        audit("REGISTER_SCRIPT", {"script_id": script.id, "world": entry["world"]}, "ALLOWED")
        return entry

    async def unregister(self, script_id):
        if script_id not in self._registered:
            return False
        try:
            await self.port.unregister(script_id)
        except Exception as exc:
            audit("UNREGISTER_SCRIPT", {"script_id": script_id, "error": exc}, "ERROR")
            return False
        self._registered.pop(script_id, None)
        audit("UNREGISTER_SCRIPT", {"script_id": script_id}, "INFO")
        return True

    async def unregister_all(self):
        count = 0
        for script_id in list(self._registered):
            if await self.unregister(script_id):
                count += 1
        return count

    def registered_ids(self):
        return list(self._registered)

    def status(self, script_id):
        return "registered" if script_id in self._registered else "not-registered"

