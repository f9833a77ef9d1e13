import asyncio
import os
import sys
import unittest


sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from injectguard.errors import CapabilityUnavailable, ExecutionFailure
from injectguard.models import (
    CapabilityState,
    Isolation,
    Method,
    RunAt,
    ScriptMeta,
    ScriptUnit,
    StrategyDescriptor,
)
from injectguard.registration import RegistrationManager, host_timing, host_world


class FakePort:
    def __init__(self, fail_register=False, fail_unregister=False, fail_times=0):
        self.fail_register = fail_register
        self.fail_times = fail_times
        self.fail_unregister = fail_unregister
        self.log = []
        self.live = set()

    async def register(self, script_id, source, matches, timing, world):
        self.log.append(("register", script_id, source, tuple(matches), timing, world))
        await asyncio.sleep(0)
        if self.fail_register or self.fail_times > 0:
            self.fail_times -= 1
            raise RuntimeError("register rejected")
        if script_id in self.live:
            raise RuntimeError(f"Duplicate script ID '{script_id}'")
        self.live.add(script_id)

    async def unregister(self, script_id):
        self.log.append(("unregister", script_id))
        self.live.discard(script_id)
        if self.fail_unregister:
            raise RuntimeError("gone")


class StaticProbe:
    def __init__(self, available, reason=""):
        self._state = CapabilityState(available=available, probed_at=0.0, reason=reason)

    async def state(self):
        return self._state


DESCRIPTOR = StrategyDescriptor(Method.REGISTRATION_API, Isolation.ISOLATED_SANDBOX, RunAt.IDLE, "test")


def _script(script_id="r1"):
    return ScriptUnit(
        id=script_id,
        content="window.ready = true;",
        meta=ScriptMeta(name=script_id, match=("https://example.com/*",)),
    )


class HostMappingTests(unittest.TestCase):
    def test_world_and_timing_names(self):
        self.assertEqual(host_world(Isolation.ISOLATED_SANDBOX), "USER_SCRIPT")
        self.assertEqual(host_world(Isolation.SHARED), "MAIN")
        self.assertEqual(host_timing(RunAt.START), "document_start")
        self.assertEqual(host_timing(RunAt.IDLE), "document_idle")
        self.assertEqual(host_timing("bogus"), "document_end")


class RegistrationManagerTests(unittest.IsolatedAsyncioTestCase):
    async def test_registers_source_verbatim(self):
        port = FakePort()
        manager = RegistrationManager(port, StaticProbe(True))
        entry = await manager.register_compliant(_script(), DESCRIPTOR)
        self.assertEqual(
            port.log,
            [("register", "r1", "window.ready = true;", ("https://example.com/*",), "document_idle", "USER_SCRIPT")],
        )
        self.assertEqual(entry["source"], "window.ready = true;")
        self.assertEqual(manager.registered_ids(), ["r1"])
        self.assertEqual(manager.status("r1"), "registered")

    async def test_identical_registration_is_reused(self):
        port = FakePort()
        manager = RegistrationManager(port, StaticProbe(True))
        await manager.register_compliant(_script(), DESCRIPTOR)
        await manager.register_compliant(_script(), DESCRIPTOR)
        self.assertEqual([item[0] for item in port.log], ["register"])

    async def test_changed_content_replaces_previous_copy(self):
        port = FakePort()
        manager = RegistrationManager(port, StaticProbe(True))
        await manager.register_compliant(_script(), DESCRIPTOR)
        changed = _script()
        changed.content = "window.ready = false;"
        entry = await manager.register_compliant(changed, DESCRIPTOR)
        self.assertEqual([item[0] for item in port.log], ["register", "unregister", "register"])
        self.assertEqual(entry["source"], "window.ready = false;")

    async def test_concurrent_registrations_of_one_id_do_not_collide(self):
        port = FakePort()
        manager = RegistrationManager(port, StaticProbe(True))
        results = await asyncio.gather(
            *(manager.register_compliant(_script(), DESCRIPTOR) for _ in range(3)),
            return_exceptions=True,
        )
        self.assertFalse([result for result in results if isinstance(result, Exception)])
        self.assertEqual([item[0] for item in port.log], ["register"])
        self.assertEqual(manager.registered_ids(), ["r1"])

    async def test_failed_registration_lets_the_next_caller_retry(self):
        port = FakePort(fail_times=1)
        manager = RegistrationManager(port, StaticProbe(True))
        first, second = await asyncio.gather(
            manager.register_compliant(_script(), DESCRIPTOR),
            manager.register_compliant(_script(), DESCRIPTOR),
            return_exceptions=True,
        )
        self.assertIsInstance(first, ExecutionFailure)
        self.assertEqual(second["id"], "r1")
        self.assertEqual([item[0] for item in port.log], ["register", "register"])
        self.assertEqual(manager.status("r1"), "registered")

    async def test_unavailable_primitive_raises_with_reason(self):
        port = FakePort()
        manager = RegistrationManager(port, StaticProbe(False, "permission_denied"))
        with self.assertRaises(CapabilityUnavailable) as ctx:
            await manager.register_compliant(_script(), DESCRIPTOR)
        self.assertEqual(ctx.exception.reason, "permission_denied")
        self.assertEqual(port.log, [])

    async def test_port_failure_is_execution_failure_and_untracked(self):
        manager = RegistrationManager(FakePort(fail_register=True), StaticProbe(True))
        with self.assertRaises(ExecutionFailure):
            await manager.register_compliant(_script(), DESCRIPTOR)
        self.assertEqual(manager.registered_ids(), [])

    async def test_unregister_unknown_id_is_false(self):
        manager = RegistrationManager(FakePort(), StaticProbe(True))
        self.assertFalse(await manager.unregister("missing"))

    async def test_unregister_error_keeps_tracking(self):
        port = FakePort()
        manager = RegistrationManager(port, StaticProbe(True))
        await manager.register_compliant(_script(), DESCRIPTOR)
        port.fail_unregister = True
        self.assertFalse(await manager.unregister("r1"))
        self.assertEqual(manager.status("r1"), "registered")

    async def test_unregister_all_counts_released_scripts(self):
        manager = RegistrationManager(FakePort(), StaticProbe(True))
        await manager.register_compliant(_script("a"), DESCRIPTOR)
        await manager.register_compliant(_script("b"), DESCRIPTOR)
        self.assertEqual(await manager.unregister_all(), 2)
        self.assertEqual(manager.registered_ids(), [])
        self.assertEqual(manager.status("a"), "not-registered")


if __name__ == "__main__":
    unittest.main()
