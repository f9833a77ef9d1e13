import asyncio
import os
import sys
import unittest


sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from injectguard.events import GuidanceEventBus
from injectguard.models import GuidanceKind
from injectguard.probe import CapabilityProbe


class FakeRegistration:
    def __init__(self, signals):
        self.signals = list(signals)
        self.probe_calls = 0

    async def register(self, *args):
        return None

    async def probe(self):
        self.probe_calls += 1
        signal = self.signals.pop(0) if self.signals else True
        if isinstance(signal, Exception):
            raise signal
        return signal


class GatedRegistration(FakeRegistration):
    """First functional check blocks until the gate opens, then reports unavailable."""

    def __init__(self, gate, signals):
        super().__init__(signals)
        self.gate = gate

    async def probe(self):
        if self.probe_calls == 0:
            self.probe_calls += 1
            await self.gate.wait()
            return False
        return await super().probe()


class NoRegisterMethod:
    async def probe(self):
        return True


class FakePermissions:
    def __init__(self, granted):
        self.granted = granted

    async def has_permission(self, name):
        return self.granted


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class CapabilityProbeTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.sleeps = []
        self.bus = GuidanceEventBus()
        self.events = []
        for kind in GuidanceKind:
            self.bus.subscribe(kind, self.events.append)

    async def _sleep(self, seconds):
        self.sleeps.append(seconds)

    def _probe(self, registration, permissions=None, **kwargs):
        return CapabilityProbe(
            registration,
            permissions,
            self.bus,
            clock=self.clock,
            sleep=self._sleep,
            **kwargs,
        )

    async def test_second_call_within_ttl_uses_cache(self):
        registration = FakeRegistration([True])
        probe = self._probe(registration)
        self.assertTrue(await probe.is_available())
        self.clock.now += 29.999
        self.assertTrue(await probe.is_available())
        self.assertEqual(registration.probe_calls, 1)
        self.assertEqual(probe.probe_count, 1)

    async def test_call_after_ttl_reprobes(self):
        registration = FakeRegistration([True, False, False])
        probe = self._probe(registration)
        self.assertTrue(await probe.is_available())
        self.clock.now += 30.0
        self.assertFalse(await probe.is_available())
        self.assertEqual(registration.probe_calls, 3)

    async def test_failed_immediate_check_retries_once_after_delay(self):
        registration = FakeRegistration([False, True])
        probe = self._probe(registration)
        self.assertTrue(await probe.is_available())
        self.assertEqual(self.sleeps, [0.15])
        self.assertEqual(registration.probe_calls, 2)
        self.assertEqual(self.events, [])

    async def test_retry_count_and_delay_are_configurable(self):
        registration = FakeRegistration([False, False, False, True])
        probe = self._probe(registration, retries=3, retry_delay_ms=20)
        self.assertTrue(await probe.is_available())
        self.assertEqual(self.sleeps, [0.02, 0.02, 0.02])

    async def test_missing_port_reports_compatibility_notice(self):
        probe = self._probe(None)
        state = await probe.state()
        self.assertFalse(state.available)
        self.assertEqual(state.reason, "registration_object_missing")
        self.assertEqual(len(self.events), 1)
        self.assertEqual(self.events[0].kind, GuidanceKind.COMPATIBILITY_NOTICE)

    async def test_denied_permission_reports_permission_event(self):
        probe = self._probe(FakeRegistration([True, True]), FakePermissions(False))
        state = await probe.state()
        self.assertEqual(state.reason, "permission_denied")
        self.assertEqual([event.kind for event in self.events], [GuidanceKind.PERMISSION_DENIED])

    async def test_missing_register_method_is_reported(self):
        probe = self._probe(NoRegisterMethod())
        state = await probe.state()
        self.assertEqual(state.reason, "register_method_missing")
        self.assertEqual(self.events[0].kind, GuidanceKind.CAPABILITY_UNAVAILABLE)

    async def test_functional_exception_is_treated_as_unavailable(self):
        registration = FakeRegistration([RuntimeError("boom"), RuntimeError("boom")])
        probe = self._probe(registration)
        state = await probe.state()
        self.assertFalse(state.available)
        self.assertEqual(state.reason, "functional_test_failed")
        self.assertEqual(self.events[0].data["reason"], "functional_test_failed")

    async def test_probe_works_without_listeners(self):
        probe = CapabilityProbe(None, clock=self.clock, sleep=self._sleep)
        self.assertFalse(await probe.is_available())

    async def test_invalidate_forces_redetection(self):
        registration = FakeRegistration([False, False, True])
        probe = self._probe(registration)
        self.assertFalse(await probe.is_available())
        probe.invalidate()
        self.assertIsNone(probe.cached_state())
        self.assertTrue(await probe.is_available())
        self.assertEqual(registration.probe_calls, 3)

    async def test_concurrent_callers_share_one_detection(self):
        registration = FakeRegistration([False, True])
        probe = self._probe(registration)
        results = await asyncio.gather(*(probe.is_available() for _ in range(5)))
        self.assertEqual(results, [True] * 5)
        self.assertEqual(registration.probe_calls, 2)

    async def test_invalidate_during_detection_starts_a_fresh_one(self):
        gate = asyncio.Event()
        registration = GatedRegistration(gate, [True, False])
        probe = self._probe(registration)
        stale = asyncio.ensure_future(probe.state())
        while registration.probe_calls == 0:
            await asyncio.sleep(0)

        probe.invalidate()
        fresh = await probe.state()
        self.assertTrue(fresh.available)

        gate.set()
        self.assertFalse((await stale).available)
        self.assertIs(probe.cached_state(), fresh)
        self.assertEqual(self.events, [])

    async def test_failing_listener_does_not_break_probe(self):
        def broken(_event):
            raise ValueError("listener bug")

        self.bus.subscribe(GuidanceKind.COMPATIBILITY_NOTICE, broken)
        probe = self._probe(None)
        self.assertFalse(await probe.is_available())


if __name__ == "__main__":
    unittest.main()
