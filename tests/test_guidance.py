import os
import sys
import unittest


sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from injectguard.events import GuidanceEventBus
from injectguard.guidance import (
    ACTION_DISMISS,
    ACTION_ENABLE_PERMISSION,
    ACTION_RETRY_DETECTION,
    GuidanceService,
    explain,
)
from injectguard.models import GuidanceEvent, GuidanceKind


class FakeProbe:
    def __init__(self):
        self.invalidations = 0

    def invalidate(self):
        self.invalidations += 1


class FakePermissions:
    def __init__(self, grant):
        self.grant = grant
        self.requested = []

    async def request_permission(self, name):
        self.requested.append(name)
        return self.grant


class GuidanceEventBusTests(unittest.TestCase):
    def setUp(self):
        self.bus = GuidanceEventBus()

    def test_publish_reaches_every_listener_for_the_kind(self):
        first, second = [], []
        self.bus.subscribe(GuidanceKind.PERMISSION_DENIED, first.append)
        self.bus.subscribe("permission-denied", second.append)
        event = self.bus.publish(GuidanceKind.PERMISSION_DENIED, {"reason": "permission_denied"})
        self.assertEqual(first, [event])
        self.assertEqual(second, [event])
        self.assertEqual(event.data["reason"], "permission_denied")

    def test_publish_without_listeners_is_a_no_op(self):
        event = self.bus.publish(GuidanceKind.COMPATIBILITY_NOTICE)
        self.assertEqual(event.kind, GuidanceKind.COMPATIBILITY_NOTICE)
        self.assertEqual(event.data, {})

    def test_failing_listener_does_not_stop_the_others(self):
        received = []

        def broken(_event):
            raise RuntimeError("ui crashed")

        self.bus.subscribe(GuidanceKind.CAPABILITY_UNAVAILABLE, broken)
        self.bus.subscribe(GuidanceKind.CAPABILITY_UNAVAILABLE, received.append)
        self.bus.publish(GuidanceKind.CAPABILITY_UNAVAILABLE)
        self.assertEqual(len(received), 1)

    def test_unsubscribe_and_bookkeeping(self):
        handler = lambda _event: None
        self.bus.subscribe(GuidanceKind.PERMISSION_DENIED, handler)
        self.assertEqual(self.bus.listener_count(GuidanceKind.PERMISSION_DENIED), 1)
        self.assertEqual(self.bus.registered_kinds(), [GuidanceKind.PERMISSION_DENIED])
        self.assertTrue(self.bus.unsubscribe(GuidanceKind.PERMISSION_DENIED, handler))
        self.assertFalse(self.bus.unsubscribe(GuidanceKind.PERMISSION_DENIED, handler))
        self.assertEqual(self.bus.registered_kinds(), [])

    def test_clear_all(self):
        self.bus.subscribe(GuidanceKind.PERMISSION_DENIED, lambda _event: None)
        self.bus.clear_all()
        self.assertEqual(self.bus.listener_count(GuidanceKind.PERMISSION_DENIED), 0)

    def test_unknown_kind_is_rejected(self):
        with self.assertRaises(ValueError):
            self.bus.subscribe("not-a-kind", lambda _event: None)


class GuidanceServiceTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.bus = GuidanceEventBus()
        self.probe = FakeProbe()

    def _service(self, permissions=None):
        service = GuidanceService(self.bus, self.probe, permissions)
        service.start()
        return service

    async def test_events_become_queued_messages(self):
        service = self._service()
        self.bus.publish(GuidanceKind.PERMISSION_DENIED, {"reason": "permission_denied"})
        self.bus.publish(GuidanceKind.COMPATIBILITY_NOTICE, {"reason": "registration_object_missing"})
        self.bus.publish(GuidanceKind.CAPABILITY_UNAVAILABLE, {"reason": "functional_test_failed"})
        messages = service.pending()
        self.assertEqual([m.type for m in messages], ["permission", "browser", "feature"])
        self.assertEqual(messages[0].actions[0].action, ACTION_ENABLE_PERMISSION)
        self.assertEqual(messages[2].reason, "functional_test_failed")
        self.assertEqual(service.status()["queue_length"], 3)
        self.assertEqual(service.status()["next"]["type"], "permission")

    async def test_start_is_idempotent_and_stop_detaches(self):
        service = self._service()
        service.start()
        self.assertEqual(self.bus.listener_count(GuidanceKind.PERMISSION_DENIED), 1)
        service.stop()
        self.bus.publish(GuidanceKind.PERMISSION_DENIED)
        self.assertEqual(service.pending(), [])

    async def test_pop_drains_in_order(self):
        service = self._service()
        self.bus.publish(GuidanceKind.COMPATIBILITY_NOTICE)
        self.assertEqual(service.pop().type, "browser")
        self.assertIsNone(service.pop())
        self.assertIsNone(service.status()["next"])

    async def test_retry_action_invalidates_probe(self):
        service = self._service()
        self.assertTrue(await service.handle_action(ACTION_RETRY_DETECTION))
        self.assertEqual(self.probe.invalidations, 1)

    async def test_enable_permission_granted(self):
        permissions = FakePermissions(True)
        service = self._service(permissions)
        self.assertTrue(await service.handle_action(ACTION_ENABLE_PERMISSION))
        self.assertEqual(permissions.requested, ["userScripts"])
        self.assertEqual(self.probe.invalidations, 1)
        self.assertEqual(service.pop().title, "Permission enabled")

    async def test_enable_permission_denied(self):
        service = self._service(FakePermissions(False))
        self.assertFalse(await service.handle_action(ACTION_ENABLE_PERMISSION))
        self.assertEqual(self.probe.invalidations, 0)
        self.assertEqual(service.pop().title, "Permission denied")

    async def test_enable_permission_without_port(self):
        service = self._service()
        self.assertFalse(await service.handle_action(ACTION_ENABLE_PERMISSION))

    async def test_dismiss_and_unknown_actions(self):
        service = self._service()
        self.assertTrue(await service.handle_action(ACTION_DISMISS))
        self.assertFalse(await service.handle_action("reboot"))


class ExplainTests(unittest.TestCase):
    def test_explanation_names_the_reason(self):
        event = GuidanceEvent(kind=GuidanceKind.PERMISSION_DENIED, data={"reason": "permission_denied"})
        text = explain(event)
        self.assertTrue(text.startswith("What happened: Script registration is blocked"))
        self.assertIn("Technical reason: permission_denied", text)

    def test_explanation_without_reason(self):
        text = explain(GuidanceEvent(kind=GuidanceKind.CAPABILITY_UNAVAILABLE))
        self.assertIn("Technical reason: unknown", text)


if __name__ == "__main__":
    unittest.main()
