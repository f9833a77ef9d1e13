import asyncio
import inspect
import time

from .models import CapabilityState, GuidanceKind
from .utils import audit

REASON_OBJECT_MISSING = "registration_object_missing"
REASON_PERMISSION_DENIED = "permission_denied"
REASON_METHOD_MISSING = "register_method_missing"
REASON_FUNCTIONAL_FAILED = "functional_test_failed"

_REASON_EVENTS = {
    REASON_OBJECT_MISSING: GuidanceKind.COMPATIBILITY_NOTICE,
    REASON_PERMISSION_DENIED: GuidanceKind.PERMISSION_DENIED,
    REASON_METHOD_MISSING: GuidanceKind.CAPABILITY_UNAVAILABLE,
    REASON_FUNCTIONAL_FAILED: GuidanceKind.CAPABILITY_UNAVAILABLE,
}


async def _maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value


class CapabilityProbe:
    """
    Detects the advanced registration primitive and caches the answer.

    The check is layered: port present, permission granted, ``register``
    callable, functional ``probe()`` call. The first failing layer is the
    reported reason. A failed immediate check is retried after a short delay
    because some hosts bring the primitive up asynchronously after startup.
    Concurrent callers share one in-flight detection, so callers within
    the TTL never trigger a second probe.
    """

    def __init__(
        self,
        registration=None,
        permissions=None,
        bus=None,
        *,
        permission_name="userScripts",
        ttl_ms=30000.0,
        retry_delay_ms=150.0,
        retries=1,
        clock=time.monotonic,
        sleep=asyncio.sleep,
    ):
        self.registration = registration
        self.permissions = permissions
        self.bus = bus
        self.permission_name = permission_name
        self.ttl_seconds = max(0.0, float(ttl_ms) / 1000.0)
        self.retry_delay_seconds = max(0.0, float(retry_delay_ms) / 1000.0)
        self.retries = max(0, int(retries))
        self._clock = clock
        self._sleep = sleep
        self._state = None
        self._inflight = None
        self._generation = 0
        self.probe_count = 0

    @classmethod
    def from_config(cls, config, registration=None, permissions=None, bus=None, **kwargs):
        return cls(
            registration,
            permissions,
            bus,
            permission_name=config.registration_permission,
            ttl_ms=config.probe_ttl_ms,
            retry_delay_ms=config.probe_retry_delay_ms,
            retries=config.probe_retries,
            **kwargs,
        )

    def cached_state(self):
        state = self._state
        if state is None:
            return None
        if (self._clock() - state.probed_at) >= self.ttl_seconds:
            return None
        return state

    def invalidate(self):
        self._state = None
        self._inflight = None
        self._generation += 1
        audit("CAPABILITY_PROBE", "Cache invalidated, next call re-probes", "INFO")

    async def is_available(self):
        state = await self.state()
        return state.available

    async def state(self):
        cached = self.cached_state()
        if cached is not None:
            return cached

        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.ensure_future(self._detect(self._generation))
        return await asyncio.shield(self._inflight)

    async def _detect(self, generation):
        available, reason = await self._check("immediate")
        attempt = 0
        while not available and attempt < self.retries:
            attempt += 1
            await self._sleep(self.retry_delay_seconds)
            available, reason = await self._check(f"retry-{attempt}")

        state = CapabilityState(available=available, probed_at=self._clock(), reason=reason)
        if generation != self._generation:
            # Invalidated mid-detection: answer the waiters, leave the cache alone.
            return state
        self._state = state
        if available:
            audit("CAPABILITY_PROBE", "Registration primitive available", "ALLOWED")
        else:
            audit("CAPABILITY_PROBE", f"Registration primitive unavailable: {reason}", "WARNING")
            self._publish(reason)
        return state

    async def _check(self, phase):
        self.probe_count += 1
        reason = await self._failing_layer()
        audit(
            "CAPABILITY_PROBE",
            {"phase": phase, "available": reason == "", "reason": reason or "none"},
            "DEBUG",
        )
        return reason == "", reason

    async def _failing_layer(self):
        if self.registration is None:
            return REASON_OBJECT_MISSING

        if self.permissions is not None:
            try:
                granted = await _maybe_await(self.permissions.has_permission(self.permission_name))
            except Exception as exc:
                audit("CAPABILITY_PROBE", f"Permission check raised: {exc}", "DEBUG")
                granted = False
            if not granted:
                return REASON_PERMISSION_DENIED

        try:
            if not callable(getattr(self.registration, "register", None)):
                return REASON_METHOD_MISSING
        except Exception:
            return REASON_METHOD_MISSING

        try:
            signal = await _maybe_await(self.registration.probe())
        except Exception as exc:
            audit("CAPABILITY_PROBE", f"Functional check raised: {exc}", "DEBUG")
            signal = False
        if not signal:
            return REASON_FUNCTIONAL_FAILED
        return ""

    def _publish(self, reason):
        if self.bus is None:
            return
        kind = _REASON_EVENTS.get(reason, GuidanceKind.CAPABILITY_UNAVAILABLE)
        self.bus.publish(kind, {"reason": reason, "permission": self.permission_name})
