import time
from dataclasses import replace

from .config import PRIVILEGED_GRANTS
from .models import Isolation, Method, RunAt, SandboxMode, StrategyDescriptor
from .utils import audit, elapsed_ms

_BASE_SCORES = {
    Method.DIRECT: 60,
    Method.CONTENT_SCRIPT_ISOLATED: 60,
    Method.REGISTRATION_API: 80,
    Method.REGISTRATION_API_DYNAMIC: 100,
}


class StrategySelector:
    """
    Maps script metadata plus the probe reading to a strategy descriptor.

    The decision table is branch based and first match wins. The priority
    score is informational: it is logged and attached to the descriptor but
    never consulted when choosing.
    """

    def __init__(self, probe=None, privileged_grants=PRIVILEGED_GRANTS):
        self.probe = probe
        self.privileged_grants = frozenset(privileged_grants)

    def has_privileged_grants(self, script):
        return any(grant in self.privileged_grants for grant in script.meta.effective_grants)

    def needs_isolation(self, script):
        return script.meta.sandbox != SandboxMode.RAW or script.meta.has_grants

    async def select_for(self, script):
        available = False
        if self.probe is not None:
            available = await self.probe.is_available()
        return self.select(script, available)

    def select(self, script, available):
        started = time.perf_counter()
        timing = script.meta.run_at
        privileged = self.has_privileged_grants(script)
        isolation_needed = self.needs_isolation(script)

        if timing == RunAt.START and privileged and available:
            method, isolation, resolved_timing = (
                Method.REGISTRATION_API_DYNAMIC,
                Isolation.ISOLATED_SANDBOX,
                RunAt.START,
            )
            reason = "Early execution with privileged grants requires the dynamic registration primitive"
        elif privileged and available:
            method, isolation, resolved_timing = Method.REGISTRATION_API, Isolation.ISOLATED_SANDBOX, timing
            reason = "Privileged grants are bridged through the registration primitive"
        elif isolation_needed:
            method, isolation, resolved_timing = Method.CONTENT_SCRIPT_ISOLATED, Isolation.ISOLATED_SANDBOX, timing
            reason = "Isolation required but the registration primitive is not usable, using isolated execution"
        else:
            method, isolation, resolved_timing = Method.DIRECT, Isolation.SHARED, timing
            reason = "No privileged grants or isolation requirements, using direct execution"

        descriptor = StrategyDescriptor(
            method=method,
            isolation=isolation,
            timing=resolved_timing,
            reason=reason,
        )
        score = self.score(descriptor, script)
        descriptor = replace(descriptor, score=score)
        audit(
            "STRATEGY_SELECTED",
            {
                "script_id": script.id,
                "method": method.value,
                "isolation": isolation.value,
                "timing": resolved_timing.value,
                "available": available,
                "score": score,
                "complexity": self.evaluate_complexity(script),
                "duration_ms": elapsed_ms(started, time.perf_counter()),
            },
            "INFO",
        )
        return descriptor

    def score(self, descriptor, script):
        score = _BASE_SCORES.get(descriptor.method, 60)
        if descriptor.timing == script.meta.run_at:
            score += 20
        if descriptor.isolation == Isolation.ISOLATED_SANDBOX and self.has_privileged_grants(script):
            score += 15
        return score

    def evaluate_complexity(self, script):
        meta = script.meta
        if len(meta.grants) > 3 or meta.requires or meta.resources or meta.connect:
            return "complex"
        if len(meta.grants) > 1 or meta.has_grants:
            return "moderate"
        return "simple"
