import asyncio
import time
from collections import Counter

from .config import EngineConfig, mode_info
from .errors import ValidationError
from .events import GuidanceEventBus
from .gm_api import GMApiDispatcher
from .matcher import matches
from .models import AttemptRecord, BatchReport, EngineState, InjectionOutcome, InjectionTarget
from .probe import CapabilityProbe
from .registration import RegistrationManager
from .selector import StrategySelector
from .strategies import CompliantStrategy, EmergencyStrategy, PermissiveStrategy, Primitive
from .utils import audit, elapsed_ms
from .validator import ComplianceValidator, compliance_info

ENGINE_VERSION = "1.0.0"
REQUIRED_PERMISSIONS = ("scripting", "tabs", "activeTab")


class EngineContext:
    """
    Everything one engine needs, built once per process and passed in.

    Ports are duck typed coroutines:
      host.execute(target, primitive, world, args)
      registration.register(id, source, matches, timing, world) / unregister(id) / probe()
      permissions.has_permission(name) / request_permission(name)
      storage.get(key) / set(key, value)  (optional, backs GM_getValue/GM_setValue)
    """

    def __init__(
        self, config=None, host=None, registration=None, permissions=None, *, bus=None, probe=None, storage=None
    ):
        self.config = config or EngineConfig()
        self.host = host
        self.registration_port = registration
        self.permissions = permissions
        self.bus = bus or GuidanceEventBus()
        self.probe = probe or CapabilityProbe.from_config(
            self.config, registration, permissions, self.bus
        )
        self.validator = ComplianceValidator()
        self.selector = StrategySelector(self.probe, self.config.privileged_grants)
        self.registration = RegistrationManager(registration, self.probe)
        self.compliant = CompliantStrategy(host, self.registration, self.probe)
        self.permissive = PermissiveStrategy(host, self.compliant)
        self.emergency = EmergencyStrategy(host)
        self.gm_api = GMApiDispatcher.from_config(self.config, storage)

    @classmethod
    def from_bridge(cls, config, **kwargs):
        from .bridge_client import HostBridgeClient

        client = HostBridgeClient.from_config(config)
        return cls(config, client, client, client, **kwargs)


class InjectionEngine:
    def __init__(self, context):
        self.context = context
        self._strategy_counts = Counter()

    @property
    def config(self):
        return self.context.config

    def _config_for(self, mode):
        if mode is None:
            return self.context.config
        return self.context.config.with_mode(mode)

    def _transition(self, outcome, state):
        audit(
            "ENGINE_STATE",
            {"script_id": outcome.script_id, "from": outcome.state.value, "to": state.value},
            "DEBUG",
        )
        outcome.state = state

    async def inject_one(self, script, target, mode=None):
        """
        Validates, selects and executes one script. Never raises: terminal
        failures come back as an outcome with ``error`` set.
        """
        config = self._config_for(mode)
        self.context.gm_api.cache_script(script)
        outcome = InjectionOutcome(script_id=script.id, script_name=script.meta.name, mode=config.mode)
        started = time.perf_counter()
        audit(
            "INJECTION_START",
            {"script_id": script.id, "script_name": script.meta.name, "tab_id": target.tab_id, "mode": config.mode},
            "INFO",
        )
        try:
            await self._run(script, target, config, outcome)
        except Exception as exc:
            audit("INJECTION_FAILED", {"script_id": script.id, "unexpected": exc}, "ERROR")
            outcome.fail(exc)
        outcome.duration_ms = elapsed_ms(started, time.perf_counter())

        if outcome.success:
            audit(
                "INJECTION_DONE",
                {
                    "script_id": script.id,
                    "tier": outcome.tier,
                    "fallback": outcome.fallback,
                    "duration_ms": outcome.duration_ms,
                },
                "ALLOWED",
            )
        else:
            audit(
                "INJECTION_DONE",
                {
                    "script_id": script.id,
                    "error": (outcome.error or {}).get("message", "unknown"),
                    "duration_ms": outcome.duration_ms,
                },
                "BLOCKED",
            )
        return outcome

    async def _run(self, script, target, config, outcome):
        ctx = self.context
        strict = config.mode == "strict"

        self._transition(outcome, EngineState.VALIDATING)
        validation = ctx.validator.validate(script)
        outcome.validation = validation
        if not validation.safe:
            if strict:
                audit("VALIDATION", {"script_id": script.id, "issues": "; ".join(validation.issues)}, "BLOCKED")
                outcome.fail(
                    ValidationError(
                        f"Script contains non-compliant code: {', '.join(validation.issues)}",
                        validation.issues,
                    )
                )
                return
            audit("VALIDATION", {"script_id": script.id, "advisory_issues": len(validation.issues)}, "WARNING")

        self._transition(outcome, EngineState.SELECTING)
        descriptor = await ctx.selector.select_for(script)
        script.strategy = descriptor
        outcome.strategy = descriptor
        self._strategy_counts[descriptor.method.value] += 1

        self._transition(outcome, EngineState.EXECUTING)
        try:
            if config.mode == "permissive":
                outcome.tier = ctx.permissive.tier
                await ctx.permissive.inject(script, target, attempts=outcome.attempts)
            else:
                outcome.tier = ctx.compliant.tier
                primitive = await ctx.compliant.inject(script, target, validation=validation, strict=strict)
                outcome.attempts.append(AttemptRecord(ctx.compliant.tier, primitive, True))
        except ValidationError as exc:
            outcome.fail(exc)
            return
        except Exception as exc:
            if outcome.tier == ctx.compliant.tier:
                outcome.attempts.append(AttemptRecord(ctx.compliant.tier, "compliant", False, str(exc)))
            if strict:
                audit("EXECUTION", {"script_id": script.id, "error": exc, "fallback": False}, "ERROR")
                outcome.fail(exc)
                return
            await self._fallback(script, target, config, outcome, exc)
            return

        self._transition(outcome, EngineState.SUCCEEDED)
        outcome.success = True

    async def _fallback(self, script, target, config, outcome, error):
        """Runs the remaining tiers in order, never repeating one that already failed."""
        ctx = self.context
        tiers = []
        if outcome.tier == ctx.compliant.tier:
            tiers.append(ctx.permissive)
        if config.emergency_fallback:
            tiers.append(ctx.emergency)
        if not tiers:
            outcome.fail(error)
            return

        self._transition(outcome, EngineState.FALLBACK_EXECUTING)
        outcome.fallback = True
        last_error = error
        for strategy in tiers:
            audit(
                "FALLBACK",
                {"script_id": script.id, "tier": strategy.tier, "previous_error": last_error},
                "FALLBACK",
            )
            try:
                if strategy is ctx.permissive:
                    await strategy.inject(script, target, skip_compliant=True, attempts=outcome.attempts)
                else:
                    primitive = await strategy.inject(script, target)
                    outcome.attempts.append(AttemptRecord(strategy.tier, primitive, True))
            except Exception as exc:
                if strategy is not ctx.permissive:
                    outcome.attempts.append(AttemptRecord(strategy.tier, Primitive.DIRECT_EVAL.value, False, str(exc)))
                last_error = exc
                continue
            outcome.tier = strategy.tier
            self._transition(outcome, EngineState.SUCCEEDED)
            outcome.success = True
            return

        outcome.fail(last_error)

    async def inject_batch(self, scripts, target, mode=None):
        """
        Runs one task per (script, target) pair and joins them all. One
        item's failure never cancels or hides another's result.
        """
        targets = [target] if isinstance(target, InjectionTarget) else list(target)
        pairs = [(script, item) for item in targets for script in scripts]
        started = time.perf_counter()
        audit("BATCH_START", {"scripts": len(scripts), "targets": len(targets)}, "INFO")

        results = await asyncio.gather(
            *(self.inject_one(script, item, mode) for script, item in pairs),
            return_exceptions=True,
        )

        report = BatchReport()
        for (script, _item), result in zip(pairs, results):
            if isinstance(result, BaseException):
                outcome = InjectionOutcome(
                    script_id=script.id,
                    script_name=script.meta.name,
                    mode=self._config_for(mode).mode,
                )
                outcome.fail(result)
                result = outcome
            report.outcomes.append(result)

        audit(
            "BATCH_DONE",
            {
                "total": report.total,
                "succeeded": report.succeeded,
                "failed": report.failed,
                "success_rate": report.success_rate,
                "duration_ms": elapsed_ms(started, time.perf_counter()),
            },
            "INFO",
        )
        for index, outcome in enumerate(report.outcomes):
            if not outcome.success:
                audit(
                    "BATCH_ITEM_FAILED",
                    {
                        "batch_index": index,
                        "script_id": outcome.script_id,
                        "error": (outcome.error or {}).get("message", "unknown"),
                    },
                    "ERROR",
                )
        return report

    async def inject_matching(self, scripts, target, mode=None):
        selected = [
            script for script in scripts if script.enabled and matches(target.url, script.meta.match)
        ]
        for script in selected:
            audit("AUTO_INJECT", {"script_id": script.id, "url": target.url}, "INFO")
        return await self.inject_batch(selected, target, mode)

    async def release(self, script_ids=None):
        """Unregisters scripts when the page context that asked for them goes away."""
        registration = self.context.registration
        if script_ids is None:
            self.context.gm_api.clear_script_cache()
            return await registration.unregister_all()
        count = 0
        for script_id in script_ids:
            self.context.gm_api.clear_script_cache(script_id)
            if await registration.unregister(script_id):
                count += 1
        return count

    async def handle_gm_call(self, action, payload=None):
        """Answers a GM_* call relayed from an injected script."""
        return await self.context.gm_api.handle_call(action, payload)

    async def diagnostics(self):
        return {
            "mode": self.config.mode,
            "capability_available": await self.context.probe.is_available(),
            "strategy_counts": dict(self._strategy_counts),
        }

    async def engine_info(self):
        info = mode_info(self.config.mode)
        features = dict(info["features"], emergency_fallback=self.config.emergency_fallback)
        return {
            "engine": "InjectionEngine",
            "version": ENGINE_VERSION,
            "mode": info["mode"],
            "compliance": {
                "store_compliant": info["store_compliant"],
                "script_validation": info["store_compliant"],
                **compliance_info(),
            },
            "features": features,
            "capability_available": await self.context.probe.is_available(),
            "registered_scripts": self.context.registration.registered_ids(),
            "strategies": {
                "compliant": CompliantStrategy.strategy_info(),
                "permissive": PermissiveStrategy.strategy_info(),
                "emergency": EmergencyStrategy.strategy_info(),
            },
        }

    async def health_check(self):
        issues = []
        features = self.config.features()
        permissions = self.context.permissions

        if features["registration_api"] and self.context.registration_port is None:
            issues.append("Registration primitive not available but feature is enabled")

        if permissions is not None:
            try:
                for name in REQUIRED_PERMISSIONS:
                    if not await permissions.has_permission(name):
                        issues.append(f"Missing required permission: {name}")
                if features["registration_api"] and not await permissions.has_permission(
                    self.config.registration_permission
                ):
                    issues.append(
                        f"Missing {self.config.registration_permission} permission but feature is enabled"
                    )
            except Exception as exc:
                issues.append(f"Permission check failed: {exc}")

        if not issues:
            status = "healthy"
        elif any("required permission" in issue for issue in issues):
            status = "unhealthy"
        else:
            status = "degraded"
        audit("HEALTH_CHECK", {"status": status, "issues": len(issues)}, "INFO")
        return {"status": status, "issues": issues}
