import enum
import time

from .errors import CapabilityUnavailable, ExecutionFailure, ValidationError
from .models import AttemptRecord, Isolation, Method, SandboxMode, StrategyDescriptor
from .registration import host_world
from .utils import audit, elapsed_ms

TRUSTED_TYPES_POLICY = "injectguard-injection"


class Primitive(str, enum.Enum):
    STATIC_FUNCTION = "static-function"
    API_BRIDGE = "api-bridge"
    SCRIPT_TAG = "script-tag"
    FUNCTION_SYNTHESIS = "function-synthesis"
    DIRECT_EVAL = "direct-eval"


def _isolation_for(script):
    if script.meta.has_grants or script.meta.sandbox != SandboxMode.RAW:
        return Isolation.ISOLATED_SANDBOX
    return Isolation.SHARED


class CompliantStrategy:
    """
    Runs scripts using only static primitives.
    The script source is passed as opaque data to a fixed executor; nothing
    here builds code from strings.
    """

    tier = "compliant"

    def __init__(self, host, registration, probe):
        self.host = host
        self.registration = registration
        self.probe = probe

    async def inject(self, script, target, *, validation=None, strict=False):
        started = time.perf_counter()
        audit(
            "COMPLIANT_INJECTION",
            {"script_id": script.id, "script_name": script.meta.name, "tab_id": target.tab_id},
            "INFO",
        )
        if validation is not None and not validation.safe:
            if strict:
                audit(
                    "COMPLIANT_INJECTION",
                    {"script_id": script.id, "issues": "; ".join(validation.issues)},
                    "BLOCKED",
                )
                raise ValidationError(
                    f"Script {script.meta.name} contains non-compliant code: {', '.join(validation.issues)}",
                    validation.issues,
                )
            audit("COMPLIANT_INJECTION", {"script_id": script.id, "advisory_issues": len(validation.issues)}, "WARNING")

        if await self.probe.is_available():
            await self._via_registration(script)
            primitive = "registration"
        else:
            await self._via_static_execution(script, target)
            primitive = Primitive.STATIC_FUNCTION.value

        audit(
            "COMPLIANT_INJECTION",
            {
                "script_id": script.id,
                "primitive": primitive,
                "duration_ms": elapsed_ms(started, time.perf_counter()),
            },
            "ALLOWED",
        )
        return primitive

    async def _via_registration(self, script):
        descriptor = script.strategy
        if descriptor is None or descriptor.method not in (
            Method.REGISTRATION_API,
            Method.REGISTRATION_API_DYNAMIC,
        ):
            descriptor = StrategyDescriptor(
                method=Method.REGISTRATION_API,
                isolation=Isolation.ISOLATED_SANDBOX,
                timing=script.meta.run_at,
                reason="Registration primitive used for compliant execution",
            )
        try:
            await self.registration.register_compliant(script, descriptor)
        except CapabilityUnavailable as exc:
            raise ExecutionFailure(str(exc), tier=self.tier) from exc

    async def _via_static_execution(self, script, target):
        isolation = _isolation_for(script)
        world = "ISOLATED" if isolation == Isolation.ISOLATED_SANDBOX else "MAIN"
        try:
            if isolation == Isolation.ISOLATED_SANDBOX:
                await inject_api_bridge(self.host, script, target)
            await self.host.execute(
                target,
                Primitive.STATIC_FUNCTION.value,
                world,
                [script.content, script.meta.name],
            )
        except Exception as exc:
            raise ExecutionFailure(
                f"Static execution failed for {script.meta.name}: {exc}", tier=self.tier
            ) from exc

    @staticmethod
    def strategy_info():
        return {
            "name": "Compliant Injection Strategy",
            "compliant": True,
            "features": [
                "Registration primitive without wrappers",
                "Static execution fallback with literal arguments",
                "Script content validation",
                "No string-to-code execution",
            ],
        }


async def inject_api_bridge(host, script, target):
    """Publishes the script id and loads the privileged-call bridge into the isolated world."""
    await host.execute(target, Primitive.API_BRIDGE.value, "ISOLATED", [script.id])


class PermissiveStrategy:
    """
    Compliant first, then a layered string-to-code fallback:
    script tag, function synthesis, direct evaluation. Each tier is tried
    and logged on its own; the first one that does not raise wins.
    """

    tier = "permissive"
    TIERS = (Primitive.SCRIPT_TAG, Primitive.FUNCTION_SYNTHESIS, Primitive.DIRECT_EVAL)

    def __init__(self, host, compliant):
        self.host = host
        self.compliant = compliant

    async def inject(self, script, target, *, skip_compliant=False, attempts=None):
        attempts = attempts if attempts is not None else []
        if not skip_compliant:
            try:
                primitive = await self.compliant.inject(script, target)
                attempts.append(AttemptRecord(CompliantStrategy.tier, primitive, True))
                return primitive
            except ExecutionFailure as exc:
                attempts.append(AttemptRecord(CompliantStrategy.tier, "compliant", False, str(exc)))
                audit(
                    "PERMISSIVE_INJECTION",
                    {"script_id": script.id, "compliant_error": exc, "fallback": True},
                    "FALLBACK",
                )

        isolation = _isolation_for(script)
        world = "ISOLATED" if isolation == Isolation.ISOLATED_SANDBOX else "MAIN"
        if isolation == Isolation.ISOLATED_SANDBOX:
            try:
                await inject_api_bridge(self.host, script, target)
            except Exception as exc:
                attempts.append(AttemptRecord(self.tier, Primitive.API_BRIDGE.value, False, str(exc)))
                raise ExecutionFailure(
                    f"API bridge injection failed for {script.meta.name}: {exc}",
                    tier=self.tier,
                    attempts=attempts,
                ) from exc

        errors = []
        for primitive in self.TIERS:
            try:
                await self.host.execute(target, primitive.value, world, self._args(primitive, script, target))
            except Exception as exc:
                errors.append(f"{primitive.value}: {exc}")
                attempts.append(AttemptRecord(self.tier, primitive.value, False, str(exc)))
                audit(
                    "PERMISSIVE_INJECTION",
                    {"script_id": script.id, "primitive": primitive.value, "error": exc},
                    "WARNING",
                )
                continue
            attempts.append(AttemptRecord(self.tier, primitive.value, True))
            audit(
                "PERMISSIVE_INJECTION",
                {"script_id": script.id, "primitive": primitive.value, "world": world},
                "ALLOWED",
            )
            return primitive.value

        audit("PERMISSIVE_INJECTION", {"script_id": script.id, "all_tiers_failed": len(errors)}, "ERROR")
        raise ExecutionFailure(
            f"All permissive methods failed for {script.meta.name}: {'; '.join(errors)}",
            tier=self.tier,
            attempts=attempts,
        )

    def _args(self, primitive, script, target):
        if primitive == Primitive.SCRIPT_TAG:
            return [
                script.content,
                script.meta.name,
                {
                    "nonce": target.csp_nonce,
                    "trusted_types_policy": TRUSTED_TYPES_POLICY if target.trusted_types else None,
                },
            ]
        return [script.content, script.meta.name]

    @staticmethod
    def strategy_info():
        return {
            "name": "Permissive Injection Strategy",
            "compliant": False,
            "features": [
                "Compliant strategy first",
                "Script tag insertion with CSP nonce and trusted-types support",
                "Function synthesis fallback",
                "Direct evaluation as last resort",
            ],
            "warnings": [
                "Synthesises functions from strings",
                "Uses direct evaluation as last resort",
            ],
        }


class EmergencyStrategy:
    """Single direct evaluation in the shared world, the most permissive primitive there is."""

    tier = "emergency"

    def __init__(self, host):
        self.host = host

    async def inject(self, script, target):
        try:
            await self.host.execute(
                target,
                Primitive.DIRECT_EVAL.value,
                host_world(Isolation.SHARED),
                [script.content, script.meta.name],
            )
        except Exception as exc:
            raise ExecutionFailure(
                f"Emergency injection failed for {script.meta.name}: {exc}", tier=self.tier
            ) from exc
        audit("EMERGENCY_INJECTION", {"script_id": script.id, "world": "MAIN"}, "ALLOWED")
        return Primitive.DIRECT_EVAL.value

    @staticmethod
    def strategy_info():
        return {
            "name": "Emergency Injection Strategy",
            "compliant": False,
            "features": ["Direct evaluation in the shared world"],
            "warnings": ["Bypasses isolation"],
        }
