import enum
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from .errors import to_error_dict


class RunAt(str, enum.Enum):
    START = "start"
    END = "end"
    IDLE = "idle"

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        if text.startswith("document-") or text.startswith("document_"):
            text = text[len("document-"):]
        for member in cls:
            if member.value == text:
                return member
        return cls.END


class SandboxMode(str, enum.Enum):
    RAW = "raw"
    ISOLATED = "isolated"
    CUSTOM = "custom"

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        for member in cls:
            if member.value == text:
                return member
        return cls.RAW


class Method(str, enum.Enum):
    DIRECT = "direct"
    CONTENT_SCRIPT_ISOLATED = "content-script-isolated"
    REGISTRATION_API = "registration-api"
    REGISTRATION_API_DYNAMIC = "registration-api-dynamic"


class Isolation(str, enum.Enum):
    SHARED = "shared"
    ISOLATED_SANDBOX = "isolated-sandbox"


class GuidanceKind(str, enum.Enum):
    PERMISSION_DENIED = "permission-denied"
    CAPABILITY_UNAVAILABLE = "capability-unavailable"
    COMPATIBILITY_NOTICE = "compatibility-notice"


class EngineState(str, enum.Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    SELECTING = "selecting"
    EXECUTING = "executing"
    FALLBACK_EXECUTING = "fallback-executing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def _as_tuple(value):
    if value is None:
        return tuple()
    if isinstance(value, str):
        return (value,) if value.strip() else tuple()
    return tuple(str(item) for item in value if str(item).strip())


@dataclass(frozen=True)
class ScriptMeta:
    name: str = "unnamed"
    namespace: str = ""
    version: str = ""
    description: str = ""
    author: str = ""
    grants: tuple = ()
    run_at: RunAt = RunAt.END
    sandbox: SandboxMode = SandboxMode.RAW
    match: tuple = ()
    connect: tuple = ()
    resources: dict = field(default_factory=dict)
    requires: tuple = ()

    @classmethod
    def from_dict(cls, raw):
        """Normalizes the loose record produced by the metadata parser."""
        raw = raw if isinstance(raw, dict) else {}
        resources = raw.get("resource", raw.get("resources", {}))
        return cls(
            name=str(raw.get("name", "unnamed")),
            namespace=str(raw.get("namespace", "")),
            version=str(raw.get("version", "")),
            description=str(raw.get("description", "")),
            author=str(raw.get("author", "")),
            grants=_as_tuple(raw.get("grant", raw.get("grants"))),
            run_at=RunAt.parse(raw.get("run-at", raw.get("run_at"))),
            sandbox=SandboxMode.parse(raw.get("sandbox")),
            match=_as_tuple(raw.get("match")),
            connect=_as_tuple(raw.get("connect")),
            resources=dict(resources) if isinstance(resources, dict) else {},
            requires=_as_tuple(raw.get("require", raw.get("requires"))),
        )

    @property
    def effective_grants(self):
        return tuple(grant for grant in self.grants if grant != "none")

    @property
    def has_grants(self):
        return bool(self.effective_grants)


@dataclass
class ScriptUnit:
    id: str
    content: str
    meta: ScriptMeta = field(default_factory=ScriptMeta)
    enabled: bool = True
    # Written by the engine for diagnostics only.
    strategy: Optional["StrategyDescriptor"] = None


@dataclass(frozen=True)
class InjectionTarget:
    tab_id: int
    url: str = ""
    all_frames: bool = True
    csp_nonce: Optional[str] = None
    trusted_types: bool = False


@dataclass(frozen=True)
class CapabilityState:
    available: bool
    probed_at: float
    reason: str = ""


@dataclass(frozen=True)
class ValidationResult:
    safe: bool
    issues: tuple = ()


@dataclass(frozen=True)
class StrategyDescriptor:
    method: Method
    isolation: Isolation
    timing: RunAt
    reason: str
    score: int = 0

    def to_dict(self):
        return {
            "method": self.method.value,
            "isolation": self.isolation.value,
            "timing": self.timing.value,
            "reason": self.reason,
            "score": self.score,
        }


@dataclass(frozen=True)
class GuidanceEvent:
    kind: GuidanceKind
    data: dict = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class AttemptRecord:
    tier: str
    primitive: str
    ok: bool
    error: str = ""


@dataclass
class InjectionOutcome:
    script_id: str
    script_name: str
    mode: str
    state: EngineState = EngineState.IDLE
    success: bool = False
    fallback: bool = False
    tier: str = ""
    strategy: Optional[StrategyDescriptor] = None
    validation: Optional[ValidationResult] = None
    attempts: list = field(default_factory=list)
    error: Optional[dict] = None
    duration_ms: float = 0.0

    def fail(self, exc):
        self.state = EngineState.FAILED
        self.success = False
        self.error = to_error_dict(exc)

    def to_dict(self):
        return {
            "script_id": self.script_id,
            "script_name": self.script_name,
            "mode": self.mode,
            "state": self.state.value,
            "success": self.success,
            "fallback": self.fallback,
            "tier": self.tier,
            "strategy": self.strategy.to_dict() if self.strategy else None,
            "validation": (
                {"safe": self.validation.safe, "issues": list(self.validation.issues)}
                if self.validation
                else None
            ),
            "attempts": [attempt.__dict__ for attempt in self.attempts],
            "error": self.error,
            "duration_ms": self.duration_ms,
        }


@dataclass
class BatchReport:
    outcomes: list = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def succeeded(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.success)

    @property
    def failed(self) -> int:
        return self.total - self.succeeded

    @property
    def success_rate(self) -> int:
        if not self.outcomes:
            return 0
        return round(self.succeeded * 100 / self.total)

    def failures(self):
        return [outcome for outcome in self.outcomes if not outcome.success]

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "success_rate": self.success_rate,
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
        }
