from .config import EngineConfig, load_config
from .engine import EngineContext, InjectionEngine
from .errors import CapabilityUnavailable, ExecutionFailure, ValidationError
from .events import GuidanceEventBus
from .gm_api import GMApiDispatcher
from .models import InjectionTarget, ScriptMeta, ScriptUnit

__all__ = [
    "CapabilityUnavailable",
    "EngineConfig",
    "EngineContext",
    "ExecutionFailure",
    "GMApiDispatcher",
    "GuidanceEventBus",
    "InjectionEngine",
    "InjectionTarget",
    "ScriptMeta",
    "ScriptUnit",
    "ValidationError",
    "load_config",
]
