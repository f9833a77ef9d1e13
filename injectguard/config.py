import os
from dataclasses import dataclass, replace
from pathlib import Path

import yaml

from .utils import audit, is_truthy

DEFAULT_MODE = "strict"

_BASE_PERMISSIONS = ("activeTab", "storage", "scripting", "tabs", "userScripts")

MODES = {
    "strict": {
        "name": "Store Compliant",
        "description": "Only static, non-code-generating primitives. Non-compliant scripts are refused.",
        "features": {
            "registration_api": True,
            "legacy_injection": False,
            "dynamic_code_execution": False,
            "strict_csp": True,
            "emergency_fallback": False,
        },
        "permissions": _BASE_PERMISSIONS,
        "store_compliant": True,
    },
    "hybrid": {
        "name": "Hybrid",
        "description": "Compliant execution first, permissive fallback when it fails.",
        "features": {
            "registration_api": True,
            "legacy_injection": False,
            "dynamic_code_execution": True,
            "strict_csp": True,
            "emergency_fallback": False,
        },
        "permissions": _BASE_PERMISSIONS,
        "store_compliant": False,
    },
    "permissive": {
        "name": "Maximum Compatibility",
        "description": "Layered string-to-code fallbacks for scripts the compliant path cannot run.",
        "features": {
            "registration_api": True,
            "legacy_injection": True,
            "dynamic_code_execution": True,
            "strict_csp": True,
            "emergency_fallback": True,
        },
        "permissions": _BASE_PERMISSIONS,
        "store_compliant": False,
    },
}

PRIVILEGED_GRANTS = (
    "GM_setValue",
    "GM_getValue",
    "GM_xmlhttpRequest",
    "GM_getResourceText",
    "GM_getResourceURL",
)


@dataclass(frozen=True)
class EngineConfig:
    mode: str = DEFAULT_MODE
    emergency_fallback: bool = False
    probe_ttl_ms: float = 30000.0
    probe_retry_delay_ms: float = 150.0
    probe_retries: int = 1
    registration_permission: str = "userScripts"
    privileged_grants: tuple = PRIVILEGED_GRANTS
    bridge_url: str = "http://127.0.0.1:8765"
    bridge_timeout_ms: float = 5000.0
    bridge_max_retries: int = 1
    xhr_timeout_ms: float = 30000.0

    def __post_init__(self):
        # Directly built configs get the same mode rules as load_config.
        mode = normalize_mode(self.mode)
        object.__setattr__(self, "mode", mode)
        if mode == "strict" and self.emergency_fallback:
            object.__setattr__(self, "emergency_fallback", False)

    def features(self):
        return dict(MODES[self.mode]["features"], emergency_fallback=self.emergency_fallback)

    def with_mode(self, mode):
        normalized = normalize_mode(mode)
        if normalized == self.mode:
            return self
        return replace(self, mode=normalized)


def normalize_mode(mode, default=DEFAULT_MODE):
    text = str(mode or "").strip().lower()
    aliases = {"store": "strict", "compliant": "strict", "compat": "permissive", "legacy": "permissive"}
    text = aliases.get(text, text)
    if text in MODES:
        return text
    if text:
        audit("LOAD_CONFIG", f"Unknown injection mode '{mode}', using '{default}'", "WARNING")
    return default


def mode_info(mode):
    normalized = normalize_mode(mode)
    info = MODES[normalized]
    return {
        "mode": normalized,
        "name": info["name"],
        "description": info["description"],
        "store_compliant": info["store_compliant"],
        "features": dict(info["features"]),
        "permissions": list(info["permissions"]),
    }


def _resolve_emergency(mode, raw):
    if mode == "strict":
        return False
    if raw is None:
        return bool(MODES[mode]["features"]["emergency_fallback"])
    return is_truthy(raw)


def _float_value(raw, default, minimum=0.0):
    if raw is None:
        return float(default)
    try:
        return max(minimum, float(raw))
    except (TypeError, ValueError):
        return float(default)


def _int_value(raw, default, minimum=0):
    if raw is None:
        return int(default)
    try:
        return max(minimum, int(raw))
    except (TypeError, ValueError):
        return int(default)


def _resolve_config_path(path):
    candidate = Path(path)
    if candidate.is_absolute():
        return candidate

    cwd_candidate = Path.cwd() / candidate
    if cwd_candidate.exists():
        return cwd_candidate

    # Fallback to repository root (../injectguard.yaml from injectguard/config.py)
    return Path(__file__).resolve().parents[1] / candidate


def _read_config_raw(path):
    env_config = os.environ.get("INJECTGUARD_CONFIG_CONTENT")
    if env_config:
        audit("LOAD_CONFIG", "Loading config from environment variable", "INFO")
        return env_config, "env"
    with open(path, "r", encoding="utf-8") as f:
        return f.read(), "file"


def _load_raw_config(path):
    source = "file"
    try:
        raw, source = _read_config_raw(path)
        loaded = yaml.safe_load(raw)
        return loaded if isinstance(loaded, dict) else {}
    except FileNotFoundError:
        audit("LOAD_CONFIG", f"Config file not found: {path}, using defaults", "INFO")
        return {}
    except yaml.YAMLError as e:
        if source == "env":
            audit("LOAD_CONFIG", f"Invalid config in env var: {e}", "ERROR")
        else:
            audit("LOAD_CONFIG", f"Invalid config file at {path}: {e}", "ERROR")
        return {}


def load_config(path="injectguard.yaml"):
    config_path = _resolve_config_path(path)
    data = _load_raw_config(config_path)

    probe_cfg = data.get("probe", {})
    if not isinstance(probe_cfg, dict):
        probe_cfg = {}
    bridge_cfg = data.get("bridge", {})
    if not isinstance(bridge_cfg, dict):
        bridge_cfg = {}
    gm_cfg = data.get("gm_api", {})
    if not isinstance(gm_cfg, dict):
        gm_cfg = {}

    mode = normalize_mode(os.environ.get("INJECTGUARD_MODE") or data.get("mode", DEFAULT_MODE))
    emergency_raw = os.environ.get("INJECTGUARD_EMERGENCY_FALLBACK", data.get("emergency_fallback"))

    grants_raw = data.get("privileged_grants", PRIVILEGED_GRANTS)
    if isinstance(grants_raw, (list, tuple, set)):
        privileged = tuple(str(item).strip() for item in grants_raw if str(item).strip())
    else:
        privileged = PRIVILEGED_GRANTS

    config = EngineConfig(
        mode=mode,
        emergency_fallback=_resolve_emergency(mode, emergency_raw),
        probe_ttl_ms=_float_value(
            os.environ.get("INJECTGUARD_PROBE_TTL_MS", probe_cfg.get("ttl_ms")), 30000.0
        ),
        probe_retry_delay_ms=_float_value(
            os.environ.get("INJECTGUARD_PROBE_RETRY_DELAY_MS", probe_cfg.get("retry_delay_ms")), 150.0
        ),
        probe_retries=_int_value(
            os.environ.get("INJECTGUARD_PROBE_RETRIES", probe_cfg.get("retries")), 1
        ),
        registration_permission=str(probe_cfg.get("permission", "userScripts")),
        privileged_grants=privileged or PRIVILEGED_GRANTS,
        bridge_url=str(
            os.environ.get("INJECTGUARD_BRIDGE_URL")
            or bridge_cfg.get("url")
            or "http://127.0.0.1:8765"
        ),
        bridge_timeout_ms=_float_value(bridge_cfg.get("timeout_ms"), 5000.0, minimum=50.0),
        bridge_max_retries=_int_value(bridge_cfg.get("max_retries"), 1),
        xhr_timeout_ms=_float_value(gm_cfg.get("xhr_timeout_ms"), 30000.0, minimum=50.0),
    )
    audit(
        "LOAD_CONFIG",
        {"mode": config.mode, "emergency_fallback": config.emergency_fallback, "path": config_path},
        "INFO",
    )
    return config
