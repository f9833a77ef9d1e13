import argparse
import json
from pathlib import Path
from typing import Optional, Sequence

from .config import load_config, mode_info
from .models import ScriptUnit
from .validator import ComplianceValidator, compliance_info


def _state_tag(safe: bool) -> str:
    return "[OK]" if safe else "[ERR]"


def _render_validation(results: list[tuple[str, object]]) -> str:
    lines = ["InjectGuard Compliance Report", "=" * 29]
    for path, result in results:
        lines.append(f"{_state_tag(result.safe):6} {path}")
        for issue in result.issues:
            lines.append(f"       - {issue}")
    flagged = sum(1 for _path, result in results if not result.safe)
    lines.append("")
    lines.append(f"{len(results)} file(s) scanned, {flagged} with issues.")
    if flagged:
        lines.append("Strict mode refuses flagged scripts. Alternatives:")
        for alternative in compliance_info()["alternatives"]:
            lines.append(f"- {alternative}")
    return "\n".join(lines)


def _parse_validate_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Statically scan user scripts for non-compliant constructs.")
    parser.add_argument("files", nargs="+", help="Script files to scan.")
    parser.add_argument("--json", action="store_true", dest="as_json", help="Print raw results as JSON.")
    return parser.parse_args(argv)


def validate_main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_validate_args(argv)
    validator = ComplianceValidator()
    results = []
    for raw_path in args.files:
        path = Path(raw_path).expanduser()
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as exc:
            print(f"Cannot read {path}: {exc}")
            return 2
        results.append((str(path), validator.validate(ScriptUnit(id=str(path), content=content))))

    if args.as_json:
        payload = [
            {"path": path, "safe": result.safe, "issues": list(result.issues)}
            for path, result in results
        ]
        print(json.dumps(payload, indent=2))
    else:
        print(_render_validation(results))

    return 0 if all(result.safe for _path, result in results) else 1


def _render_info(info: dict, config) -> str:
    lines = [f"InjectGuard mode: {info['mode']} ({info['name']})", info["description"], ""]
    features = dict(info["features"], emergency_fallback=config.emergency_fallback)
    for name, enabled in features.items():
        lines.append(f"{'[ON]' if enabled else '[OFF]':6} {name}")
    lines.append("")
    lines.append(
        f"Probe TTL: {config.probe_ttl_ms:.0f} ms, "
        f"retry delay: {config.probe_retry_delay_ms:.0f} ms, "
        f"retries: {config.probe_retries}"
    )
    lines.append(f"Host permissions: {', '.join(info['permissions'])}")
    return "\n".join(lines)


def _parse_info_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Show the effective injection mode and feature table.")
    parser.add_argument("--config", default="injectguard.yaml", help="Path to injectguard.yaml.")
    parser.add_argument("--mode", default=None, help="Override the configured mode.")
    parser.add_argument("--json", action="store_true", dest="as_json", help="Print raw info JSON.")
    return parser.parse_args(argv)


def info_main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_info_args(argv)
    config = load_config(args.config)
    if args.mode:
        config = config.with_mode(args.mode)
    info = mode_info(config.mode)

    if args.as_json:
        payload = dict(info)
        payload["features"] = config.features()
        payload["probe"] = {
            "ttl_ms": config.probe_ttl_ms,
            "retry_delay_ms": config.probe_retry_delay_ms,
            "retries": config.probe_retries,
        }
        print(json.dumps(payload, indent=2))
    else:
        print(_render_info(info, config))
    return 0


if __name__ == "__main__":
    raise SystemExit(validate_main())
