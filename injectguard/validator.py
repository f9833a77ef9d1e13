import re

from .models import ValidationResult
from .utils import audit

_STRING_ARG = r"""\s*(?:["'`])"""

# (construct name, pattern). Scanned against the literal source only.
_RULES = (
    ("eval()", re.compile(r"(?<![\w$.])eval\s*\(")),
    ("window.eval()", re.compile(r"\b(?:window|self|globalThis)\s*\.\s*eval\s*\(")),
    ("new Function()", re.compile(r"\bnew\s+Function\s*\(")),
    ("Function() constructor", re.compile(r"(?<![\w$.])(?<!new )Function\s*\(")),
    ("string setTimeout()", re.compile(r"\bsetTimeout\s*\(" + _STRING_ARG)),
    ("string setInterval()", re.compile(r"\bsetInterval\s*\(" + _STRING_ARG)),
    ("string setImmediate()", re.compile(r"\bsetImmediate\s*\(" + _STRING_ARG)),
    ("execScript()", re.compile(r"\bexecScript\s*\(")),
    ("innerHTML assignment", re.compile(r"\.\s*innerHTML\s*(?:\+?=)(?!=)")),
    ("outerHTML assignment", re.compile(r"\.\s*outerHTML\s*(?:\+?=)(?!=)")),
    ("insertAdjacentHTML()", re.compile(r"\.\s*insertAdjacentHTML\s*\(")),
    ("document.write()", re.compile(r"\bdocument\s*\.\s*write(?:ln)?\s*\(")),
    ("dynamic import()", re.compile(r"(?<![\w$.])import\s*\(\s*(?![\"'`])")),
)

RESTRICTIONS = (
    "No dynamic code execution (eval, Function constructor)",
    "No string-based setTimeout/setInterval",
    "Limited innerHTML usage",
    "No dynamic script loading",
)

ALTERNATIVES = (
    "Use the registration primitive for script execution",
    "Use static execution functions with literal arguments",
    "Use trusted-content policies for safe markup handling",
    "Use CSP nonces for script validation",
)


def _line_of(text, offset):
    return text.count("\n", 0, offset) + 1


class ComplianceValidator:
    """Static, lexical scan for string-to-code and unchecked markup constructs."""

    def __init__(self, rules=_RULES):
        self.rules = tuple(rules)

    def validate(self, script):
        source = str(getattr(script, "content", script) or "")
        issues = []
        for construct, pattern in self.rules:
            match = pattern.search(source)
            if match is None:
                continue
            issues.append(f"{construct} at line {_line_of(source, match.start())}")

        result = ValidationResult(safe=not issues, issues=tuple(issues))
        script_id = getattr(script, "id", "inline")
        if result.safe:
            audit("COMPLIANCE", {"script_id": script_id, "safe": True}, "DEBUG")
        else:
            audit("COMPLIANCE", {"script_id": script_id, "issues": "; ".join(issues)}, "WARNING")
        return result


def compliance_info():
    return {"restrictions": list(RESTRICTIONS), "alternatives": list(ALTERNATIVES)}
