class InjectGuardError(RuntimeError):
    def __init__(self, message, *, code="injectguard_error", retryable=False):
        super().__init__(message)
        self.code = str(code)
        self.retryable = bool(retryable)


class ValidationError(InjectGuardError):
    """Strict-mode rejection of a script with non-compliant constructs."""

    def __init__(self, message, issues=()):
        super().__init__(message, code="validation_failed", retryable=False)
        self.issues = tuple(issues)


class CapabilityUnavailable(InjectGuardError):
    """The advanced registration primitive cannot be used right now."""

    def __init__(self, message, reason="unknown"):
        super().__init__(message, code="capability_unavailable", retryable=True)
        self.reason = str(reason)


class ExecutionFailure(InjectGuardError):
    """An execution strategy (or every tier inside it) failed."""

    def __init__(self, message, *, tier="compliant", attempts=()):
        super().__init__(message, code="execution_failed", retryable=True)
        self.tier = str(tier)
        self.attempts = tuple(attempts)


class BridgeClientError(InjectGuardError):
    def __init__(self, message, *, code="bridge_error", retryable=True):
        super().__init__(message, code=code, retryable=retryable)


def to_error_dict(exc):
    if exc is None:
        return None
    payload = {
        "type": type(exc).__name__,
        "code": getattr(exc, "code", "unexpected_error"),
        "message": str(exc),
        "retryable": bool(getattr(exc, "retryable", False)),
    }
    issues = getattr(exc, "issues", None)
    if issues:
        payload["issues"] = list(issues)
    tier = getattr(exc, "tier", None)
    if tier:
        payload["tier"] = tier
    reason = getattr(exc, "reason", None)
    if isinstance(reason, str) and reason:
        payload["reason"] = reason
    return payload
