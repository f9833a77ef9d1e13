import logging
import os
import sys

_LOGGER_NAME = "InjectGuard"


def setup_logging():
    """Configures logging for InjectGuard."""
    logger = logging.getLogger(_LOGGER_NAME)
    if getattr(logger, "_injectguard_configured", False):
        return logger

    level_name = str(os.environ.get("INJECTGUARD_LOG_LEVEL", "INFO")).strip().upper()
    logger.setLevel(getattr(logging, level_name, logging.INFO))

    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')

    # Console Handler
    ch = logging.StreamHandler(sys.stdout)
    ch.setFormatter(formatter)
    logger.addHandler(ch)

    # File Handler, opt-in so imports never create files in the cwd
    audit_path = str(os.environ.get("INJECTGUARD_AUDIT_LOG", "")).strip()
    if audit_path:
        fh = logging.FileHandler(audit_path)
        fh.setFormatter(formatter)
        logger.addHandler(fh)

    logger._injectguard_configured = True
    return logger


logger = setup_logging()

_STATUS_LEVELS = {
    "DEBUG": logging.DEBUG,
    "WARNING": logging.WARNING,
    "FALLBACK": logging.WARNING,
    "BLOCKED": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def _render_details(details):
    if isinstance(details, dict):
        return ", ".join(f"{key}={details[key]}" for key in sorted(details))
    return str(details)


def audit(action, details, status="ALLOWED"):
    """Logs an action to the audit log."""
    level = _STATUS_LEVELS.get(str(status).upper(), logging.INFO)
    logger.log(level, f"[{status}] {action}: {_render_details(details)}")


def is_truthy(value):
    return str(value).strip().lower() in ("true", "1", "yes", "on")


def elapsed_ms(started, now):
    return round((now - started) * 1000.0, 2)
