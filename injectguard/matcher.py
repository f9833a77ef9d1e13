import re

from .utils import audit

_ALL_URLS = re.compile(r"^(https?|file|ftp|chrome-extension)://")
_SCHEME = re.compile(r"^(https?|\*)://")


def pattern_to_regex(pattern):
    """
    Converts a match pattern (e.g. ``https://*.example.com/*``) into a
    compiled regex. Raises ValueError for patterns without a valid scheme.
    """
    if pattern == "<all_urls>":
        return _ALL_URLS

    if not _SCHEME.match(pattern):
        raise ValueError(f"Invalid match pattern: {pattern}. Must start with a valid scheme.")

    scheme, rest = pattern.split("://", 1)
    host, _, path = rest.partition("/")

    scheme_regex = "(https?|ftp)" if scheme == "*" else re.escape(scheme)

    host_regex = re.escape(host).replace(r"\*", "*")
    if host_regex.startswith(r"*\."):
        # Subdomain wildcard also matches the bare domain.
        host_regex = r"([^/]+\.)?" + host_regex[3:]
    host_regex = host_regex.replace("*", "[^/]*")

    path_regex = "/" + re.escape(path).replace(r"\*", ".*")
    return re.compile(f"^{scheme_regex}://{host_regex}{path_regex}$")


def matches(url, patterns):
    if not url:
        return False
    for pattern in patterns or ():
        try:
            if pattern_to_regex(pattern).match(url):
                return True
        except ValueError as exc:
            audit("MATCHER", {"url": url, "pattern": pattern, "error": exc}, "ERROR")
    return False
