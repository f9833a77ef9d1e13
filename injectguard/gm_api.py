import asyncio
import time
from urllib.parse import urlparse

import requests

from .utils import audit, elapsed_ms

GM_ACTIONS = (
    "GM_setValue",
    "GM_getValue",
    "GM_getResourceText",
    "GM_getResourceURL",
    "GM_xmlhttpRequest",
)


def _success(data=None):
    return {"status": "success", "data": data}


def _error(message):
    return {"status": "error", "error": str(message)}


def connect_allowed(hostname, whitelist):
    """
    True when ``hostname`` is covered by a script's ``@connect`` list: ``*``,
    an exact host, or a parent domain of it.
    """
    host = str(hostname or "").strip().lower().rstrip(".")
    if not host:
        return False
    for raw in whitelist or ():
        domain = str(raw).strip().lower().rstrip(".")
        if not domain:
            continue
        if domain == "*" or host == domain or host.endswith("." + domain):
            return True
    return False


class GMApiDispatcher:
    """
    Serves privileged GM_* calls forwarded from the isolated-world bridge.

    Scripts must be cached before their calls are accepted. Network access
    is limited to the script's ``@connect`` whitelist; resources come from
    the script's own ``@resource`` map. Value storage is delegated to an
    optional ``storage`` port with ``get(key)`` / ``set(key, value)``
    coroutines; without one the storage calls report an error.
    """

    def __init__(self, storage=None, timeout_ms=30000.0):
        self.storage = storage
        self.timeout_seconds = max(0.05, float(timeout_ms) / 1000.0)
        self._scripts = {}
        self._resource_text = {}
        self._handlers = {
            "GM_setValue": self._set_value,
            "GM_getValue": self._get_value,
            "GM_getResourceText": self._get_resource_text,
            "GM_getResourceURL": self._get_resource_url,
            "GM_xmlhttpRequest": self._xmlhttp_request,
        }

    @classmethod
    def from_config(cls, config, storage=None):
        return cls(storage, config.xhr_timeout_ms)

    def cache_script(self, script):
        self._scripts[script.id] = script

    def cache_scripts(self, scripts):
        for script in scripts:
            self.cache_script(script)

    def clear_script_cache(self, script_id=None):
        if script_id is None:
            self._scripts.clear()
            self._resource_text.clear()
            return
        self._scripts.pop(script_id, None)
        for key in [key for key in self._resource_text if key[0] == script_id]:
            del self._resource_text[key]

    def cached_ids(self):
        return list(self._scripts)

    async def handle_call(self, action, payload=None):
        """Runs one GM_* call and always answers with a status envelope."""
        payload = payload if isinstance(payload, dict) else {}
        started = time.perf_counter()
        handler = self._handlers.get(action)
        if handler is None:
            audit("GM_API", {"action": action, "error": "unknown action"}, "WARNING")
            return _error(f"Unknown GM API: {action}")

        try:
            result = await handler(payload)
        except Exception as exc:
            audit(
                "GM_API",
                {"action": action, "error": exc, "duration_ms": elapsed_ms(started, time.perf_counter())},
                "ERROR",
            )
            return _error(exc)

        audit(
            "GM_API",
            {
                "action": action,
                "status": result["status"],
                "duration_ms": elapsed_ms(started, time.perf_counter()),
            },
            "DEBUG",
        )
        return result

    def _script_for(self, payload):
        return self._scripts.get(str(payload.get("script_id") or ""))

    def _storage_key(self, payload):
        script_id = str(payload.get("script_id") or "")
        return f"{script_id}:{payload['key']}" if script_id else str(payload["key"])

    async def _set_value(self, payload):
        if not payload.get("key"):
            audit("GM_API", "GM_setValue called without key", "WARNING")
            return _error("Missing key parameter")
        if self.storage is None:
            return _error("Value storage is not available")
        await self.storage.set(self._storage_key(payload), payload.get("value"))
        return _success()

    async def _get_value(self, payload):
        if not payload.get("key"):
            audit("GM_API", "GM_getValue called without key", "WARNING")
            return _error("Missing key parameter")
        if self.storage is None:
            return _error("Value storage is not available")
        value = await self.storage.get(self._storage_key(payload))
        return _success(payload.get("default") if value is None else value)

    def _resource(self, payload):
        name = payload.get("resource_name")
        if not payload.get("script_id") or not name:
            return None, None, _error("Missing script_id or resource_name parameter")
        script = self._script_for(payload)
        if script is None:
            return None, None, _error("Script not found")
        url = script.meta.resources.get(name)
        if not url:
            return None, None, _error(f"Resource not found: {name}")
        return script, url, None

    async def _get_resource_url(self, payload):
        _script, url, error = self._resource(payload)
        return error or _success(url)

    async def _get_resource_text(self, payload):
        script, url, error = self._resource(payload)
        if error:
            return error
        key = (script.id, payload["resource_name"])
        if key not in self._resource_text:
            response = await asyncio.to_thread(requests.get, url, timeout=self.timeout_seconds)
            if response.status_code >= 400:
                return _error(f"Resource fetch failed ({response.status_code}): {url}")
            self._resource_text[key] = response.text
        return _success(self._resource_text[key])

    async def _xmlhttp_request(self, payload):
        details = payload.get("details")
        if not payload.get("script_id") or not isinstance(details, dict):
            return _error("Missing script_id or details parameter")
        script = self._script_for(payload)
        if script is None:
            return _error("Script not found")

        url = str(details.get("url") or "")
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            return _error(f"Invalid request URL: {url}")
        if not connect_allowed(parsed.hostname, script.meta.connect):
            audit(
                "GM_XHR",
                {"script_id": script.id, "host": parsed.hostname, "reason": "not in @connect"},
                "BLOCKED",
            )
            return _error(f"Domain not whitelisted in @connect: {parsed.hostname}")

        try:
            response = await asyncio.to_thread(
                requests.request,
                str(details.get("method") or "GET").upper(),
                url,
                headers=details.get("headers") or None,
                data=details.get("data"),
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            audit("GM_XHR", {"script_id": script.id, "host": parsed.hostname, "error": exc}, "ERROR")
            return _error(exc)

        audit("GM_XHR", {"script_id": script.id, "host": parsed.hostname, "status": response.status_code}, "ALLOWED")
        return _success(
            {
                "response_text": response.text,
                "status": response.status_code,
                "status_text": response.reason,
                "response_headers": "\n".join(f"{key}: {value}" for key, value in response.headers.items()),
                "final_url": response.url,
            }
        )
