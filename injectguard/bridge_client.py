import asyncio
import time
from urllib.parse import urljoin

import requests

from .errors import BridgeClientError

# A permission request may wait on a human prompt.
PERMISSION_PROMPT_TIMEOUT_SECONDS = 300.0


def _unwrap(response):
    """
    Checks the HTTP status and the bridge envelope `{"ok": bool, "result"|"error"}`
    and returns the result. Raises BridgeClientError, retryable only for 5xx.
    """
    if response.status_code >= 500:
        raise BridgeClientError(
            f"Bridge server error ({response.status_code})",
            code="bridge_server_error",
            retryable=True,
        )
    if response.status_code >= 400:
        raise BridgeClientError(
            f"Bridge request rejected ({response.status_code})",
            code="bridge_bad_request",
            retryable=False,
        )

    envelope = response.json()
    if not isinstance(envelope, dict) or not isinstance(envelope.get("ok"), bool):
        raise BridgeClientError(
            "Bridge response missing boolean 'ok'.",
            code="bridge_invalid_response",
            retryable=False,
        )
    if not envelope["ok"]:
        raise BridgeClientError(
            str(envelope.get("error") or "Bridge reported failure."),
            code="bridge_host_error",
            retryable=False,
        )
    return envelope.get("result")


class HostBridgeClient:
    """
    JSON-over-HTTP client for a browser-side bridge. One object serves as
    the host execution port, the registration port and the permission port.
    Calls are blocking ``requests`` calls moved off the event loop.
    """

    def __init__(self, base_url, timeout_ms=5000, max_retries=1):
        self.base_url = str(base_url or "http://127.0.0.1:8765").rstrip("/")
        self.timeout_seconds = max(0.05, float(timeout_ms) / 1000.0)
        self.max_retries = max(0, int(max_retries))

    @classmethod
    def from_config(cls, config):
        return cls(config.bridge_url, config.bridge_timeout_ms, config.bridge_max_retries)

    def _endpoint(self, path):
        return urljoin(self.base_url + "/", path.lstrip("/"))

    def call(self, path, body, timeout_seconds=None):
        endpoint = self._endpoint(path)
        timeout = timeout_seconds or self.timeout_seconds
        last_error = None

        for attempt in range(self.max_retries + 1):
            try:
                response = requests.post(endpoint, json=body, timeout=timeout)
                return _unwrap(response)
            except requests.Timeout as exc:
                last_error = BridgeClientError(
                    f"Bridge timeout: {exc}", code="bridge_timeout", retryable=True
                )
            except requests.RequestException as exc:
                last_error = BridgeClientError(
                    f"Bridge connection error: {exc}", code="bridge_unreachable", retryable=True
                )
            except ValueError as exc:
                last_error = BridgeClientError(
                    f"Bridge invalid JSON response: {exc}",
                    code="bridge_invalid_response",
                    retryable=False,
                )
            except BridgeClientError as exc:
                last_error = exc

            if attempt < self.max_retries and getattr(last_error, "retryable", False):
                time.sleep(0.05)
                continue
            break

        raise last_error or BridgeClientError("Unknown bridge client error.")

    async def _acall(self, path, body, timeout_seconds=None):
        return await asyncio.to_thread(self.call, path, body, timeout_seconds)

    async def execute(self, target, primitive, world, args):
        return await self._acall(
            "/v1/execute",
            {
                "target": {"tab_id": target.tab_id, "all_frames": target.all_frames},
                "primitive": primitive,
                "world": world,
                "args": list(args),
            },
        )

    async def register(self, script_id, source, matches, timing, world):
        await self._acall(
            "/v1/register",
            {
                "id": script_id,
                "source": source,
                "matches": list(matches),
                "timing": timing,
                "world": world,
                "all_frames": True,
            },
        )

    async def unregister(self, script_id):
        await self._acall("/v1/unregister", {"id": script_id})

    async def probe(self):
        result = await self._acall("/v1/probe", {})
        if isinstance(result, dict):
            return bool(result.get("available", False))
        return bool(result)

    async def has_permission(self, name):
        return bool(await self._acall("/v1/permissions/has", {"name": name}))

    async def request_permission(self, name):
        granted = await self._acall(
            "/v1/permissions/request",
            {"name": name},
            PERMISSION_PROMPT_TIMEOUT_SECONDS,
        )
        return bool(granted)
