"""Typed client for the external agent runtime (JSON-RPC 2.0 over HTTP).

The engine never embeds runtime behavior. Every failure, whether transport,
timeout or an RPC error object, surfaces as ``UpstreamUnavailable``.
"""

from __future__ import annotations

import itertools
import logging
from typing import Any, Protocol, runtime_checkable

import httpx

from clutch.errors import UpstreamUnavailable

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


@runtime_checkable
class AgentRuntime(Protocol):
    """Structural interface for agent runtimes.

    :class:`GatewayClient` talks to a live gateway; tests pass fakes that
    implement the same three calls.
    """

    def spawn(
        self,
        agent_id: str,
        task: str,
        session_key: str,
        model: str | None = None,
        timeout_seconds: float | None = None,
    ) -> str: ...

    def delete_session(self, key: str) -> None: ...

    def send_message(self, session_key: str, text: str) -> None: ...


class RPCError(Exception):
    def __init__(self, error: dict[str, Any]) -> None:
        self.code = error.get("code", -1)
        self.data = error.get("data")
        super().__init__(error.get("message", "Unknown RPC error"))


class GatewayClient:
    """Synchronous JSON-RPC client for the agent gateway.

    Timeouts are owned by the caller (per client, overridable per call);
    the client performs no retries of its own.
    """

    def __init__(
        self,
        url: str,
        *,
        token: str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.url = url
        self._timeout = httpx.Timeout(timeout_seconds, connect=10.0)
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(timeout=self._timeout, headers=headers, transport=transport)
        self._ids = itertools.count(1)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> GatewayClient:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Send one JSON-RPC request and return its ``result``."""
        req_id = next(self._ids)
        msg: dict[str, Any] = {"jsonrpc": "2.0", "id": req_id, "method": method}
        if params is not None:
            msg["params"] = params
        try:
            response = self._client.post(
                self.url,
                json=msg,
                timeout=httpx.Timeout(timeout, connect=10.0) if timeout else self._timeout,
            )
            response.raise_for_status()
            body = response.json()
        except httpx.TimeoutException as exc:
            log.warning("Gateway timeout calling %s", method)
            raise UpstreamUnavailable(f"Gateway timeout calling {method}") from exc
        except httpx.HTTPError as exc:
            log.warning("Gateway HTTP error calling %s: %s", method, exc)
            raise UpstreamUnavailable(f"Gateway error calling {method}: {exc}") from exc
        except ValueError as exc:
            raise UpstreamUnavailable(f"Gateway returned invalid JSON for {method}") from exc

        if not isinstance(body, dict):
            raise UpstreamUnavailable(f"Gateway returned a non-object response for {method}")
        if body.get("error"):
            err = RPCError(body["error"])
            log.warning("Gateway RPC error for %s: %s (code %s)", method, err, err.code)
            raise UpstreamUnavailable(f"{method} failed: {err}") from err
        return body.get("result")

    def spawn(
        self,
        agent_id: str,
        task: str,
        session_key: str,
        model: str | None = None,
        timeout_seconds: float | None = None,
    ) -> str:
        params: dict[str, Any] = {"agentId": agent_id, "task": task, "sessionKey": session_key}
        if model:
            params["model"] = model
        if timeout_seconds:
            params["timeoutSeconds"] = timeout_seconds
        result = self.request("sessions.spawn", params, timeout=timeout_seconds)
        run_id = result.get("runId") if isinstance(result, dict) else None
        if not run_id:
            raise UpstreamUnavailable("sessions.spawn returned no runId")
        return str(run_id)

    def delete_session(self, key: str) -> None:
        self.request("sessions.delete", {"key": key, "deleteTranscript": False})

    def send_message(self, session_key: str, text: str) -> None:
        self.request("sessions.send", {"sessionKey": session_key, "message": text})
