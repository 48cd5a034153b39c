"""Status HTTP server for the rollout controller.

``/healthz`` reports liveness of the controller process, ``/readyz`` whether
it accepts rollouts and ``/rollout`` the current rollout and routing snapshot
supplied by a status provider.
"""
from __future__ import annotations

import json
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, Mapping, Optional

StatusProvider = Callable[[], Mapping[str, Any]]


class _ServerState:
    def __init__(self) -> None:
        self.live = True
        self.ready = False
        self.components: Dict[str, Dict[str, object]] = {}
        self._lock = threading.Lock()

    def set_ready(self, ready: bool) -> None:
        with self._lock:
            self.ready = ready

    def set_live(self, live: bool) -> None:
        with self._lock:
            self.live = live

    def update_component(self, name: str, healthy: bool, message: str | None = None) -> None:
        payload: Dict[str, object] = {"healthy": bool(healthy)}
        if message:
            payload["message"] = message
        with self._lock:
            self.components[name] = payload

    def snapshot(self) -> Dict[str, object]:
        with self._lock:
            healthy = all(bool(item["healthy"]) for item in self.components.values())
            return {
                "live": self.live,
                "ready": self.ready and healthy,
                "components": dict(self.components),
            }


class HealthServer:
    """Threaded HTTP server exposing controller liveness and rollout status."""

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = 8085,
        *,
        status_provider: StatusProvider | None = None,
    ) -> None:
        self._state = _ServerState()
        self._status_provider = status_provider
        self._server = ThreadingHTTPServer((host, port), self._handler_factory(self._state, self._status))
        self._thread = threading.Thread(target=self._server.serve_forever, name="rollout-status-server", daemon=True)
        self._started = threading.Event()

    def _status(self) -> Mapping[str, Any] | None:
        if self._status_provider is None:
            return None
        return self._status_provider()

    @staticmethod
    def _handler_factory(state: _ServerState, status: Callable[[], Mapping[str, Any] | None]):
        class Handler(BaseHTTPRequestHandler):
            def _write(self, code: int, payload: Mapping[str, object]) -> None:
                body = json.dumps(payload, default=str).encode("utf-8")
                self.send_response(code)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def do_GET(self) -> None:  # noqa: N802 - interface defined by BaseHTTPRequestHandler
                path = self.path.split("?", 1)[0]
                snapshot = state.snapshot()
                if path == "/healthz":
                    code = 200 if snapshot["live"] else 503
                    self._write(code, {"status": "ok" if snapshot["live"] else "down", **snapshot})
                    return
                if path == "/readyz":
                    code = 200 if snapshot["ready"] else 503
                    self._write(code, {"status": "ready" if snapshot["ready"] else "not-ready", **snapshot})
                    return
                if path == "/rollout":
                    try:
                        payload = status()
                    except Exception as exc:
                        self._write(500, {"status": "error", "error": f"{type(exc).__name__}: {exc}"})
                        return
                    if payload is None:
                        self._write(404, {"status": "unknown"})
                        return
                    self._write(200, dict(payload))
                    return
                self._write(404, {"status": "unknown", **snapshot})

            def log_message(self, *args, **kwargs):  # type: ignore[override]
                return

        return Handler

    @property
    def port(self) -> int:
        _, port = self._server.server_address[:2]
        return int(port)

    def start(self) -> None:
        if self._started.is_set():
            return
        self._thread.start()
        self._started.set()

    def shutdown(self) -> None:
        if not self._started.is_set():
            self._server.server_close()
            return
        self._server.shutdown()
        self._server.server_close()
        self._thread.join(timeout=5)
        self._started.clear()

    def set_ready(self, ready: bool = True) -> None:
        self._state.set_ready(ready)

    def set_live(self, live: bool = True) -> None:
        self._state.set_live(live)

    def update_component(self, name: str, healthy: bool, message: str | None = None) -> None:
        self._state.update_component(name, healthy, message)

    def __enter__(self) -> "HealthServer":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> Optional[bool]:
        self.shutdown()
        return None


__all__ = ["HealthServer", "StatusProvider"]
