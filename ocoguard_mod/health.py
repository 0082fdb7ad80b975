# -*- coding: utf-8 -*-
"""health.py
Read-only status endpoint: GET /health -> session snapshot as JSON. Everything else is 404.
"""
from __future__ import annotations

import json
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import urlparse

from ocoguard_mod.notifications import log_event
from ocoguard_mod.session_state import SessionState, now_ms


def health_document(snapshot: Dict[str, Any]) -> Dict[str, Any]:
    doc = {"ok": True, "now": now_ms()}
    doc.update({k: v for k, v in snapshot.items() if k != "listen_key"})
    return doc


def _make_handler(snapshot_fn: Callable[[], Dict[str, Any]]) -> type:
    class HealthHandler(BaseHTTPRequestHandler):
        def log_message(self, fmt: str, *args: Any) -> None:
            return

        def _send_json(self, status: int, payload: Dict[str, Any]) -> None:
            body = json.dumps(payload, separators=(",", ":"), default=str).encode("utf-8")
            self.send_response(int(status))
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def _not_found(self) -> None:
            self._send_json(404, {"ok": False, "error": "not found"})

        def do_GET(self) -> None:  # noqa: N802
            if urlparse(self.path).path == "/health":
                self._send_json(200, health_document(snapshot_fn()))
                return
            self._not_found()

        do_POST = do_PUT = do_DELETE = _not_found  # noqa: N815

    return HealthHandler


def start_health_server(
    state: SessionState, port: int, host: str = "0.0.0.0"
) -> Optional[Tuple[ThreadingHTTPServer, threading.Thread]]:
    if int(port) <= 0:
        return None
    server = ThreadingHTTPServer((host, int(port)), _make_handler(state.snapshot))
    server.daemon_threads = True
    thread = threading.Thread(target=server.serve_forever, name="oco-health", daemon=True)
    thread.start()
    log_event("HEALTH_SERVER_STARTED", port=server.server_address[1])
    return server, thread


def stop_health_server(handle: Optional[Tuple[ThreadingHTTPServer, threading.Thread]]) -> None:
    if handle is None:
        return
    server, thread = handle
    server.shutdown()
    server.server_close()
    thread.join(2.0)
