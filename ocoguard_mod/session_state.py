# -*- coding: utf-8 -*-
"""session_state.py
Process-wide stream session record. In memory only, never persisted.

Only the stream session writes it; readers (health endpoint, tests) get a copy
from snapshot().
"""
from __future__ import annotations

import copy
import threading
import time
from typing import Any, Dict, Optional

DISCONNECTED = "DISCONNECTED"
CONNECTING = "CONNECTING"
CONNECTED = "CONNECTED"
CLOSING = "CLOSING"
STOPPED = "STOPPED"


def now_ms() -> int:
    return int(time.time() * 1000)


class SessionState:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.state: str = DISCONNECTED
        self.connected: bool = False
        self.listen_key: Optional[str] = None
        self.reconnects: int = 0
        self.last_event_at: int = 0
        self.last_fill_at: int = 0
        self.last_error: Optional[str] = None
        self.last_cancel: Optional[Dict[str, Any]] = None
        self.last_cancel_at: int = 0

    def update(self, **fields: Any) -> None:
        with self._lock:
            for k, v in fields.items():
                if not hasattr(self, k) or k.startswith("_"):
                    raise AttributeError(f"unknown session field: {k}")
                setattr(self, k, v)

    def bump_reconnects(self) -> int:
        with self._lock:
            self.reconnects += 1
            return self.reconnects

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "state": self.state,
                "connected": self.connected,
                "listen_key": self.listen_key,
                "reconnects": self.reconnects,
                "last_event_at": self.last_event_at,
                "last_fill_at": self.last_fill_at,
                "last_error": self.last_error,
                "last_cancel": copy.deepcopy(self.last_cancel),
                "last_cancel_at": self.last_cancel_at,
            }
