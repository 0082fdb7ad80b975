#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""stream_session.py
User data stream session: one websocket at a time, listen key renewal, and
reconnect with randomized exponential backoff.

States: DISCONNECTED -> CONNECTING -> CONNECTED -> CLOSING -> DISCONNECTED
- CONNECTING: acquire a fresh listen key, open the socket. An acquire failure
  counts as a connection failure and goes straight to the reconnect wait.
- CONNECTED: backoff reset to floor, keepalive thread started.
- error/close: keepalive stopped, listen key released (best effort), reconnect.

Threads:
- session thread    owns the socket; run_forever + teardown + reconnect wait all
                    run here, so two connections can never overlap
- keepalive thread  one per connection, PUT listenKey every KEEPALIVE_MINUTES
- dispatcher thread drains the bounded event queue: classify -> cancel policy
"""
from __future__ import annotations

import json
import queue
import random
import threading
from typing import Any, Callable, Dict, Optional

import websocket

from ocoguard_mod import classifier
from ocoguard_mod.notifications import log_event, short_key
from ocoguard_mod.session_state import (
    CLOSING,
    CONNECTED,
    CONNECTING,
    DISCONNECTED,
    STOPPED,
    SessionState,
    now_ms,
)

_STOP = object()


class ReconnectBackoff:
    """delay = min(backoff * (1 + U[0,1)), cap); backoff doubles up to cap, resets on connect."""

    def __init__(self, floor_ms: float = 1000.0, cap_ms: float = 60000.0, rand: Optional[Callable[[], float]] = None) -> None:
        if floor_ms <= 0 or cap_ms < floor_ms:
            raise ValueError(f"bad backoff bounds: floor={floor_ms} cap={cap_ms}")
        self.floor_ms = float(floor_ms)
        self.cap_ms = float(cap_ms)
        self.current_ms = self.floor_ms
        self._rand = rand or random.random

    def next_delay_ms(self) -> float:
        delay = min(self.current_ms * (1.0 + self._rand()), self.cap_ms)
        self.current_ms = min(self.current_ms * 2.0, self.cap_ms)
        return delay

    def reset(self) -> None:
        self.current_ms = self.floor_ms


class StreamSession:
    def __init__(
        self,
        env: Dict[str, Any],
        *,
        listen_keys: Any,
        policy: Any,
        state: Optional[SessionState] = None,
        ws_factory: Optional[Callable[..., Any]] = None,
        rand: Optional[Callable[[], float]] = None,
        on_cancel: Optional[Callable[[Dict[str, Any]], None]] = None,
    ) -> None:
        self.ws_base = str(env.get("BINANCE_WS_BASE") or "wss://fstream.binance.com/ws").rstrip("/")
        self.keepalive_sec = float(env.get("KEEPALIVE_MINUTES", 25)) * 60.0
        self.ping_interval = float(env.get("WS_PING_INTERVAL_SEC", 20) or 0)
        self.listen_keys = listen_keys
        self.policy = policy
        self.state = state or SessionState()
        self.backoff = ReconnectBackoff(
            float(env.get("BACKOFF_MIN_MS", 1000)),
            float(env.get("BACKOFF_MAX_MS", 60000)),
            rand=rand,
        )
        self.events: "queue.Queue[Any]" = queue.Queue(maxsize=max(1, int(env.get("EVENT_QUEUE_MAX", 1000))))
        self.on_cancel = on_cancel
        self._ws_factory = ws_factory or websocket.WebSocketApp

        self._stop = threading.Event()
        self._stopping = False
        self._running = False
        self._ws: Any = None
        self._ws_lock = threading.Lock()
        self._keepalive_stop: Optional[threading.Event] = None
        self._keepalive_thread: Optional[threading.Thread] = None
        self._session_thread: Optional[threading.Thread] = None
        self._dispatcher_thread: Optional[threading.Thread] = None

    # ---------------- lifecycle ----------------

    def start(self) -> None:
        self._dispatcher_thread = threading.Thread(target=self._dispatch_loop, name="oco-dispatcher", daemon=True)
        self._dispatcher_thread.start()
        self._session_thread = threading.Thread(target=self.run, name="oco-session", daemon=True)
        self._session_thread.start()

    def run(self) -> None:
        """Connect/reconnect until stop()."""
        self._running = True
        try:
            while not self._stop.is_set():
                self.connect_once()
                if self._stop.is_set():
                    break
                self.schedule_reconnect()
        finally:
            self._running = False
        self.state.update(state=STOPPED, connected=False)

    def stop(self, timeout: float = 5.0) -> None:
        """Close socket, stop timers, release the listen key. Idempotent."""
        if self._stopping:
            return
        self._stopping = True
        log_event("WS_STOPPING")
        self._stop.set()
        self._stop_keepalive()
        with self._ws_lock:
            ws = self._ws
        if ws is not None:
            try:
                ws.close()
            except Exception as e:
                log_event("WS_CLOSE_IGNORED", error=str(e))
        th = self._session_thread
        if th is not None and th is not threading.current_thread():
            th.join(timeout)
        # teardown normally releases the key; cover a run loop that is gone or stuck
        stuck = th is not None and th.is_alive()
        if self.listen_keys.current and (stuck or not self._running):
            self.listen_keys.release()
        if self._dispatcher_thread is not None:
            try:
                self.events.put(_STOP, timeout=timeout)
            except queue.Full:
                log_event("DISPATCHER_STOP_QUEUE_FULL")
            if self._dispatcher_thread is not threading.current_thread():
                self._dispatcher_thread.join(timeout)
        self.state.update(state=STOPPED, connected=False, listen_key=None)
        log_event("WS_STOPPED")

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    # ---------------- transitions ----------------

    def ws_url(self, listen_key: str) -> str:
        return f"{self.ws_base}/{listen_key}"

    def connect_once(self) -> bool:
        """One DISCONNECTED -> CONNECTING -> ... -> DISCONNECTED cycle. True if the socket opened."""
        self.state.update(state=CONNECTING)
        try:
            key = self.listen_keys.acquire()
        except Exception as e:
            self.state.update(state=DISCONNECTED, last_error=str(e))
            log_event("LISTEN_KEY_ACQUIRE_FAIL", error=str(e))
            return False

        self.state.update(listen_key=key)
        opened = threading.Event()

        def on_open(ws: Any) -> None:
            opened.set()
            self.backoff.reset()
            self.state.update(state=CONNECTED, connected=True)
            self._start_keepalive(key)
            log_event("WS_CONNECTED", listen_key=short_key(key))

        def on_message(ws: Any, message: Any) -> None:
            self._on_message(message)

        def on_error(ws: Any, error: Any) -> None:
            self.state.update(last_error=str(error))
            log_event("WS_ERROR", error=str(error))

        def on_close(ws: Any, close_status_code: Any = None, close_msg: Any = None) -> None:
            log_event("WS_CLOSED", close_code=close_status_code, msg=close_msg or "")

        ws = self._ws_factory(
            self.ws_url(key),
            on_open=on_open,
            on_message=on_message,
            on_error=on_error,
            on_close=on_close,
        )
        with self._ws_lock:
            self._ws = ws
        try:
            if not self._stop.is_set():
                if self.ping_interval > 0:
                    ws.run_forever(ping_interval=self.ping_interval, ping_timeout=self.ping_interval / 2.0)
                else:
                    ws.run_forever()
        except Exception as e:
            self.state.update(last_error=str(e))
            log_event("WS_RUN_ERROR", error=str(e))
        finally:
            self._teardown(key)
        return opened.is_set()

    def _teardown(self, key: str) -> None:
        self.state.update(state=CLOSING, connected=False)
        self._stop_keepalive()
        with self._ws_lock:
            self._ws = None
        self.listen_keys.release(key)
        self.state.update(state=DISCONNECTED, listen_key=None)

    def schedule_reconnect(self) -> float:
        attempt = self.state.bump_reconnects()
        delay_ms = self.backoff.next_delay_ms()
        log_event("WS_RECONNECT_SCHEDULED", delay_ms=int(round(delay_ms)), attempt=attempt)
        self._stop.wait(delay_ms / 1000.0)
        return delay_ms

    def force_reconnect(self, reason: str) -> None:
        """Close the live socket; run() tears down and reconnects with a fresh key."""
        with self._ws_lock:
            ws = self._ws
        log_event("WS_FORCE_RECONNECT", reason=reason, has_socket=ws is not None)
        if ws is not None:
            try:
                ws.close()
            except Exception as e:
                log_event("WS_CLOSE_IGNORED", error=str(e))

    # ---------------- keepalive ----------------

    def _start_keepalive(self, key: str) -> None:
        self._stop_keepalive()
        stop_ev = threading.Event()

        def _loop() -> None:
            while not stop_ev.wait(self.keepalive_sec):
                self.listen_keys.renew(key)

        self._keepalive_stop = stop_ev
        self._keepalive_thread = threading.Thread(target=_loop, name="oco-keepalive", daemon=True)
        self._keepalive_thread.start()

    def _stop_keepalive(self) -> None:
        ev, th = self._keepalive_stop, self._keepalive_thread
        self._keepalive_stop = None
        self._keepalive_thread = None
        if ev is not None:
            ev.set()
        if th is not None and th is not threading.current_thread():
            th.join(1.0)

    # ---------------- events ----------------

    def _on_message(self, message: Any) -> None:
        try:
            envelope = json.loads(message)
        except (TypeError, ValueError):
            return
        while not self._stop.is_set():
            try:
                self.events.put(envelope, timeout=1.0)
                return
            except queue.Full:
                log_event("EVENT_QUEUE_FULL", size=self.events.qsize())

    def _dispatch_loop(self) -> None:
        while True:
            item = self.events.get()
            if item is _STOP:
                break
            try:
                self.handle_event(item)
            except Exception as e:
                self.state.update(last_error=str(e))
                log_event("DISPATCH_ERROR", error=str(e))

    def handle_event(self, envelope: Any) -> Dict[str, Any]:
        decision = classifier.classify(envelope)
        kind = decision["kind"]
        if kind == classifier.CREDENTIAL_EXPIRED:
            log_event("LISTEN_KEY_EXPIRED")
            self.force_reconnect("listen_key_expired")
            return decision
        if kind == classifier.NOT_APPLICABLE:
            return decision

        self.state.update(last_event_at=now_ms())
        if kind != classifier.QUALIFYING:
            return decision

        self.state.update(last_fill_at=now_ms())
        log_event(
            "OCO_CLOSE_FILLED",
            symbol=decision["symbol"],
            position_side=decision["position_side"],
            order_type=decision["order_type"],
            order_id=decision["order_id"],
            client_order_id=decision["client_order_id"],
        )
        summary = self.policy.execute(
            decision["symbol"],
            decision["position_side"],
            exclude_order_id=decision["order_id"],
        )
        self.state.update(last_cancel=summary, last_cancel_at=now_ms())
        if self.on_cancel is not None:
            self.on_cancel(summary)
        return decision
