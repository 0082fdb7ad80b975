#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""ocoguard.py
OCO guard for Binance USDT-M futures.

Listens to the private user data stream and, when a close-position TP/SL
(STOP_MARKET / TAKE_PROFIT_MARKET / STOP / TAKE_PROFIT) fills, cancels the
remaining protective orders of that position.

- Never places orders; only cancels
- Reacts to live ORDER_TRADE_UPDATE events only (no startup reconciliation)
- Cancel policy: SYMBOL | SIDE (hedge mode) | PREFIX (clientOrderId tag)
- Optional GET /health status endpoint (HEALTH_PORT=0 disables)
- SIGINT/SIGTERM: close socket, release listen key, stop timers, exit 0
"""
from __future__ import annotations
import os
import sys
import signal
import threading
from contextlib import suppress
from typing import Dict, Any, List

from dotenv import load_dotenv

load_dotenv()

import ocoguard_mod.binance_api as binance_api
from ocoguard_mod.notifications import log_event, send_oco_cancelled
from ocoguard_mod.cancel_policy import CANCEL_MODES, MODE_PREFIX, MODE_SIDE, CancelPolicy
from ocoguard_mod.listen_key import ListenKeyManager
from ocoguard_mod.session_state import SessionState
from ocoguard_mod.stream_session import StreamSession
from ocoguard_mod import health


class ConfigError(RuntimeError):
    """Fatal startup configuration problem."""


# ===================== ENV =====================

def _get_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return str(v).strip().lower() in ("1", "true", "yes", "y", "on")


def _get_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except Exception:
        return default


def _get_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except Exception:
        return default


def _get_str(name: str, default: str) -> str:
    v = os.getenv(name)
    if v is None:
        return default
    s = str(v).strip()
    return s if s != "" else default


def load_env() -> Dict[str, Any]:
    return {
        # Binance
        "BINANCE_API_KEY": os.getenv("BINANCE_API_KEY", "").strip(),
        "BINANCE_API_SECRET": os.getenv("BINANCE_API_SECRET", "").strip(),
        "BINANCE_BASE_URL": _get_str("BINANCE_BASE_URL", "https://fapi.binance.com").rstrip("/"),
        "BINANCE_WS_BASE": _get_str("BINANCE_WS_BASE", "wss://fstream.binance.com/ws").rstrip("/"),
        "RECV_WINDOW": _get_int("RECV_WINDOW", 5000),
        "BINANCE_HTTP_READ_TIMEOUT_SEC": _get_float("BINANCE_HTTP_READ_TIMEOUT_SEC", 15.0),

        # user data stream
        "KEEPALIVE_MINUTES": _get_float("KEEPALIVE_MINUTES", 25.0),
        "WS_PING_INTERVAL_SEC": _get_float("WS_PING_INTERVAL_SEC", 20.0),
        "BACKOFF_MIN_MS": _get_int("BACKOFF_MIN_MS", 1000),
        "BACKOFF_MAX_MS": _get_int("BACKOFF_MAX_MS", 60000),
        "EVENT_QUEUE_MAX": _get_int("EVENT_QUEUE_MAX", 1000),

        # cancel policy
        "CANCEL_MODE": _get_str("CANCEL_MODE", "SYMBOL").upper(),  # SYMBOL | SIDE | PREFIX
        "CLIENT_ID_PREFIX": os.getenv("CLIENT_ID_PREFIX", "brkt_").strip(),
        "HEDGE_MODE": _get_bool("HEDGE_MODE", False),
        "CANCEL_MAX_WORKERS": _get_int("CANCEL_MAX_WORKERS", 8),

        # status endpoint
        "HEALTH_PORT": _get_int("HEALTH_PORT", 8080),
    }


ENV: Dict[str, Any] = load_env()


def validate_env(env: Dict[str, Any]) -> None:
    problems: List[str] = []
    if not env.get("BINANCE_API_KEY") or not env.get("BINANCE_API_SECRET"):
        problems.append("Set BINANCE_API_KEY and BINANCE_API_SECRET")
    mode = str(env.get("CANCEL_MODE") or "").upper()
    if mode not in CANCEL_MODES:
        problems.append(f"CANCEL_MODE must be one of {'|'.join(CANCEL_MODES)}, got {mode!r}")
    if mode == MODE_PREFIX and not env.get("CLIENT_ID_PREFIX"):
        problems.append("CANCEL_MODE=PREFIX needs a non-empty CLIENT_ID_PREFIX")
    if mode == MODE_SIDE and not env.get("HEDGE_MODE"):
        # one-way events carry positionSide=BOTH; a side filter would cancel nothing
        problems.append("CANCEL_MODE=SIDE requires HEDGE_MODE=1")
    if float(env.get("KEEPALIVE_MINUTES") or 0) <= 0:
        problems.append("KEEPALIVE_MINUTES must be > 0")
    if int(env.get("BACKOFF_MIN_MS") or 0) <= 0 or int(env.get("BACKOFF_MAX_MS") or 0) < int(env.get("BACKOFF_MIN_MS") or 0):
        problems.append("need 0 < BACKOFF_MIN_MS <= BACKOFF_MAX_MS")
    if int(env.get("HEALTH_PORT") or 0) < 0:
        problems.append("HEALTH_PORT must be >= 0")
    if problems:
        raise ConfigError("; ".join(problems))


def build_session(env: Dict[str, Any]) -> StreamSession:
    binance_api.configure(env)
    policy = CancelPolicy(
        env["CANCEL_MODE"],
        prefix=env["CLIENT_ID_PREFIX"],
        hedge_mode=env["HEDGE_MODE"],
        max_workers=env["CANCEL_MAX_WORKERS"],
    )
    return StreamSession(
        env,
        listen_keys=ListenKeyManager(),
        policy=policy,
        state=SessionState(),
        on_cancel=send_oco_cancelled,
    )


def main() -> int:
    try:
        validate_env(ENV)
    except ConfigError as e:
        log_event("CONFIG_ERROR", error=str(e))
        return 2

    log_event(
        "BOOT",
        cancel_mode=ENV["CANCEL_MODE"],
        prefix=ENV["CLIENT_ID_PREFIX"] if ENV["CANCEL_MODE"] == MODE_PREFIX else None,
        hedge_mode=ENV["HEDGE_MODE"],
        base_url=ENV["BINANCE_BASE_URL"],
        ws_base=ENV["BINANCE_WS_BASE"],
        health_port=ENV["HEALTH_PORT"],
    )
    session = build_session(ENV)
    binance_api.sync_server_time()

    health_handle = None
    try:
        health_handle = health.start_health_server(session.state, ENV["HEALTH_PORT"])
    except OSError as e:
        log_event("HEALTH_SERVER_FAIL", port=ENV["HEALTH_PORT"], error=str(e))

    done = threading.Event()

    def _shutdown(signum, frame) -> None:
        with suppress(Exception):
            log_event("SIGNAL", signum=signum)
        done.set()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    session.start()
    while not done.wait(1.0):
        pass

    session.stop()
    with suppress(Exception):
        health.stop_health_server(health_handle)
    log_event("STOP")
    return 0


if __name__ == "__main__":
    sys.exit(main())
