from __future__ import annotations

import json
import os
import sys
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import requests


def _get_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except Exception:
        return default


ENV: Dict[str, Any] = {
    "GUARD_LOG": os.getenv("GUARD_LOG", ""),
    "LOG_MAX_LINES": _get_int("LOG_MAX_LINES", 5000),
    "WEBHOOK_URL": os.getenv("WEBHOOK_URL", ""),
    "WEBHOOK_BASIC_AUTH_USER": os.getenv("WEBHOOK_BASIC_AUTH_USER", ""),
    "WEBHOOK_BASIC_AUTH_PASSWORD": os.getenv("WEBHOOK_BASIC_AUTH_PASSWORD", ""),
}

# callbacks run on several threads (ws, keepalive, dispatcher, cancel pool)
_LOG_LOCK = threading.Lock()


def iso_utc(dt: Optional[datetime] = None) -> str:
    return (dt or datetime.now(timezone.utc)).isoformat()


def _ensure_dir(path: str) -> None:
    d = os.path.dirname(path)
    if d:
        os.makedirs(d, exist_ok=True)


def append_line_with_cap(path: str, line: str, cap: int) -> None:
    _ensure_dir(path)
    with open(path, "a", encoding="utf-8") as f:
        f.write(line.rstrip("\n") + "\n")

    try:
        with open(path, "r", encoding="utf-8") as f:
            lines = f.readlines()
        if len(lines) > cap:
            with open(path, "w", encoding="utf-8") as f:
                f.writelines(lines[-cap:])
    except FileNotFoundError:
        pass


def short_key(listen_key: Optional[str]) -> Optional[str]:
    """Loggable form of a listen key (first 6 chars)."""
    if not listen_key:
        return None
    s = str(listen_key)
    return s[:6] + "..." if len(s) > 6 else s


def log_event(action: str, **fields: Any) -> None:
    obj = {"ts": iso_utc(), "source": "ocoguard", "action": action}
    obj.update(fields)
    line = json.dumps(obj, ensure_ascii=False, separators=(",", ":"), default=str)
    # Logging must never break the stream or the cancel path.
    try:
        with _LOG_LOCK:
            sys.stdout.write(line + "\n")
            sys.stdout.flush()
            if ENV["GUARD_LOG"]:
                append_line_with_cap(ENV["GUARD_LOG"], line, ENV["LOG_MAX_LINES"])
    except Exception:
        pass


def send_webhook(payload: Dict[str, Any]) -> None:
    url = ENV["WEBHOOK_URL"]
    if not url:
        return

    payload = dict(payload)
    payload.setdefault("source", "ocoguard")

    try:
        auth = None
        if ENV["WEBHOOK_BASIC_AUTH_USER"] and ENV["WEBHOOK_BASIC_AUTH_PASSWORD"]:
            auth = (ENV["WEBHOOK_BASIC_AUTH_USER"], ENV["WEBHOOK_BASIC_AUTH_PASSWORD"])
        requests.post(url, json=payload, timeout=5, auth=auth)
    except Exception as e:
        log_event("WEBHOOK_ERROR", error=str(e), event=payload.get("event"))


def send_oco_cancelled(summary: Dict[str, Any]) -> None:
    """Webhook for one executed cancellation. Fail-soft."""
    payload: Dict[str, Any] = {"event": "OCO_CANCELLED"}
    payload.update({k: v for k, v in summary.items() if v is not None})
    send_webhook(payload)
