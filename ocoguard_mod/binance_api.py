#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""ocoguard_mod.binance_api

Binance USDT-M futures REST adapter used by ocoguard.py.
Design:
- No circular imports (does NOT import ocoguard.py).
- ocoguard.py must call configure(ENV) before any request helper.
- No retry here: callers own the retry policy (the stream session retries via
  reconnect, the cancel engine never retries a single cancel).
"""
from __future__ import annotations

import time
import json
from contextlib import suppress
import hmac
import hashlib
from typing import Any, Dict, Optional, List, Tuple

import requests
from urllib.parse import urlencode

from ocoguard_mod.notifications import log_event

_ENV: Optional[Dict[str, Any]] = None
_BINANCE_TIME_OFFSET_MS: int = 0

# Binance "unknown order" codes: the order already filled, expired or was cancelled.
UNKNOWN_ORDER_CODES = (-2011, -2013)


class TransportError(RuntimeError):
    """Network-level failure (connect/read timeout, connection reset, DNS)."""


class UpstreamError(RuntimeError):
    """Non-success HTTP status from Binance."""

    def __init__(self, method: str, endpoint: str, status: int, body: str) -> None:
        self.method = method
        self.endpoint = endpoint
        self.status = int(status)
        self.body = body or ""
        self.code = _binance_error_code(self.body)
        super().__init__(f"Binance API error: {method} {endpoint} {self.status} {self.body}")

    @property
    def unknown_order(self) -> bool:
        return self.code in UNKNOWN_ORDER_CODES


def configure(env: Dict[str, Any]) -> None:
    """Wire runtime config from ocoguard.py."""
    global _ENV
    _ENV = env


def _env() -> Dict[str, Any]:
    if _ENV is None:
        raise RuntimeError("binance_api not configured: call binance_api.configure(ENV) in ocoguard.py")
    return _ENV


def _validate_params(params: Dict[str, Any], *, endpoint: str, method: str) -> Dict[str, Any]:
    clean: Dict[str, Any] = {}
    invalid_keys: List[str] = []
    for k, v in params.items():
        if v is None:
            continue
        if not isinstance(k, str) or k.strip() == "":
            invalid_keys.append(repr(k))
            continue
        if any(ch.isspace() for ch in k) or "&" in k or "=" in k:
            invalid_keys.append(repr(k))
            continue
        clean[k] = v.strip() if isinstance(v, str) else v
    if invalid_keys:
        log_event(
            "BINANCE_PARAM_INVALID",
            endpoint=endpoint,
            method=method,
            invalid_keys=invalid_keys,
            param_keys=list(clean.keys()),
        )
        raise ValueError(f"Invalid Binance param keys for {method} {endpoint}: {invalid_keys}")
    return clean


def _binance_error_code(body_text: str) -> Optional[int]:
    if not body_text:
        return None
    try:
        payload = json.loads(body_text)
    except Exception:
        return None
    if isinstance(payload, dict):
        code = payload.get("code")
        if isinstance(code, int):
            return code
        with suppress(Exception):
            return int(code)
    return None


def _http_timeout() -> Tuple[float, float]:
    """Return (connect_timeout, read_timeout) tuple.

    Connect timeout fixed at 3s; read timeout from env (default 15s).
    """
    env = _env()
    connect_timeout = 3.0
    try:
        read_timeout = float(env.get("BINANCE_HTTP_READ_TIMEOUT_SEC", 15))
    except (ValueError, TypeError):
        read_timeout = 15.0
    if read_timeout <= 0:
        read_timeout = 15.0
    return (connect_timeout, read_timeout)


def _do_request(method: str, url: str, *, headers: Dict[str, Any], req_params: Dict[str, Any]) -> requests.Response:
    """Execute a single HTTP request; transport failures become TransportError."""
    method = str(method).strip().upper()
    if method not in ("GET", "POST", "PUT", "DELETE"):
        raise ValueError(f"Unsupported method: {method}")
    try:
        return requests.request(method, url, headers=headers, params=req_params, timeout=_http_timeout())
    except requests.exceptions.RequestException as e:
        raise TransportError(f"{method} {url}: {e}") from e


def _parse_body(r: requests.Response) -> Any:
    text = r.text or ""
    if not text:
        return {}
    try:
        return r.json()
    except ValueError:
        return text


def server_time_ms() -> int:
    return int(time.time() * 1000) + int(_BINANCE_TIME_OFFSET_MS)


def sign_query(params: Dict[str, Any], secret: str) -> Tuple[str, str]:
    """Return (canonical query, hex HMAC-SHA256 signature)."""
    params_str = {k: str(v) for k, v in sorted(params.items(), key=lambda kv: kv[0])}
    query = urlencode(params_str)
    signature = hmac.new(secret.encode("utf-8"), query.encode("utf-8"), hashlib.sha256).hexdigest()
    return query, signature


def _binance_signed_request(method: str, endpoint: str, params: Dict[str, Any]) -> Any:
    env = _env()
    api_key = env["BINANCE_API_KEY"]
    api_secret = env["BINANCE_API_SECRET"]
    base_url = env["BINANCE_BASE_URL"]
    if not api_key or not api_secret:
        raise RuntimeError("Binance API key/secret missing")

    params = _validate_params(dict(params), endpoint=endpoint, method=method)
    params["timestamp"] = server_time_ms()
    params.setdefault("recvWindow", env.get("RECV_WINDOW", 5000))

    query, signature = sign_query(params, api_secret)

    headers = {"X-MBX-APIKEY": api_key}
    # Pre-encoded so the wire order is exactly the signed order.
    url = f"{base_url}{endpoint}?{query}&signature={signature}"

    r = _do_request(method, url, headers=headers, req_params={})
    if not (200 <= r.status_code < 300):
        raise UpstreamError(method, endpoint, r.status_code, r.text or "")
    return _parse_body(r)


def _binance_key_request(method: str, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
    """API-key-only request (user data stream endpoints are not signed)."""
    env = _env()
    api_key = env["BINANCE_API_KEY"]
    if not api_key:
        raise RuntimeError("Binance API key missing")
    url = env["BINANCE_BASE_URL"] + endpoint
    req_params = _validate_params(params or {}, endpoint=endpoint, method=method)
    r = _do_request(method, url, headers={"X-MBX-APIKEY": api_key}, req_params=req_params)
    if not (200 <= r.status_code < 300):
        raise UpstreamError(method, endpoint, r.status_code, r.text or "")
    return _parse_body(r)


def binance_public_get(endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
    env = _env()
    url = env["BINANCE_BASE_URL"] + endpoint
    req_params = _validate_params(params or {}, endpoint=endpoint, method="GET")
    r = _do_request("GET", url, headers={}, req_params=req_params)
    if r.status_code != 200:
        raise UpstreamError("GET", endpoint, r.status_code, r.text or "")
    return _parse_body(r)


# ===================== Orders =====================

def open_orders(symbol: str) -> List[Dict[str, Any]]:
    """Live open orders for symbol (never cached)."""
    j = _binance_signed_request("GET", "/fapi/v1/openOrders", {"symbol": str(symbol).strip().upper()})
    return list(j) if isinstance(j, list) else []


def cancel_order(symbol: str, order_id: int) -> Dict[str, Any]:
    return _binance_signed_request("DELETE", "/fapi/v1/order", {"symbol": symbol, "orderId": order_id})


def cancel_all_open_orders(symbol: str) -> Dict[str, Any]:
    return _binance_signed_request("DELETE", "/fapi/v1/allOpenOrders", {"symbol": symbol})


# ===================== User data stream =====================

def listen_key_create() -> str:
    j = _binance_key_request("POST", "/fapi/v1/listenKey")
    key = j.get("listenKey") if isinstance(j, dict) else None
    if not key:
        raise UpstreamError("POST", "/fapi/v1/listenKey", 200, json.dumps(j, default=str))
    return str(key)


def listen_key_keepalive(listen_key: str) -> Any:
    return _binance_key_request("PUT", "/fapi/v1/listenKey", {"listenKey": listen_key})


def listen_key_close(listen_key: str) -> Any:
    return _binance_key_request("DELETE", "/fapi/v1/listenKey", {"listenKey": listen_key})


# ===================== Time sync =====================

def sync_server_time() -> int:
    """Store server-local clock offset used in signed timestamps. Best effort."""
    global _BINANCE_TIME_OFFSET_MS
    try:
        srv = binance_public_get("/fapi/v1/time")
        server_ms = int(srv.get("serverTime", 0) or 0) if isinstance(srv, dict) else 0
        local_ms = int(time.time() * 1000)
        _BINANCE_TIME_OFFSET_MS = (server_ms - local_ms) if server_ms else 0
        log_event("BINANCE_TIME_SYNC", server_time=server_ms, time_offset_ms=_BINANCE_TIME_OFFSET_MS)
    except Exception as e:
        _BINANCE_TIME_OFFSET_MS = 0
        log_event("BINANCE_TIME_SYNC_FAIL", error=str(e))
    return _BINANCE_TIME_OFFSET_MS
