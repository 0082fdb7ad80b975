# -*- coding: utf-8 -*-
"""listen_key.py
Listen key (user data stream credential) lifecycle.

- acquire(): errors propagate, the stream session turns them into a reconnect.
- renew():   best effort, logged; a missed keepalive only degrades the stream.
- release(): best effort, swallowed; used on teardown where the socket is gone.
"""
from __future__ import annotations

from typing import Any, Callable, Optional

import ocoguard_mod.binance_api as binance_api
from ocoguard_mod.notifications import log_event, short_key


class ListenKeyManager:
    def __init__(
        self,
        create_fn: Optional[Callable[[], str]] = None,
        keepalive_fn: Optional[Callable[[str], Any]] = None,
        close_fn: Optional[Callable[[str], Any]] = None,
    ) -> None:
        self._create = create_fn or binance_api.listen_key_create
        self._keepalive = keepalive_fn or binance_api.listen_key_keepalive
        self._close = close_fn or binance_api.listen_key_close
        self.current: Optional[str] = None

    def acquire(self) -> str:
        key = self._create()
        self.current = key
        log_event("LISTEN_KEY_ACQUIRED", listen_key=short_key(key))
        return key

    def renew(self, listen_key: Optional[str] = None) -> bool:
        key = listen_key or self.current
        if not key:
            return False
        try:
            self._keepalive(key)
        except Exception as e:
            log_event("LISTEN_KEY_KEEPALIVE_FAIL", listen_key=short_key(key), error=str(e))
            return False
        log_event("LISTEN_KEY_KEEPALIVE", listen_key=short_key(key))
        return True

    def release(self, listen_key: Optional[str] = None) -> None:
        key = listen_key or self.current
        if key == self.current:
            self.current = None
        if not key:
            return
        try:
            self._close(key)
            log_event("LISTEN_KEY_RELEASED", listen_key=short_key(key))
        except Exception as e:
            log_event("LISTEN_KEY_RELEASE_IGNORED", listen_key=short_key(key), error=str(e))
