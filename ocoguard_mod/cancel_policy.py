# -*- coding: utf-8 -*-
"""cancel_policy.py
OCO cancellation engine: after a close-position TP/SL fills, remove the sibling
orders of that position.

Modes:
  SYMBOL  one bulk DELETE allOpenOrders(symbol)
  SIDE    openOrders(symbol) filtered by positionSide, cancelled one by one (hedge mode)
  PREFIX  openOrders(symbol) filtered by clientOrderId prefix, cancelled one by one

Targets are always read from the exchange at cancel time, never cached.
Per-order failures are collected into the summary and logged; nothing escapes.
"""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Tuple

import ocoguard_mod.binance_api as binance_api
from ocoguard_mod.notifications import log_event

MODE_SYMBOL = "SYMBOL"
MODE_SIDE = "SIDE"
MODE_PREFIX = "PREFIX"
CANCEL_MODES = (MODE_SYMBOL, MODE_SIDE, MODE_PREFIX)


def select_targets(
    orders: List[Dict[str, Any]],
    *,
    mode: str,
    position_side: Optional[str] = None,
    prefix: str = "",
    exclude_order_id: Any = None,
) -> List[Dict[str, Any]]:
    """Filter a live openOrders list down to the orders to cancel."""
    out: List[Dict[str, Any]] = []
    for o in orders:
        if not isinstance(o, dict) or o.get("orderId") is None:
            continue
        if exclude_order_id is not None and str(o.get("orderId")) == str(exclude_order_id):
            continue
        if mode == MODE_SIDE:
            if str(o.get("positionSide") or "").upper() != str(position_side or "").upper():
                continue
        elif mode == MODE_PREFIX:
            if not str(o.get("clientOrderId") or "").startswith(prefix):
                continue
        out.append(o)
    return out


class CancelPolicy:
    def __init__(
        self,
        mode: str = MODE_SYMBOL,
        *,
        prefix: str = "",
        hedge_mode: bool = False,
        max_workers: int = 8,
        api: Any = None,
    ) -> None:
        self.mode = str(mode or MODE_SYMBOL).strip().upper()
        self.prefix = prefix or ""
        self.hedge_mode = bool(hedge_mode)
        self.max_workers = max(1, int(max_workers))
        self.api = api or binance_api

    def resolve_mode(self, position_side: Optional[str]) -> Tuple[str, Optional[str]]:
        """Effective mode for one event and an optional warning code."""
        if self.mode == MODE_PREFIX and self.prefix:
            return MODE_PREFIX, None
        if self.mode == MODE_SIDE:
            if position_side:
                return MODE_SIDE, None
            # one-way data under SIDE: a side filter would match nothing
            return MODE_SYMBOL, "OCO_SIDE_UNKNOWN"
        if self.hedge_mode and position_side:
            return MODE_SIDE, None
        return MODE_SYMBOL, None

    def execute(self, symbol: str, position_side: Optional[str] = None, *, exclude_order_id: Any = None) -> Dict[str, Any]:
        mode, warning = self.resolve_mode(position_side)
        summary: Dict[str, Any] = {
            "mode": mode,
            "configured_mode": self.mode,
            "symbol": symbol,
            "position_side": position_side,
            "targeted": 0,
            "cancelled": 0,
            "already_resolved": 0,
            "failed": 0,
            "errors": [],
        }
        if warning:
            summary["warning"] = warning
            log_event(warning, symbol=symbol, position_side=position_side, configured_mode=self.mode, fallback=mode)

        if mode == MODE_SYMBOL:
            return self._cancel_all(symbol, summary)

        try:
            orders = self.api.open_orders(symbol)
        except Exception as e:
            summary["error"] = str(e)
            log_event("OCO_OPEN_ORDERS_FAIL", symbol=symbol, mode=mode, error=str(e))
            return summary

        targets = select_targets(
            orders,
            mode=mode,
            position_side=position_side,
            prefix=self.prefix,
            exclude_order_id=exclude_order_id,
        )
        summary["targeted"] = len(targets)
        if not targets:
            log_event("OCO_NO_TARGETS", symbol=symbol, mode=mode, position_side=position_side, open_orders=len(orders))
            return summary

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(targets))) as pool:
            results = list(pool.map(lambda o: self._cancel_one(symbol, o), targets))

        for outcome, detail in results:
            summary[outcome] += 1
            if detail:
                summary["errors"].append(detail)
        log_event(
            "OCO_CANCELLED",
            symbol=symbol,
            mode=mode,
            position_side=position_side,
            prefix=self.prefix if mode == MODE_PREFIX else None,
            targeted=summary["targeted"],
            cancelled=summary["cancelled"],
            already_resolved=summary["already_resolved"],
            failed=summary["failed"],
        )
        return summary

    def _cancel_all(self, symbol: str, summary: Dict[str, Any]) -> Dict[str, Any]:
        # exchange does not report how many orders the bulk call removed
        summary["targeted"] = None
        try:
            self.api.cancel_all_open_orders(symbol)
            summary["cancelled"] = 1
            log_event("OCO_CANCELLED", symbol=symbol, mode=MODE_SYMBOL, scope="ALL")
        except Exception as e:
            summary["failed"] = 1
            summary["errors"].append(str(e))
            log_event("OCO_CANCEL_ERROR", symbol=symbol, mode=MODE_SYMBOL, error=str(e))
        return summary

    def _cancel_one(self, symbol: str, order: Dict[str, Any]) -> Tuple[str, Optional[str]]:
        order_id = order.get("orderId")
        try:
            self.api.cancel_order(symbol, order_id)
            return "cancelled", None
        except binance_api.UpstreamError as e:
            if e.unknown_order:
                log_event("OCO_CANCEL_ALREADY_RESOLVED", symbol=symbol, order_id=order_id, code=e.code)
                return "already_resolved", None
            log_event("OCO_CANCEL_ERROR", symbol=symbol, order_id=order_id, status=e.status, error=e.body)
            return "failed", f"{order_id}: {e.status} {e.body}"
        except Exception as e:
            log_event("OCO_CANCEL_ERROR", symbol=symbol, order_id=order_id, error=str(e))
            return "failed", f"{order_id}: {e}"
