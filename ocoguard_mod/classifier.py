# -*- coding: utf-8 -*-
"""classifier.py
Pure ORDER_TRADE_UPDATE classification (no I/O, no state).

classify(envelope) -> decision dict:
  kind = "not_applicable"     envelope is not an order update (nested fields untouched)
       | "credential_expired" listenKeyExpired push from the exchange
       | "not_qualifying"     order update, but not a filled close-position TP/SL
       | "qualifying"         filled close-position TP/SL; carries symbol/position_side
"""
from __future__ import annotations

from typing import Any, Dict, Optional

ORDER_UPDATE_EVENT = "ORDER_TRADE_UPDATE"
LISTEN_KEY_EXPIRED_EVENT = "listenKeyExpired"

# Binance futures original order types ("ot"); STOP / TAKE_PROFIT are the limit variants.
CLOSE_ORDER_TYPES = frozenset({"STOP_MARKET", "TAKE_PROFIT_MARKET", "STOP", "TAKE_PROFIT"})
FILLED = "FILLED"
HEDGE_SIDES = ("LONG", "SHORT")

NOT_APPLICABLE = "not_applicable"
CREDENTIAL_EXPIRED = "credential_expired"
NOT_QUALIFYING = "not_qualifying"
QUALIFYING = "qualifying"


def unwrap(envelope: Any) -> Optional[Dict[str, Any]]:
    """Return the event payload, unwrapping combined-stream {"stream", "data"}."""
    if not isinstance(envelope, dict):
        return None
    data = envelope.get("data")
    if isinstance(data, dict):
        return data
    return envelope


def _is_true(v: Any) -> bool:
    if isinstance(v, bool):
        return v
    return isinstance(v, str) and v.strip().lower() == "true"


def _upper(v: Any) -> str:
    return str(v or "").strip().upper()


def position_side(order: Dict[str, Any]) -> Optional[str]:
    """LONG/SHORT under hedge mode; None for one-way ("BOTH") or missing."""
    ps = _upper(order.get("ps"))
    return ps if ps in HEDGE_SIDES else None


def is_close_filled(order: Any) -> bool:
    # "ot" is the original type; "o" turns into MARKET/LIMIT once a TP/SL triggers.
    if not isinstance(order, dict):
        return False
    return (
        _is_true(order.get("cp"))
        and _upper(order.get("ot")) in CLOSE_ORDER_TYPES
        and _upper(order.get("X")) == FILLED
    )


def classify(envelope: Any) -> Dict[str, Any]:
    m = unwrap(envelope)
    if m is None:
        return {"kind": NOT_APPLICABLE}
    event_type = m.get("e")
    if event_type == LISTEN_KEY_EXPIRED_EVENT:
        return {"kind": CREDENTIAL_EXPIRED}
    if event_type != ORDER_UPDATE_EVENT:
        return {"kind": NOT_APPLICABLE, "event": event_type}

    order = m.get("o")
    if not isinstance(order, dict):
        return {"kind": NOT_QUALIFYING, "event": event_type}

    decision: Dict[str, Any] = {
        "kind": QUALIFYING if is_close_filled(order) else NOT_QUALIFYING,
        "event": event_type,
        "symbol": _upper(order.get("s")) or None,
        "position_side": position_side(order),
        "order_type": _upper(order.get("ot")) or None,
        "status": _upper(order.get("X")) or None,
        "order_id": order.get("i"),
        "client_order_id": order.get("c"),
    }
    if decision["kind"] == QUALIFYING and not decision["symbol"]:
        # nothing to cancel against
        decision["kind"] = NOT_QUALIFYING
    return decision
