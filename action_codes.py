# action_codes.py - Advice -> integer action code for the inbound caller (NO state mutation)
from __future__ import annotations

from typing import Optional

from models import Advice

__all__ = ["ACTION_DEFAULT", "ACTION_STOP", "ACTION_RESET", "ACTION_START", "action_code", "normalize_reason"]

ACTION_DEFAULT = 0
ACTION_STOP = 1
ACTION_RESET = 2     # ladder back to the first rung
ACTION_START = 3

# substrings checked against the lower-cased reason, in this order
RESET_MARKERS = ("reset", "safewin", "martingale")
START_MARKERS = ("start",)


def normalize_reason(reason: Optional[str]) -> str:
    """Lower-case, trimmed reason string."""
    return str(reason or "").strip().lower()


def _is_stop(advice: Advice, reason: str) -> bool:
    if "stop" in reason:
        return True
    if advice.prediction == "Disabled":
        return True
    status = advice.table_status or ""
    if "Disabled" in status or "🔴" in status:
        return True
    return bool(advice.stop_at_l5)


def action_code(advice: Optional[Advice]) -> int:
    """Map one decision to 0 default, 1 stop, 2 reset or 3 start."""
    if advice is None:
        return ACTION_DEFAULT

    reason = normalize_reason(advice.reason)
    if _is_stop(advice, reason):
        return ACTION_STOP
    if any(m in reason for m in RESET_MARKERS):
        return ACTION_RESET
    if any(m in reason for m in START_MARKERS):
        return ACTION_START
    return ACTION_DEFAULT
