# outcome_classifier.py - outcome inference only (NO state mutation)
from __future__ import annotations

from typing import Optional

__all__ = ["OUTCOMES", "DEFAULT_TOLERANCE", "normalize_outcome", "to_level_index", "infer"]

# Banker / Player / Tie
OUTCOMES = ("B", "P", "T")

DEFAULT_TOLERANCE = 0.6

OUTCOME_ALIASES = {
    "b": "B",
    "banker": "B",
    "p": "P",
    "player": "P",
    "t": "T",
    "tie": "T",
}


def normalize_outcome(symbol: Optional[str]) -> Optional[str]:
    """Canonical "B"/"P"/"T", or None when the caller gave nothing usable."""
    s = str(symbol or "").strip().lower()
    return OUTCOME_ALIASES.get(s)


def to_level_index(martingale_level_ui: int) -> int:
    """UI levels 1..8 map to ladder rungs 0..7; anything else is clamped."""
    if 1 <= martingale_level_ui <= 8:
        return martingale_level_ui - 1
    return max(min(martingale_level_ui, 7), 0)


def _approx(x: float, y: float, tol: float) -> bool:
    return abs(x - y) <= tol


def infer(
    prev_level: int,
    prev_margin: float,
    prev_stake: float,
    prev_mazzo_present: bool,
    new_level: int,
    new_margin: float,
    tolerance: float = DEFAULT_TOLERANCE,
) -> str:
    """
    Infer the last hand's outcome from how margin and ladder level moved.

    Rule order matters (first match wins):
    1. No prior hand on this table          -> T
    2. Margin flat and level unchanged      -> T
    3. Margin up one stake, ladder reset    -> B
    4. Margin down one stake, ladder climbed -> P
    5. Ladder climbed                       -> P
    6. Ladder dropped or back at rung 0     -> B
    7. Otherwise                            -> T
    """
    if not prev_mazzo_present:
        return "T"

    d_margin = new_margin - prev_margin
    d_level = new_level - prev_level

    if _approx(d_margin, 0.0, tolerance) and d_level == 0:
        return "T"
    if (new_level == 0 or d_level < 0) and _approx(d_margin, prev_stake, tolerance):
        return "B"
    if d_level >= 1 and _approx(d_margin, -prev_stake, tolerance):
        return "P"
    if d_level > 0:
        return "P"
    if d_level < 0 or new_level == 0:
        return "B"
    return "T"
