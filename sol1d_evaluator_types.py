"""
SOL-1D — Trade Evaluator Types

TradeResult, TradeOutcome, DelayedOutcome and the TP/SL derivation tables
shared by the immediate and the delayed evaluator.

TP/SL percentages are derived from the day's minMove:

    tp = max(tp_floor, min_move * tp_mul)
    sl = max(sl_floor, min_move * sl_mul)

with separate tables for strong and weak signals.  Days whose minMove is
below MIN_DAY_TRADEABLE are not traded at all.

References:
    sol1d_evaluator.py — evaluate_trade, evaluate_delayed
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class EvaluationError(ValueError):
    """Raised when an evaluator precondition is violated.

    Covers non-finite / non-positive prices and minMove, invalid delay
    parameters, and windows that do not satisfy entry < exit.
    """


# ---------------------------------------------------------------------------
# TP/SL tables
# ---------------------------------------------------------------------------

MIN_DAY_TRADEABLE = 0.018


@dataclass(frozen=True)
class TpSlTable:
    tp_mul: float
    sl_mul: float
    tp_floor: float
    sl_floor: float

    def derive(self, min_move: float) -> Tuple[float, float]:
        return (
            max(self.tp_floor, min_move * self.tp_mul),
            max(self.sl_floor, min_move * self.sl_mul),
        )


STRONG_TABLE = TpSlTable(tp_mul=1.25, sl_mul=0.55, tp_floor=0.022, sl_floor=0.009)
WEAK_TABLE = TpSlTable(tp_mul=1.10, sl_mul=0.50, tp_floor=0.017, sl_floor=0.008)


def derive_tp_sl(min_move: float, strong_signal: bool) -> Tuple[float, float]:
    """(tp_pct, sl_pct) for a day's minMove and signal strength."""
    table = STRONG_TABLE if strong_signal else WEAK_TABLE
    return table.derive(min_move)


def tp_sl_prices(
    is_long: bool, entry_price: float, tp_pct: float, sl_pct: float,
) -> Tuple[float, float]:
    """(tp_price, sl_price) around an entry price."""
    if is_long:
        return entry_price * (1.0 + tp_pct), entry_price * (1.0 - sl_pct)
    return entry_price * (1.0 - tp_pct), entry_price * (1.0 + sl_pct)


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------

class TradeResult(Enum):
    NONE = "none"
    TAKE_PROFIT_FIRST = "tp_first"
    STOP_LOSS_FIRST = "sl_first"
    AMBIGUOUS = "ambiguous"


@dataclass(frozen=True)
class TradeOutcome:
    """Result of walking a price path against TP and SL prices.

    tradeable=False means the day was below MIN_DAY_TRADEABLE and no walk
    happened; result is NONE and the percentages are 0.
    hit_at / hit_price: open time of the deciding bar and the touched level
    (None when result is NONE or AMBIGUOUS).
    """
    result: TradeResult
    tp_pct: float = 0.0
    sl_pct: float = 0.0
    hit_at: Optional[datetime] = None
    hit_price: Optional[float] = None
    tradeable: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "result": self.result.value,
            "tp_pct": self.tp_pct,
            "sl_pct": self.sl_pct,
            "hit_at": self.hit_at.isoformat() if self.hit_at else None,
            "hit_price": self.hit_price,
            "tradeable": self.tradeable,
        }


@dataclass(frozen=True)
class DelayedOutcome:
    """Result of a delayed-entry attempt.

    used=False     the day was not tradeable, nothing was attempted.
    executed=False no bar reached target_entry_price inside the delay budget.
    """
    used: bool
    executed: bool
    target_entry_price: float
    executed_at: Optional[datetime] = None
    result: TradeResult = TradeResult.NONE
    tp_pct: float = 0.0
    sl_pct: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "used": self.used,
            "executed": self.executed,
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
            "target_entry_price": self.target_entry_price,
            "result": self.result.value,
            "tp_pct": self.tp_pct,
            "sl_pct": self.sl_pct,
        }
