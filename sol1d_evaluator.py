"""
SOL-1D — Trade Outcome and Delayed-Entry Evaluators

Walks a validated price path inside a baseline window and classifies which
of take-profit / stop-loss is touched first.

Walk rule (shared by both evaluators):
    long:  TP if bar.high >= tp_price, SL if bar.low  <= sl_price
    short: TP if bar.low  <= tp_price, SL if bar.high >= sl_price
    both in the same bar -> AMBIGUOUS, walk stops
    neither in any bar   -> NONE (caller falls back to the window close)

The delayed evaluator first waits, for at most ``max_delay`` after window
start, for a bar that reaches a discounted fill price, then re-derives
TP/SL around the fill and walks from the fill bar.

Preconditions raise EvaluationError.  A quiet day (minMove below
MIN_DAY_TRADEABLE), no touch, or no delayed fill are ordinary outcomes.

References:
    sol1d_evaluator_types.py — tables, outcomes
    sol1d_series.py — CandleSeries ingestion guarantees
"""

from __future__ import annotations

import logging
import math
from datetime import timedelta
from typing import Sequence

from sol1d_evaluator_types import (
    MIN_DAY_TRADEABLE,
    DelayedOutcome,
    EvaluationError,
    TradeOutcome,
    TradeResult,
    derive_tp_sl,
    tp_sl_prices,
)
from sol1d_series import Bar, CandleSeries
from sol1d_time_types import BaselineWindow

_log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Precondition checks
# ---------------------------------------------------------------------------

def _require_positive_finite(name: str, value: float) -> None:
    if value is None or not isinstance(value, (int, float)) or isinstance(value, bool):
        raise EvaluationError(f"{name} must be a number, got {value!r}")
    if not math.isfinite(value) or value <= 0.0:
        raise EvaluationError(f"{name} must be finite and > 0, got {value}")


def _require_inputs(series: CandleSeries, window: BaselineWindow) -> None:
    if not isinstance(series, CandleSeries):
        raise EvaluationError(
            f"price path must be a CandleSeries (validated at ingestion), "
            f"got {type(series).__name__}"
        )
    if not isinstance(window, BaselineWindow):
        raise EvaluationError(f"window must be a BaselineWindow, got {type(window).__name__}")
    if window.end <= window.start:
        raise EvaluationError(f"window exit {window.exit} must be after entry {window.entry}")


# ---------------------------------------------------------------------------
# Shared walk
# ---------------------------------------------------------------------------

def walk_tp_sl(
    bars: Sequence[Bar],
    is_long: bool,
    entry_price: float,
    tp_pct: float,
    sl_pct: float,
) -> TradeOutcome:
    """First-touch walk over ``bars`` with explicit TP/SL percentages."""
    _require_positive_finite("entry_price", entry_price)
    tp_price, sl_price = tp_sl_prices(is_long, entry_price, tp_pct, sl_pct)

    for bar in bars:
        if is_long:
            tp = bar.high >= tp_price
            sl = bar.low <= sl_price
        else:
            tp = bar.low <= tp_price
            sl = bar.high >= sl_price

        if tp and sl:
            return TradeOutcome(TradeResult.AMBIGUOUS, tp_pct, sl_pct, hit_at=bar.ts)
        if tp:
            return TradeOutcome(TradeResult.TAKE_PROFIT_FIRST, tp_pct, sl_pct,
                                hit_at=bar.ts, hit_price=tp_price)
        if sl:
            return TradeOutcome(TradeResult.STOP_LOSS_FIRST, tp_pct, sl_pct,
                                hit_at=bar.ts, hit_price=sl_price)

    return TradeOutcome(TradeResult.NONE, tp_pct, sl_pct)


# ---------------------------------------------------------------------------
# Immediate entry
# ---------------------------------------------------------------------------

def evaluate_trade(
    series: CandleSeries,
    window: BaselineWindow,
    is_long: bool,
    entry_price: float,
    min_move: float,
    strong_signal: bool,
) -> TradeOutcome:
    """Classify the day's path for an entry at ``entry_price``.

    Raises:
        EvaluationError: non-finite / non-positive entry_price or min_move,
            a path that is not a CandleSeries, an invalid window.
    """
    _require_inputs(series, window)
    _require_positive_finite("entry_price", entry_price)
    _require_positive_finite("min_move", min_move)

    if min_move < MIN_DAY_TRADEABLE:
        return TradeOutcome(TradeResult.NONE, tradeable=False)

    tp_pct, sl_pct = derive_tp_sl(min_move, strong_signal)
    bars = series.slice(window.start, window.end)
    return walk_tp_sl(bars, is_long, entry_price, tp_pct, sl_pct)


# ---------------------------------------------------------------------------
# Delayed entry
# ---------------------------------------------------------------------------

def delayed_fill_price(
    is_long: bool, entry_price: float, min_move: float, delay_factor: float,
) -> float:
    """Pullback price a delayed entry waits for."""
    shift = delay_factor * min_move
    return entry_price * (1.0 - shift) if is_long else entry_price * (1.0 + shift)


def evaluate_delayed(
    series: CandleSeries,
    window: BaselineWindow,
    is_long: bool,
    entry_price: float,
    min_move: float,
    strong_signal: bool,
    delay_factor: float,
    max_delay: timedelta,
) -> DelayedOutcome:
    """Wait for a discounted fill, then run the TP/SL walk from the fill bar.

    A quiet day (min_move below MIN_DAY_TRADEABLE) returns used=False, so
    dataset builders can drop it.  This is distinct from a day
    that was attempted and missed its fill (used=True, executed=False);
    callers that want every quiet day counted as an unfilled attempt must
    map used=False themselves.

    Raises:
        EvaluationError: invalid prices, min_move, delay_factor, max_delay,
            path or window.
    """
    _require_inputs(series, window)
    _require_positive_finite("entry_price", entry_price)
    _require_positive_finite("min_move", min_move)

    if min_move < MIN_DAY_TRADEABLE:
        return DelayedOutcome(used=False, executed=False, target_entry_price=entry_price)

    _require_positive_finite("delay_factor", delay_factor)
    if not isinstance(max_delay, timedelta) or max_delay <= timedelta(0):
        raise EvaluationError(f"max_delay must be a positive timedelta, got {max_delay!r}")

    fill_price = delayed_fill_price(is_long, entry_price, min_move, delay_factor)
    if not math.isfinite(fill_price) or fill_price <= 0.0:
        raise EvaluationError(
            f"delayed fill price {fill_price} is not positive "
            f"(delay_factor={delay_factor}, min_move={min_move})"
        )

    bars = series.slice(window.start, window.end)

    fill_idx = -1
    for i, bar in enumerate(bars):
        if bar.ts - window.start > max_delay:
            break
        if (is_long and bar.low <= fill_price) or (not is_long and bar.high >= fill_price):
            fill_idx = i
            break

    if fill_idx == -1:
        return DelayedOutcome(used=True, executed=False, target_entry_price=fill_price)

    tp_pct, sl_pct = derive_tp_sl(min_move, strong_signal)
    walk = walk_tp_sl(bars[fill_idx:], is_long, fill_price, tp_pct, sl_pct)

    _log.debug(
        "delayed fill at %s price=%.6f result=%s",
        bars[fill_idx].ts.isoformat(), fill_price, walk.result.value,
    )
    return DelayedOutcome(
        used=True,
        executed=True,
        target_entry_price=fill_price,
        executed_at=bars[fill_idx].ts,
        result=walk.result,
        tp_pct=tp_pct,
        sl_pct=sl_pct,
    )
