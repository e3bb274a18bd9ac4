"""
SOL-1D — Multi-Bucket PnL Ledger

Allocates capital across independent buckets, applies leverage, commission
and margin-mode rules per realized trade, and tracks equity, withdrawals and
drawdown.  PnlLedger.register_trade is the only write path to bucket state;
it is a strict left-to-right fold over trades in non-decreasing exit order.

Per trade:
    tolerance   = (1/L - mmr) * multiplier            (1/L with defaults)
    liquidated  = a path bar's adverse move >= tolerance,
                  or the raw exit is worse than the liquidation price
    exit        = liquidation price if liquidated else raw exit
    margin      = min(bucket.base * position_fraction, bucket.equity)
    notional    = margin * L
    pnl         = rel_move * L * margin
    commission  = notional * commission_rate * 2

Cross margin:
    liquidation -> equity 0, bucket dead, whole ledger dead
    otherwise   -> equity += pnl - commission; <= 0 kills bucket and ledger
Isolated margin:
    liquidation -> equity -= margin + commission (floored at 0), bucket dead
    otherwise   -> equity += pnl - commission; <= 0 kills only this bucket
    ledger dead only once every bucket is dead
Both modes:
    equity above base capital is moved to ``withdrawn``
    peak_visible = max(equity + withdrawn), max_dd = (peak - visible) / peak

Skips (return None, no state change): ledger dead, bucket dead,
leverage <= 0, position_fraction <= 0.

References:
    sol1d_ledger_types.py — records, config, BucketState transitions
    sol1d_runner.py — builds TradeRequests from predictions
"""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from sol1d_ledger_types import (
    BucketSnapshot,
    BucketState,
    BucketStatus,
    LedgerConfig,
    LedgerError,
    LedgerOrderError,
    MarginMode,
    PnLTrade,
    TradeRequest,
)
from sol1d_series import Bar

_log = logging.getLogger(__name__)

_DD_EPS = 1e-9
_SL_EPS = 1e-9


# ---------------------------------------------------------------------------
# Liquidation math
# ---------------------------------------------------------------------------

def liquidation_tolerance(leverage: float, config: LedgerConfig) -> float:
    """Adverse move fraction that liquidates a position at ``leverage``."""
    if leverage <= 0.0:
        raise LedgerError(f"leverage must be > 0, got {leverage}")
    pct = (1.0 / leverage - config.maintenance_margin_rate) * config.liquidation_multiplier
    if pct <= 0.0:
        raise LedgerError(
            f"liquidation distance must be positive: leverage={leverage}, "
            f"mmr={config.maintenance_margin_rate}, "
            f"multiplier={config.liquidation_multiplier}"
        )
    return pct


def liquidation_price(entry_price: float, is_long: bool, tolerance: float) -> float:
    return entry_price * (1.0 - tolerance) if is_long else entry_price * (1.0 + tolerance)


def scan_liquidation(bars: Sequence[Bar], is_long: bool, liq_price: float) -> Optional[Bar]:
    """First bar whose adverse extreme reaches ``liq_price``."""
    for bar in bars:
        if is_long and bar.low <= liq_price:
            return bar
        if not is_long and bar.high >= liq_price:
            return bar
    return None


def mae_mfe(entry_price: float, is_long: bool, bars: Sequence[Bar]) -> Tuple[float, float]:
    """(max adverse, max favorable) excursion as fractions of entry."""
    max_adverse = 0.0
    max_favorable = 0.0
    for bar in bars:
        if is_long:
            adverse = (entry_price - bar.low) / entry_price
            favorable = (bar.high - entry_price) / entry_price
        else:
            adverse = (bar.high - entry_price) / entry_price
            favorable = (entry_price - bar.low) / entry_price
        max_adverse = max(max_adverse, adverse)
        max_favorable = max(max_favorable, favorable)
    return max_adverse, max_favorable


# ---------------------------------------------------------------------------
# Daily exit scan
# ---------------------------------------------------------------------------

def find_daily_exit(
    bars: Sequence[Bar],
    is_long: bool,
    entry_price: float,
    tp_pct: float,
    sl_pct: float,
    window_end: datetime,
) -> Tuple[float, datetime, str]:
    """Exit (price, time, reason) for a daily position.

    TP and SL in the same bar resolve to SL.  sl_pct == 0 disables the stop.
    No touch exits at the last bar's close, stamped at window_end.
    """
    if not bars:
        raise LedgerError("daily exit scan needs at least one bar")
    if not math.isfinite(entry_price) or entry_price <= 0.0:
        raise LedgerError(f"entry_price must be finite and > 0, got {entry_price}")

    use_sl = sl_pct > _SL_EPS
    if is_long:
        tp = entry_price * (1.0 + tp_pct)
        sl = entry_price * (1.0 - sl_pct)
    else:
        tp = entry_price * (1.0 - tp_pct)
        sl = entry_price * (1.0 + sl_pct)

    for bar in bars:
        if is_long:
            hit_tp = bar.high >= tp
            hit_sl = use_sl and bar.low <= sl
        else:
            hit_tp = bar.low <= tp
            hit_sl = use_sl and bar.high >= sl
        if hit_sl:
            return sl, bar.ts, "sl"
        if hit_tp:
            return tp, bar.ts, "tp"

    return bars[-1].close, window_end, "close"


def find_first_hit(
    bars: Sequence[Bar], is_long: bool, level: float, take_profit: bool,
) -> Optional[datetime]:
    """Open time of the first bar touching a TP (or SL) level."""
    for bar in bars:
        if take_profit:
            hit = bar.high >= level if is_long else bar.low <= level
        else:
            hit = bar.low <= level if is_long else bar.high >= level
        if hit:
            return bar.ts
    return None


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

class PnlLedger:
    """Sequential multi-bucket equity fold for one margin mode."""

    def __init__(self, margin_mode: MarginMode, config: Optional[LedgerConfig] = None):
        if not isinstance(margin_mode, MarginMode):
            raise LedgerError(f"margin_mode must be MarginMode, got {margin_mode!r}")
        self._mode = margin_mode
        self._config = config or LedgerConfig()
        self._buckets: Dict[str, BucketState] = {}
        for spec in self._config.buckets:
            if spec.name in self._buckets:
                raise LedgerError(f"duplicate bucket {spec.name!r}")
            self._buckets[spec.name] = BucketState.open(
                spec.name, self._config.total_capital * spec.share
            )
        self._trades: List[PnLTrade] = []
        self._by_source: Dict[str, int] = {}
        self._global_dead = False
        self._had_liquidation = False
        self._last_exit: Optional[datetime] = None

    # -- read side ---------------------------------------------------------

    @property
    def margin_mode(self) -> MarginMode:
        return self._mode

    @property
    def config(self) -> LedgerConfig:
        return self._config

    @property
    def global_dead(self) -> bool:
        return self._global_dead

    @property
    def had_liquidation(self) -> bool:
        return self._had_liquidation

    @property
    def trades(self) -> Tuple[PnLTrade, ...]:
        return tuple(self._trades)

    @property
    def trades_by_source(self) -> Dict[str, int]:
        return dict(self._by_source)

    def bucket(self, name: str) -> BucketSnapshot:
        if name not in self._buckets:
            raise LedgerError(f"unknown bucket {name!r}")
        return self._buckets[name].snapshot()

    def snapshot(self) -> Tuple[BucketSnapshot, ...]:
        return tuple(b.snapshot() for b in self._buckets.values())

    def total_pnl_pct(self) -> float:
        total = sum(b.equity + b.withdrawn for b in self._buckets.values())
        cap = self._config.total_capital
        return round((total - cap) / cap * 100.0, 2)

    def max_dd_pct(self) -> float:
        if not self._buckets:
            return 0.0
        return round(max(b.max_dd for b in self._buckets.values()) * 100.0, 2)

    def withdrawn_total(self) -> float:
        return sum(b.withdrawn for b in self._buckets.values())

    # -- write side --------------------------------------------------------

    def register_trade(self, req: TradeRequest) -> Optional[PnLTrade]:
        """Fold one trade into its bucket.  Returns None when skipped.

        Raises:
            LedgerOrderError: exit_time earlier than the previous trade's.
            LedgerError: unknown bucket, invalid prices, empty path.
        """
        if req.bucket not in self._buckets:
            raise LedgerError(f"unknown bucket {req.bucket!r}")
        if self._last_exit is not None and req.exit_time < self._last_exit:
            raise LedgerOrderError(
                f"trade exit {req.exit_time.isoformat()} precedes previous "
                f"exit {self._last_exit.isoformat()}"
            )
        if req.exit_time < req.entry_time:
            raise LedgerError(
                f"exit {req.exit_time.isoformat()} before entry {req.entry_time.isoformat()}"
            )
        self._last_exit = req.exit_time

        bucket = self._buckets[req.bucket]
        if self._global_dead or bucket.is_dead:
            _log.debug("skip %s/%s: ledger or bucket dead", req.source, req.bucket)
            return None
        if not math.isfinite(req.leverage):
            raise LedgerError(f"leverage must be finite, got {req.leverage}")
        if req.leverage <= 0.0 or req.position_fraction <= 0.0:
            _log.debug(
                "skip %s/%s: leverage=%s fraction=%s",
                req.source, req.bucket, req.leverage, req.position_fraction,
            )
            return None

        for name, price in (("entry_price", req.entry_price), ("exit_price_raw", req.exit_price_raw)):
            if not math.isfinite(price) or price <= 0.0:
                raise LedgerError(f"{name} must be finite and > 0, got {price}")
        if not req.path_bars:
            raise LedgerError(f"{req.source}: path_bars must not be empty")

        margin = min(bucket.base_capital * req.position_fraction, bucket.equity)
        if margin <= 0.0:
            raise LedgerError(f"bucket {bucket.name!r}: margin must be > 0, got {margin}")

        tolerance = liquidation_tolerance(req.leverage, self._config)
        liq_price = liquidation_price(req.entry_price, req.is_long, tolerance)

        real_liq = scan_liquidation(req.path_bars, req.is_long, liq_price) is not None
        worse_than_liq = (
            req.exit_price_raw < liq_price if req.is_long else req.exit_price_raw > liq_price
        )
        price_liquidated = real_liq or worse_than_liq
        exit_price = liq_price if price_liquidated else req.exit_price_raw

        mae, mfe = mae_mfe(req.entry_price, req.is_long, req.path_bars)

        if req.is_long:
            rel_move = (exit_price - req.entry_price) / req.entry_price
        else:
            rel_move = (req.entry_price - exit_price) / req.entry_price

        notional = margin * req.leverage
        pnl = rel_move * req.leverage * margin
        commission = notional * self._config.commission_rate * 2.0

        died = self._apply(bucket, margin, pnl, commission, price_liquidated)

        if died:
            self._had_liquidation = True
            if self._mode is MarginMode.CROSS:
                self._global_dead = True
            elif all(b.is_dead for b in self._buckets.values()):
                self._global_dead = True
            _log.info(
                "bucket %s dead (%s) at %s; global_dead=%s",
                bucket.name, self._mode.value, req.exit_time.isoformat(), self._global_dead,
            )

        trade = PnLTrade(
            date=req.date,
            entry_time=req.entry_time,
            exit_time=req.exit_time,
            source=req.source,
            bucket=req.bucket,
            is_long=req.is_long,
            entry_price=req.entry_price,
            exit_price=exit_price,
            margin_used=margin,
            notional=notional,
            gross_return_pct=round(rel_move * 100.0, 4),
            net_return_pct=round((pnl - commission) / margin * 100.0, 4),
            commission=round(commission, 4),
            equity_after=round(bucket.equity, 2),
            is_liquidated=price_liquidated or died,
            is_real_liquidation=price_liquidated,
            liq_price=liq_price,
            max_adverse_pct=round(mae * 100.0, 4),
            max_favorable_pct=round(mfe * 100.0, 4),
            leverage_used=req.leverage,
        )
        self._trades.append(trade)
        self._by_source[req.source] = self._by_source.get(req.source, 0) + 1
        return trade

    def _apply(
        self,
        bucket: BucketState,
        margin: float,
        pnl: float,
        commission: float,
        price_liquidated: bool,
    ) -> bool:
        """Update one bucket's equity; True when the bucket died."""
        died = False

        if price_liquidated:
            if self._mode is MarginMode.CROSS:
                new_equity = 0.0
            else:
                new_equity = max(0.0, bucket.equity - margin - commission)
            died = True
        else:
            new_equity = bucket.equity + pnl - commission
            if new_equity <= 0.0:
                new_equity = 0.0
                died = True

        if not died and new_equity > bucket.base_capital:
            bucket.withdrawn += new_equity - bucket.base_capital
            new_equity = bucket.base_capital

        bucket.equity = new_equity
        if died:
            bucket.transition(BucketStatus.DEAD)

        visible = bucket.visible
        if visible > bucket.peak_visible:
            bucket.peak_visible = visible
        if bucket.peak_visible > _DD_EPS:
            dd = (bucket.peak_visible - visible) / bucket.peak_visible
            if dd > bucket.max_dd:
                bucket.max_dd = dd

        return died
