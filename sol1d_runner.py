"""
SOL-1D — Policy Runner

Runs the prediction stream through window resolution, exit scans,
delayed-entry simulation and the PnL ledger for every
policy x {with SL, no SL} x {base, anti-direction} combination.

Every run builds its own PnlLedger; the prepared day contexts are
immutable and shared read-only, so each PolicyResult depends only on
(records, candles, config).  A failure inside one run is logged and
recorded on that run's PolicyResult; the remaining runs continue.

Within a day the daily and delayed trades are registered in exit-time
order, keeping the ledger fold in non-decreasing exit order overall.

References:
    sol1d_ledger.py — PnlLedger, find_daily_exit, find_first_hit
    sol1d_evaluator.py — evaluate_trade, evaluate_delayed
    sol1d_windowing.py — build_baseline_window
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sol1d_config import BacktestConfig, ConfigError, build_policy, compute_config_hash
from sol1d_evaluator import evaluate_delayed, evaluate_trade
from sol1d_evaluator_types import TradeOutcome, TradeResult
from sol1d_ledger import PnlLedger, find_daily_exit, find_first_hit
from sol1d_ledger_types import (
    BUCKET_DAILY,
    BUCKET_DELAYED,
    SOURCE_DAILY,
    SOURCE_DELAYED_A,
    SOURCE_DELAYED_B,
    BucketSnapshot,
    MarginMode,
    PnLTrade,
    TradeRequest,
)
from sol1d_policies import (
    LeveragePolicy,
    PolicyError,
    apply_anti_direction,
    resolve_direction,
)
from sol1d_records import DelayedExecutionFacts, PredictionRecord
from sol1d_series import Bar, CandleSeries
from sol1d_time_types import BaselineWindow
from sol1d_windowing import build_baseline_window

_log = logging.getLogger(__name__)


class RunnerError(ValueError):
    """Raised when the prediction stream and candle series do not line up."""


# ---------------------------------------------------------------------------
# Prepared inputs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DayContext:
    """One record with its baseline window and the 1m bars inside it."""
    record: PredictionRecord
    window: BaselineWindow
    bars: Tuple[Bar, ...]


@dataclass(frozen=True)
class PolicySpec:
    """A policy bound to a margin mode.  ``error`` is set when it could not be built."""
    name: str
    policy: Optional[LeveragePolicy]
    margin_mode: MarginMode
    error: Optional[str] = None


def prepare_days(
    records: Sequence[PredictionRecord],
    candles_1m: CandleSeries,
) -> Tuple[DayContext, ...]:
    """Resolve windows and slice minute paths once for all runs.

    Raises:
        RunnerError: unordered records, a window with no bars, or a path
            whose first bar is not the entry minute.
        WeekendEntryError: a weekend record reached the runner.
    """
    days: List[DayContext] = []
    prev: Optional[PredictionRecord] = None
    for rec in records:
        if prev is not None and rec.entry <= prev.entry:
            raise RunnerError(
                f"records must be strictly ascending by entry: {rec.entry} after {prev.entry}"
            )
        prev = rec

        window = build_baseline_window(rec.entry)
        bars = candles_1m.slice(window.start, window.end)
        if not bars:
            raise RunnerError(f"no 1m bars inside window {window.entry}..{window.exit}")
        if bars[0].ts != window.start:
            raise RunnerError(
                f"first 1m bar {bars[0].ts.isoformat()} != entry {window.entry}"
            )
        days.append(DayContext(record=rec, window=window, bars=bars))
    return tuple(days)


def build_policy_specs(config: BacktestConfig) -> List[PolicySpec]:
    """One spec per configured policy.  A policy that fails to build keeps its slot."""
    specs: List[PolicySpec] = []
    for pc in config.policies:
        try:
            policy = build_policy(pc)
        except (ConfigError, PolicyError) as e:
            _log.warning("policy %s (%s) not built: %s", pc.name, pc.margin_mode.value, e)
            specs.append(PolicySpec(pc.name, None, pc.margin_mode, error=str(e)))
            continue
        specs.append(PolicySpec(pc.name, policy, pc.margin_mode))
    return specs


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PolicyResult:
    policy_name: str
    margin_mode: MarginMode
    use_sl: bool
    anti_direction: bool
    trades: Tuple[PnLTrade, ...] = ()
    total_pnl_pct: float = 0.0
    max_dd_pct: float = 0.0
    trades_by_source: Tuple[Tuple[str, int], ...] = ()
    withdrawn_total: float = 0.0
    buckets: Tuple[BucketSnapshot, ...] = ()
    had_liquidation: bool = False
    anti_applied: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "policy_name": self.policy_name,
            "margin_mode": self.margin_mode.value,
            "use_sl": self.use_sl,
            "anti_direction": self.anti_direction,
            "trades": [t.to_dict() for t in self.trades],
            "total_pnl_pct": self.total_pnl_pct,
            "max_dd_pct": self.max_dd_pct,
            "trades_by_source": dict(self.trades_by_source),
            "withdrawn_total": self.withdrawn_total,
            "buckets": [b.to_dict() for b in self.buckets],
            "had_liquidation": self.had_liquidation,
            "anti_applied": self.anti_applied,
            "error": self.error,
        }

    def result_hash(self) -> str:
        js = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(js.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class BacktestSummary:
    config_hash: str
    from_date: Optional[datetime]
    to_date: Optional[datetime]
    signal_days: int
    with_sl_base: Tuple[PolicyResult, ...]
    no_sl_base: Tuple[PolicyResult, ...]
    with_sl_anti: Tuple[PolicyResult, ...]
    no_sl_anti: Tuple[PolicyResult, ...]
    best_total_pnl_pct: float
    worst_max_dd_pct: float
    policies_with_liquidation: int
    total_trades: int

    def all_results(self) -> Tuple[PolicyResult, ...]:
        return self.with_sl_base + self.no_sl_base + self.with_sl_anti + self.no_sl_anti

    def to_dict(self) -> Dict[str, Any]:
        def rows(results):
            return [
                {
                    "policy": r.policy_name,
                    "margin": r.margin_mode.value,
                    "total_pnl_pct": r.total_pnl_pct,
                    "max_dd_pct": r.max_dd_pct,
                    "trades": len(r.trades),
                    "had_liquidation": r.had_liquidation,
                    "error": r.error,
                }
                for r in results
            ]
        return {
            "config_hash": self.config_hash,
            "from_date": self.from_date.isoformat() if self.from_date else None,
            "to_date": self.to_date.isoformat() if self.to_date else None,
            "signal_days": self.signal_days,
            "with_sl_base": rows(self.with_sl_base),
            "no_sl_base": rows(self.no_sl_base),
            "with_sl_anti": rows(self.with_sl_anti),
            "no_sl_anti": rows(self.no_sl_anti),
            "best_total_pnl_pct": self.best_total_pnl_pct,
            "worst_max_dd_pct": self.worst_max_dd_pct,
            "policies_with_liquidation": self.policies_with_liquidation,
            "total_trades": self.total_trades,
        }


# ---------------------------------------------------------------------------
# Trade construction
# ---------------------------------------------------------------------------

def _bars_through(bars: Sequence[Bar], exit_time: datetime) -> Tuple[Bar, ...]:
    """Bars whose open time is <= exit_time (the whole path for window-close exits)."""
    return tuple(b for b in bars if b.ts <= exit_time)


def _daily_request(
    day: DayContext,
    is_long: bool,
    leverage: float,
    use_sl: bool,
    config: BacktestConfig,
) -> TradeRequest:
    rec = day.record
    sl_pct = config.daily_sl_pct if use_sl else 0.0
    exit_price, exit_time, _ = find_daily_exit(
        day.bars, is_long, rec.entry_price, config.daily_tp_pct, sl_pct, day.window.end,
    )
    return TradeRequest(
        date=rec.entry.entry_day_key.value,
        entry_time=rec.entry.value,
        exit_time=exit_time,
        source=SOURCE_DAILY,
        bucket=BUCKET_DAILY,
        is_long=is_long,
        entry_price=rec.entry_price,
        exit_price_raw=exit_price,
        leverage=leverage,
        position_fraction=config.ledger.position_fraction(BUCKET_DAILY),
        path_bars=_bars_through(day.bars, exit_time),
    )


def simulate_delayed_facts(
    day: DayContext,
    candles_1m: CandleSeries,
    is_long: bool,
    config: BacktestConfig,
) -> Optional[DelayedExecutionFacts]:
    """Delayed facts from evaluate_delayed, or None when not executed."""
    dc = config.delayed
    if dc is None:
        return None
    rec = day.record
    outcome = evaluate_delayed(
        candles_1m,
        day.window,
        is_long,
        rec.entry_price,
        rec.min_move,
        rec.strong_signal,
        dc.delay_factor,
        timedelta(hours=dc.max_delay_hours),
    )
    if not outcome.executed:
        return None
    return DelayedExecutionFacts(
        executed_at=outcome.executed_at,
        entry_price=outcome.target_entry_price,
        intraday_result=outcome.result,
        source=dc.source,
        tp_pct=outcome.tp_pct,
        sl_pct=outcome.sl_pct,
    )


def _delayed_request(
    day: DayContext,
    facts: DelayedExecutionFacts,
    is_long: bool,
    leverage: float,
    config: BacktestConfig,
) -> TradeRequest:
    rec = day.record
    window = day.window
    if not window.contains(facts.executed_at):
        raise RunnerError(
            f"delayed executed_at={facts.executed_at.isoformat()} outside window "
            f"{window.entry}..{window.exit}"
        )

    path = tuple(b for b in day.bars if b.ts >= facts.executed_at)
    if not path:
        raise RunnerError(f"no 1m bars from delayed fill {facts.executed_at.isoformat()}")

    entry = facts.entry_price
    exit_price: float
    exit_time: Optional[datetime]

    if facts.intraday_result is TradeResult.TAKE_PROFIT_FIRST:
        tp = entry * (1.0 + facts.tp_pct) if is_long else entry * (1.0 - facts.tp_pct)
        exit_time = find_first_hit(path, is_long, tp, take_profit=True)
        exit_price = tp
    elif facts.intraday_result is TradeResult.STOP_LOSS_FIRST and config.use_delayed_intraday_stops:
        sl = entry * (1.0 - facts.sl_pct) if is_long else entry * (1.0 + facts.sl_pct)
        exit_time = find_first_hit(path, is_long, sl, take_profit=False)
        exit_price = sl
    else:
        exit_price = path[-1].close
        exit_time = window.end

    if exit_time is None:
        raise RunnerError(
            f"delayed {facts.intraday_result.value} level not found in 1m path "
            f"from {facts.executed_at.isoformat()}"
        )

    return TradeRequest(
        date=rec.entry.entry_day_key.value,
        entry_time=facts.executed_at,
        exit_time=exit_time,
        source=SOURCE_DELAYED_A if facts.source == "A" else SOURCE_DELAYED_B,
        bucket=BUCKET_DELAYED,
        is_long=is_long,
        entry_price=entry,
        exit_price_raw=exit_price,
        leverage=leverage,
        position_fraction=config.ledger.position_fraction(BUCKET_DELAYED),
        path_bars=_bars_through(path, exit_time),
    )


# ---------------------------------------------------------------------------
# Single run
# ---------------------------------------------------------------------------

def run_policy(
    days: Sequence[DayContext],
    candles_1m: CandleSeries,
    spec: PolicySpec,
    config: BacktestConfig,
    use_sl: bool,
    anti_direction: bool,
) -> PolicyResult:
    """Fold the day stream into a fresh ledger for one combination."""
    if spec.policy is None:
        raise PolicyError(spec.error or f"policy {spec.name!r} was not built")
    ledger = PnlLedger(spec.margin_mode, config.ledger)
    mmr = config.ledger.maintenance_margin_rate
    anti_applied = 0

    for day in days:
        if ledger.global_dead:
            break
        rec = day.record

        base_side = resolve_direction(rec, config.prediction_mode)
        if base_side is None:
            continue

        lev = spec.policy.resolve_leverage(rec)
        if not math.isfinite(lev):
            raise PolicyError(f"policy {spec.name!r} returned lev={lev} for {rec.entry}")
        if lev <= 0.0:
            continue

        is_long = base_side
        flipped = False
        if anti_direction:
            is_long, flipped = apply_anti_direction(rec, base_side, lev, mmr)
            if flipped:
                anti_applied += 1

        requests = [_daily_request(day, is_long, lev, use_sl, config)]

        facts = rec.delayed
        if facts is not None and flipped:
            # precomputed facts describe the base side only
            facts = None
        elif facts is None:
            facts = simulate_delayed_facts(day, candles_1m, is_long, config)
        if facts is not None:
            requests.append(_delayed_request(day, facts, is_long, lev, config))

        for req in sorted(requests, key=lambda r: r.exit_time):
            ledger.register_trade(req)

    return PolicyResult(
        policy_name=spec.name,
        margin_mode=spec.margin_mode,
        use_sl=use_sl,
        anti_direction=anti_direction,
        trades=ledger.trades,
        total_pnl_pct=ledger.total_pnl_pct(),
        max_dd_pct=ledger.max_dd_pct(),
        trades_by_source=tuple(sorted(ledger.trades_by_source.items())),
        withdrawn_total=ledger.withdrawn_total(),
        buckets=ledger.snapshot(),
        had_liquidation=ledger.had_liquidation,
        anti_applied=anti_applied,
    )


# ---------------------------------------------------------------------------
# All runs
# ---------------------------------------------------------------------------

def _sort_key(r: PolicyResult):
    return (r.policy_name, r.margin_mode.value)


def run_policies(
    specs: Sequence[PolicySpec],
    days: Sequence[DayContext],
    candles_1m: CandleSeries,
    config: BacktestConfig,
    use_sl: bool,
    anti_direction: bool,
) -> List[PolicyResult]:
    """One PolicyResult per spec, sorted by (policy name, margin mode)."""
    results: List[PolicyResult] = []
    for spec in specs:
        try:
            results.append(run_policy(days, candles_1m, spec, config, use_sl, anti_direction))
        except Exception as e:
            _log.exception(
                "policy %s (%s, sl=%s, anti=%s) failed",
                spec.name, spec.margin_mode.value, use_sl, anti_direction,
            )
            results.append(PolicyResult(
                policy_name=spec.name,
                margin_mode=spec.margin_mode,
                use_sl=use_sl,
                anti_direction=anti_direction,
                error=f"{type(e).__name__}: {e}",
            ))
    results.sort(key=_sort_key)
    return results


def summarize(results: Sequence[PolicyResult]) -> Tuple[float, float, int, int]:
    """(best total PnL %, worst max DD %, policies with liquidation, total trades).

    Failed runs are ignored.
    """
    ok = [r for r in results if r.ok]
    if not ok:
        return 0.0, 0.0, 0, 0
    return (
        max(r.total_pnl_pct for r in ok),
        max(r.max_dd_pct for r in ok),
        sum(1 for r in ok if r.had_liquidation),
        sum(len(r.trades) for r in ok),
    )


def run_backtest(
    records: Sequence[PredictionRecord],
    candles_1m: CandleSeries,
    config: BacktestConfig,
) -> BacktestSummary:
    """Run every policy across {with SL, no SL} x {base, anti}."""
    days = prepare_days(records, candles_1m)
    specs = build_policy_specs(config)
    config_hash = compute_config_hash(config)
    _log.info(
        "backtest: %d days, %d policies, config=%s",
        len(days), len(specs), config_hash[:16],
    )

    with_sl_base = run_policies(specs, days, candles_1m, config, True, False)
    no_sl_base = run_policies(specs, days, candles_1m, config, False, False)
    if config.use_anti_direction_overlay:
        with_sl_anti = run_policies(specs, days, candles_1m, config, True, True)
        no_sl_anti = run_policies(specs, days, candles_1m, config, False, True)
    else:
        with_sl_anti, no_sl_anti = [], []

    all_results = with_sl_base + no_sl_base + with_sl_anti + no_sl_anti
    best, worst, liq, total = summarize(all_results)
    failed = sum(1 for r in all_results if not r.ok)
    if failed:
        _log.warning("backtest: %d of %d runs failed", failed, len(all_results))

    return BacktestSummary(
        config_hash=config_hash,
        from_date=days[0].record.entry.value if days else None,
        to_date=days[-1].record.entry.value if days else None,
        signal_days=len(days),
        with_sl_base=tuple(with_sl_base),
        no_sl_base=tuple(no_sl_base),
        with_sl_anti=tuple(with_sl_anti),
        no_sl_anti=tuple(no_sl_anti),
        best_total_pnl_pct=best,
        worst_max_dd_pct=worst,
        policies_with_liquidation=liq,
        total_trades=total,
    )


# ---------------------------------------------------------------------------
# Day outcome labelling
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DayEvaluation:
    record: PredictionRecord
    is_long: Optional[bool]
    outcome: Optional[TradeOutcome]


def evaluate_days(
    records: Sequence[PredictionRecord],
    series: CandleSeries,
    config: BacktestConfig,
) -> List[DayEvaluation]:
    """TP/SL-first outcome per record on ``series`` (1m or 1h).

    Days without a direction get outcome None.
    """
    result: List[DayEvaluation] = []
    for rec in records:
        side = resolve_direction(rec, config.prediction_mode)
        if side is None:
            result.append(DayEvaluation(rec, None, None))
            continue
        window = build_baseline_window(rec.entry)
        outcome = evaluate_trade(series, window, side, rec.entry_price, rec.min_move, rec.strong_signal)
        result.append(DayEvaluation(rec, side, outcome))
    return result
