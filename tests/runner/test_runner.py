"""Policy runner end to end on a synthetic three-day minute series.

Mon 2024-01-08 .. Wed 2024-01-10, entries at 12:00 UTC (07:00 EST), every
record a long call with entry price 100 and min_move 0.03.  The flat 100
path has two events:

    day 1, minute 60   high 103.5   daily TP (3%) for longs
    day 3, minute 120  low 94.0     daily SL (5%) for longs, liquidates 20x
"""

import sys
import os
from datetime import datetime, timedelta, timezone

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", ".."))

from sol1d_config import BacktestConfig, DelayedConfig, PolicyConfig
from sol1d_evaluator_types import TradeResult
from sol1d_ledger_types import MarginMode
from sol1d_policies import ConstLeveragePolicy
from sol1d_records import DelayedExecutionFacts, PredictionRecord
from sol1d_runner import (
    PolicySpec,
    RunnerError,
    build_policy_specs,
    evaluate_days,
    prepare_days,
    run_backtest,
    run_policies,
    summarize,
)
from sol1d_series import Bar, CandleSeries
from sol1d_time_types import EntryUtc
from sol1d_windowing import WeekendEntryError

T0 = datetime(2024, 1, 8, 12, 0, tzinfo=timezone.utc)
DAY = timedelta(days=1)
MINUTE = timedelta(minutes=1)


def _make_candles(start=T0, days=3):
    events = {
        T0 + 60 * MINUTE: (103.5, 99.9),
        T0 + 2 * DAY + 120 * MINUTE: (100.1, 94.0),
    }
    bars = []
    for i in range(days * 1440):
        ts = start + i * MINUTE
        high, low = events.get(ts, (100.1, 99.9))
        bars.append(Bar(ts, 100.0, high, low, 100.0, 1.0))
    return CandleSeries(bars)


def _make_records(n=3, **kwargs):
    return [
        PredictionRecord(
            entry=EntryUtc(T0 + i * DAY),
            pred_label=kwargs.get("pred_label", 2),
            min_move=0.03,
            entry_price=100.0,
            sl_high_decision=kwargs.get("sl_high_decision"),
        )
        for i in range(n)
    ]


def _make_config(**kwargs):
    policies = (
        PolicyConfig("const_2x", "const", MarginMode.CROSS, 2.0),
        PolicyConfig("const_20x", "const", MarginMode.CROSS, 20.0),
        PolicyConfig("const_20x", "const", MarginMode.ISOLATED, 20.0),
    )
    return BacktestConfig(policies=policies, **kwargs)


def _by_key(results):
    return {(r.policy_name, r.margin_mode): r for r in results}


class _NanPolicy:
    name = "broken"

    def resolve_leverage(self, record):
        return float("nan")


# ---------------------------------------------------------------------------
# Input preparation
# ---------------------------------------------------------------------------

def test_prepare_days():
    days = prepare_days(_make_records(), _make_candles())
    assert len(days) == 3
    for day in days:
        assert day.bars[0].ts == day.window.start
        assert day.bars[-1].ts < day.window.end


def test_unordered_records_raise():
    recs = _make_records()
    with pytest.raises(RunnerError):
        prepare_days([recs[1], recs[0]], _make_candles())


def test_weekend_record_raises():
    sat = PredictionRecord(
        entry=EntryUtc(datetime(2024, 1, 13, 12, tzinfo=timezone.utc)),
        pred_label=2, min_move=0.03, entry_price=100.0,
    )
    with pytest.raises(WeekendEntryError):
        prepare_days([sat], _make_candles())


def test_missing_entry_bar_raises():
    candles = _make_candles()
    shifted = CandleSeries(candles.bars[1:])
    with pytest.raises(RunnerError):
        prepare_days(_make_records(1), shifted)


# ---------------------------------------------------------------------------
# Backtest
# ---------------------------------------------------------------------------

def test_backtest_layout_and_ordering():
    summary = run_backtest(_make_records(), _make_candles(), _make_config())

    assert summary.signal_days == 3
    assert summary.from_date == T0
    for group in (summary.with_sl_base, summary.no_sl_base, summary.with_sl_anti, summary.no_sl_anti):
        assert [(r.policy_name, r.margin_mode.value) for r in group] == [
            ("const_20x", "cross"),
            ("const_20x", "isolated"),
            ("const_2x", "cross"),
        ]
        assert all(r.ok for r in group)
    assert summary.total_trades == 36
    assert summary.policies_with_liquidation == 8


def test_const_2x_with_stop_loss():
    summary = run_backtest(_make_records(), _make_candles(), _make_config())
    r = _by_key(summary.with_sl_base)[("const_2x", MarginMode.CROSS)]

    assert [t.exit_price for t in r.trades] == pytest.approx([103.0, 100.0, 95.0])
    assert dict(r.trades_by_source) == {"Daily": 3}
    assert not r.had_liquidation
    # daily bucket 12000: +720 withdrawn as 700.8, flat day -19.2, stop -1198.08 - 19.17
    assert r.total_pnl_pct == pytest.approx(-2.68)
    assert r.withdrawn_total == pytest.approx(700.8)


def test_no_stop_loss_holds_to_close():
    summary = run_backtest(_make_records(), _make_candles(), _make_config())
    r = _by_key(summary.no_sl_base)[("const_2x", MarginMode.CROSS)]
    assert r.trades[-1].exit_price == pytest.approx(100.0)
    assert r.trades[-1].exit_time == datetime(2024, 1, 11, 11, 58, tzinfo=timezone.utc)


def test_high_leverage_is_liquidated():
    summary = run_backtest(_make_records(), _make_candles(), _make_config())
    cross = _by_key(summary.with_sl_base)[("const_20x", MarginMode.CROSS)]
    assert cross.had_liquidation
    assert cross.trades[-1].is_liquidated
    assert cross.trades[-1].exit_price == pytest.approx(95.0)

    isolated = _by_key(summary.with_sl_base)[("const_20x", MarginMode.ISOLATED)]
    daily = [b for b in isolated.buckets if b.name == "daily"][0]
    delayed = [b for b in isolated.buckets if b.name == "delayed"][0]
    assert daily.is_dead
    assert not delayed.is_dead


def test_anti_direction_flips_only_where_gate_passes():
    config = _make_config()
    summary = run_backtest(_make_records(sl_high_decision=True), _make_candles(), config)
    anti = _by_key(summary.with_sl_anti)
    assert anti[("const_2x", MarginMode.CROSS)].anti_applied == 3
    assert anti[("const_20x", MarginMode.CROSS)].anti_applied == 0
    assert all(not t.is_long for t in anti[("const_2x", MarginMode.CROSS)].trades)

    base = _by_key(summary.with_sl_base)
    assert base[("const_2x", MarginMode.CROSS)].anti_applied == 0
    assert all(t.is_long for t in base[("const_2x", MarginMode.CROSS)].trades)


def test_anti_overlay_can_be_disabled():
    summary = run_backtest(
        _make_records(), _make_candles(), _make_config(use_anti_direction_overlay=False),
    )
    assert summary.with_sl_anti == ()
    assert summary.no_sl_anti == ()
    assert summary.total_trades == 18


def test_flat_days_are_skipped():
    summary = run_backtest(_make_records(pred_label=1), _make_candles(), _make_config())
    assert summary.total_trades == 0
    assert summary.best_total_pnl_pct == 0.0


def test_precomputed_delayed_facts():
    records = _make_records()
    records[1] = PredictionRecord(
        entry=records[1].entry,
        pred_label=2,
        min_move=0.03,
        entry_price=100.0,
        delayed=DelayedExecutionFacts(
            executed_at=T0 + DAY + 30 * MINUTE,
            entry_price=100.0,
            intraday_result=TradeResult.NONE,
        ),
    )
    summary = run_backtest(records, _make_candles(), _make_config())
    r = _by_key(summary.with_sl_base)[("const_2x", MarginMode.CROSS)]
    assert dict(r.trades_by_source) == {"Daily": 3, "DelayedA": 1}
    delayed = [t for t in r.trades if t.source == "DelayedA"][0]
    assert delayed.bucket == "delayed"
    # delayed bucket 3000 * position fraction 0.4
    assert delayed.margin_used == pytest.approx(1200.0)


def test_simulated_delayed_entry():
    config = _make_config(delayed=DelayedConfig(source="B"))
    summary = run_backtest(_make_records(), _make_candles(), config)
    r = _by_key(summary.with_sl_base)[("const_2x", MarginMode.CROSS)]
    delayed = [t for t in r.trades if t.source == "DelayedB"]
    assert len(delayed) == 1, f"expected one delayed fill, got {r.trades_by_source}"
    # fill at 100 * (1 - 0.45 * 0.03) on day 3, stopped in the same bar
    assert delayed[0].entry_price == pytest.approx(98.65)
    assert delayed[0].exit_price == pytest.approx(98.65 * (1 - 0.0165))
    assert delayed[0].entry_time == T0 + 2 * DAY + 120 * MINUTE


# ---------------------------------------------------------------------------
# Isolation and determinism
# ---------------------------------------------------------------------------

def test_failing_policy_does_not_stop_others():
    config = _make_config()
    candles = _make_candles()
    days = prepare_days(_make_records(), candles)
    specs = [
        PolicySpec("const_2x", ConstLeveragePolicy("const_2x", 2.0), MarginMode.CROSS),
        PolicySpec("broken", _NanPolicy(), MarginMode.CROSS),
    ]
    results = run_policies(specs, days, candles, config, True, False)

    assert [r.policy_name for r in results] == ["broken", "const_2x"]
    assert results[0].error.startswith("PolicyError")
    assert results[0].trades == ()
    assert results[1].ok
    assert len(results[1].trades) == 3

    best, worst, liq, total = summarize(results)
    assert total == 3
    assert best == results[1].total_pnl_pct


def test_zero_leverage_policy_never_trades():
    policies = (
        PolicyConfig("const_2x", "const", MarginMode.CROSS, 2.0),
        PolicyConfig("const_off", "const", MarginMode.CROSS, 0.0),
    )
    summary = run_backtest(_make_records(), _make_candles(), BacktestConfig(policies=policies))
    by_key = _by_key(summary.with_sl_base)

    off = by_key[("const_off", MarginMode.CROSS)]
    assert off.ok
    assert off.trades == ()
    assert off.total_pnl_pct == 0.0
    assert len(by_key[("const_2x", MarginMode.CROSS)].trades) == 3


def test_unbuildable_policy_does_not_stop_the_backtest():
    policies = (
        PolicyConfig("const_2x", "const", MarginMode.CROSS, 2.0),
        PolicyConfig("const_nan", "const", MarginMode.CROSS, float("nan")),
    )
    summary = run_backtest(_make_records(), _make_candles(), BacktestConfig(policies=policies))

    results = summary.all_results()
    assert len(results) == 8
    broken = [r for r in results if r.policy_name == "const_nan"]
    assert len(broken) == 4
    assert all(r.error.startswith("PolicyError") for r in broken)
    assert all(r.ok and len(r.trades) == 3 for r in results if r.policy_name == "const_2x")
    assert summary.total_trades == 12


def test_runs_are_deterministic():
    config = _make_config(delayed=DelayedConfig())
    first = run_backtest(_make_records(), _make_candles(), config)
    second = run_backtest(_make_records(), _make_candles(), config)
    assert first.config_hash == second.config_hash
    assert [r.result_hash() for r in first.all_results()] == [
        r.result_hash() for r in second.all_results()
    ]


def test_build_policy_specs():
    specs = build_policy_specs(_make_config())
    assert [(s.name, s.margin_mode) for s in specs] == [
        ("const_2x", MarginMode.CROSS),
        ("const_20x", MarginMode.CROSS),
        ("const_20x", MarginMode.ISOLATED),
    ]


# ---------------------------------------------------------------------------
# Day labelling
# ---------------------------------------------------------------------------

def test_evaluate_days():
    records = _make_records() + [
        PredictionRecord(
            entry=EntryUtc(T0 + 3 * DAY), pred_label=1, min_move=0.03, entry_price=100.0,
        ),
    ]
    candles = _make_candles(days=4)
    evals = evaluate_days(records, candles, _make_config())
    # strong levels for min_move 0.03: tp 3.75%, sl 1.65%
    assert [e.outcome.result for e in evals[:3]] == [
        TradeResult.NONE, TradeResult.NONE, TradeResult.STOP_LOSS_FIRST,
    ]
    assert evals[3].is_long is None
    assert evals[3].outcome is None
