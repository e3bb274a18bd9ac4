"""PnlLedger: liquidation, withdrawals, margin modes, ordering, determinism.

Most cases use two buckets of 1000 each (total 2000) so the arithmetic is
easy to follow.  Commission is zero unless a test is about commission.
"""

import sys
import os
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", ".."))

from sol1d_ledger import PnlLedger, liquidation_price, liquidation_tolerance
from sol1d_ledger_types import (
    BucketSpec,
    BucketState,
    BucketStatus,
    InvalidTransitionError,
    LedgerConfig,
    LedgerError,
    LedgerOrderError,
    MarginMode,
    TradeRequest,
)
from sol1d_series import Bar

T0 = datetime(2024, 1, 8, 12, 0, tzinfo=timezone.utc)
DAY = timedelta(days=1)


def _make_config(commission_rate=0.0):
    return LedgerConfig(
        total_capital=2000.0,
        commission_rate=commission_rate,
        buckets=(BucketSpec("daily", 0.5, 1.0), BucketSpec("delayed", 0.5, 1.0)),
    )


def _make_request(
    day=0,
    bucket="daily",
    is_long=True,
    entry=100.0,
    exit_raw=100.0,
    leverage=10.0,
    fraction=1.0,
    low=None,
    high=None,
    exit_minute=60,
):
    start = T0 + day * DAY
    low = min(entry, exit_raw) - 0.1 if low is None else low
    high = max(entry, exit_raw) + 0.1 if high is None else high
    bars = (
        Bar(start, entry, high, low, exit_raw),
        Bar(start + timedelta(minutes=exit_minute), exit_raw, exit_raw, exit_raw, exit_raw),
    )
    return TradeRequest(
        date=start.replace(hour=0),
        entry_time=start,
        exit_time=start + timedelta(minutes=exit_minute),
        source="Daily" if bucket == "daily" else "DelayedA",
        bucket=bucket,
        is_long=is_long,
        entry_price=entry,
        exit_price_raw=exit_raw,
        leverage=leverage,
        position_fraction=fraction,
        path_bars=bars,
    )


# ---------------------------------------------------------------------------
# Liquidation math
# ---------------------------------------------------------------------------

def test_liquidation_tolerance_defaults_to_inverse_leverage():
    cfg = LedgerConfig()
    assert liquidation_tolerance(10.0, cfg) == pytest.approx(0.10)
    assert liquidation_price(100.0, True, 0.10) == pytest.approx(90.0)
    assert liquidation_price(100.0, False, 0.10) == pytest.approx(110.0)


def test_liquidation_tolerance_with_maintenance_margin():
    cfg = LedgerConfig(maintenance_margin_rate=0.004, liquidation_multiplier=0.97)
    assert liquidation_tolerance(10.0, cfg) == pytest.approx((0.1 - 0.004) * 0.97)
    with pytest.raises(LedgerError):
        liquidation_tolerance(500.0, cfg)


# ---------------------------------------------------------------------------
# Cross margin
# ---------------------------------------------------------------------------

def test_cross_liquidation_kills_whole_ledger():
    ledger = PnlLedger(MarginMode.CROSS, _make_config())
    trade = ledger.register_trade(_make_request(exit_raw=99.0, low=90.0))

    assert trade is not None
    assert trade.is_liquidated and trade.is_real_liquidation
    assert trade.exit_price == pytest.approx(90.0)
    assert ledger.bucket("daily").equity == 0.0
    assert ledger.bucket("daily").is_dead
    assert ledger.global_dead
    assert ledger.had_liquidation

    later = ledger.register_trade(_make_request(day=1, bucket="delayed", exit_raw=101.0))
    assert later is None, "dead cross ledger accepted a trade"
    assert ledger.bucket("delayed").equity == 1000.0
    assert len(ledger.trades) == 1


def test_low_just_above_liquidation_survives():
    ledger = PnlLedger(MarginMode.CROSS, _make_config())
    trade = ledger.register_trade(_make_request(exit_raw=95.0, low=90.0 + 1e-9))
    assert not trade.is_liquidated
    assert ledger.bucket("daily").equity == pytest.approx(1000.0 - 500.0)


def test_raw_exit_worse_than_liquidation_is_clamped():
    ledger = PnlLedger(MarginMode.CROSS, _make_config())
    trade = ledger.register_trade(_make_request(exit_raw=85.0, low=95.0))
    assert trade.is_real_liquidation
    assert trade.exit_price == pytest.approx(90.0)
    assert ledger.global_dead


def test_short_liquidation_uses_high():
    ledger = PnlLedger(MarginMode.CROSS, _make_config())
    trade = ledger.register_trade(_make_request(is_long=False, exit_raw=101.0, high=111.0))
    assert trade.is_liquidated
    assert trade.exit_price == pytest.approx(110.0)


# ---------------------------------------------------------------------------
# Withdrawals and drawdown
# ---------------------------------------------------------------------------

def test_profit_above_base_is_withdrawn():
    ledger = PnlLedger(MarginMode.CROSS, _make_config())
    trade = ledger.register_trade(_make_request(exit_raw=102.0, low=99.5))

    assert trade.gross_return_pct == pytest.approx(2.0)
    snap = ledger.bucket("daily")
    assert snap.equity == pytest.approx(1000.0)
    assert snap.withdrawn == pytest.approx(200.0)
    assert snap.peak_visible == pytest.approx(1200.0)
    assert ledger.withdrawn_total() == pytest.approx(200.0)
    assert ledger.total_pnl_pct() == pytest.approx(10.0)


def test_drawdown_is_measured_on_visible_equity():
    ledger = PnlLedger(MarginMode.CROSS, _make_config())
    ledger.register_trade(_make_request(day=0, exit_raw=102.0, low=99.5))
    ledger.register_trade(_make_request(day=1, exit_raw=97.0, low=96.9))

    snap = ledger.bucket("daily")
    # visible 1200 -> 900 (equity 1000 - 300, withdrawn 200)
    assert snap.equity == pytest.approx(700.0)
    assert snap.max_dd == pytest.approx(300.0 / 1200.0)
    assert ledger.max_dd_pct() == pytest.approx(25.0)


def test_margin_is_capped_by_equity():
    ledger = PnlLedger(MarginMode.ISOLATED, _make_config())
    ledger.register_trade(_make_request(day=0, exit_raw=95.0, low=94.9))
    trade = ledger.register_trade(_make_request(day=1, exit_raw=100.0))
    assert trade.margin_used == pytest.approx(500.0)
    assert trade.notional == pytest.approx(5000.0)


def test_commission_is_charged_on_both_sides():
    ledger = PnlLedger(MarginMode.CROSS, _make_config(commission_rate=0.0004))
    trade = ledger.register_trade(_make_request(exit_raw=100.0))
    # notional 10000 * 0.0004 * 2
    assert trade.commission == pytest.approx(8.0)
    assert trade.net_return_pct == pytest.approx(-0.8)
    assert ledger.bucket("daily").equity == pytest.approx(992.0)


# ---------------------------------------------------------------------------
# Isolated margin
# ---------------------------------------------------------------------------

def test_isolated_liquidation_is_contained():
    ledger = PnlLedger(MarginMode.ISOLATED, _make_config())
    trade = ledger.register_trade(_make_request(exit_raw=99.0, low=90.0))

    assert trade.is_liquidated
    assert ledger.bucket("daily").is_dead
    assert ledger.bucket("daily").equity == 0.0
    assert not ledger.global_dead
    assert ledger.had_liquidation

    other = ledger.register_trade(_make_request(day=1, bucket="delayed", exit_raw=101.0))
    assert other is not None
    assert ledger.bucket("delayed").withdrawn == pytest.approx(100.0)

    skipped = ledger.register_trade(_make_request(day=2, bucket="daily", exit_raw=101.0))
    assert skipped is None


def test_isolated_loss_past_equity_is_a_local_liquidation():
    ledger = PnlLedger(MarginMode.ISOLATED, _make_config(commission_rate=0.0004))
    # path stays above the 90.0 liquidation price; pnl -995, commission 8
    trade = ledger.register_trade(_make_request(exit_raw=90.05, low=90.01))

    assert trade.is_liquidated
    assert not trade.is_real_liquidation
    assert trade.exit_price == pytest.approx(90.05)
    assert ledger.bucket("daily").is_dead
    assert ledger.bucket("daily").equity == 0.0
    assert ledger.had_liquidation
    assert not ledger.global_dead
    assert not ledger.bucket("delayed").is_dead
    assert ledger.bucket("delayed").equity == 1000.0


def test_isolated_global_dead_when_all_buckets_dead():
    ledger = PnlLedger(MarginMode.ISOLATED, _make_config())
    ledger.register_trade(_make_request(day=0, bucket="daily", exit_raw=99.0, low=90.0))
    ledger.register_trade(_make_request(day=1, bucket="delayed", exit_raw=99.0, low=90.0))
    assert ledger.global_dead


# ---------------------------------------------------------------------------
# Skips and errors
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("leverage, fraction", [(0.0, 1.0), (-2.0, 1.0), (10.0, 0.0)])
def test_non_trading_requests_are_skipped(leverage, fraction):
    ledger = PnlLedger(MarginMode.CROSS, _make_config())
    assert ledger.register_trade(_make_request(leverage=leverage, fraction=fraction)) is None
    assert ledger.trades == ()
    assert ledger.bucket("daily").equity == 1000.0


def test_out_of_order_exit_raises():
    ledger = PnlLedger(MarginMode.CROSS, _make_config())
    ledger.register_trade(_make_request(day=1))
    with pytest.raises(LedgerOrderError):
        ledger.register_trade(_make_request(day=0))


def test_equal_exit_times_are_allowed():
    ledger = PnlLedger(MarginMode.CROSS, _make_config())
    ledger.register_trade(_make_request(bucket="daily"))
    assert ledger.register_trade(_make_request(bucket="delayed")) is not None


@pytest.mark.parametrize("kwargs", [
    {"bucket": "intraday"},
    {"entry": 0.0},
    {"leverage": float("nan")},
])
def test_invalid_requests_raise(kwargs):
    ledger = PnlLedger(MarginMode.CROSS, _make_config())
    with pytest.raises(LedgerError):
        ledger.register_trade(_make_request(**kwargs))


def test_empty_path_raises():
    ledger = PnlLedger(MarginMode.CROSS, _make_config())
    req = _make_request()
    bare = replace(req, path_bars=())
    with pytest.raises(LedgerError):
        ledger.register_trade(bare)


def test_dead_bucket_cannot_revive():
    state = BucketState.open("daily", 1000.0)
    state.transition(BucketStatus.DEAD)
    with pytest.raises(InvalidTransitionError):
        state.transition(BucketStatus.ALIVE)


# ---------------------------------------------------------------------------
# Determinism
# ---------------------------------------------------------------------------

def test_same_stream_same_ledger():
    stream = [
        _make_request(day=0, exit_raw=101.5),
        _make_request(day=0, bucket="delayed", exit_raw=99.2, exit_minute=90),
        _make_request(day=1, exit_raw=98.0),
        _make_request(day=2, bucket="delayed", exit_raw=103.0),
    ]
    results = []
    for _ in range(2):
        ledger = PnlLedger(MarginMode.ISOLATED, _make_config(commission_rate=0.0004))
        for req in stream:
            ledger.register_trade(req)
        results.append((ledger.trades, ledger.snapshot(), ledger.total_pnl_pct()))
    assert results[0] == results[1]
