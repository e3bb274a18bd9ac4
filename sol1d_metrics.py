"""
SOL-1D — Post-run Metrics

Risk ratios and tabular views of a PolicyResult's trades.

Per-trade return is weighted by the position's share of total capital:

    r_i = net_return_pct_i / 100 * margin_used_i / total_capital

Sharpe / Sortino annualize with sqrt(252) over population standard
deviations; max drawdown and CAGR come from compounding (1 + r_i).
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, Sequence

import numpy as np
import pandas as pd

from sol1d_ledger_types import TOTAL_CAPITAL, PnLTrade

TRADING_DAYS_PER_YEAR = 252
_STD_EPS = 1e-12


@dataclass(frozen=True)
class PolicyRatios:
    n: int = 0
    mean: float = 0.0
    std: float = 0.0
    down_std: float = 0.0
    sharpe: float = math.nan
    sortino: float = math.nan
    max_dd: float = 0.0
    cagr: float = 0.0
    calmar: float = math.nan
    win_rate: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        def f(v: float):
            return v if math.isfinite(v) else None
        return {
            "n": self.n,
            "mean": f(self.mean),
            "std": f(self.std),
            "down_std": f(self.down_std),
            "sharpe": f(self.sharpe),
            "sortino": f(self.sortino),
            "max_dd": f(self.max_dd),
            "cagr": f(self.cagr),
            "calmar": f(self.calmar),
            "win_rate": f(self.win_rate),
        }


def weighted_returns(trades: Sequence[PnLTrade], total_capital: float = TOTAL_CAPITAL) -> np.ndarray:
    ordered = sorted(trades, key=lambda t: (t.entry_time, t.exit_time))
    return np.array(
        [t.net_return_pct / 100.0 * t.margin_used / total_capital for t in ordered],
        dtype=np.float64,
    )


def compounded_drawdown(rets: np.ndarray) -> float:
    """Max drawdown of the compounded equity curve prod(1 + r)."""
    if rets.size == 0:
        return 0.0
    equity = np.cumprod(1.0 + rets)
    peak = np.maximum.accumulate(np.concatenate(([1.0], equity)))[1:]
    dd = (peak - equity) / peak
    return float(max(0.0, dd.max()))


def policy_ratios(trades: Sequence[PnLTrade], total_capital: float = TOTAL_CAPITAL) -> PolicyRatios:
    if not trades:
        return PolicyRatios()

    rets = weighted_returns(trades, total_capital)
    n = int(rets.size)
    mean = float(np.mean(rets))
    std = float(np.std(rets))
    down_std = float(np.std(np.minimum(0.0, rets)))
    ann = math.sqrt(TRADING_DAYS_PER_YEAR)

    sharpe = mean / std * ann if std > _STD_EPS else math.nan
    sortino = mean / down_std * ann if down_std > _STD_EPS else math.nan

    max_dd = compounded_drawdown(rets)
    final = float(np.prod(1.0 + rets))
    years = n / TRADING_DAYS_PER_YEAR
    cagr = final ** (1.0 / years) - 1.0 if years > 0 and final > 0 else 0.0
    calmar = cagr / max_dd if max_dd > _STD_EPS else math.nan

    win_rate = sum(1 for t in trades if t.net_return_pct > 0.0) / len(trades)

    return PolicyRatios(
        n=n, mean=mean, std=std, down_std=down_std,
        sharpe=sharpe, sortino=sortino, max_dd=max_dd,
        cagr=cagr, calmar=calmar, win_rate=win_rate,
    )


def trades_frame(trades: Sequence[PnLTrade]) -> pd.DataFrame:
    """One row per trade, columns from PnLTrade.to_dict()."""
    rows = [t.to_dict() for t in trades]
    df = pd.DataFrame(rows)
    if not df.empty:
        for col in ("date", "entry_time", "exit_time"):
            df[col] = pd.to_datetime(df[col], utc=True)
    return df


def source_breakdown(trades: Sequence[PnLTrade]) -> pd.DataFrame:
    """Per-source trade count, win rate, mean net return and liquidations."""
    df = trades_frame(trades)
    if df.empty:
        return pd.DataFrame(columns=["trades", "win_rate", "mean_net_pct", "liquidations"])
    grouped = df.groupby("source")
    out = pd.DataFrame({
        "trades": grouped.size(),
        "win_rate": grouped["net_return_pct"].apply(lambda s: float((s > 0).mean())),
        "mean_net_pct": grouped["net_return_pct"].mean(),
        "liquidations": grouped["is_liquidated"].sum().astype(int),
    })
    return out.sort_index()
