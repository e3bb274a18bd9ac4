"""
SOL-1D — Candle Series

Bar and CandleSeries: the only way price paths enter the evaluators and the
ledger.  Ordering, UTC-ness and price sanity are checked once here, at
ingestion, so downstream code can rely on them without re-checking.

Invariants of a CandleSeries:
    every ts is an aware datetime with zero UTC offset
    ts strictly ascending
    open/high/low/close finite and > 0, low <= high

References:
    sol1d_evaluator.py — consumes CandleSeries.slice()
    sol1d_ledger.py — consumes bar tuples as path_bars
"""

from __future__ import annotations

import bisect
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Tuple

_log = logging.getLogger(__name__)

INTERVALS = {
    "1m": timedelta(minutes=1),
    "1h": timedelta(hours=1),
    "6h": timedelta(hours=6),
    "1d": timedelta(days=1),
}


class SeriesError(ValueError):
    """Raised when a candle series violates an ingestion invariant."""


# ---------------------------------------------------------------------------
# Bar
# ---------------------------------------------------------------------------

class Bar:
    """OHLCV bar keyed by its UTC open time."""
    __slots__ = ("ts", "open", "high", "low", "close", "volume")

    def __init__(self, ts: datetime, o: float, h: float, l: float, c: float,
                 v: float = 0.0):
        self.ts = ts
        self.open = o
        self.high = h
        self.low = l
        self.close = c
        self.volume = v

    def __repr__(self) -> str:
        return (
            f"Bar({self.ts.isoformat()}, o={self.open}, h={self.high}, "
            f"l={self.low}, c={self.close})"
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Bar):
            return NotImplemented
        return (
            self.ts == other.ts and self.open == other.open
            and self.high == other.high and self.low == other.low
            and self.close == other.close and self.volume == other.volume
        )

    __hash__ = None  # type: ignore[assignment]


def _check_bar(bar: Bar, i: int, name: str) -> None:
    ts = bar.ts
    if not isinstance(ts, datetime) or ts.tzinfo is None:
        raise SeriesError(f"[{name}] bar {i}: timestamp must be an aware datetime, got {ts!r}")
    if ts.utcoffset() != timedelta(0):
        raise SeriesError(f"[{name}] bar {i}: timestamp must be UTC, got {ts.isoformat()}")
    for field_name in ("open", "high", "low", "close"):
        v = getattr(bar, field_name)
        if not math.isfinite(v) or v <= 0:
            raise SeriesError(f"[{name}] bar {i} ({ts.isoformat()}): {field_name}={v} must be finite and > 0")
    if bar.low > bar.high:
        raise SeriesError(f"[{name}] bar {i} ({ts.isoformat()}): low {bar.low} > high {bar.high}")


# ---------------------------------------------------------------------------
# CandleSeries
# ---------------------------------------------------------------------------

class CandleSeries:
    """Read-only, validated, strictly ascending sequence of bars."""

    def __init__(self, bars: Iterable[Bar], interval: str = "1m", name: str = ""):
        if interval not in INTERVALS:
            raise SeriesError(f"unknown interval {interval!r}; expected one of {sorted(INTERVALS)}")
        self._interval = interval
        self._name = name or interval
        items = tuple(bars)

        prev: Optional[datetime] = None
        for i, bar in enumerate(items):
            if not isinstance(bar, Bar):
                raise SeriesError(f"[{self._name}] item {i} is {type(bar).__name__}, expected Bar")
            _check_bar(bar, i, self._name)
            if prev is not None and bar.ts <= prev:
                raise SeriesError(
                    f"[{self._name}] series must be strictly ascending: "
                    f"bar {i} ts={bar.ts.isoformat()} prev={prev.isoformat()}"
                )
            prev = bar.ts

        self._bars: Tuple[Bar, ...] = items
        self._keys: List[datetime] = [b.ts for b in items]

    @property
    def interval(self) -> str:
        return self._interval

    @property
    def step(self) -> timedelta:
        return INTERVALS[self._interval]

    @property
    def bars(self) -> Tuple[Bar, ...]:
        return self._bars

    @property
    def name(self) -> str:
        return self._name

    def __len__(self) -> int:
        return len(self._bars)

    def __iter__(self):
        return iter(self._bars)

    def __getitem__(self, i):
        return self._bars[i]

    def slice(self, start: datetime, end: datetime) -> Tuple[Bar, ...]:
        """Bars with start <= ts < end."""
        if end <= start:
            return ()
        lo = bisect.bisect_left(self._keys, start)
        hi = bisect.bisect_left(self._keys, end)
        return self._bars[lo:hi]

    def index_at_or_after(self, ts: datetime) -> int:
        return bisect.bisect_left(self._keys, ts)

    def first_ts(self) -> Optional[datetime]:
        return self._keys[0] if self._keys else None

    def last_ts(self) -> Optional[datetime]:
        return self._keys[-1] if self._keys else None


# ---------------------------------------------------------------------------
# Resampling
# ---------------------------------------------------------------------------

def resample(series: CandleSeries, interval: str) -> CandleSeries:
    """Aggregate a finer series into ``interval`` buckets (UTC-aligned).

    Open = first open, High = max high, Low = min low, Close = last close,
    Volume = sum.
    """
    if interval not in INTERVALS:
        raise SeriesError(f"unknown interval {interval!r}")
    step = INTERVALS[interval]
    if step <= series.step:
        return series

    step_s = int(step.total_seconds())
    result: List[Bar] = []
    group_start: Optional[int] = None
    g_o = g_h = g_l = g_c = g_v = 0.0

    for bar in series:
        epoch = int(bar.ts.timestamp())
        bucket = (epoch // step_s) * step_s
        if group_start is None or bucket != group_start:
            if group_start is not None:
                result.append(Bar(
                    ts=datetime.fromtimestamp(group_start, tz=timezone.utc),
                    o=g_o, h=g_h, l=g_l, c=g_c, v=g_v,
                ))
            group_start = bucket
            g_o, g_h, g_l, g_c, g_v = bar.open, bar.high, bar.low, bar.close, bar.volume
        else:
            g_h = max(g_h, bar.high)
            g_l = min(g_l, bar.low)
            g_c = bar.close
            g_v += bar.volume

    if group_start is not None:
        result.append(Bar(
            ts=datetime.fromtimestamp(group_start, tz=timezone.utc),
            o=g_o, h=g_h, l=g_l, c=g_c, v=g_v,
        ))

    return CandleSeries(result, interval=interval, name=f"{series.name}->{interval}")


# ---------------------------------------------------------------------------
# pandas adapters
# ---------------------------------------------------------------------------

def from_frame(df, interval: str = "1m", name: str = "") -> CandleSeries:
    """Build a CandleSeries from a pandas DataFrame.

    The timestamp comes from a tz-aware DatetimeIndex, or from an
    ``open_time`` / ``timestamp`` column (aware datetimes, or integer epoch
    seconds which are read as UTC).  Naive datetimes are refused.
    """
    import pandas as pd

    if isinstance(df.index, pd.DatetimeIndex):
        if df.index.tz is None:
            raise SeriesError(f"[{name or interval}] DatetimeIndex is naive; localize to UTC first")
        stamps = df.index.tz_convert("UTC")
    else:
        col = "open_time" if "open_time" in df.columns else "timestamp"
        if col not in df.columns:
            raise SeriesError(f"[{name or interval}] frame needs a DatetimeIndex or an open_time/timestamp column")
        raw = df[col]
        if pd.api.types.is_integer_dtype(raw):
            stamps = pd.to_datetime(raw, unit="s", utc=True)
        else:
            parsed = pd.to_datetime(raw)
            if getattr(parsed.dt, "tz", None) is None:
                raise SeriesError(f"[{name or interval}] column {col!r} holds naive datetimes")
            stamps = parsed.dt.tz_convert("UTC")

    has_volume = "volume" in df.columns
    bars = []
    for ts, row in zip(stamps, df.itertuples(index=False)):
        bars.append(Bar(
            ts=ts.to_pydatetime().astimezone(timezone.utc),
            o=float(row.open),
            h=float(row.high),
            l=float(row.low),
            c=float(row.close),
            v=float(row.volume) if has_volume else 0.0,
        ))
    _log.debug("from_frame: %d bars (%s)", len(bars), interval)
    return CandleSeries(bars, interval=interval, name=name)


def load_parquet(path: str, interval: str = "1m") -> CandleSeries:
    """Load a candle series from a parquet file."""
    import pandas as pd
    df = pd.read_parquet(path)
    return from_frame(df, interval=interval, name=path)


def to_frame(series: CandleSeries):
    """CandleSeries -> pandas DataFrame indexed by UTC open time."""
    import pandas as pd
    rows = [
        {"open": b.open, "high": b.high, "low": b.low, "close": b.close, "volume": b.volume}
        for b in series
    ]
    index = pd.DatetimeIndex([b.ts for b in series], name="open_time")
    return pd.DataFrame(rows, index=index, columns=["open", "high", "low", "close", "volume"])
