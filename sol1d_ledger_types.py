"""
SOL-1D — Ledger Types

MarginMode, BucketStatus state machine, bucket specs and state,
TradeRequest (input) and PnLTrade (output) records, LedgerConfig.

Transition map (BucketStatus):
    ALIVE -> DEAD
    DEAD is terminal.

References:
    sol1d_ledger.py — PnlLedger, the only writer of BucketState
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Tuple

from sol1d_series import Bar


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

TOTAL_CAPITAL = 20000.0
COMMISSION_RATE = 0.0004

BUCKET_DAILY = "daily"
BUCKET_INTRADAY = "intraday"
BUCKET_DELAYED = "delayed"

SOURCE_DAILY = "Daily"
SOURCE_DELAYED_A = "DelayedA"
SOURCE_DELAYED_B = "DelayedB"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class LedgerError(ValueError):
    """Raised when a trade request violates a ledger precondition."""


class LedgerOrderError(LedgerError):
    """Raised when trades are not registered in non-decreasing exit-time order."""


class InvalidTransitionError(Exception):
    """Raised when a bucket status transition is not allowed."""

    def __init__(self, current: "BucketStatus", target: "BucketStatus"):
        self.current = current
        self.target = target
        super().__init__(f"Invalid bucket transition: {current.value} -> {target.value}")


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class MarginMode(Enum):
    CROSS = "cross"
    ISOLATED = "isolated"


class BucketStatus(Enum):
    ALIVE = "alive"
    DEAD = "dead"


BUCKET_TRANSITIONS: Dict[BucketStatus, set] = {
    BucketStatus.ALIVE: {BucketStatus.DEAD},
    BucketStatus.DEAD: set(),
}


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BucketSpec:
    """Capital share of the total and default position fraction."""
    name: str
    share: float
    position_fraction: float


DEFAULT_BUCKETS: Tuple[BucketSpec, ...] = (
    BucketSpec(BUCKET_DAILY, share=0.60, position_fraction=1.0),
    BucketSpec(BUCKET_INTRADAY, share=0.25, position_fraction=0.0),
    BucketSpec(BUCKET_DELAYED, share=0.15, position_fraction=0.4),
)


@dataclass(frozen=True)
class LedgerConfig:
    """Ledger economics.

    Liquidation tolerance for a trade at leverage L:

        (1/L - maintenance_margin_rate) * liquidation_multiplier

    With the defaults (0.0, 1.0) this is exactly 1/L.  An exchange-like
    setting is maintenance_margin_rate=0.004, liquidation_multiplier=0.97.
    """
    total_capital: float = TOTAL_CAPITAL
    commission_rate: float = COMMISSION_RATE
    maintenance_margin_rate: float = 0.0
    liquidation_multiplier: float = 1.0
    buckets: Tuple[BucketSpec, ...] = DEFAULT_BUCKETS

    def position_fraction(self, bucket: str) -> float:
        for spec in self.buckets:
            if spec.name == bucket:
                return spec.position_fraction
        raise LedgerError(f"unknown bucket {bucket!r}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_capital": self.total_capital,
            "commission_rate": self.commission_rate,
            "maintenance_margin_rate": self.maintenance_margin_rate,
            "liquidation_multiplier": self.liquidation_multiplier,
            "buckets": [
                {"name": b.name, "share": b.share, "position_fraction": b.position_fraction}
                for b in self.buckets
            ],
        }


# ---------------------------------------------------------------------------
# Bucket state
# ---------------------------------------------------------------------------

@dataclass
class BucketState:
    """One capital pool.  Mutated only by PnlLedger."""
    name: str
    base_capital: float
    equity: float
    peak_visible: float
    max_dd: float = 0.0
    withdrawn: float = 0.0
    status: BucketStatus = BucketStatus.ALIVE

    @classmethod
    def open(cls, name: str, base_capital: float) -> BucketState:
        if not name or not name.strip():
            raise LedgerError("bucket name must not be empty")
        if base_capital < 0.0:
            raise LedgerError(f"bucket {name!r}: base capital must be non-negative, got {base_capital}")
        return cls(name=name, base_capital=base_capital,
                   equity=base_capital, peak_visible=base_capital)

    @property
    def is_dead(self) -> bool:
        return self.status is BucketStatus.DEAD

    @property
    def visible(self) -> float:
        return self.equity + self.withdrawn

    def transition(self, new_status: BucketStatus) -> None:
        if new_status not in BUCKET_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.status, new_status)
        self.status = new_status

    def snapshot(self) -> BucketSnapshot:
        return BucketSnapshot(
            name=self.name,
            base_capital=self.base_capital,
            equity=self.equity,
            peak_visible=self.peak_visible,
            max_dd=self.max_dd,
            withdrawn=self.withdrawn,
            is_dead=self.is_dead,
        )


@dataclass(frozen=True)
class BucketSnapshot:
    name: str
    base_capital: float
    equity: float
    peak_visible: float
    max_dd: float
    withdrawn: float
    is_dead: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "base_capital": self.base_capital,
            "equity": self.equity,
            "peak_visible": self.peak_visible,
            "max_dd": self.max_dd,
            "withdrawn": self.withdrawn,
            "is_dead": self.is_dead,
        }


# ---------------------------------------------------------------------------
# Trade request / record
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TradeRequest:
    """Immutable input to PnlLedger.register_trade.

    exit_price_raw: exit before liquidation clamping (TP, SL or window close).
    path_bars: bars the position was open for, used for the liquidation
    scan and MAE/MFE.
    """
    date: datetime
    entry_time: datetime
    exit_time: datetime
    source: str
    bucket: str
    is_long: bool
    entry_price: float
    exit_price_raw: float
    leverage: float
    position_fraction: float
    path_bars: Tuple[Bar, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class PnLTrade:
    """One realized trade.  Built only by PnlLedger."""
    date: datetime
    entry_time: datetime
    exit_time: datetime
    source: str
    bucket: str
    is_long: bool
    entry_price: float
    exit_price: float
    margin_used: float
    notional: float
    gross_return_pct: float
    net_return_pct: float
    commission: float
    equity_after: float
    is_liquidated: bool
    is_real_liquidation: bool
    liq_price: float
    max_adverse_pct: float
    max_favorable_pct: float
    leverage_used: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "entry_time": self.entry_time.isoformat(),
            "exit_time": self.exit_time.isoformat(),
            "source": self.source,
            "bucket": self.bucket,
            "is_long": self.is_long,
            "entry_price": self.entry_price,
            "exit_price": self.exit_price,
            "margin_used": self.margin_used,
            "notional": self.notional,
            "gross_return_pct": self.gross_return_pct,
            "net_return_pct": self.net_return_pct,
            "commission": self.commission,
            "equity_after": self.equity_after,
            "is_liquidated": self.is_liquidated,
            "is_real_liquidation": self.is_real_liquidation,
            "liq_price": self.liq_price,
            "max_adverse_pct": self.max_adverse_pct,
            "max_favorable_pct": self.max_favorable_pct,
            "leverage_used": self.leverage_used,
        }
