"""
SOL-1D — Leverage Policies and Direction Rules

LeveragePolicy protocol with the const / risk_aware / ultra_safe
implementations, direction resolution per prediction mode, and the
anti-direction overlay gate.

Anti-direction applies on risk days only:
    sl_high_decision is True
    0.005 <= min_move <= 0.12
    liquidation distance (1/L - mmr) >= 2 * min_move
When it applies the day's side is inverted.  Evaluator and ledger logic
are unchanged.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Protocol, Tuple

from sol1d_records import (
    LABEL_DOWN,
    LABEL_FLAT,
    LABEL_UP,
    PredictionMode,
    PredictionRecord,
    RecordError,
)

ANTI_MIN_MOVE_LOW = 0.005
ANTI_MIN_MOVE_HIGH = 0.12
ANTI_LIQ_MARGIN_K = 2.0


class PolicyError(ValueError):
    """Raised for invalid policy parameters or an invalid resolved leverage."""


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------

class LeveragePolicy(Protocol):
    """Pure function from a prediction record to a leverage multiplier.

    A result <= 0 means "do not trade this day".
    """

    @property
    def name(self) -> str:
        ...

    def resolve_leverage(self, record: PredictionRecord) -> float:
        ...


def _check_leverage(name: str, lev: float) -> None:
    if not math.isfinite(lev):
        raise PolicyError(f"policy {name!r}: leverage must be finite, got {lev}")


@dataclass(frozen=True)
class ConstLeveragePolicy:
    """Fixed leverage every day.  leverage <= 0 is a policy that never trades."""
    name: str
    leverage: float

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise PolicyError("policy name must not be empty")
        _check_leverage(self.name, self.leverage)

    def resolve_leverage(self, record: PredictionRecord) -> float:
        return self.leverage


@dataclass(frozen=True)
class RiskAwareLeveragePolicy:
    """normal_leverage by default, high_risk_leverage on SL-risk days."""
    name: str = "risk_aware"
    normal_leverage: float = 10.0
    high_risk_leverage: float = 3.0

    def __post_init__(self) -> None:
        _check_leverage(self.name, self.normal_leverage)
        _check_leverage(self.name, self.high_risk_leverage)
        if self.high_risk_leverage > self.normal_leverage:
            raise PolicyError(
                f"policy {self.name!r}: high_risk_leverage {self.high_risk_leverage} "
                f"> normal_leverage {self.normal_leverage}"
            )

    def resolve_leverage(self, record: PredictionRecord) -> float:
        if record.sl_high_decision is True:
            return self.high_risk_leverage
        return self.normal_leverage


@dataclass(frozen=True)
class UltraSafeLeveragePolicy:
    name: str = "ultra_safe"
    leverage: float = 2.0

    def __post_init__(self) -> None:
        _check_leverage(self.name, self.leverage)

    def resolve_leverage(self, record: PredictionRecord) -> float:
        return self.leverage


# ---------------------------------------------------------------------------
# Direction
# ---------------------------------------------------------------------------

def resolve_direction(
    record: PredictionRecord,
    mode: PredictionMode = PredictionMode.DAY_ONLY,
) -> Optional[bool]:
    """True for long, False for short, None for no trade."""
    if mode is PredictionMode.DAY_ONLY:
        if record.pred_label == LABEL_UP:
            return True
        if record.pred_label == LABEL_DOWN:
            return False
        if record.micro_up:
            return True
        if record.micro_down:
            return False
        return None

    if mode is PredictionMode.DAY_PLUS_MICRO:
        cls = record.pred_label_day_micro
        if cls is None:
            raise RecordError(f"{record.entry}: pred_label_day_micro required for {mode.value}")
        if cls == LABEL_UP:
            return True
        if cls == LABEL_DOWN:
            return False
        if cls == LABEL_FLAT:
            return None
        raise RecordError(f"{record.entry}: pred_label_day_micro must be 0/1/2, got {cls!r}")

    if mode is PredictionMode.DAY_PLUS_MICRO_PLUS_SL:
        p = record.probs
        if p is None:
            raise RecordError(f"{record.entry}: probs required for {mode.value}")
        if p.up > p.down and p.up > p.flat:
            return True
        if p.down > p.up and p.down > p.flat:
            return False
        return None

    raise RecordError(f"unknown prediction mode {mode!r}")


# ---------------------------------------------------------------------------
# Anti-direction
# ---------------------------------------------------------------------------

def should_apply_anti_direction(
    record: PredictionRecord,
    leverage: float,
    maintenance_margin_rate: float = 0.0,
) -> bool:
    if leverage <= 0.0:
        raise PolicyError(f"anti-direction gate needs leverage > 0, got {leverage}")
    if record.sl_high_decision is not True:
        return False

    mm = record.min_move
    if mm < ANTI_MIN_MOVE_LOW or mm > ANTI_MIN_MOVE_HIGH:
        return False

    liq_adverse = 1.0 / leverage - maintenance_margin_rate
    return liq_adverse >= ANTI_LIQ_MARGIN_K * mm


def apply_anti_direction(
    record: PredictionRecord,
    is_long: bool,
    leverage: float,
    maintenance_margin_rate: float = 0.0,
) -> Tuple[bool, bool]:
    """(side, applied).  Side is inverted when the gate passes."""
    if should_apply_anti_direction(record, leverage, maintenance_margin_rate):
        return (not is_long), True
    return is_long, False
