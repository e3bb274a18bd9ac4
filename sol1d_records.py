"""
SOL-1D — Prediction Records

Per-day inputs handed to the core by upstream collaborators (feature
construction and model inference are not part of this package):

    PredictionRecord       entry instant, direction class, minMove, entry price
    ProbTriple             calibrated (up, flat, down) probabilities
    DelayedExecutionFacts  a realized delayed entry for the day

Records validate on construction; a record that exists is usable by the
runner without further checks.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from sol1d_evaluator_types import TradeResult
from sol1d_time_types import EntryUtc

LABEL_DOWN = 0
LABEL_FLAT = 1
LABEL_UP = 2

_PROB_SUM_TOL = 1e-6


class RecordError(ValueError):
    """Raised when a prediction record or its parts are malformed."""


class PredictionMode(Enum):
    """Which prediction layer decides the day's direction."""
    DAY_ONLY = "day_only"
    DAY_PLUS_MICRO = "day_plus_micro"
    DAY_PLUS_MICRO_PLUS_SL = "day_plus_micro_plus_sl"


def _finite_positive(name: str, v: float) -> None:
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        raise RecordError(f"{name} must be a number, got {v!r}")
    if not math.isfinite(v) or v <= 0.0:
        raise RecordError(f"{name} must be finite and > 0, got {v}")


@dataclass(frozen=True)
class ProbTriple:
    """Calibrated class probabilities.  Must be finite, >= 0 and sum to 1."""
    up: float
    flat: float
    down: float

    def __post_init__(self) -> None:
        vals = (self.up, self.flat, self.down)
        if any(not math.isfinite(v) or v < 0.0 for v in vals):
            raise RecordError(f"degenerate probability triple {vals}")
        if abs(sum(vals) - 1.0) > _PROB_SUM_TOL:
            raise RecordError(f"probabilities must sum to 1, got {sum(vals):.8f} for {vals}")


@dataclass(frozen=True)
class DelayedExecutionFacts:
    """A delayed entry that was filled, with its intraday outcome.

    tp_pct / sl_pct are the percentages the intraday walk used; they are
    required when the result is TAKE_PROFIT_FIRST / STOP_LOSS_FIRST.
    """
    executed_at: datetime
    entry_price: float
    intraday_result: TradeResult
    source: str = "A"
    tp_pct: Optional[float] = None
    sl_pct: Optional[float] = None

    def __post_init__(self) -> None:
        ts = self.executed_at
        if not isinstance(ts, datetime) or ts.tzinfo is None or ts.utcoffset() != timedelta(0):
            raise RecordError(f"delayed executed_at must be UTC, got {ts!r}")
        _finite_positive("delayed entry_price", self.entry_price)
        if self.source not in ("A", "B"):
            raise RecordError(f"delayed source must be 'A' or 'B', got {self.source!r}")
        if self.intraday_result is TradeResult.TAKE_PROFIT_FIRST and self.tp_pct is None:
            raise RecordError("tp_pct is required for a TAKE_PROFIT_FIRST delayed result")
        if self.intraday_result is TradeResult.STOP_LOSS_FIRST and self.sl_pct is None:
            raise RecordError("sl_pct is required for a STOP_LOSS_FIRST delayed result")


@dataclass(frozen=True)
class PredictionRecord:
    """One trading day's prediction, as consumed by the policy runner."""
    entry: EntryUtc
    pred_label: int
    min_move: float
    entry_price: float
    micro_up: bool = False
    micro_down: bool = False
    sl_high_decision: Optional[bool] = None
    true_label: Optional[int] = None
    pred_label_day_micro: Optional[int] = None
    probs: Optional[ProbTriple] = None
    delayed: Optional[DelayedExecutionFacts] = None

    def __post_init__(self) -> None:
        if not isinstance(self.entry, EntryUtc):
            raise RecordError(f"entry must be EntryUtc, got {type(self.entry).__name__}")
        if self.pred_label not in (LABEL_DOWN, LABEL_FLAT, LABEL_UP):
            raise RecordError(f"pred_label must be 0/1/2, got {self.pred_label!r}")
        if self.true_label is not None and self.true_label not in (LABEL_DOWN, LABEL_FLAT, LABEL_UP):
            raise RecordError(f"true_label must be 0/1/2, got {self.true_label!r}")
        if self.micro_up and self.micro_down:
            raise RecordError(f"{self.entry}: micro_up and micro_down are both set")
        _finite_positive("min_move", self.min_move)
        _finite_positive("entry_price", self.entry_price)

    @property
    def strong_signal(self) -> bool:
        """Directional day class (not flat)."""
        return self.pred_label != LABEL_FLAT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry": self.entry.isoformat(),
            "pred_label": self.pred_label,
            "true_label": self.true_label,
            "micro_up": self.micro_up,
            "micro_down": self.micro_down,
            "sl_high_decision": self.sl_high_decision,
            "min_move": self.min_move,
            "entry_price": self.entry_price,
        }


# ---------------------------------------------------------------------------
# JSON parsing
# ---------------------------------------------------------------------------

def parse_utc(raw: str) -> datetime:
    """ISO-8601 string -> aware UTC datetime.  A trailing 'Z' is accepted."""
    if not isinstance(raw, str):
        raise RecordError(f"expected ISO timestamp string, got {raw!r}")
    text = raw[:-1] + "+00:00" if raw.endswith("Z") else raw
    try:
        ts = datetime.fromisoformat(text)
    except ValueError:
        raise RecordError(f"invalid ISO timestamp {raw!r}") from None
    if ts.tzinfo is None or ts.utcoffset() != timedelta(0):
        raise RecordError(f"timestamp must carry a UTC offset: {raw!r}")
    return ts


def delayed_from_dict(d: Dict[str, Any]) -> DelayedExecutionFacts:
    try:
        result = TradeResult(d["intraday_result"])
    except (KeyError, ValueError):
        raise RecordError(f"invalid delayed intraday_result in {d!r}") from None
    return DelayedExecutionFacts(
        executed_at=parse_utc(d["executed_at"]),
        entry_price=float(d["entry_price"]),
        intraday_result=result,
        source=d.get("source", "A"),
        tp_pct=d.get("tp_pct"),
        sl_pct=d.get("sl_pct"),
    )


def record_from_dict(d: Dict[str, Any]) -> PredictionRecord:
    """Build a PredictionRecord from its JSON form (see to_dict)."""
    for key in ("entry", "pred_label", "min_move", "entry_price"):
        if key not in d:
            raise RecordError(f"record missing {key!r}: {d!r}")
    probs = None
    if d.get("probs"):
        p = d["probs"]
        probs = ProbTriple(up=float(p["up"]), flat=float(p["flat"]), down=float(p["down"]))
    return PredictionRecord(
        entry=EntryUtc(parse_utc(d["entry"])),
        pred_label=int(d["pred_label"]),
        min_move=float(d["min_move"]),
        entry_price=float(d["entry_price"]),
        micro_up=bool(d.get("micro_up", False)),
        micro_down=bool(d.get("micro_down", False)),
        sl_high_decision=d.get("sl_high_decision"),
        true_label=d.get("true_label"),
        pred_label_day_micro=d.get("pred_label_day_micro"),
        probs=probs,
        delayed=delayed_from_dict(d["delayed"]) if d.get("delayed") else None,
    )
