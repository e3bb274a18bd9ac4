"""
SOL-1D — Causal Split Engine

Classifies entries into Train / OOS / Excluded by the day-key of their
baseline exit, never by the entry's own day.  An entry on day D resolves on
D+1 (D+3 over a weekend), and the train boundary is defined by when the
trade could first have been observed closed.

    Excluded  weekend entry, no baseline exit exists
    Train     exit_day_key <= train_until
    OOS       exit_day_key >  train_until

Counts invariant for every SplitResult:
    len(train) + len(oos) == eligible
    eligible + len(excluded) == total

References:
    sol1d_windowing.py — try_compute_baseline_exit_utc
    sol1d_time_types.py — ExitDayKeyUtc, TrainUntilExitDayKeyUtc
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Generic, Optional, Sequence, Tuple, TypeVar

from sol1d_time_types import EntryUtc, ExitDayKeyUtc, TrainUntilExitDayKeyUtc
from sol1d_windowing import try_compute_baseline_exit_utc

_log = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class SplitOrderError(ValueError):
    """Raised when entries handed to the split are not strictly ascending."""


class ExcludedEntryError(ValueError):
    """Raised by the strict split when any entry has no baseline exit."""

    def __init__(self, count: int, first: EntryUtc):
        self.count = count
        self.first = first
        super().__init__(
            f"strict split found {count} excluded entries; first={first}"
        )


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

class SplitClass(Enum):
    TRAIN = "train"
    OOS = "oos"
    EXCLUDED = "excluded"


@dataclass(frozen=True)
class SplitDecision:
    split_class: SplitClass
    exit_day_key: Optional[ExitDayKeyUtc] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class SplitResult(Generic[T]):
    train: Tuple[T, ...]
    oos: Tuple[T, ...]
    excluded: Tuple[T, ...]
    train_until: TrainUntilExitDayKeyUtc

    @property
    def eligible(self) -> int:
        return len(self.train) + len(self.oos)

    @property
    def total(self) -> int:
        return self.eligible + len(self.excluded)

    def to_dict(self) -> dict:
        return {
            "train_until": str(self.train_until),
            "train": len(self.train),
            "oos": len(self.oos),
            "excluded": len(self.excluded),
            "eligible": self.eligible,
            "total": self.total,
        }


@dataclass(frozen=True)
class TrainOnly(Generic[T]):
    """Items proven to belong to the train segment.

    Only split_strict builds this; the tag records the boundary and counts
    so that a model trained from it can be traced back to its split.
    """
    items: Tuple[T, ...]
    tag: str

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self):
        return iter(self.items)


@dataclass(frozen=True)
class StrictSplitResult(Generic[T]):
    train: TrainOnly[T]
    oos: Tuple[T, ...]
    train_until: TrainUntilExitDayKeyUtc


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def classify_by_baseline_exit(
    entry: EntryUtc,
    train_until: TrainUntilExitDayKeyUtc,
) -> SplitDecision:
    """Classify a single entry against the train boundary."""
    result = try_compute_baseline_exit_utc(entry)
    if not result.ok:
        return SplitDecision(SplitClass.EXCLUDED, reason=result.reason)

    key = ExitDayKeyUtc.from_baseline_exit(result.exit)
    if train_until.covers(key):
        return SplitDecision(SplitClass.TRAIN, exit_day_key=key)
    return SplitDecision(SplitClass.OOS, exit_day_key=key)


def split_by_baseline_exit(
    items: Sequence[T],
    entry_selector: Callable[[T], EntryUtc],
    train_until: TrainUntilExitDayKeyUtc,
    tag: str = "split",
) -> SplitResult[T]:
    """Partition items by the baseline-exit day-key of their entry.

    Items must be in strictly ascending entry order.

    Raises:
        SplitOrderError: an entry is not strictly after its predecessor.
    """
    train = []
    oos = []
    excluded = []
    prev: Optional[EntryUtc] = None

    for i, item in enumerate(items):
        entry = entry_selector(item)
        if not isinstance(entry, EntryUtc):
            raise TypeError(
                f"[{tag}] entry_selector must return EntryUtc, got {type(entry).__name__}"
            )
        if prev is not None and entry <= prev:
            raise SplitOrderError(
                f"[{tag}] entries must be strictly ascending: "
                f"index {i} entry={entry} prev={prev}"
            )
        prev = entry

        decision = classify_by_baseline_exit(entry, train_until)
        if decision.split_class is SplitClass.TRAIN:
            train.append(item)
        elif decision.split_class is SplitClass.OOS:
            oos.append(item)
        else:
            excluded.append(item)

    result = SplitResult(
        train=tuple(train),
        oos=tuple(oos),
        excluded=tuple(excluded),
        train_until=train_until,
    )
    _log.info(
        "[%s] train_until=%s train=%d oos=%d excluded=%d",
        tag, train_until, len(result.train), len(result.oos), len(result.excluded),
    )
    return result


def split_strict(
    items: Sequence[T],
    entry_selector: Callable[[T], EntryUtc],
    train_until: TrainUntilExitDayKeyUtc,
    tag: str = "split",
) -> StrictSplitResult[T]:
    """Split that refuses excluded entries.

    Raises:
        ExcludedEntryError: at least one entry is a weekend entry.
        SplitOrderError: entries are not strictly ascending.
    """
    result = split_by_baseline_exit(items, entry_selector, train_until, tag=tag)
    if result.excluded:
        raise ExcludedEntryError(len(result.excluded), entry_selector(result.excluded[0]))

    train_tag = f"{tag}:train_until={train_until}:n={len(result.train)}"
    return StrictSplitResult(
        train=TrainOnly(items=result.train, tag=train_tag),
        oos=result.oos,
        train_until=train_until,
    )
