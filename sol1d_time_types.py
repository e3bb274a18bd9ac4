"""
SOL-1D — Time-Key Types

Validated, non-interchangeable wrappers for UTC instants and UTC day-keys.

Every value is a frozen dataclass around a timezone-aware ``datetime``.
Constructors reject naive datetimes, non-zero UTC offsets and the
uninitialized sentinel (year 1).  Ordering is only defined between two
values of the same type, so an entry day-key can never be compared with an
exit day-key by accident.

References:
    sol1d_windowing.py — produces BaselineExitUtc from EntryUtc
    sol1d_split.py — compares ExitDayKeyUtc against TrainUntilExitDayKeyUtc
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class TimeKeyError(ValueError):
    """Raised when a time-key is built from an invalid datetime."""


class WindowError(ValueError):
    """Raised when a baseline window does not satisfy entry < exit."""


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------

_UNINITIALIZED_YEAR = 1


def _require_utc(value: datetime, type_name: str) -> datetime:
    """Return ``value`` normalized to ``timezone.utc`` or raise TimeKeyError."""
    if not isinstance(value, datetime):
        raise TimeKeyError(
            f"{type_name}: expected datetime, got {type(value).__name__}"
        )
    if value.tzinfo is None or value.utcoffset() is None:
        raise TimeKeyError(f"{type_name}: naive datetime {value.isoformat()}")
    if value.utcoffset() != timedelta(0):
        raise TimeKeyError(
            f"{type_name}: non-UTC offset {value.utcoffset()} in {value.isoformat()}"
        )
    if value.year == _UNINITIALIZED_YEAR:
        raise TimeKeyError(f"{type_name}: uninitialized value {value.isoformat()}")
    return value.astimezone(timezone.utc)


def _require_midnight(value: datetime, type_name: str) -> None:
    if (value.hour, value.minute, value.second, value.microsecond) != (0, 0, 0, 0):
        raise TimeKeyError(
            f"{type_name}: day-key must be 00:00 UTC, got {value.isoformat()}"
        )


def _floor_to_day(value: datetime) -> datetime:
    return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Instants
# ---------------------------------------------------------------------------

@dataclass(frozen=True, order=True)
class UtcInstant:
    """A validated point in time, always UTC."""
    value: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "value", _require_utc(self.value, type(self).__name__))

    def isoformat(self) -> str:
        return self.value.isoformat()

    def __str__(self) -> str:
        return self.value.strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True, order=True)
class EntryUtc:
    """The real instant a trading decision is made."""
    value: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "value", _require_utc(self.value, type(self).__name__))

    @classmethod
    def from_instant(cls, instant: UtcInstant) -> EntryUtc:
        return cls(instant.value)

    @property
    def instant(self) -> UtcInstant:
        return UtcInstant(self.value)

    @property
    def entry_day_key(self) -> EntryDayKeyUtc:
        """UTC calendar day of the entry, used for joins across datasets."""
        return EntryDayKeyUtc(_floor_to_day(self.value))

    def isoformat(self) -> str:
        return self.value.isoformat()

    def __str__(self) -> str:
        return self.value.strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True, order=True)
class BaselineExitUtc:
    """Exclusive end instant of a trade's baseline window."""
    value: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "value", _require_utc(self.value, type(self).__name__))

    @property
    def instant(self) -> UtcInstant:
        return UtcInstant(self.value)

    @property
    def exit_day_key(self) -> ExitDayKeyUtc:
        return ExitDayKeyUtc.from_baseline_exit(self)

    def isoformat(self) -> str:
        return self.value.isoformat()

    def __str__(self) -> str:
        return self.value.strftime("%Y-%m-%dT%H:%M:%SZ")


# ---------------------------------------------------------------------------
# Day-keys
# ---------------------------------------------------------------------------

@dataclass(frozen=True, order=True)
class EntryDayKeyUtc:
    """UTC midnight of the entry day.  Identity only, never a boundary."""
    value: datetime

    def __post_init__(self) -> None:
        v = _require_utc(self.value, type(self).__name__)
        _require_midnight(v, type(self).__name__)
        object.__setattr__(self, "value", v)

    @property
    def day(self) -> date:
        return self.value.date()

    def __str__(self) -> str:
        return self.value.strftime("%Y-%m-%d")


@dataclass(frozen=True, order=True)
class ExitDayKeyUtc:
    """UTC midnight of the day a trade's baseline-exit falls on."""
    value: datetime

    def __post_init__(self) -> None:
        v = _require_utc(self.value, type(self).__name__)
        _require_midnight(v, type(self).__name__)
        object.__setattr__(self, "value", v)

    @classmethod
    def from_baseline_exit(cls, exit_utc: BaselineExitUtc) -> ExitDayKeyUtc:
        return cls(_floor_to_day(exit_utc.value))

    @property
    def day(self) -> date:
        return self.value.date()

    def __str__(self) -> str:
        return self.value.strftime("%Y-%m-%d")


@dataclass(frozen=True, order=True)
class TrainUntilExitDayKeyUtc:
    """Last baseline-exit day-key whose trades belong to the train segment.

    Supplied by the training pipeline.  Compared against ExitDayKeyUtc only
    through ``covers()``; direct ordering against other key types raises.
    """
    value: datetime

    def __post_init__(self) -> None:
        v = _require_utc(self.value, type(self).__name__)
        _require_midnight(v, type(self).__name__)
        object.__setattr__(self, "value", v)

    @classmethod
    def from_exit_day_key(cls, key: ExitDayKeyUtc) -> TrainUntilExitDayKeyUtc:
        return cls(key.value)

    @classmethod
    def from_date(cls, day: date) -> TrainUntilExitDayKeyUtc:
        return cls(datetime(day.year, day.month, day.day, tzinfo=timezone.utc))

    def covers(self, key: ExitDayKeyUtc) -> bool:
        """True when ``key`` is on or before this boundary."""
        if not isinstance(key, ExitDayKeyUtc):
            raise TypeError(
                f"train-until boundary compares against ExitDayKeyUtc, "
                f"got {type(key).__name__}"
            )
        return key.value <= self.value

    @property
    def day(self) -> date:
        return self.value.date()

    def __str__(self) -> str:
        return self.value.strftime("%Y-%m-%d")


@dataclass(frozen=True, order=True)
class NyTradingDay:
    """A New York civil business day (Mon-Fri)."""
    day: date

    def __post_init__(self) -> None:
        if not isinstance(self.day, date) or isinstance(self.day, datetime):
            raise TimeKeyError(
                f"NyTradingDay: expected date, got {type(self.day).__name__}"
            )
        if self.day.year == _UNINITIALIZED_YEAR:
            raise TimeKeyError("NyTradingDay: uninitialized value")
        if self.day.weekday() >= 5:
            raise TimeKeyError(
                f"NyTradingDay: {self.day.isoformat()} is a weekend"
            )

    def __str__(self) -> str:
        return self.day.isoformat()


# ---------------------------------------------------------------------------
# Baseline window
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BaselineWindow:
    """Half-open interval [entry, exit) during which a trade is live."""
    entry: EntryUtc
    exit: BaselineExitUtc

    def __post_init__(self) -> None:
        if not isinstance(self.entry, EntryUtc):
            raise WindowError(f"window entry must be EntryUtc, got {type(self.entry).__name__}")
        if not isinstance(self.exit, BaselineExitUtc):
            raise WindowError(f"window exit must be BaselineExitUtc, got {type(self.exit).__name__}")
        if self.exit.value <= self.entry.value:
            raise WindowError(
                f"window exit {self.exit} must be after entry {self.entry}"
            )

    @property
    def start(self) -> datetime:
        return self.entry.value

    @property
    def end(self) -> datetime:
        return self.exit.value

    def contains(self, ts: datetime) -> bool:
        return self.entry.value <= ts < self.exit.value

