"""
SOL-1D — NY Trading-Window Engine

Maps an entry instant to its New York trading morning and to the exclusive
baseline-exit instant of the trade window.

The designated morning hour is 07:00 New York local time when New York is on
standard time and 08:00 when it observes daylight saving, so the morning is
always 12:00 UTC.  The baseline exit is the next business day's morning minus
two minutes: Friday entries roll to Monday, and DST transitions are handled
by converting the target local time back to UTC instead of adding 24h.

Weekend entries have no window.  ``compute_baseline_exit_utc`` raises for
them; ``try_compute_baseline_exit_utc`` returns a failed ExitResult so that
batch callers can classify without aborting.

References:
    sol1d_time_types.py — EntryUtc, BaselineExitUtc, BaselineWindow
    sol1d_split.py — consumes try_compute_baseline_exit_utc
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from sol1d_time_types import (
    BaselineExitUtc,
    BaselineWindow,
    EntryUtc,
    ExitDayKeyUtc,
    NyTradingDay,
)

NY_TZ = ZoneInfo("America/New_York")

MORNING_HOUR_DST = 8
MORNING_HOUR_STANDARD = 7
EXIT_SAFETY_MARGIN = timedelta(minutes=2)

_FRIDAY = 4
_SATURDAY = 5


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class WeekendEntryError(ValueError):
    """Raised when an entry falls on Saturday/Sunday in New York time."""


class NotTradingMorningError(ValueError):
    """Raised when an entry is required to be a NY trading morning and is not."""


class WindowInvariantError(RuntimeError):
    """Raised when a computed baseline exit is not strictly after its entry."""


# ---------------------------------------------------------------------------
# Result type for the non-throwing variant
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ExitResult:
    """Outcome of try_compute_baseline_exit_utc.

    ok=True  -> exit is set.
    ok=False -> reason explains why no window exists (weekend entry).
    """
    ok: bool
    exit: Optional[BaselineExitUtc] = None
    reason: Optional[str] = None


# ---------------------------------------------------------------------------
# Local-time helpers
# ---------------------------------------------------------------------------

def to_ny_local(entry: EntryUtc) -> datetime:
    """Convert an entry to New York civil time (aware)."""
    return entry.value.astimezone(NY_TZ)


def is_dst_at_local_noon(local_date: date) -> bool:
    noon = datetime.combine(local_date, time(12, 0), tzinfo=NY_TZ)
    dst = noon.dst()
    return dst is not None and dst != timedelta(0)


def morning_hour_for(local_date: date) -> int:
    """Designated morning hour for a New York civil date."""
    return MORNING_HOUR_DST if is_dst_at_local_noon(local_date) else MORNING_HOUR_STANDARD


def _is_weekend(local: datetime) -> bool:
    return local.weekday() >= _SATURDAY


def _is_morning_local(local: datetime) -> bool:
    return local.hour == morning_hour_for(local.date())


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def is_weekend_in_ny(entry: EntryUtc) -> bool:
    return _is_weekend(to_ny_local(entry))


def is_trading_morning(entry: EntryUtc) -> bool:
    """True iff entry falls in the 07:00 (EST) or 08:00 (EDT) hour of a NY weekday."""
    local = to_ny_local(entry)
    if _is_weekend(local):
        return False
    return _is_morning_local(local)


def require_trading_morning(entry: EntryUtc) -> EntryUtc:
    """Return entry unchanged, or raise if it is not a NY trading morning."""
    local = to_ny_local(entry)
    if _is_weekend(local):
        raise WeekendEntryError(f"weekend entry is not a trading morning: {entry}")
    if not _is_morning_local(local):
        raise NotTradingMorningError(
            f"entry must be in the NY morning hour (07 EST / 08 EDT): "
            f"entry={entry}, ny_local={local.isoformat()}"
        )
    return entry


def ny_trading_day_of(entry: EntryUtc) -> NyTradingDay:
    """New York civil business day of an entry.  Weekend entries raise."""
    local = to_ny_local(entry)
    if _is_weekend(local):
        raise WeekendEntryError(f"weekend entry has no trading day: {entry}")
    return NyTradingDay(local.date())


def entry_utc_from_ny_day(day: NyTradingDay) -> EntryUtc:
    """Morning entry instant (UTC) for a New York trading day."""
    hour = morning_hour_for(day.day)
    local = datetime.combine(day.day, time(hour, 0), tzinfo=NY_TZ)
    return EntryUtc(local.astimezone(timezone.utc))


def _baseline_exit_core(entry: EntryUtc, local: datetime) -> BaselineExitUtc:
    add_days = 3 if local.weekday() == _FRIDAY else 1
    target = local.date() + timedelta(days=add_days)

    hour = morning_hour_for(target)
    morning_local = datetime.combine(target, time(hour, 0), tzinfo=NY_TZ)
    exit_local = morning_local - EXIT_SAFETY_MARGIN
    exit_utc = exit_local.astimezone(timezone.utc)

    if exit_utc <= entry.value:
        raise WindowInvariantError(
            f"baseline exit {exit_utc.isoformat()} is not after entry {entry}"
        )
    return BaselineExitUtc(exit_utc)


def compute_baseline_exit_utc(entry: EntryUtc) -> BaselineExitUtc:
    """Exclusive end of the trade window for a weekday entry.

    Raises:
        WeekendEntryError: entry falls on Saturday/Sunday in New York.
    """
    local = to_ny_local(entry)
    if _is_weekend(local):
        raise WeekendEntryError(f"weekend entry is not allowed: {entry}")
    return _baseline_exit_core(entry, local)


def try_compute_baseline_exit_utc(entry: EntryUtc) -> ExitResult:
    local = to_ny_local(entry)
    if _is_weekend(local):
        return ExitResult(ok=False, reason=f"weekend entry ({local.strftime('%A')} NY)")
    return ExitResult(ok=True, exit=_baseline_exit_core(entry, local))


def compute_exit_day_key_utc(entry: EntryUtc) -> ExitDayKeyUtc:
    return ExitDayKeyUtc.from_baseline_exit(compute_baseline_exit_utc(entry))


def build_baseline_window(entry: EntryUtc) -> BaselineWindow:
    """[entry, baseline_exit) for a weekday entry."""
    return BaselineWindow(entry=entry, exit=compute_baseline_exit_utc(entry))
