"""Time-key types reject invalid datetimes and never mix with each other."""

import sys
import os
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", ".."))

from sol1d_time_types import (
    BaselineExitUtc,
    BaselineWindow,
    EntryDayKeyUtc,
    EntryUtc,
    ExitDayKeyUtc,
    NyTradingDay,
    TimeKeyError,
    TrainUntilExitDayKeyUtc,
    UtcInstant,
    WindowError,
)


def _utc(y, m, d, h=0, mi=0):
    return datetime(y, m, d, h, mi, tzinfo=timezone.utc)


@pytest.mark.parametrize("cls", [UtcInstant, EntryUtc, BaselineExitUtc])
def test_instants_reject_invalid_datetimes(cls):
    with pytest.raises(TimeKeyError):
        cls(datetime(2024, 1, 8, 12))
    with pytest.raises(TimeKeyError):
        cls(datetime(2024, 1, 8, 12, tzinfo=timezone(timedelta(hours=1))))
    with pytest.raises(TimeKeyError):
        cls(datetime(1, 1, 1, tzinfo=timezone.utc))
    with pytest.raises(TimeKeyError):
        cls("2024-01-08T12:00:00Z")


def test_zero_offset_zone_is_normalized_to_utc():
    entry = EntryUtc(datetime(2024, 1, 8, 12, tzinfo=ZoneInfo("UTC")))
    assert entry.value.tzinfo is timezone.utc
    assert entry == EntryUtc(_utc(2024, 1, 8, 12))


@pytest.mark.parametrize("cls", [EntryDayKeyUtc, ExitDayKeyUtc, TrainUntilExitDayKeyUtc])
def test_day_keys_must_be_midnight(cls):
    assert str(cls(_utc(2024, 1, 8))) == "2024-01-08"
    with pytest.raises(TimeKeyError):
        cls(_utc(2024, 1, 8, 12))


def test_entry_day_key_is_floor_of_entry():
    entry = EntryUtc(_utc(2024, 1, 8, 12))
    assert entry.entry_day_key == EntryDayKeyUtc(_utc(2024, 1, 8))
    assert entry.entry_day_key.day == date(2024, 1, 8)
    assert str(entry) == "2024-01-08T12:00:00Z"


def test_exit_day_key_from_baseline_exit():
    exit_utc = BaselineExitUtc(_utc(2024, 1, 9, 11, 58))
    assert exit_utc.exit_day_key == ExitDayKeyUtc(_utc(2024, 1, 9))


def test_key_types_are_not_interchangeable():
    entry_key = EntryDayKeyUtc(_utc(2024, 1, 8))
    exit_key = ExitDayKeyUtc(_utc(2024, 1, 8))
    assert entry_key != exit_key, "entry and exit day-keys compare equal"
    with pytest.raises(TypeError):
        entry_key < exit_key
    with pytest.raises(TypeError):
        EntryUtc(_utc(2024, 1, 8, 12)) < BaselineExitUtc(_utc(2024, 1, 9, 11, 58))


def test_train_until_covers_only_exit_keys():
    boundary = TrainUntilExitDayKeyUtc.from_date(date(2024, 1, 12))
    assert boundary.covers(ExitDayKeyUtc(_utc(2024, 1, 12)))
    assert boundary.covers(ExitDayKeyUtc(_utc(2024, 1, 11)))
    assert not boundary.covers(ExitDayKeyUtc(_utc(2024, 1, 13)))
    with pytest.raises(TypeError):
        boundary.covers(EntryDayKeyUtc(_utc(2024, 1, 12)))

    same = TrainUntilExitDayKeyUtc.from_exit_day_key(ExitDayKeyUtc(_utc(2024, 1, 12)))
    assert same == boundary


def test_ny_trading_day_rejects_weekend_and_datetime():
    assert str(NyTradingDay(date(2024, 1, 8))) == "2024-01-08"
    with pytest.raises(TimeKeyError):
        NyTradingDay(date(2024, 1, 6))
    with pytest.raises(TimeKeyError):
        NyTradingDay(datetime(2024, 1, 8, 12))


def test_baseline_window_requires_exit_after_entry():
    entry = EntryUtc(_utc(2024, 1, 8, 12))
    with pytest.raises(WindowError):
        BaselineWindow(entry, BaselineExitUtc(_utc(2024, 1, 8, 12)))
    with pytest.raises(WindowError):
        BaselineWindow(entry, BaselineExitUtc(_utc(2024, 1, 8, 11)))
    window = BaselineWindow(entry, BaselineExitUtc(_utc(2024, 1, 9, 11, 58)))
    assert window.start == entry.value
