"""
SOL-1D — CLI (argparse subcommands)

Commands: window, split, run, profiles
All output as JSON envelope.  Contract violations in the inputs are
reported in the envelope's "error" field; nothing is substituted.
"""

from __future__ import annotations

import argparse
import json
import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from sol1d_config import (
    ConfigError,
    JsonProfileRepository,
    create_baseline_config,
    load_config,
)
from sol1d_evaluator_types import EvaluationError
from sol1d_metrics import policy_ratios
from sol1d_policies import PolicyError
from sol1d_records import RecordError, parse_utc, record_from_dict
from sol1d_runner import RunnerError, run_backtest
from sol1d_series import SeriesError, load_parquet
from sol1d_split import SplitOrderError, split_by_baseline_exit
from sol1d_time_types import EntryUtc, TimeKeyError, TrainUntilExitDayKeyUtc
from sol1d_windowing import (
    WeekendEntryError,
    is_trading_morning,
    to_ny_local,
    try_compute_baseline_exit_utc,
)

_log = logging.getLogger(__name__)

_INPUT_ERRORS = (
    ConfigError,
    EvaluationError,
    PolicyError,
    RecordError,
    RunnerError,
    SeriesError,
    SplitOrderError,
    TimeKeyError,
    WeekendEntryError,
    KeyError,
    OSError,
    json.JSONDecodeError,
)


# ---------------------------------------------------------------------------
# JSON envelope helper
# ---------------------------------------------------------------------------

def _envelope(command: str, result: Any, error: Optional[str] = None) -> str:
    """Format standard JSON output envelope."""
    d = {
        "command": command,
        "timestamp": datetime.now(timezone.utc).strftime(
            "%Y-%m-%dT%H:%M:%S.%f"
        )[:-3] + "Z",
        "ok": error is None,
        "error": error,
        "result": result,
    }
    return json.dumps(d, indent=2, sort_keys=False)


def _load_json(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------

def cmd_window(args: argparse.Namespace) -> str:
    """window --entry <iso>"""
    try:
        entry = EntryUtc(parse_utc(args.entry))
    except (RecordError, TimeKeyError) as e:
        return _envelope("window", None, str(e))

    res = try_compute_baseline_exit_utc(entry)
    result: Dict[str, Any] = {
        "entry_utc": entry.isoformat(),
        "ny_local": to_ny_local(entry).isoformat(),
        "is_trading_morning": is_trading_morning(entry),
        "entry_day_key": str(entry.entry_day_key),
        "baseline_exit_utc": res.exit.isoformat() if res.ok else None,
        "exit_day_key": str(res.exit.exit_day_key) if res.ok else None,
        "excluded_reason": res.reason,
    }
    return _envelope("window", result)


def cmd_split(args: argparse.Namespace) -> str:
    """split --entries <json list of iso> --train-until <YYYY-MM-DD>"""
    try:
        raw = _load_json(args.entries)
        entries = [EntryUtc(parse_utc(s)) for s in raw]
        boundary = TrainUntilExitDayKeyUtc.from_date(date.fromisoformat(args.train_until))
        result = split_by_baseline_exit(entries, lambda e: e, boundary, tag="cli")
    except _INPUT_ERRORS + (ValueError,) as e:
        return _envelope("split", None, f"{type(e).__name__}: {e}")
    return _envelope("split", result.to_dict())


def cmd_run(args: argparse.Namespace) -> str:
    """run --records <json> --candles <parquet> [--config <json> | --profile <id>]"""
    try:
        if args.config:
            config = load_config(args.config)
        elif args.profile:
            repo = JsonProfileRepository(args.profiles)
            profile = repo.get_by_id(args.profile)
            if profile is None:
                return _envelope("run", None, f"profile {args.profile!r} not found")
            config = profile.config
        else:
            config = create_baseline_config()

        records = [record_from_dict(d) for d in _load_json(args.records)]
        candles = load_parquet(args.candles, interval="1m")
        summary = run_backtest(records, candles, config)
    except _INPUT_ERRORS as e:
        return _envelope("run", None, f"{type(e).__name__}: {e}")

    result = summary.to_dict()
    result["ratios"] = [
        {
            "policy": r.policy_name,
            "margin": r.margin_mode.value,
            "use_sl": r.use_sl,
            "anti_direction": r.anti_direction,
            **policy_ratios(r.trades, config.ledger.total_capital).to_dict(),
        }
        for r in summary.all_results() if r.ok
    ]
    return _envelope("run", result)


def cmd_profiles(args: argparse.Namespace) -> str:
    """profiles --profiles <json>"""
    try:
        profiles = JsonProfileRepository(args.profiles).get_all()
    except _INPUT_ERRORS as e:
        return _envelope("profiles", None, f"{type(e).__name__}: {e}")
    rows: List[Dict[str, Any]] = [
        {
            "id": p.id,
            "name": p.name,
            "category": p.category,
            "is_system": p.is_system,
            "policies": len(p.config.policies),
        }
        for p in profiles
    ]
    return _envelope("profiles", rows)


# ---------------------------------------------------------------------------
# CLI parser
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sol1d_cli",
        description="SOL-1D backtest core CLI",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_window = subparsers.add_parser("window", help="Trading morning and baseline exit of an entry")
    p_window.add_argument("--entry", required=True, help="UTC ISO timestamp")

    p_split = subparsers.add_parser("split", help="Train/OOS/excluded counts")
    p_split.add_argument("--entries", required=True, help="JSON file: list of UTC ISO timestamps")
    p_split.add_argument("--train-until", required=True, help="Exit day-key YYYY-MM-DD")

    p_run = subparsers.add_parser("run", help="Run all policies")
    p_run.add_argument("--records", required=True, help="JSON file: list of prediction records")
    p_run.add_argument("--candles", required=True, help="Parquet file: 1m candles")
    p_run.add_argument("--config", default=None, help="BacktestConfig JSON")
    p_run.add_argument("--profile", default=None, help="Profile id")
    p_run.add_argument("--profiles", default="backtest_profiles.json")

    p_profiles = subparsers.add_parser("profiles", help="List backtest profiles")
    p_profiles.add_argument("--profiles", default="backtest_profiles.json")

    return parser


# ---------------------------------------------------------------------------
# Main dispatch
# ---------------------------------------------------------------------------

COMMAND_HANDLERS = {
    "window": cmd_window,
    "split": cmd_split,
    "run": cmd_run,
    "profiles": cmd_profiles,
}


def main(argv: Optional[list] = None) -> str:
    """Parse args and dispatch to handler.  Returns JSON output."""
    parser = build_parser()
    args = parser.parse_args(argv)
    handler = COMMAND_HANDLERS[args.command]
    return handler(args)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    output = main()
    print(output)
