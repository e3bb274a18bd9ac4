"""
SOL-1D — Backtest Configuration and Profiles

Frozen BacktestConfig / PolicyConfig, the policy factory, the config hash
used to tag results, and a JSON profile repository.

Profile file layout (list of profiles, sorted keys, indent 2):

    [{"id": "baseline", "name": "Baseline", "description": "...",
      "is_system": true, "category": "system", "is_favorite": true,
      "config": {...}}]

The "baseline" profile is always present; it is added on first read when
the file does not contain it.
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
import os
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from sol1d_ledger_types import BucketSpec, LedgerConfig, MarginMode
from sol1d_policies import (
    ConstLeveragePolicy,
    LeveragePolicy,
    RiskAwareLeveragePolicy,
    UltraSafeLeveragePolicy,
)
from sol1d_records import PredictionMode

_log = logging.getLogger(__name__)

POLICY_TYPES = ("const", "risk_aware", "ultra_safe")
BASELINE_PROFILE_ID = "baseline"


class ConfigError(ValueError):
    """Raised for malformed configurations or profile files."""


# ---------------------------------------------------------------------------
# Config dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PolicyConfig:
    name: str
    policy_type: str               # "const" | "risk_aware" | "ultra_safe"
    margin_mode: MarginMode
    leverage: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "policy_type": self.policy_type,
            "margin_mode": self.margin_mode.value,
            "leverage": self.leverage,
        }


@dataclass(frozen=True)
class DelayedConfig:
    """Delayed-entry simulation settings.

    When set on a BacktestConfig, records without precomputed delayed facts
    get them from evaluate_delayed over the run's 1m series.
    """
    source: str = "A"
    delay_factor: float = 0.45
    max_delay_hours: float = 4.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "delay_factor": self.delay_factor,
            "max_delay_hours": self.max_delay_hours,
        }


@dataclass(frozen=True)
class BacktestConfig:
    policies: Tuple[PolicyConfig, ...]
    daily_tp_pct: float = 0.03
    daily_sl_pct: float = 0.05
    use_anti_direction_overlay: bool = True
    use_delayed_intraday_stops: bool = True
    prediction_mode: PredictionMode = PredictionMode.DAY_ONLY
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    delayed: Optional[DelayedConfig] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "policies": [p.to_dict() for p in self.policies],
            "daily_tp_pct": self.daily_tp_pct,
            "daily_sl_pct": self.daily_sl_pct,
            "use_anti_direction_overlay": self.use_anti_direction_overlay,
            "use_delayed_intraday_stops": self.use_delayed_intraday_stops,
            "prediction_mode": self.prediction_mode.value,
            "ledger": self.ledger.to_dict(),
            "delayed": self.delayed.to_dict() if self.delayed else None,
        }


@dataclass(frozen=True)
class BacktestProfile:
    id: str
    name: str
    config: BacktestConfig
    description: str = ""
    is_system: bool = False
    category: str = "user"
    is_favorite: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "is_system": self.is_system,
            "category": self.category,
            "is_favorite": self.is_favorite,
            "config": self.config.to_dict(),
        }


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def _parse_margin_mode(raw: Any, where: str) -> MarginMode:
    try:
        return MarginMode(str(raw).lower())
    except ValueError:
        raise ConfigError(f"{where}: unknown margin_mode {raw!r}") from None


def policy_config_from_dict(d: Dict[str, Any]) -> PolicyConfig:
    name = d.get("name")
    if not name:
        raise ConfigError(f"policy entry without a name: {d!r}")
    ptype = d.get("policy_type")
    if ptype not in POLICY_TYPES:
        raise ConfigError(f"policy {name!r}: unknown policy_type {ptype!r}")
    lev = d.get("leverage")
    return PolicyConfig(
        name=name,
        policy_type=ptype,
        margin_mode=_parse_margin_mode(d.get("margin_mode"), f"policy {name!r}"),
        leverage=float(lev) if lev is not None else None,
    )


def ledger_config_from_dict(d: Optional[Dict[str, Any]]) -> LedgerConfig:
    if not d:
        return LedgerConfig()
    default = LedgerConfig()
    buckets = default.buckets
    if d.get("buckets"):
        buckets = tuple(
            BucketSpec(b["name"], float(b["share"]), float(b["position_fraction"]))
            for b in d["buckets"]
        )
    return LedgerConfig(
        total_capital=float(d.get("total_capital", default.total_capital)),
        commission_rate=float(d.get("commission_rate", default.commission_rate)),
        maintenance_margin_rate=float(d.get("maintenance_margin_rate", default.maintenance_margin_rate)),
        liquidation_multiplier=float(d.get("liquidation_multiplier", default.liquidation_multiplier)),
        buckets=buckets,
    )


def backtest_config_from_dict(d: Dict[str, Any]) -> BacktestConfig:
    if not isinstance(d, dict):
        raise ConfigError(f"config must be an object, got {type(d).__name__}")
    policies = tuple(policy_config_from_dict(p) for p in d.get("policies", []))
    try:
        mode = PredictionMode(d.get("prediction_mode", PredictionMode.DAY_ONLY.value))
    except ValueError:
        raise ConfigError(f"unknown prediction_mode {d.get('prediction_mode')!r}") from None
    delayed = None
    if d.get("delayed"):
        dd = d["delayed"]
        delayed = DelayedConfig(
            source=dd.get("source", "A"),
            delay_factor=float(dd.get("delay_factor", 0.45)),
            max_delay_hours=float(dd.get("max_delay_hours", 4.0)),
        )
    cfg = BacktestConfig(
        policies=policies,
        daily_tp_pct=float(d.get("daily_tp_pct", 0.03)),
        daily_sl_pct=float(d.get("daily_sl_pct", 0.05)),
        use_anti_direction_overlay=bool(d.get("use_anti_direction_overlay", True)),
        use_delayed_intraday_stops=bool(d.get("use_delayed_intraday_stops", True)),
        prediction_mode=mode,
        ledger=ledger_config_from_dict(d.get("ledger")),
        delayed=delayed,
    )
    validate_config(cfg)
    return cfg


def validate_config(config: BacktestConfig) -> None:
    """Raise ConfigError on duplicate policy keys or out-of-range values."""
    seen = set()
    for p in config.policies:
        key = (p.name, p.margin_mode)
        if key in seen:
            raise ConfigError(f"duplicate policy {p.name!r} for margin {p.margin_mode.value}")
        seen.add(key)
        if p.policy_type == "const" and p.leverage is None:
            raise ConfigError(f"policy {p.name!r}: leverage must be specified for 'const' type")
        if p.leverage is not None and not math.isfinite(p.leverage):
            raise ConfigError(f"policy {p.name!r}: leverage must be finite, got {p.leverage}")
    if not (0.0 < config.daily_tp_pct < 1.0):
        raise ConfigError(f"daily_tp_pct must be in (0, 1), got {config.daily_tp_pct}")
    if not (0.0 <= config.daily_sl_pct < 1.0):
        raise ConfigError(f"daily_sl_pct must be in [0, 1), got {config.daily_sl_pct}")
    shares = sum(b.share for b in config.ledger.buckets)
    if abs(shares - 1.0) > 1e-9:
        raise ConfigError(f"bucket shares must sum to 1, got {shares}")
    dc = config.delayed
    if dc is not None:
        if dc.source not in ("A", "B"):
            raise ConfigError(f"delayed source must be 'A' or 'B', got {dc.source!r}")
        if not math.isfinite(dc.delay_factor) or dc.delay_factor <= 0.0:
            raise ConfigError(f"delay_factor must be finite and > 0, got {dc.delay_factor}")
        if not math.isfinite(dc.max_delay_hours) or dc.max_delay_hours <= 0.0:
            raise ConfigError(f"max_delay_hours must be finite and > 0, got {dc.max_delay_hours}")


# ---------------------------------------------------------------------------
# Policy factory
# ---------------------------------------------------------------------------

def build_policy(cfg: PolicyConfig) -> LeveragePolicy:
    """Instantiate the leverage policy described by ``cfg``."""
    if cfg.policy_type == "const":
        if cfg.leverage is None:
            raise ConfigError(f"policy {cfg.name!r}: leverage must be specified for 'const' type")
        return ConstLeveragePolicy(cfg.name, cfg.leverage)
    if cfg.policy_type == "risk_aware":
        return RiskAwareLeveragePolicy(name=cfg.name, normal_leverage=10.0, high_risk_leverage=3.0)
    if cfg.policy_type == "ultra_safe":
        return UltraSafeLeveragePolicy(name=cfg.name, leverage=2.0)
    raise ConfigError(f"unknown policy type {cfg.policy_type!r} for policy {cfg.name!r}")


def create_baseline_config() -> BacktestConfig:
    policies = []
    for mode in (MarginMode.CROSS, MarginMode.ISOLATED):
        for lev in (2.0, 5.0, 10.0):
            policies.append(PolicyConfig(f"const_{int(lev)}x", "const", mode, lev))
        policies.append(PolicyConfig("risk_aware", "risk_aware", mode))
        policies.append(PolicyConfig("ultra_safe", "ultra_safe", mode))
    return BacktestConfig(policies=tuple(policies))


# ---------------------------------------------------------------------------
# Hash
# ---------------------------------------------------------------------------

def compute_config_hash(config: BacktestConfig) -> str:
    """SHA256 of canonical BacktestConfig JSON (sorted keys, compact separators)."""
    js = json.dumps(config.to_dict(), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(js.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Profile repository
# ---------------------------------------------------------------------------

def _atomic_write(target_path: str, data: bytes) -> None:
    """Write to a temp file in the target directory, fsync, os.replace."""
    parent = os.path.dirname(os.path.abspath(target_path))
    os.makedirs(parent, exist_ok=True)
    tmp_path = os.path.join(parent, f"_tmp_{uuid.uuid4().hex}")
    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
    try:
        os.write(fd, data)
        os.fsync(fd)
    finally:
        os.close(fd)
    os.replace(tmp_path, target_path)


def _baseline_profile() -> BacktestProfile:
    return BacktestProfile(
        id=BASELINE_PROFILE_ID,
        name="Baseline",
        config=create_baseline_config(),
        description="Default system profile.",
        is_system=True,
        category="system",
        is_favorite=True,
    )


def _profile_from_dict(d: Dict[str, Any]) -> BacktestProfile:
    if not d.get("id"):
        raise ConfigError(f"profile without id: {d!r}")
    return BacktestProfile(
        id=d["id"],
        name=d.get("name", d["id"]),
        config=backtest_config_from_dict(d.get("config", {})),
        description=d.get("description", ""),
        is_system=bool(d.get("is_system", False)),
        category=d.get("category", "user"),
        is_favorite=bool(d.get("is_favorite", False)),
    )


class JsonProfileRepository:
    """Backtest profiles stored as one JSON file."""

    def __init__(self, path: str):
        self._path = path

    @property
    def path(self) -> str:
        return self._path

    def _read(self) -> List[BacktestProfile]:
        if not os.path.exists(self._path):
            return []
        with open(self._path, "r", encoding="utf-8") as f:
            text = f.read()
        if not text.strip():
            return []
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ConfigError(f"{self._path}: invalid JSON: {exc}") from exc
        if not isinstance(raw, list):
            raise ConfigError(f"{self._path}: expected a list of profiles")
        return [_profile_from_dict(d) for d in raw]

    def _write(self, profiles: List[BacktestProfile]) -> None:
        js = json.dumps([p.to_dict() for p in profiles], indent=2, sort_keys=True)
        _atomic_write(self._path, js.encode("utf-8"))

    def get_all(self) -> List[BacktestProfile]:
        profiles = self._read()
        if not any(p.id.lower() == BASELINE_PROFILE_ID for p in profiles):
            profiles.append(_baseline_profile())
            self._write(profiles)
            _log.info("added baseline profile to %s", self._path)
        return profiles

    def get_by_id(self, profile_id: str) -> Optional[BacktestProfile]:
        if not profile_id or not profile_id.strip():
            return None
        for p in self.get_all():
            if p.id.lower() == profile_id.lower():
                return p
        return None

    def save(self, profile: BacktestProfile) -> BacktestProfile:
        """Insert or replace a profile by id (case-insensitive)."""
        validate_config(profile.config)
        profiles = [p for p in self.get_all() if p.id.lower() != profile.id.lower()]
        profiles.append(profile)
        self._write(profiles)
        return profile


def load_config(path: str) -> BacktestConfig:
    """Read a single BacktestConfig JSON file."""
    with open(path, "r", encoding="utf-8") as f:
        try:
            raw = json.load(f)
        except json.JSONDecodeError as exc:
            raise ConfigError(f"{path}: invalid JSON: {exc}") from exc
    return backtest_config_from_dict(raw)
