# models.py - shared aggregates for the ladder advisor (settings, global/table/heavy/mission state, advice)
from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field, fields, replace, asdict
from typing import Any, Dict, List, Optional, Tuple


class LadderConfigError(ValueError):
    pass


def _now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


def _f(data: Dict[str, Any], key: str, default: float = 0.0) -> float:
    try:
        v = data.get(key, default)
        return float(default if v is None else v)
    except (TypeError, ValueError):
        return default


def _i(data: Dict[str, Any], key: str, default: int = 0) -> int:
    try:
        v = data.get(key, default)
        return int(default if v is None else v)
    except (TypeError, ValueError):
        return default


def _b(data: Dict[str, Any], key: str, default: bool = False) -> bool:
    v = data.get(key, default)
    return default if v is None else bool(v)


def _s(data: Dict[str, Any], key: str, default: str = "") -> str:
    v = data.get(key, default)
    return default if v is None else str(v)


def _opt_s(data: Dict[str, Any], key: str) -> Optional[str]:
    v = data.get(key)
    return None if v is None else str(v)


# ============================================================
# SETTINGS (immutable snapshot; swapped atomically by the store)
# ============================================================

@dataclass(frozen=True)
class Settings:
    levels: Tuple[float, ...] = (1, 3, 7, 15, 35, 75, 155, 340)
    k: float = 1.0
    window_w10: int = 20
    max_run_p_allowed: int = 2
    max_run_side_allowed_table: int = 3
    hot_zones: Tuple[Tuple[int, int], ...] = ((11, 20), (41, 50), (51, 60), (61, 70))

    # regime thresholds on global margin (units)
    high_thresh: float = 250
    low_thresh: float = -300
    hmax_high: int = 1
    hmax_mid: int = 1
    hmax_low: int = 1
    cooldown_high: int = 4
    cooldown_mid: int = 3
    cooldown_low: int = 2

    # level-5 closes + hot overrides
    l5_loss_units: float = 61
    max_hot_overrides_concurrent: int = 0
    max_hot_overrides_per_shoe: int = 1
    debt_trigger_ratio: float = 0.60
    mean_units_per_hand_per_table: float = 0.50
    estimated_hands_left_per_table: int = 35

    # heavy lifecycle
    sync_delay_ms: int = 120
    heavy_decay_after_hands: int = 5
    global_heavy_cap_window: int = 60   # seconds
    global_heavy_cap: int = 4

    # inference / streak tolerances
    outcome_tolerance: float = 0.6
    severe_red_run_margin: int = 2

    def merge(self, **updates: Any) -> "Settings":
        """Partial merge: returns a new snapshot, unmentioned fields untouched."""
        known = {f.name for f in fields(self)}
        unknown = sorted(set(updates) - known)
        if unknown:
            raise LadderConfigError(f"Unknown settings field(s): {', '.join(unknown)}")
        if "levels" in updates:
            updates["levels"] = tuple(float(x) for x in updates["levels"])
            if not updates["levels"]:
                raise LadderConfigError("Stake ladder needs at least one rung")
        if "hot_zones" in updates:
            updates["hot_zones"] = tuple((int(a), int(b)) for a, b in updates["hot_zones"])
        return replace(self, **updates)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["levels"] = list(self.levels)
        d["hot_zones"] = [{"start": a, "end": b} for a, b in self.hot_zones]
        return d

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Settings":
        base = cls()
        if not isinstance(data, dict):
            return base

        updates: Dict[str, Any] = {}
        for f in fields(base):
            if f.name not in data or data[f.name] is None:
                continue
            default = getattr(base, f.name)
            if f.name == "levels":
                raw = data["levels"]
                if isinstance(raw, (list, tuple)) and raw:
                    updates["levels"] = raw
            elif f.name == "hot_zones":
                zones = []
                for z in data["hot_zones"] or []:
                    if isinstance(z, dict):
                        zones.append((int(z.get("start", 0)), int(z.get("end", 0))))
                    elif isinstance(z, (list, tuple)) and len(z) == 2:
                        zones.append((int(z[0]), int(z[1])))
                updates["hot_zones"] = zones
            elif f.type in ("bool", bool):
                updates[f.name] = _b(data, f.name, default)
            elif f.type in ("int", int):
                updates[f.name] = _i(data, f.name, default)
            else:
                updates[f.name] = _f(data, f.name, default)
        return base.merge(**updates)


DEFAULT_SETTINGS = Settings()


# ============================================================
# GLOBAL STATE (shared by every table; transactional)
# ============================================================

@dataclass(frozen=True)
class GlobalState:
    global_margin_units: float = 0.0
    heavy_count: int = 0
    cooldown: int = 0
    portfolio_debt_units: float = 0.0
    hot_overrides_active: int = 0
    hot_overrides_used_this_shoe: int = 0
    updated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "GlobalState":
        if not isinstance(data, dict):
            return cls()
        return cls(
            global_margin_units=_f(data, "global_margin_units"),
            heavy_count=max(0, _i(data, "heavy_count")),
            cooldown=max(0, _i(data, "cooldown")),
            portfolio_debt_units=max(0.0, _f(data, "portfolio_debt_units")),
            hot_overrides_active=max(0, _i(data, "hot_overrides_active")),
            hot_overrides_used_this_shoe=max(0, _i(data, "hot_overrides_used_this_shoe")),
            updated_at=_opt_s(data, "updated_at"),
        )


# ============================================================
# PER-TABLE STATE
# ============================================================

@dataclass
class RowState:
    prev_mazzo: Optional[int] = None   # last hand index seen on this shoe
    prev_level: int = 0
    prev_margine: float = 0.0
    prev_stake: float = 0.0
    history: List[str] = field(default_factory=list)        # "P"/"B", capped at window_w10
    history_table: List[str] = field(default_factory=list)  # "p"/"b"/"t", capped at window_w10
    run_p: int = 0
    force_to_l8_active: bool = False
    l5_closed_count: int = 0
    hand_count: int = 0
    margine_accum: float = 0.0
    vm_local20: float = 0.0
    warm_inputs: int = 0
    invalid_count: int = 0
    valid_recovery: int = 0
    disabled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RowState":
        if not isinstance(data, dict):
            return cls()

        raw_mazzo = data.get("prev_mazzo")
        try:
            prev_mazzo = None if raw_mazzo is None else int(raw_mazzo)
        except (TypeError, ValueError):
            prev_mazzo = None

        return cls(
            prev_mazzo=prev_mazzo,
            prev_level=_i(data, "prev_level"),
            prev_margine=_f(data, "prev_margine"),
            prev_stake=_f(data, "prev_stake"),
            history=[str(x) for x in (data.get("history") or [])],
            history_table=[str(x) for x in (data.get("history_table") or [])],
            run_p=_i(data, "run_p"),
            force_to_l8_active=_b(data, "force_to_l8_active"),
            l5_closed_count=_i(data, "l5_closed_count"),
            hand_count=_i(data, "hand_count"),
            margine_accum=_f(data, "margine_accum"),
            vm_local20=_f(data, "vm_local20"),
            warm_inputs=_i(data, "warm_inputs"),
            invalid_count=_i(data, "invalid_count"),
            valid_recovery=_i(data, "valid_recovery"),
            disabled=_b(data, "disabled"),
        )


@dataclass
class Advice:
    """Returned from each decision to drive the caller (and the dashboard)."""
    table_id: int
    level_index: int = 0
    stake_units: float = 0.0
    global_margin: float = 0.0
    stop_at_l5: bool = False
    authorized_heavy: bool = False
    reason: str = "Default"
    signal_w10: str = "Green"
    signal_table_w10: str = "Green"
    hot_zone: bool = False
    hot_zone_label: str = ""
    tooltip_json: str = ""
    portfolio_debt_units: float = 0.0
    hot_overrides_active: int = 0
    hot_overrides_used_this_shoe: int = 0
    vm_local20: float = 0.0
    prediction: str = "Safe"
    table_status: str = "🟢 Active"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["Advice"]:
        if not isinstance(data, dict):
            return None
        return cls(
            table_id=_i(data, "table_id"),
            level_index=_i(data, "level_index"),
            stake_units=_f(data, "stake_units"),
            global_margin=_f(data, "global_margin"),
            stop_at_l5=_b(data, "stop_at_l5"),
            authorized_heavy=_b(data, "authorized_heavy"),
            reason=_s(data, "reason", "Default"),
            signal_w10=_s(data, "signal_w10", "Green"),
            signal_table_w10=_s(data, "signal_table_w10", "Green"),
            hot_zone=_b(data, "hot_zone"),
            hot_zone_label=_s(data, "hot_zone_label"),
            tooltip_json=_s(data, "tooltip_json"),
            portfolio_debt_units=_f(data, "portfolio_debt_units"),
            hot_overrides_active=_i(data, "hot_overrides_active"),
            hot_overrides_used_this_shoe=_i(data, "hot_overrides_used_this_shoe"),
            vm_local20=_f(data, "vm_local20"),
            prediction=_s(data, "prediction", "Safe"),
            table_status=_s(data, "table_status", "🟢 Active"),
        )


@dataclass
class LastInput:
    hand_index: int
    margin_display: float
    martingale_level_ui: int
    outcome: str            # raw symbol as submitted ("" when absent)
    resolved_outcome: str   # after inference

    def matches(self, hand_index: int, margin_display: float, martingale_level_ui: int, outcome: str) -> bool:
        return (
            self.hand_index == hand_index
            and self.margin_display == margin_display
            and self.martingale_level_ui == martingale_level_ui
            and self.outcome == outcome
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["LastInput"]:
        if not isinstance(data, dict):
            return None
        return cls(
            hand_index=_i(data, "hand_index"),
            margin_display=_f(data, "margin_display"),
            martingale_level_ui=_i(data, "martingale_level_ui"),
            outcome=_s(data, "outcome"),
            resolved_outcome=_s(data, "resolved_outcome", "T"),
        )


@dataclass
class TableState:
    row_state: RowState = field(default_factory=RowState)
    last_advice: Optional[Advice] = None
    last_input: Optional[LastInput] = None
    margin_units: float = 0.0   # cached table total, kept in step with the global fold
    updated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "row_state": self.row_state.to_dict(),
            "last_advice": self.last_advice.to_dict() if self.last_advice else None,
            "last_input": self.last_input.to_dict() if self.last_input else None,
            "margin_units": self.margin_units,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "TableState":
        if not isinstance(data, dict):
            return cls()
        return cls(
            row_state=RowState.from_dict(data.get("row_state")),
            last_advice=Advice.from_dict(data.get("last_advice")),
            last_input=LastInput.from_dict(data.get("last_input")),
            margin_units=_f(data, "margin_units"),
            updated_at=_opt_s(data, "updated_at"),
        )


# ============================================================
# HEAVY LIFECYCLE + MISSION (engine-wide, single owner)
# ============================================================

@dataclass(frozen=True)
class HeavyLifecycleState:
    hands_since_last_heavy: int = 0
    recent_heavy_timestamps: Tuple[float, ...] = ()   # epoch seconds, oldest first
    updated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hands_since_last_heavy": self.hands_since_last_heavy,
            "recent_heavy_timestamps": list(self.recent_heavy_timestamps),
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "HeavyLifecycleState":
        if not isinstance(data, dict):
            return cls()
        stamps = []
        for x in data.get("recent_heavy_timestamps") or []:
            try:
                stamps.append(float(x))
            except (TypeError, ValueError):
                continue
        return cls(
            hands_since_last_heavy=max(0, _i(data, "hands_since_last_heavy")),
            recent_heavy_timestamps=tuple(stamps),
            updated_at=_opt_s(data, "updated_at"),
        )


@dataclass(frozen=True)
class MissionState:
    target_units_total: float = 900
    target_minutes_total: float = 480
    target_tables: int = 10
    target_units_per_table: float = 90
    mission_completed: bool = False
    vm_target_global: float = 0.0
    updated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "MissionState":
        if not isinstance(data, dict):
            return cls()
        return cls(
            target_units_total=_f(data, "target_units_total", 900),
            target_minutes_total=_f(data, "target_minutes_total", 480),
            target_tables=_i(data, "target_tables", 10),
            target_units_per_table=_f(data, "target_units_per_table", 90),
            mission_completed=_b(data, "mission_completed"),
            vm_target_global=_f(data, "vm_target_global"),
            updated_at=_opt_s(data, "updated_at"),
        )


# ============================================================
# REPORTING
# ============================================================

@dataclass(frozen=True)
class MissionSnapshot:
    adjusted_target: float
    adjusted_duration: float
    vm_target: float
    display_target: float
    display_vm_target: float
    warm_up_minutes: float
    warm_up_active: bool
    achievement_percent: float
    k: float
    active_tables: int
    mission_completed: bool


@dataclass(frozen=True)
class Evaluation:
    message: str
    vm_value: float
    color: str


def merge_state(state: Any, updates: Dict[str, Any]) -> Any:
    """Partial merge for frozen aggregates; stamps updated_at like a server write."""
    known = {f.name for f in fields(state)}
    unknown = sorted(set(updates) - known)
    if unknown:
        raise KeyError(f"Unknown field(s) for {type(state).__name__}: {', '.join(unknown)}")
    updates = dict(updates)
    if "updated_at" in known:
        updates["updated_at"] = _now_iso()
    if "recent_heavy_timestamps" in updates:
        updates["recent_heavy_timestamps"] = tuple(updates["recent_heavy_timestamps"])
    return replace(state, **updates)
