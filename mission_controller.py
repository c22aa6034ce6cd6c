from __future__ import annotations

from typing import Any, Dict, Optional

from models import Evaluation, MissionSnapshot, Settings
from store import LadderStore

# ----------------------------- Tunables -----------------------------

WARM_UP_MINUTES = 10.0
EFFICIENCY_FACTOR = 0.25   # share of the nominal target the retuner actually chases
DURATION_BUFFER = 1.2      # slack on the nominal mission length

LATE_PROGRESS = 0.50
LATE_ELAPSED_SHARE = 0.30
AHEAD_RATIO = 1.5

# cooldown used once the mission is done ("never again")
FROZEN_COOLDOWN = 9999

# evaluation bands (velocity / target velocity)
EVAL_UNDER = 0.9
EVAL_FORWARD = 1.1


def _regime_warm_up() -> Dict[str, Any]:
    return dict(
        low_thresh=-800,
        high_thresh=800,
        debt_trigger_ratio=0.60,
        hmax_low=2,
        hmax_mid=2,
        hmax_high=1,
        cooldown_low=1,
        cooldown_mid=1,
        cooldown_high=1,
    )


def _regime_frozen() -> Dict[str, Any]:
    return dict(
        low_thresh=0,
        high_thresh=0,
        hmax_low=0,
        hmax_mid=0,
        hmax_high=0,
        cooldown_low=FROZEN_COOLDOWN,
        cooldown_mid=FROZEN_COOLDOWN,
        cooldown_high=FROZEN_COOLDOWN,
    )


def _regime_late(tables: int) -> Dict[str, Any]:
    return dict(
        low_thresh=-800,
        high_thresh=600,
        debt_trigger_ratio=0.65,
        hmax_low=max(2, tables // 4),
        hmax_mid=1,
        hmax_high=0,
        cooldown_low=1,
        cooldown_mid=2,
        cooldown_high=2,
    )


def _regime_aggressive(tables: int) -> Dict[str, Any]:
    return dict(
        low_thresh=-1000,
        debt_trigger_ratio=0.55,
        hmax_low=max(5, tables // 2 + 1),
        cooldown_low=1,
    )


def _regime_protective() -> Dict[str, Any]:
    return dict(
        high_thresh=1000,
        hmax_high=1,
        cooldown_high=2,
        debt_trigger_ratio=0.70,
    )


def _regime_neutral(tables: int) -> Dict[str, Any]:
    return dict(
        low_thresh=-1000,
        high_thresh=800,
        debt_trigger_ratio=0.60,
        hmax_mid=max(2, tables // 5),
        cooldown_mid=1,
    )


class AdaptiveMissionController:
    """
    Retunes the shared regime settings from elapsed time and progress toward
    the mission target, and flags mission completion.

    Phases, in priority order:
    - Warm-up (< 10 min): symmetric, conservative thresholds
    - Completion: margin reached the adjusted target -> caps 0, cooldowns frozen
    - Late (>= 50% progress and >= 30% of adjusted duration): protective
    - Otherwise by velocity vs target: aggressive / protective / neutral

    Every retune is a partial merge into the settings snapshot held by the
    store; fields a phase does not name are left as they were.
    """

    def __init__(self, store: LadderStore) -> None:
        self.store = store

    # ---------------------- Mission setup ----------------------

    def initialize(
        self,
        target_margin: float = 500,
        target_minutes: float = 180,
        base_settings: Optional[Settings] = None,
    ) -> None:
        """Reinitialize the mission (the only way completion is cleared)."""
        self.store.update_mission_state(
            target_units_total=float(target_margin),
            target_minutes_total=float(target_minutes),
            target_tables=10,
            target_units_per_table=max(1, int(target_margin // 10)),
            mission_completed=False,
            vm_target_global=0.0,
        )
        if base_settings is not None:
            self.store.replace_settings(base_settings)
        print(f"[mission] initialized target={target_margin}u over {target_minutes} min")

    def set_mission_parameters(self, target_units: float, total_minutes: float, total_tables: int) -> None:
        units = max(100.0, float(target_units))
        tables = max(1, int(total_tables))
        self.store.update_mission_state(
            target_units_total=units,
            target_minutes_total=max(60.0, float(total_minutes)),
            target_tables=tables,
            target_units_per_table=round(units / tables),
            mission_completed=False,
        )

    def get_mission_info(self) -> Dict[str, Any]:
        m = self.store.get_mission_state()
        return {
            "units_target": m.target_units_total,
            "minutes_target": m.target_minutes_total,
            "tables_target": m.target_tables,
            "vm_target": m.vm_target_global,
        }

    def mission_complete(self) -> bool:
        return bool(self.store.get_mission_state().mission_completed)

    # ---------------------- Retune ----------------------

    def _apply(self, updates: Dict[str, Any]) -> Settings:
        return self.store.update_settings(**updates)

    def retune(self, current_margin_units: float, elapsed_minutes: float, active_table_count: int) -> Settings:
        """Returns the settings snapshot the caller should use for the rest of its decision."""
        m = self.store.get_mission_state()
        tables = max(1, int(active_table_count))

        if m.mission_completed:
            # monotonic: the frozen regime holds for the rest of the mission, warm-up included
            return self._apply(_regime_frozen())

        if elapsed_minutes < WARM_UP_MINUTES:
            settings = self._apply(_regime_warm_up())
            self.store.update_mission_state(
                vm_target_global=m.target_units_total / max(1.0, m.target_minutes_total)
            )
            return settings

        scale = tables / max(1, m.target_tables)
        adjusted_target = m.target_units_total * scale * EFFICIENCY_FACTOR
        adjusted_duration = m.target_minutes_total * scale * DURATION_BUFFER
        vm_target = adjusted_target / max(1.0, adjusted_duration)
        self.store.update_mission_state(vm_target_global=vm_target)

        if current_margin_units >= adjusted_target:
            self.store.update_mission_state(mission_completed=True)
            print(f"[mission] COMPLETE margin={current_margin_units:.2f}u target={adjusted_target:.2f}u")
            return self._apply(_regime_frozen())

        velocity = current_margin_units / max(1.0, elapsed_minutes)
        progress = 0.0 if adjusted_target <= 0 else current_margin_units / adjusted_target

        if progress >= LATE_PROGRESS and elapsed_minutes >= adjusted_duration * LATE_ELAPSED_SHARE:
            return self._apply(_regime_late(tables))

        if velocity < vm_target:
            return self._apply(_regime_aggressive(tables))
        if velocity > vm_target * AHEAD_RATIO:
            return self._apply(_regime_protective())
        return self._apply(_regime_neutral(tables))

    # ---------------------- Reporting ----------------------

    def snapshot(
        self,
        current_margin_units: float,
        elapsed_minutes: float,
        active_table_count: int,
        k: float,
    ) -> MissionSnapshot:
        """
        Dashboard numbers. Unlike retune(), the adjusted target and duration here
        carry no efficiency/buffer factors.
        """
        m = self.store.get_mission_state()
        scale = max(1, int(active_table_count)) / max(1, m.target_tables)

        adjusted_target = m.target_units_total * scale
        adjusted_duration = m.target_minutes_total * scale
        vm_target = adjusted_target / max(1.0, adjusted_duration)

        display_target = adjusted_target * k
        display_vm_target = vm_target * k

        achievement = 0.0
        if display_target > 0:
            achievement = (current_margin_units * k) / display_target * 100.0

        return MissionSnapshot(
            adjusted_target=adjusted_target,
            adjusted_duration=adjusted_duration,
            vm_target=vm_target,
            display_target=display_target,
            display_vm_target=display_vm_target,
            warm_up_minutes=WARM_UP_MINUTES,
            warm_up_active=elapsed_minutes < WARM_UP_MINUTES,
            achievement_percent=round(achievement * 100) / 100,
            k=k,
            active_tables=max(1, int(active_table_count)),
            mission_completed=m.mission_completed,
        )

    def build_evaluation(self, snap: MissionSnapshot, current_margin_display: float, elapsed_minutes: float) -> Evaluation:
        vm = current_margin_display / max(1.0, elapsed_minutes)

        if snap.warm_up_active:
            return Evaluation(
                message=f"Warm-Up ({round(elapsed_minutes * 10) / 10} / {snap.warm_up_minutes:.0f} min)",
                vm_value=0.0,
                color="gray",
            )

        ratio = vm / max(0.000001, snap.display_vm_target)
        if ratio < EVAL_UNDER:
            msg, color = f"Push – Vm {vm:.2f} €/min (under)", "red"
        elif ratio > EVAL_FORWARD:
            msg, color = f"Protection – Vm {vm:.2f} €/min (forward)", "yellow"
        else:
            msg, color = f"Neutral – Vm {vm:.2f} €/min (aligned)", "green"

        msg += (
            f" | Tables={snap.active_tables} | Target={snap.display_target:.0f}"
            f" | VmTarget={snap.display_vm_target:.2f} | K={snap.k:.2f}"
        )
        return Evaluation(message=msg, vm_value=vm, color=color)
