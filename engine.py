# engine.py - Multi-table ladder decision engine
#
# One call per resolved hand per table. Decides the next ladder rung, whether to
# stop at L5, whether to authorize a heavy (L6+) continuation, and whether the
# global mission has been reached.
#
# LADDER: 8 rungs, default [1, 3, 7, 15, 35, 75, 155, 340] units
# L5 DECISION (first match wins):
#   hot zone / severe red streak -> stop, book L5 loss as portfolio debt
#   positive 20-hand velocity     -> extend to L6 (heavy)
#   debt trigger + override room  -> hot override to L6 (heavy)
#   otherwise                     -> stop, book L5 loss
#
# CRITICAL: every read-modify-write on GlobalState goes through a store
# transaction. Other tables are writing to it at the same time.

from __future__ import annotations

import json
import math
from dataclasses import replace
from typing import List, Optional

from heavy_manager import HeavyLifecycleManager
from mission_controller import AdaptiveMissionController
from models import (
    Advice,
    GlobalState,
    LadderConfigError,
    LastInput,
    RowState,
    Settings,
    TableState,
)
from outcome_classifier import infer, normalize_outcome, to_level_index
from store import LadderStore


def _round2(x: float) -> float:
    return round(x * 100) / 100


class DecisionEngine:
    """
    Ladder advisor shared by every table of one engine partition.

    LOCKED PARAMETERS:
    - Warm-up grace: first 3 inputs per table never rejected
    - Disable after 5 invalid inputs, recover after 3 valid ones
    - Velocity window: 20 hands
    - Hot override only while the Player streak is below 5
    - Heavy exit: Banker win dropping from L6+ back to L1
    """

    # ============================================================
    # INPUT HEALTH
    # ============================================================
    WARM_GRACE_INPUTS: int = 3
    DISABLE_AFTER_INVALID: int = 5
    RECOVER_AFTER_VALID: int = 3

    # ============================================================
    # LADDER
    # ============================================================
    L5_INDEX: int = 4
    HEAVY_INDEX: int = 5
    HEAVY_TOLERATE_UI: int = 6       # invalid inputs tolerated while heavy at/above this UI level
    VM_WINDOW_HANDS: int = 20
    OVERRIDE_MAX_RUN_P: int = 5

    K_EPSILON: float = 0.0000001

    def __init__(
        self,
        store: LadderStore,
        heavy: Optional[HeavyLifecycleManager] = None,
        mission: Optional[AdaptiveMissionController] = None,
    ):
        self.store = store
        self.heavy = heavy or HeavyLifecycleManager(store)
        self.mission = mission or AdaptiveMissionController(store)
        # regime baseline restored on mission reinit (retune overwrites the live one)
        self._base_settings: Settings = store.get_settings()

    # ============================================================
    # PUBLIC SURFACE
    # ============================================================
    def initialize(self, target_margin_units: float = 1500, target_minutes: float = 540) -> None:
        """Reinitialize the mission; base regime settings come back, K is kept."""
        base = replace(self._base_settings, k=self.get_k())
        self.mission.initialize(target_margin_units, target_minutes, base_settings=base)

    def get_settings(self) -> Settings:
        return self.store.get_settings()

    def get_k(self) -> float:
        return self.store.get_settings().k

    def set_k(self, value: float) -> None:
        try:
            k = float(value)
        except (TypeError, ValueError):
            raise LadderConfigError(f"K must be a number, got {value!r}")
        if not math.isfinite(k) or k <= 0:
            raise LadderConfigError("K must be greater than zero")
        self.store.update_settings(k=k)
        self._base_settings = replace(self._base_settings, k=k)

    def get_heavy_count(self) -> int:
        return self.store.get_global_state().heavy_count

    def get_history(self, table_id: int) -> List[str]:
        return list(self.store.get_table_state(table_id).row_state.history)

    def reset_table(self, table_id: int) -> None:
        """External reset for a disabled table: clears the invalid-input flow only."""
        rs = self.store.get_table_state(table_id).row_state
        rs.disabled = False
        rs.invalid_count = 0
        rs.valid_recovery = 0
        self.store.update_table_state(table_id, row_state=rs)
        print(f"[engine] table {table_id} reset by operator")

    def start_new_shoe(self) -> None:
        """Per-shoe override budget starts over."""
        self.store.update_global_state(hot_overrides_used_this_shoe=0)

    def snapshot(self, elapsed_minutes: float, active_table_count: int):
        g = self.store.get_global_state()
        return self.mission.snapshot(g.global_margin_units, elapsed_minutes, active_table_count, self.get_k())

    def evaluate(self, elapsed_minutes: float, active_table_count: int):
        snap = self.snapshot(elapsed_minutes, active_table_count)
        g = self.store.get_global_state()
        return self.mission.build_evaluation(snap, g.global_margin_units * snap.k, elapsed_minutes)

    # ============================================================
    # DECIDE
    # ============================================================
    def decide(
        self,
        table_id: int,
        hand_index: int,
        margin_delta_display: float,
        martingale_level_ui: int,
        signal_flag: bool = False,
        hot_zone_flag: bool = False,
        outcome_symbol: Optional[str] = None,
        elapsed_minutes: float = 0.0,
        active_table_count: int = 1,
    ) -> Advice:
        """
        Advise on one resolved hand.

        margin_delta_display is the table's running margin as displayed
        (units × K); it becomes the table's new cumulative total.
        outcome_symbol may be None, in which case the outcome is inferred from
        how margin and ladder level moved since the previous hand.

        Business branches always return an Advice. Only store failures raise;
        the hand then counts as unprocessed and may be resubmitted.
        """
        settings = self.store.get_settings()
        ts = self.store.get_table_state(table_id)
        rs = ts.row_state
        raw_outcome = normalize_outcome(outcome_symbol) or ""

        margin_ok = isinstance(margin_delta_display, (int, float)) and math.isfinite(margin_delta_display)
        invalid = table_id <= 0 or hand_index <= 0 or not margin_ok or martingale_level_ui < 1

        # ---- replay of an already processed hand ----
        if self.store.is_seen(table_id, hand_index) and ts.last_advice and ts.last_input:
            if ts.last_input.matches(hand_index, margin_delta_display, martingale_level_ui, raw_outcome):
                return self._replay(table_id, ts, settings)
        else:
            self.store.mark_seen(table_id, hand_index)

        # ---- input health ----
        rs.warm_inputs += 1
        if invalid:
            in_grace = rs.warm_inputs <= self.WARM_GRACE_INPUTS
            heavy_grace = rs.force_to_l8_active and martingale_level_ui >= self.HEAVY_TOLERATE_UI
            if not (in_grace or heavy_grace):
                return self._reject_input(table_id, rs)

        rs.valid_recovery += 1
        if rs.valid_recovery >= self.RECOVER_AFTER_VALID:
            rs.disabled = False
            rs.invalid_count = 0

        # ---- margin fold ----
        k = max(self.K_EPSILON, settings.k)
        if margin_ok:
            margin_units = margin_delta_display / k
        else:
            # tolerated input without a usable margin: table total unchanged
            margin_units = ts.margin_units
            margin_delta_display = ts.margin_units * k
        g = self.store.fold_table_margin(table_id, margin_units)

        level_idx = to_level_index(martingale_level_ui)
        outcome = raw_outcome or infer(
            rs.prev_level,
            rs.prev_margine,
            rs.prev_stake,
            rs.prev_mazzo is not None,
            level_idx,
            margin_units,
            tolerance=settings.outcome_tolerance,
        )
        last_input = LastInput(
            hand_index=hand_index,
            margin_display=margin_delta_display,
            martingale_level_ui=martingale_level_ui,
            outcome=raw_outcome,
            resolved_outcome=outcome,
        )

        # ---- mission ----
        settings = self.mission.retune(g.global_margin_units, elapsed_minutes, active_table_count)

        if self.mission.mission_complete():
            adv = self._base_advice(table_id, hand_index, g, rs, settings)
            adv.stop_at_l5 = True
            adv.reason = "STOP-WIN"
            adv.prediction = "Mission stop"
            adv.table_status = "🟢 Mission Complete"
            self._save(table_id, rs, adv, last_input)
            return adv

        hmax, cdn = self._regime(g.global_margin_units, settings)

        # ---- preemptive L5 stop ----
        if martingale_level_ui == self.L5_INDEX + 1:
            room_closed = g.heavy_count >= hmax or g.cooldown > 0
            if room_closed or self._debt_triggered(g, settings, active_table_count):
                g = self.store.transact_global_state(lambda s: replace(s, cooldown=max(s.cooldown, cdn)))
                adv = self._base_advice(table_id, hand_index, g, rs, settings)
                adv.level_index = self.L5_INDEX
                adv.stake_units = 0.0
                adv.stop_at_l5 = True
                adv.reason = "Stop L5 early"
                adv.prediction = "Stop L5"
                print(f"[engine] table {table_id} hand {hand_index}: early L5 stop (heavy={g.heavy_count}/{hmax}, cooldown={g.cooldown})")
                self._save(table_id, rs, adv, last_input)
                return adv

        # ---- ladder bookkeeping ----
        stake_units = settings.levels[min(level_idx, len(settings.levels) - 1)]

        self._push_outcome(rs, outcome, settings)
        if outcome == "P":
            rs.run_p += 1
        elif outcome == "B":
            rs.run_p = 0

        rs.hand_count += 1
        rs.margine_accum += margin_delta_display
        if rs.hand_count % self.VM_WINDOW_HANDS == 0:
            rs.vm_local20 = rs.margine_accum / float(self.VM_WINDOW_HANDS)
            rs.margine_accum = 0.0

        # ---- heavy exit ----
        if outcome == "B" and rs.prev_level >= self.HEAVY_INDEX and level_idx == 0 and rs.force_to_l8_active:
            rs.force_to_l8_active = False
            self.store.transact_global_state(
                lambda s: replace(s, hot_overrides_active=max(0, s.hot_overrides_active - 1))
            )
            print(f"[engine] table {table_id} hand {hand_index}: heavy exit")

        # ---- cooldown tick ----
        if g.cooldown > 0:
            self.store.transact_global_state(lambda s: replace(s, cooldown=max(0, s.cooldown - 1)))

        adv = self._base_advice(table_id, hand_index, g, rs, settings)
        adv.level_index = level_idx
        adv.stake_units = _round2(stake_units * settings.k)
        adv.hot_zone = self._in_hot_zone(hand_index, hot_zone_flag, settings)

        # ---- heavy continuation ----
        if rs.force_to_l8_active and level_idx >= self.L5_INDEX:
            adv.authorized_heavy = True
            adv.stop_at_l5 = False
            adv.prediction = "Heavy L8"
            adv.reason = f"Heavy active L{level_idx + 1}"

            if level_idx >= self.HEAVY_INDEX:
                self.heavy.sync_delay(settings)
                adv.reason = f"Heavy L{level_idx + 1}"
                self.store.transact_global_state(
                    lambda s: replace(s, heavy_count=s.heavy_count + 1, cooldown=max(s.cooldown, cdn))
                )
                adv.tooltip_json = self._diagnostics(hand_index, rs, g, hmax, cdn, signal_flag)
                self._finish(table_id, rs, adv, last_input, hand_index, level_idx, margin_units, stake_units, settings)
                return adv

        # ---- L5 decision ----
        if level_idx == self.L5_INDEX and not rs.force_to_l8_active:
            self._resolve_level5(table_id, rs, adv, g, settings, hmax, cdn, active_table_count)

        adv.tooltip_json = self._diagnostics(hand_index, rs, g, hmax, cdn, signal_flag)
        self._finish(table_id, rs, adv, last_input, hand_index, level_idx, margin_units, stake_units, settings)
        return adv

    # ============================================================
    # L5 BRANCHES
    # ============================================================
    def _resolve_level5(
        self,
        table_id: int,
        rs: RowState,
        adv: Advice,
        g: GlobalState,
        settings: Settings,
        hmax: int,
        cdn: int,
        active_table_count: int,
    ) -> None:
        """
        Mutually exclusive, first match wins:
        1. Hot zone or severe red streak -> stop at L5
        2. Positive 20-hand velocity, room open -> extend to L6
        3. Debt trigger, room open, override budget, short Player streak -> hot override
        4. Default -> stop at L5
        A grant that loses its race (admission window full, cap reached by another
        table meanwhile) falls through to the next branch.
        """
        room_blocked = g.cooldown > 0 or g.heavy_count >= hmax

        if adv.hot_zone or self._severe_red(rs, settings):
            self._stop_at_l5(rs, adv, settings, "Stop L5: hot/red")
            return

        if rs.vm_local20 > 0 and not room_blocked:
            if self._grant_heavy(table_id, settings, hmax, cdn, override=False):
                rs.force_to_l8_active = True
                adv.authorized_heavy = True
                adv.stop_at_l5 = False
                adv.reason = f"Heavy extended L5 Vm20 {rs.vm_local20:.2f}"
                adv.prediction = "L6 authorized"
                return

        can_override = (
            g.hot_overrides_active < settings.max_hot_overrides_concurrent
            and g.hot_overrides_used_this_shoe < settings.max_hot_overrides_per_shoe
        )
        if (
            self._debt_triggered(g, settings, active_table_count)
            and not room_blocked
            and can_override
            and rs.run_p < self.OVERRIDE_MAX_RUN_P
        ):
            if self._grant_heavy(table_id, settings, hmax, cdn, override=True):
                rs.force_to_l8_active = True
                adv.authorized_heavy = True
                adv.stop_at_l5 = False
                adv.reason = "Hot override L5"
                adv.prediction = "L6 authorized"
                return

        self._stop_at_l5(rs, adv, settings, "Stop L5 default")

    def _stop_at_l5(self, rs: RowState, adv: Advice, settings: Settings, reason: str) -> None:
        adv.stop_at_l5 = True
        adv.authorized_heavy = False
        adv.reason = reason
        adv.prediction = "Stop L5"
        loss = settings.l5_loss_units
        g = self.store.transact_global_state(
            lambda s: replace(s, portfolio_debt_units=s.portfolio_debt_units + loss)
        )
        adv.portfolio_debt_units = g.portfolio_debt_units
        rs.l5_closed_count += 1

    def _grant_heavy(self, table_id: int, settings: Settings, hmax: int, cdn: int, override: bool) -> bool:
        """
        Admission throttle, sync delay, then claim a heavy slot in one global
        transaction (cap and override budgets re-checked against live counters).
        A lost claim gives its admission slot back.
        """
        stamp = self.heavy.now()
        if not self.heavy.admit_heavy(now=stamp, settings=settings):
            return False

        self.heavy.sync_delay(settings)

        verdict = {"granted": False}

        def _claim(s: GlobalState) -> GlobalState:
            verdict["granted"] = False
            if s.heavy_count >= hmax:
                return s
            if override and (
                s.hot_overrides_active >= settings.max_hot_overrides_concurrent
                or s.hot_overrides_used_this_shoe >= settings.max_hot_overrides_per_shoe
            ):
                return s
            verdict["granted"] = True
            new = replace(s, heavy_count=s.heavy_count + 1, cooldown=cdn)
            if override:
                new = replace(
                    new,
                    hot_overrides_active=s.hot_overrides_active + 1,
                    hot_overrides_used_this_shoe=s.hot_overrides_used_this_shoe + 1,
                )
            return new

        g = self.store.transact_global_state(_claim)
        kind = "hot override" if override else "extension"
        if verdict["granted"]:
            print(f"[engine] table {table_id}: heavy {kind} granted (heavy={g.heavy_count}/{hmax})")
        else:
            print(f"[engine] table {table_id}: heavy {kind} lost its slot (heavy={g.heavy_count}/{hmax})")
            self.heavy.revoke_admission(stamp)
        return verdict["granted"]

    # ============================================================
    # POLICY HELPERS
    # ============================================================
    def _regime(self, global_margin_units: float, settings: Settings):
        """(heavy cap, cooldown) for the regime the global margin sits in."""
        if global_margin_units >= settings.high_thresh:
            return settings.hmax_high, settings.cooldown_high
        if global_margin_units <= settings.low_thresh:
            return settings.hmax_low, settings.cooldown_low
        return settings.hmax_mid, settings.cooldown_mid

    def _residual_capacity_units(self, settings: Settings, active_table_count: int) -> float:
        return (
            settings.mean_units_per_hand_per_table
            * settings.estimated_hands_left_per_table
            * max(1, int(active_table_count))
        )

    def _debt_triggered(self, g: GlobalState, settings: Settings, active_table_count: int) -> bool:
        cap = self._residual_capacity_units(settings, active_table_count)
        return g.portfolio_debt_units > settings.debt_trigger_ratio * cap

    def _in_hot_zone(self, hand_index: int, hot_zone_flag: bool, settings: Settings) -> bool:
        if not hot_zone_flag:
            return False
        return any(start <= hand_index <= end for start, end in settings.hot_zones)

    def _hot_zone_label(self, hand_index: int, settings: Settings) -> str:
        for start, end in settings.hot_zones:
            if start <= hand_index <= end:
                return f"Closed {start}-{end}"
        return f"Open Zone {hand_index}"

    def _push_outcome(self, rs: RowState, outcome: str, settings: Settings) -> None:
        window = max(1, settings.window_w10)
        if outcome != "T":
            rs.history.append(outcome)
            del rs.history[:-window]
        side = outcome.lower()
        if side in ("p", "b", "t"):
            rs.history_table.append(side)
            del rs.history_table[:-window]

    def _severe_red(self, rs: RowState, settings: Settings) -> bool:
        """Longest same-side run in the table window (ties skipped) beyond the allowed run."""
        max_run = 0
        cur = 0
        last = ""
        for o in reversed(rs.history_table):
            if o == "t":
                continue
            if last == "" or o == last:
                cur += 1
            else:
                cur = 1
            max_run = max(max_run, cur)
            last = o
        return max_run > settings.max_run_side_allowed_table + settings.severe_red_run_margin

    @staticmethod
    def _max_run_p(rs: RowState) -> int:
        best = 0
        cur = 0
        for o in rs.history:
            cur = cur + 1 if o == "P" else 0
            best = max(best, cur)
        return best

    # ============================================================
    # ADVICE BUILDING
    # ============================================================
    def _base_advice(self, table_id: int, hand_index: int, g: GlobalState, rs: RowState, settings: Settings) -> Advice:
        signal = "Red" if self._severe_red(rs, settings) else "Green"
        return Advice(
            table_id=table_id,
            level_index=0,
            stake_units=0.0,
            global_margin=_round2(g.global_margin_units * settings.k),
            signal_w10=signal,
            signal_table_w10=signal,
            hot_zone_label=self._hot_zone_label(hand_index, settings),
            portfolio_debt_units=g.portfolio_debt_units,
            hot_overrides_active=g.hot_overrides_active,
            hot_overrides_used_this_shoe=g.hot_overrides_used_this_shoe,
            vm_local20=rs.vm_local20,
        )

    def _diagnostics(self, hand_index: int, rs: RowState, g: GlobalState, hmax: int, cdn: int, signal_flag: bool) -> str:
        try:
            return json.dumps({
                "hand_no": hand_index,
                "run_p": rs.run_p,
                "max_run_p": self._max_run_p(rs),
                "heavy_count": g.heavy_count,
                "hmax": hmax,
                "cdn": cdn,
                "cooldown": g.cooldown,
                "signal_flag": bool(signal_flag),
            })
        except (TypeError, ValueError) as e:
            print(f"[engine] diagnostics suppressed: {e!r}")
            return json.dumps({"error": str(e)})

    def _reject_input(self, table_id: int, rs: RowState) -> Advice:
        rs.invalid_count += 1
        rs.valid_recovery = 0

        if rs.invalid_count >= self.DISABLE_AFTER_INVALID:
            rs.disabled = True
            self.store.update_table_state(table_id, row_state=rs)
            print(f"[engine] table {table_id} disabled after {rs.invalid_count} invalid inputs")
            return Advice(
                table_id=table_id,
                stop_at_l5=True,
                reason="Table disabled",
                signal_w10="Red",
                signal_table_w10="Red",
                prediction="Disabled",
                table_status="🔴 Disabled",
            )

        self.store.update_table_state(table_id, row_state=rs)
        return Advice(
            table_id=table_id,
            reason="Invalid input",
            signal_w10="Yellow",
            signal_table_w10="Yellow",
            prediction="Safe",
            table_status="🟡 Warning",
        )

    def _replay(self, table_id: int, ts: TableState, settings: Settings) -> Advice:
        """Same hand resubmitted: refresh the rolling windows and the short-window signal only."""
        rs = ts.row_state
        self._push_outcome(rs, ts.last_input.resolved_outcome, settings)
        adv = ts.last_advice
        adv.signal_w10 = "Red" if self._severe_red(rs, settings) else "Green"
        self.store.update_table_state(table_id, row_state=rs)
        return adv

    # ============================================================
    # PERSISTENCE
    # ============================================================
    def _save(self, table_id: int, rs: RowState, adv: Advice, last_input: LastInput) -> None:
        self.store.update_table_state(table_id, row_state=rs, last_advice=adv, last_input=last_input)

    def _finish(
        self,
        table_id: int,
        rs: RowState,
        adv: Advice,
        last_input: LastInput,
        hand_index: int,
        level_idx: int,
        margin_units: float,
        stake_units: float,
        settings: Settings,
    ) -> None:
        rs.prev_mazzo = hand_index
        rs.prev_level = level_idx
        rs.prev_margine = margin_units
        rs.prev_stake = stake_units
        self._save(table_id, rs, adv, last_input)
        self.heavy.decay(adv.authorized_heavy and adv.level_index >= self.HEAVY_INDEX, settings)
