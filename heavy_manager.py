from __future__ import annotations

import time
from dataclasses import replace
from typing import Callable, Optional

from models import GlobalState, HeavyLifecycleState, Settings
from store import LadderStore

# ----------------------------- Tunables -----------------------------

# used when settings carry no decay threshold
DEFAULT_DECAY_AFTER_HANDS = 4


class HeavyLifecycleManager:
    """
    Owns the engine-wide heavy-mode bookkeeping:

    - sync_delay(): optional fixed wait before a heavy grant (backpressure only;
      blocks the calling decision, never another table)
    - decay(): ages heavy slots out after a run of non-heavy hands
    - admit_heavy(): sliding-window cap on heavy grants across all tables

    heavy_count / cooldown live on the shared GlobalState and are only touched
    through store transactions. The hands-since-last-heavy counter and the grant
    timestamps live on HeavyLifecycleState.
    """

    def __init__(
        self,
        store: LadderStore,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self._sleep = sleep
        self._clock = clock

    def _settings(self, settings: Optional[Settings]) -> Settings:
        return settings if settings is not None else self.store.get_settings()

    # ---------------------- Sync delay ----------------------

    def sync_delay(self, settings: Optional[Settings] = None) -> None:
        s = self._settings(settings)
        if s.sync_delay_ms > 0:
            self._sleep(s.sync_delay_ms / 1000.0)

    # ---------------------- Decay ----------------------

    def decay(self, entered_heavy: bool, settings: Optional[Settings] = None) -> None:
        """
        Called once per processed hand.

        Heavy hand: restart the quiet-hand counter.
        Otherwise the counter grows; once it reaches the threshold with no
        cooldown pending and at least one heavy slot held, one slot is released
        and the counter restarts. A cooldown left over with no heavy slots also
        restarts the counter.
        """
        if entered_heavy:
            self.store.update_heavy_state(hands_since_last_heavy=0)
            return

        s = self._settings(settings)
        threshold = s.heavy_decay_after_hands or DEFAULT_DECAY_AFTER_HANDS
        hands = self.store.get_heavy_state().hands_since_last_heavy + 1

        verdict = {"reset": False, "released": False}

        def _release(g: GlobalState) -> GlobalState:
            if g.cooldown == 0 and g.heavy_count > 0 and hands >= threshold:
                verdict.update(reset=True, released=True)
                return replace(g, heavy_count=g.heavy_count - 1)
            # stale cooldown with nothing held
            verdict.update(reset=(g.heavy_count == 0 and g.cooldown > 0), released=False)
            return g

        g = self.store.transact_global_state(_release)
        if verdict["released"]:
            print(f"[heavy] slot released after {hands} quiet hands (heavy_count={g.heavy_count})")

        self.store.update_heavy_state(hands_since_last_heavy=0 if verdict["reset"] else hands)

    # ---------------------- Admission throttle ----------------------

    def admit_heavy(self, now: Optional[float] = None, settings: Optional[Settings] = None) -> bool:
        """
        Prune grants older than the window, reject at the cap, else record `now`.
        Prune, check and append happen in one transaction on the heavy state.
        """
        s = self._settings(settings)
        now = self._clock() if now is None else float(now)
        cutoff = now - s.global_heavy_cap_window

        verdict = {"admitted": False}

        def _admit(h: HeavyLifecycleState) -> HeavyLifecycleState:
            recent = tuple(ts for ts in h.recent_heavy_timestamps if ts > cutoff)
            if len(recent) >= s.global_heavy_cap:
                verdict["admitted"] = False
                return replace(h, recent_heavy_timestamps=recent)
            verdict["admitted"] = True
            return replace(h, recent_heavy_timestamps=recent + (now,))

        self.store.transact_heavy_state(_admit)
        if not verdict["admitted"]:
            print(f"[heavy] admission denied: {s.global_heavy_cap} grants inside {s.global_heavy_cap_window}s window")
        return verdict["admitted"]

    def now(self) -> float:
        return self._clock()

    def revoke_admission(self, stamp: float) -> None:
        """Drop one admitted timestamp whose heavy claim did not go through."""

        def _revoke(h: HeavyLifecycleState) -> HeavyLifecycleState:
            stamps = list(h.recent_heavy_timestamps)
            if stamp not in stamps:
                return h
            stamps.remove(stamp)
            return replace(h, recent_heavy_timestamps=tuple(stamps))

        self.store.transact_heavy_state(_revoke)
