# store.py - persistence contract for the ladder advisor + in-process backend
#
# Four aggregates live behind the store: global counters, per-table state,
# heavy-lifecycle state and mission state (plus the current settings snapshot
# and the seen-hands ledger). Every read lazily creates the aggregate with its
# defaults; every update is a partial merge stamped with updated_at.

from __future__ import annotations

import copy
import os
import threading
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from models import (
    DEFAULT_SETTINGS,
    GlobalState,
    HeavyLifecycleState,
    MissionState,
    Settings,
    TableState,
    _now_iso,
    merge_state,
)

GlobalMutator = Callable[[GlobalState], GlobalState]
HeavyMutator = Callable[[HeavyLifecycleState], HeavyLifecycleState]


class StoreConflictError(RuntimeError):
    """A transaction could not commit after repeated concurrent-write conflicts."""


class LadderStore:
    """
    Repository interface consumed by the engine. One implementation per backend.

    Transactions (transact_*, fold_table_margin) must tolerate concurrent
    writers from other tables without lost updates. Mutators passed to
    transact_* may run more than once and must be free of side effects on
    shared state.
    """

    # ---------- Global ----------
    def get_global_state(self) -> GlobalState:
        raise NotImplementedError

    def update_global_state(self, **updates: Any) -> GlobalState:
        raise NotImplementedError

    def transact_global_state(self, mutator: GlobalMutator) -> GlobalState:
        raise NotImplementedError

    def fold_table_margin(self, table_id: int, new_table_margin_units: float) -> GlobalState:
        """Set the table's running margin and move the global total by (new - old), atomically."""
        raise NotImplementedError

    # ---------- Heavy lifecycle ----------
    def get_heavy_state(self) -> HeavyLifecycleState:
        raise NotImplementedError

    def update_heavy_state(self, **updates: Any) -> HeavyLifecycleState:
        raise NotImplementedError

    def transact_heavy_state(self, mutator: HeavyMutator) -> HeavyLifecycleState:
        raise NotImplementedError

    # ---------- Mission ----------
    def get_mission_state(self) -> MissionState:
        raise NotImplementedError

    def update_mission_state(self, **updates: Any) -> MissionState:
        raise NotImplementedError

    # ---------- Settings ----------
    def get_settings(self) -> Settings:
        raise NotImplementedError

    def update_settings(self, **updates: Any) -> Settings:
        raise NotImplementedError

    def replace_settings(self, settings: Settings) -> Settings:
        raise NotImplementedError

    # ---------- Tables ----------
    def get_table_state(self, table_id: int) -> TableState:
        raise NotImplementedError

    def update_table_state(self, table_id: int, **updates: Any) -> TableState:
        raise NotImplementedError

    def list_table_ids(self) -> List[int]:
        raise NotImplementedError

    # ---------- Seen-hands ledger ----------
    def is_seen(self, table_id: int, hand_index: int) -> bool:
        raise NotImplementedError

    def mark_seen(self, table_id: int, hand_index: int) -> None:
        raise NotImplementedError


# ============================================================
#  IN-PROCESS BACKEND
# ============================================================

class MemoryStore(LadderStore):
    """
    Single-process store. One re-entrant lock serializes every operation, so each
    call is its own transaction. Values are deep-copied in and out; callers never
    share mutable state with the store.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self._lock = threading.RLock()
        self._base_settings: Settings = settings or DEFAULT_SETTINGS
        self._global: Optional[GlobalState] = None
        self._heavy: Optional[HeavyLifecycleState] = None
        self._mission: Optional[MissionState] = None
        self._settings: Optional[Settings] = None
        self._tables: Dict[int, TableState] = {}
        self._seen: Set[Tuple[int, int]] = set()

    # ---------- lazy init ----------
    def _global_locked(self) -> GlobalState:
        if self._global is None:
            self._global = GlobalState(updated_at=_now_iso())
        return self._global

    def _heavy_locked(self) -> HeavyLifecycleState:
        if self._heavy is None:
            self._heavy = HeavyLifecycleState(updated_at=_now_iso())
        return self._heavy

    def _mission_locked(self) -> MissionState:
        if self._mission is None:
            self._mission = MissionState(updated_at=_now_iso())
        return self._mission

    def _table_locked(self, table_id: int) -> TableState:
        ts = self._tables.get(int(table_id))
        if ts is None:
            ts = TableState(updated_at=_now_iso())
            self._tables[int(table_id)] = ts
        return ts

    # ---------- Global ----------
    def get_global_state(self) -> GlobalState:
        with self._lock:
            return self._global_locked()

    def update_global_state(self, **updates: Any) -> GlobalState:
        with self._lock:
            self._global = merge_state(self._global_locked(), updates)
            return self._global

    def transact_global_state(self, mutator: GlobalMutator) -> GlobalState:
        with self._lock:
            current = self._global_locked()
            new = mutator(current)
            if new is None or new == current:
                return current
            self._global = merge_state(new, {})
            return self._global

    def fold_table_margin(self, table_id: int, new_table_margin_units: float) -> GlobalState:
        with self._lock:
            ts = self._table_locked(table_id)
            g = self._global_locked()
            delta = float(new_table_margin_units) - float(ts.margin_units)
            ts.margin_units = float(new_table_margin_units)
            ts.updated_at = _now_iso()
            self._global = merge_state(g, {"global_margin_units": g.global_margin_units + delta})
            return self._global

    # ---------- Heavy lifecycle ----------
    def get_heavy_state(self) -> HeavyLifecycleState:
        with self._lock:
            return self._heavy_locked()

    def update_heavy_state(self, **updates: Any) -> HeavyLifecycleState:
        with self._lock:
            self._heavy = merge_state(self._heavy_locked(), updates)
            return self._heavy

    def transact_heavy_state(self, mutator: HeavyMutator) -> HeavyLifecycleState:
        with self._lock:
            current = self._heavy_locked()
            new = mutator(current)
            if new is None or new == current:
                return current
            self._heavy = merge_state(new, {})
            return self._heavy

    # ---------- Mission ----------
    def get_mission_state(self) -> MissionState:
        with self._lock:
            return self._mission_locked()

    def update_mission_state(self, **updates: Any) -> MissionState:
        with self._lock:
            self._mission = merge_state(self._mission_locked(), updates)
            return self._mission

    # ---------- Settings ----------
    def get_settings(self) -> Settings:
        with self._lock:
            if self._settings is None:
                self._settings = self._base_settings
            return self._settings

    def update_settings(self, **updates: Any) -> Settings:
        with self._lock:
            self._settings = self.get_settings().merge(**updates)
            return self._settings

    def replace_settings(self, settings: Settings) -> Settings:
        with self._lock:
            self._settings = settings
            return self._settings

    # ---------- Tables ----------
    def get_table_state(self, table_id: int) -> TableState:
        with self._lock:
            return copy.deepcopy(self._table_locked(table_id))

    def update_table_state(self, table_id: int, **updates: Any) -> TableState:
        with self._lock:
            current = self._table_locked(table_id)
            merged = merge_state(current, copy.deepcopy(updates))
            self._tables[int(table_id)] = merged
            return copy.deepcopy(merged)

    def list_table_ids(self) -> List[int]:
        with self._lock:
            return sorted(self._tables)

    # ---------- Seen-hands ledger ----------
    def is_seen(self, table_id: int, hand_index: int) -> bool:
        with self._lock:
            return (int(table_id), int(hand_index)) in self._seen

    def mark_seen(self, table_id: int, hand_index: int) -> None:
        with self._lock:
            self._seen.add((int(table_id), int(hand_index)))


# ============================================================
#  BACKEND FACTORY
# ============================================================

def make_store(backend: Optional[str] = None, settings: Optional[Settings] = None) -> LadderStore:
    """
    LADDER_BACKEND=memory (default) | supabase.
    The Supabase backend is imported lazily so the in-process path never needs credentials.
    """
    name = (backend or os.getenv("LADDER_BACKEND") or "memory").strip().lower()

    if name == "memory":
        return MemoryStore(settings=settings)

    if name == "supabase":
        from db import SupabaseStore

        return SupabaseStore(settings=settings)

    raise ValueError(f"Unknown LADDER_BACKEND {name!r} (expected 'memory' or 'supabase')")
