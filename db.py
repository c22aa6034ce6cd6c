# db.py - Supabase backend for the ladder store (JSON documents + optimistic CAS + seen-hands ledger)

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Tuple
import datetime as dt
import json  # needed to decode jsonb coming back as strings

import time
import httpx

from models import (
    DEFAULT_SETTINGS,
    GlobalState,
    HeavyLifecycleState,
    MissionState,
    Settings,
    TableState,
    merge_state,
)
from store import GlobalMutator, HeavyMutator, LadderStore, StoreConflictError
from supabase_client import engine_id as _configured_engine_id, get_supabase_admin

DOCS_TABLE = "ladder_docs"
SEEN_TABLE = "ladder_seen_hands"
FOLD_RPC = "ladder_fold_table_margin"

KIND_GLOBAL = "global_state"
KIND_HEAVY = "heavy_state"
KIND_MISSION = "mission_state"
KIND_SETTINGS = "settings"
KIND_TABLE = "table_state"
CURRENT_KEY = "current"

MAX_CAS_TRIES = 8


def _now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


def _execute_with_retry(q, *, tries: int = 3, base_sleep: float = 0.2):
    """
    Retry wrapper for transient PostgREST/httpx read/connect hiccups.
    q must be a PostgREST query object that supports .execute().
    """
    last_err = None
    for attempt in range(tries):
        try:
            return q.execute()
        except (httpx.ReadError, httpx.ConnectError, httpx.TimeoutException) as e:
            last_err = e
            print(f"[db] transient error (attempt {attempt + 1}/{tries}): {e!r}")
            time.sleep(base_sleep * (2 ** attempt))  # 0.2, 0.4, 0.8
    raise last_err  # bubble after retries


def _decode_body(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            print("[db] failed to json.loads(body); using empty dict.")
            raw = {}
    return raw if isinstance(raw, dict) else {}


def _is_duplicate_error(e: Exception) -> bool:
    msg = str(e).lower()
    return "duplicate" in msg or "conflict" in msg or "23505" in msg


class SupabaseStore(LadderStore):
    """
    Every aggregate is one row of ladder_docs keyed by (engine_id, kind, doc_key)
    with a jsonb body and a version counter.

    Reads lazily insert the default document. Writes are compare-and-swap updates
    guarded by eq("version", v): a lost race re-reads and re-applies the change,
    up to MAX_CAS_TRIES times. The margin fold runs server-side in a single
    Postgres transaction (see supabase_schema.sql).
    """

    def __init__(self, sb=None, engine_id: Optional[str] = None, settings: Optional[Settings] = None):
        self._sb = sb
        self.engine_id = engine_id or _configured_engine_id()
        self._base_settings = settings or DEFAULT_SETTINGS

    @property
    def sb(self):
        if self._sb is None:
            self._sb = get_supabase_admin()
        return self._sb

    # ============================================================
    #  DOCUMENT PRIMITIVES
    # ============================================================
    def _doc_query(self, q, kind: str, key: str):
        return q.eq("engine_id", self.engine_id).eq("kind", kind).eq("doc_key", key)

    def _read_doc(self, kind: str, key: str) -> Optional[Tuple[Dict[str, Any], int]]:
        q = self._doc_query(self.sb.table(DOCS_TABLE).select("body,version"), kind, key).limit(1)
        res = _execute_with_retry(q)
        rows = getattr(res, "data", None) or []
        if not rows:
            return None
        row = rows[0] or {}
        return _decode_body(row.get("body")), int(row.get("version") or 0)

    def _ensure_doc(self, kind: str, key: str, seed: Callable[[], Dict[str, Any]]) -> Tuple[Dict[str, Any], int]:
        found = self._read_doc(kind, key)
        if found is not None:
            return found

        body = seed()
        payload = {
            "engine_id": self.engine_id,
            "kind": kind,
            "doc_key": key,
            "body": body,
            "version": 0,
            "updated_at": _now_iso(),
        }
        try:
            _execute_with_retry(self.sb.table(DOCS_TABLE).insert(payload))
            return body, 0
        except Exception as e:
            if not _is_duplicate_error(e):
                raise
        # another writer seeded it first
        found = self._read_doc(kind, key)
        if found is None:
            raise StoreConflictError(f"{kind}/{key} vanished after duplicate insert")
        return found

    def _cas(
        self,
        kind: str,
        key: str,
        seed: Callable[[], Dict[str, Any]],
        fn: Callable[[Dict[str, Any]], Dict[str, Any]],
    ) -> Dict[str, Any]:
        for attempt in range(MAX_CAS_TRIES):
            body, version = self._ensure_doc(kind, key, seed)
            new_body = fn(body)
            if new_body == body:
                return body

            q = self._doc_query(
                self.sb.table(DOCS_TABLE).update(
                    {"body": new_body, "version": version + 1, "updated_at": _now_iso()}
                ),
                kind,
                key,
            ).eq("version", version)
            res = _execute_with_retry(q)
            if getattr(res, "data", None):
                return new_body

            print(f"[db] CAS conflict on {kind}/{key} v{version} (attempt {attempt + 1}/{MAX_CAS_TRIES})")

        raise StoreConflictError(f"{kind}/{key}: gave up after {MAX_CAS_TRIES} conflicting writes")

    # ============================================================
    #  GLOBAL STATE
    # ============================================================
    def _global_seed(self) -> Dict[str, Any]:
        return GlobalState(updated_at=_now_iso()).to_dict()

    def get_global_state(self) -> GlobalState:
        body, _ = self._ensure_doc(KIND_GLOBAL, CURRENT_KEY, self._global_seed)
        return GlobalState.from_dict(body)

    def update_global_state(self, **updates: Any) -> GlobalState:
        body = self._cas(
            KIND_GLOBAL, CURRENT_KEY, self._global_seed,
            lambda b: merge_state(GlobalState.from_dict(b), updates).to_dict(),
        )
        return GlobalState.from_dict(body)

    def transact_global_state(self, mutator: GlobalMutator) -> GlobalState:
        def _apply(b: Dict[str, Any]) -> Dict[str, Any]:
            current = GlobalState.from_dict(b)
            new = mutator(current)
            if new is None or new == current:
                return b
            return merge_state(new, {}).to_dict()

        body = self._cas(KIND_GLOBAL, CURRENT_KEY, self._global_seed, _apply)
        return GlobalState.from_dict(body)

    def fold_table_margin(self, table_id: int, new_table_margin_units: float) -> GlobalState:
        q = self.sb.rpc(
            FOLD_RPC,
            {
                "p_engine_id": self.engine_id,
                "p_table_id": int(table_id),
                "p_margin_units": float(new_table_margin_units),
            },
        )
        res = _execute_with_retry(q)
        data = getattr(res, "data", None)
        if isinstance(data, list):
            data = data[0] if data else {}
        return GlobalState.from_dict(_decode_body(data))

    # ============================================================
    #  HEAVY LIFECYCLE
    # ============================================================
    def _heavy_seed(self) -> Dict[str, Any]:
        return HeavyLifecycleState(updated_at=_now_iso()).to_dict()

    def get_heavy_state(self) -> HeavyLifecycleState:
        body, _ = self._ensure_doc(KIND_HEAVY, CURRENT_KEY, self._heavy_seed)
        return HeavyLifecycleState.from_dict(body)

    def update_heavy_state(self, **updates: Any) -> HeavyLifecycleState:
        body = self._cas(
            KIND_HEAVY, CURRENT_KEY, self._heavy_seed,
            lambda b: merge_state(HeavyLifecycleState.from_dict(b), updates).to_dict(),
        )
        return HeavyLifecycleState.from_dict(body)

    def transact_heavy_state(self, mutator: HeavyMutator) -> HeavyLifecycleState:
        def _apply(b: Dict[str, Any]) -> Dict[str, Any]:
            current = HeavyLifecycleState.from_dict(b)
            new = mutator(current)
            if new is None or new == current:
                return b
            return merge_state(new, {}).to_dict()

        body = self._cas(KIND_HEAVY, CURRENT_KEY, self._heavy_seed, _apply)
        return HeavyLifecycleState.from_dict(body)

    # ============================================================
    #  MISSION
    # ============================================================
    def _mission_seed(self) -> Dict[str, Any]:
        return MissionState(updated_at=_now_iso()).to_dict()

    def get_mission_state(self) -> MissionState:
        body, _ = self._ensure_doc(KIND_MISSION, CURRENT_KEY, self._mission_seed)
        return MissionState.from_dict(body)

    def update_mission_state(self, **updates: Any) -> MissionState:
        body = self._cas(
            KIND_MISSION, CURRENT_KEY, self._mission_seed,
            lambda b: merge_state(MissionState.from_dict(b), updates).to_dict(),
        )
        return MissionState.from_dict(body)

    # ============================================================
    #  SETTINGS
    # ============================================================
    def _settings_seed(self) -> Dict[str, Any]:
        return self._base_settings.to_dict()

    def get_settings(self) -> Settings:
        body, _ = self._ensure_doc(KIND_SETTINGS, CURRENT_KEY, self._settings_seed)
        return Settings.from_dict(body)

    def update_settings(self, **updates: Any) -> Settings:
        body = self._cas(
            KIND_SETTINGS, CURRENT_KEY, self._settings_seed,
            lambda b: Settings.from_dict(b).merge(**updates).to_dict(),
        )
        return Settings.from_dict(body)

    def replace_settings(self, settings: Settings) -> Settings:
        body = self._cas(KIND_SETTINGS, CURRENT_KEY, self._settings_seed, lambda b: settings.to_dict())
        return Settings.from_dict(body)

    # ============================================================
    #  TABLES
    # ============================================================
    def _table_seed(self) -> Dict[str, Any]:
        return TableState(updated_at=_now_iso()).to_dict()

    def get_table_state(self, table_id: int) -> TableState:
        body, _ = self._ensure_doc(KIND_TABLE, str(int(table_id)), self._table_seed)
        return TableState.from_dict(body)

    def update_table_state(self, table_id: int, **updates: Any) -> TableState:
        body = self._cas(
            KIND_TABLE, str(int(table_id)), self._table_seed,
            lambda b: merge_state(TableState.from_dict(b), updates).to_dict(),
        )
        return TableState.from_dict(body)

    def list_table_ids(self) -> List[int]:
        q = (
            self.sb.table(DOCS_TABLE)
            .select("doc_key")
            .eq("engine_id", self.engine_id)
            .eq("kind", KIND_TABLE)
        )
        res = _execute_with_retry(q)
        ids: List[int] = []
        for row in getattr(res, "data", None) or []:
            try:
                ids.append(int(row.get("doc_key")))
            except (TypeError, ValueError):
                print(f"[db] list_table_ids: skipping non-numeric doc_key {row.get('doc_key')!r}")
        return sorted(ids)

    # ============================================================
    #  SEEN-HANDS LEDGER
    # ============================================================
    def is_seen(self, table_id: int, hand_index: int) -> bool:
        q = (
            self.sb.table(SEEN_TABLE)
            .select("hand_index")
            .eq("engine_id", self.engine_id)
            .eq("table_id", int(table_id))
            .eq("hand_index", int(hand_index))
            .limit(1)
        )
        res = _execute_with_retry(q)
        return bool(getattr(res, "data", None))

    def mark_seen(self, table_id: int, hand_index: int) -> None:
        payload = {
            "engine_id": self.engine_id,
            "table_id": int(table_id),
            "hand_index": int(hand_index),
            "seen_at": _now_iso(),
        }
        # retry-safe: a second mark of the same hand is a no-op
        q = self.sb.table(SEEN_TABLE).upsert(
            payload,
            on_conflict="engine_id,table_id,hand_index",
            ignore_duplicates=True,
        )
        _execute_with_retry(q)
