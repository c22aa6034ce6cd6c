#!/usr/bin/env python3
"""
SupabaseStore against a scripted PostgREST client (no network)

Run with: python3 tests/test_db.py
"""

import json
import os
import sys
import unittest
from dataclasses import replace
from types import SimpleNamespace
from unittest import mock

import httpx

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import db
from db import SupabaseStore
from models import GlobalState
from store import StoreConflictError


class FakeQuery:
    """Chainable query builder; execute() pops the next scripted result (or raises it)."""

    def __init__(self, results):
        self._results = list(results)
        self.calls = []

    def __getattr__(self, name):
        def _chain(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            return self
        return _chain

    def execute(self):
        r = self._results.pop(0)
        if isinstance(r, Exception):
            raise r
        return r


def rows(*data):
    return SimpleNamespace(data=list(data))


def make_store(results):
    q = FakeQuery(results)
    sb = mock.MagicMock()
    sb.table.return_value = q
    sb.rpc.return_value = q
    return SupabaseStore(sb=sb, engine_id="TEST"), q, sb


class TestDocuments(unittest.TestCase):

    def test_read_decodes_jsonb_string(self):
        body = json.dumps({"heavy_count": 2, "cooldown": 1})
        store, q, sb = make_store([rows({"body": body, "version": 5})])

        g = store.get_global_state()

        self.assertEqual((g.heavy_count, g.cooldown), (2, 1))
        sb.table.assert_called_with(db.DOCS_TABLE)
        self.assertIn(("eq", ("engine_id", "TEST"), {}), q.calls)

    def test_missing_doc_is_seeded(self):
        store, q, _ = make_store([rows(), rows({"doc_key": "current"})])

        g = store.get_global_state()

        self.assertEqual(g.global_margin_units, 0.0)
        inserts = [c for c in q.calls if c[0] == "insert"]
        self.assertEqual(len(inserts), 1)
        self.assertEqual(inserts[0][1][0]["kind"], db.KIND_GLOBAL)
        self.assertEqual(inserts[0][1][0]["version"], 0)

    def test_duplicate_seed_rereads(self):
        store, _, _ = make_store([
            rows(),
            Exception('duplicate key value violates unique constraint (23505)'),
            rows({"body": {"cooldown": 4}, "version": 1}),
        ])
        self.assertEqual(store.get_global_state().cooldown, 4)

    def test_other_insert_errors_propagate(self):
        store, _, _ = make_store([rows(), RuntimeError("permission denied")])
        with self.assertRaises(RuntimeError):
            store.get_global_state()


class TestCompareAndSwap(unittest.TestCase):

    def test_conflict_is_retried_on_fresh_version(self):
        store, q, _ = make_store([
            rows({"body": {"heavy_count": 1}, "version": 3}),
            rows(),                                             # lost the race
            rows({"body": {"heavy_count": 2}, "version": 4}),
            rows({"version": 5}),
        ])

        g = store.transact_global_state(lambda s: replace(s, heavy_count=s.heavy_count + 1))

        self.assertEqual(g.heavy_count, 3)
        self.assertIn(("eq", ("version", 3), {}), q.calls)
        self.assertIn(("eq", ("version", 4), {}), q.calls)
        update = [c for c in q.calls if c[0] == "update"][-1]
        self.assertEqual(update[1][0]["version"], 5)

    def test_gives_up_after_max_tries(self):
        script = []
        for v in range(db.MAX_CAS_TRIES):
            script += [rows({"body": {"cooldown": 0}, "version": v}), rows()]
        store, _, _ = make_store(script)

        with self.assertRaises(StoreConflictError):
            store.update_global_state(cooldown=2)

    def test_unchanged_body_skips_write(self):
        store, q, _ = make_store([rows({"body": GlobalState().to_dict(), "version": 0})])
        store.transact_global_state(lambda s: None)
        self.assertFalse([c for c in q.calls if c[0] == "update"])

    def test_settings_read_keeps_float_thresholds(self):
        body = {"high_thresh": 250.75, "low_thresh": -300.5, "l5_loss_units": 61.5}
        store, _, _ = make_store([rows({"body": json.dumps(body), "version": 2})])

        s = store.get_settings()

        self.assertEqual((s.high_thresh, s.low_thresh, s.l5_loss_units), (250.75, -300.5, 61.5))

    def test_settings_merge_goes_through_cas(self):
        store, q, _ = make_store([rows({"body": {"k": 1.0}, "version": 0}), rows({"version": 1})])
        s = store.update_settings(k=2.0)
        self.assertEqual(s.k, 2.0)
        self.assertEqual(s.levels, (1, 3, 7, 15, 35, 75, 155, 340))


class TestFoldAndLedger(unittest.TestCase):

    def test_fold_calls_rpc(self):
        store, _, sb = make_store([rows({"global_margin_units": 12.5, "heavy_count": 1})])

        g = store.fold_table_margin(3, 7.5)

        sb.rpc.assert_called_once_with(
            db.FOLD_RPC, {"p_engine_id": "TEST", "p_table_id": 3, "p_margin_units": 7.5}
        )
        self.assertEqual(g.global_margin_units, 12.5)
        self.assertEqual(g.heavy_count, 1)

    def test_mark_seen_upserts_ignoring_duplicates(self):
        store, q, _ = make_store([rows()])
        store.mark_seen(2, 40)
        upsert = [c for c in q.calls if c[0] == "upsert"][0]
        self.assertTrue(upsert[2]["ignore_duplicates"])
        self.assertEqual(upsert[1][0]["hand_index"], 40)

    def test_is_seen(self):
        store, _, _ = make_store([rows({"hand_index": 40}), rows()])
        self.assertTrue(store.is_seen(2, 40))
        self.assertFalse(store.is_seen(2, 41))

    def test_list_table_ids_skips_bad_keys(self):
        store, _, _ = make_store([rows({"doc_key": "3"}, {"doc_key": "x"}, {"doc_key": "1"})])
        self.assertEqual(store.list_table_ids(), [1, 3])


class TestRetry(unittest.TestCase):

    def test_transient_errors_are_retried(self):
        q = FakeQuery([httpx.ConnectError("down"), rows({"ok": 1})])
        with mock.patch("db.time.sleep") as sleep:
            res = db._execute_with_retry(q)
        self.assertEqual(res.data, [{"ok": 1}])
        sleep.assert_called_once_with(0.2)

    def test_bubbles_after_retries(self):
        q = FakeQuery([httpx.ReadError("x")] * 3)
        with mock.patch("db.time.sleep"):
            with self.assertRaises(httpx.ReadError):
                db._execute_with_retry(q)


if __name__ == "__main__":
    unittest.main(verbosity=2)
