#!/usr/bin/env python3
"""
MemoryStore contract: lazy defaults, partial merge, transactions, seen ledger

Run with: python3 tests/test_store.py
"""

import os
import random
import sys
import threading
import unittest
from dataclasses import replace

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from models import LadderConfigError, RowState, Settings
from store import MemoryStore, make_store


class TestLazyDefaults(unittest.TestCase):

    def test_first_read_creates_defaults(self):
        store = MemoryStore()
        g = store.get_global_state()
        self.assertEqual(g.global_margin_units, 0.0)
        self.assertEqual(g.heavy_count, 0)
        self.assertIsNotNone(g.updated_at)

        ts = store.get_table_state(7)
        self.assertEqual(ts.margin_units, 0.0)
        self.assertIsNone(ts.last_advice)
        self.assertEqual(store.list_table_ids(), [7])

        self.assertEqual(store.get_mission_state().target_units_total, 900)
        self.assertEqual(store.get_settings(), Settings())

    def test_seeded_settings(self):
        store = MemoryStore(settings=Settings(k=2.0))
        self.assertEqual(store.get_settings().k, 2.0)


class TestPartialMerge(unittest.TestCase):

    def test_update_touches_only_named_fields(self):
        store = MemoryStore()
        store.update_global_state(cooldown=3, portfolio_debt_units=61.0)
        store.update_global_state(heavy_count=2)

        g = store.get_global_state()
        self.assertEqual((g.cooldown, g.portfolio_debt_units, g.heavy_count), (3, 61.0, 2))

    def test_unknown_field_rejected(self):
        store = MemoryStore()
        with self.assertRaises(KeyError):
            store.update_global_state(nope=1)
        with self.assertRaises(LadderConfigError):
            store.update_settings(nope=1)

    def test_table_state_is_copied(self):
        store = MemoryStore()
        store.update_table_state(1, row_state=RowState(history=["P"]))

        ts = store.get_table_state(1)
        ts.row_state.history.append("B")

        self.assertEqual(store.get_table_state(1).row_state.history, ["P"])

    def test_replace_settings(self):
        store = MemoryStore()
        store.update_settings(hmax_mid=3)
        store.replace_settings(Settings(k=4.0))
        s = store.get_settings()
        self.assertEqual((s.k, s.hmax_mid), (4.0, 1))


class TestSettingsRoundTrip(unittest.TestCase):

    def test_float_fields_keep_fractions(self):
        s = Settings(l5_loss_units=61.5, high_thresh=250.75, low_thresh=-300.5, debt_trigger_ratio=0.65)
        back = Settings.from_dict(s.to_dict())
        self.assertEqual(back, s)
        self.assertEqual(back.l5_loss_units, 61.5)
        self.assertEqual(back.low_thresh, -300.5)

    def test_int_and_bool_fields_coerced_by_type(self):
        back = Settings.from_dict({"hmax_mid": "3", "global_heavy_cap": 2.0, "high_thresh": "400.25"})
        self.assertEqual(back.hmax_mid, 3)
        self.assertIsInstance(back.hmax_mid, int)
        self.assertEqual(back.global_heavy_cap, 2)
        self.assertEqual(back.high_thresh, 400.25)


class TestTransactions(unittest.TestCase):

    def test_mutator_returning_none_keeps_state(self):
        store = MemoryStore()
        store.update_global_state(cooldown=2)
        before = store.get_global_state()
        after = store.transact_global_state(lambda s: None)
        self.assertEqual(before, after)

    def test_concurrent_increments_are_not_lost(self):
        store = MemoryStore()

        def worker():
            for _ in range(200):
                store.transact_global_state(lambda s: replace(s, heavy_count=s.heavy_count + 1))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(store.get_global_state().heavy_count, 1600)

    def test_fold_conserves_sum_of_tables(self):
        """Global margin always equals the sum of the per-table totals."""
        store = MemoryStore()

        def worker(table_id):
            rnd = random.Random(table_id)
            for _ in range(200):
                store.fold_table_margin(table_id, rnd.uniform(-500, 500))

        threads = [threading.Thread(target=worker, args=(tid,)) for tid in range(1, 11)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        total = sum(store.get_table_state(tid).margin_units for tid in store.list_table_ids())
        self.assertAlmostEqual(store.get_global_state().global_margin_units, total, places=6)

    def test_fold_is_delta_against_previous_total(self):
        store = MemoryStore()
        store.fold_table_margin(1, 10.0)
        g = store.fold_table_margin(1, 4.0)
        self.assertEqual(g.global_margin_units, 4.0)


class TestSeenLedger(unittest.TestCase):

    def test_mark_is_idempotent(self):
        store = MemoryStore()
        self.assertFalse(store.is_seen(1, 5))
        store.mark_seen(1, 5)
        store.mark_seen(1, 5)
        self.assertTrue(store.is_seen(1, 5))
        self.assertFalse(store.is_seen(2, 5))


class TestMakeStore(unittest.TestCase):

    def test_memory_backend(self):
        self.assertIsInstance(make_store("memory"), MemoryStore)

    def test_unknown_backend(self):
        with self.assertRaises(ValueError):
            make_store("redis")


if __name__ == "__main__":
    unittest.main(verbosity=2)
