#!/usr/bin/env python3
"""
Heavy lifecycle: admission throttle, slot decay, sync delay

Run with: python3 tests/test_heavy_manager.py
"""

import os
import sys
import unittest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from heavy_manager import HeavyLifecycleManager
from models import Settings
from store import MemoryStore


def make_manager(**overrides):
    store = MemoryStore(settings=Settings().merge(**overrides))
    sleeps = []
    mgr = HeavyLifecycleManager(store, sleep=sleeps.append, clock=lambda: 1000.0)
    return mgr, store, sleeps


class TestAdmitHeavy(unittest.TestCase):

    def test_fifth_grant_inside_window_is_rejected(self):
        """cap 4, window 60s: four grants pass, the fifth inside the window does not."""
        mgr, store, _ = make_manager(global_heavy_cap=4, global_heavy_cap_window=60)

        for now in (100.0, 101.0, 102.0, 103.0):
            self.assertTrue(mgr.admit_heavy(now=now))
        self.assertFalse(mgr.admit_heavy(now=110.0))
        self.assertEqual(len(store.get_heavy_state().recent_heavy_timestamps), 4)

    def test_old_grants_age_out(self):
        mgr, store, _ = make_manager(global_heavy_cap=4, global_heavy_cap_window=60)
        for now in (100.0, 101.0, 102.0, 103.0):
            mgr.admit_heavy(now=now)

        # cutoff 101: 100 and 101 are pruned
        self.assertTrue(mgr.admit_heavy(now=161.0))
        self.assertEqual(store.get_heavy_state().recent_heavy_timestamps, (102.0, 103.0, 161.0))

    def test_uses_clock_when_no_timestamp(self):
        mgr, store, _ = make_manager()
        self.assertTrue(mgr.admit_heavy())
        self.assertEqual(store.get_heavy_state().recent_heavy_timestamps, (1000.0,))

    def test_revoke_gives_slot_back(self):
        mgr, store, _ = make_manager(global_heavy_cap=1)
        self.assertTrue(mgr.admit_heavy(now=100.0))
        self.assertFalse(mgr.admit_heavy(now=101.0))

        mgr.revoke_admission(100.0)

        self.assertEqual(store.get_heavy_state().recent_heavy_timestamps, ())
        self.assertTrue(mgr.admit_heavy(now=102.0))

    def test_revoke_unknown_stamp_is_noop(self):
        mgr, store, _ = make_manager()
        mgr.admit_heavy(now=100.0)
        mgr.revoke_admission(55.0)
        self.assertEqual(store.get_heavy_state().recent_heavy_timestamps, (100.0,))


class TestDecay(unittest.TestCase):

    def test_entering_heavy_resets_counter(self):
        mgr, store, _ = make_manager()
        store.update_heavy_state(hands_since_last_heavy=3)
        mgr.decay(True)
        self.assertEqual(store.get_heavy_state().hands_since_last_heavy, 0)

    def test_slot_released_after_quiet_hands(self):
        mgr, store, _ = make_manager(heavy_decay_after_hands=2)
        store.update_global_state(heavy_count=2)

        mgr.decay(False)
        self.assertEqual(store.get_global_state().heavy_count, 2)
        self.assertEqual(store.get_heavy_state().hands_since_last_heavy, 1)

        mgr.decay(False)
        self.assertEqual(store.get_global_state().heavy_count, 1)
        self.assertEqual(store.get_heavy_state().hands_since_last_heavy, 0)

    def test_pending_cooldown_holds_the_slot(self):
        mgr, store, _ = make_manager(heavy_decay_after_hands=1)
        store.update_global_state(heavy_count=1, cooldown=2)

        mgr.decay(False)

        self.assertEqual(store.get_global_state().heavy_count, 1)
        self.assertEqual(store.get_heavy_state().hands_since_last_heavy, 1)

    def test_stale_cooldown_resets_counter(self):
        mgr, store, _ = make_manager()
        store.update_global_state(heavy_count=0, cooldown=3)
        store.update_heavy_state(hands_since_last_heavy=2)

        mgr.decay(False)

        self.assertEqual(store.get_heavy_state().hands_since_last_heavy, 0)
        self.assertEqual(store.get_global_state().cooldown, 3)

    def test_unset_threshold_falls_back_to_four(self):
        mgr, store, _ = make_manager(heavy_decay_after_hands=0)
        store.update_global_state(heavy_count=1)
        for _ in range(3):
            mgr.decay(False)
        self.assertEqual(store.get_global_state().heavy_count, 1)
        mgr.decay(False)
        self.assertEqual(store.get_global_state().heavy_count, 0)


class TestSyncDelay(unittest.TestCase):

    def test_waits_configured_milliseconds(self):
        mgr, _, sleeps = make_manager(sync_delay_ms=120)
        mgr.sync_delay()
        self.assertEqual(sleeps, [0.12])

    def test_zero_delay_does_not_sleep(self):
        mgr, _, sleeps = make_manager(sync_delay_ms=0)
        mgr.sync_delay()
        self.assertEqual(sleeps, [])


if __name__ == "__main__":
    unittest.main(verbosity=2)
