#!/usr/bin/env python3
"""
Outcome inference + level mapping

Run with: python3 tests/test_outcome_classifier.py
"""

import os
import sys
import unittest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from outcome_classifier import infer, normalize_outcome, to_level_index


class TestInfer(unittest.TestCase):
    """Rule order: first match wins."""

    def test_no_previous_hand_is_tie(self):
        self.assertEqual(infer(0, 0.0, 1.0, False, 1, -1.0), "T")

    def test_flat_margin_same_level_is_tie(self):
        self.assertEqual(infer(2, 10.0, 7.0, True, 2, 10.4), "T")

    def test_win_one_stake_back_to_first_rung(self):
        self.assertEqual(infer(3, 0.0, 15.0, True, 0, 15.0), "B")

    def test_loss_one_stake_and_climb(self):
        self.assertEqual(infer(1, 5.0, 3.0, True, 2, 2.0), "P")

    def test_climb_without_matching_margin(self):
        self.assertEqual(infer(1, 5.0, 3.0, True, 3, 50.0), "P")

    def test_drop_without_matching_margin(self):
        self.assertEqual(infer(4, 5.0, 35.0, True, 2, 50.0), "B")

    def test_margin_moved_but_level_unchanged(self):
        self.assertEqual(infer(2, 0.0, 7.0, True, 2, 3.0), "T")

    def test_tolerance_is_configurable(self):
        # +1 on rung 0: a win under the default 0.6 band, flat under 1.5
        self.assertEqual(infer(0, 0.0, 1.0, True, 0, 1.0), "B")
        self.assertEqual(infer(0, 0.0, 1.0, True, 0, 1.0, tolerance=1.5), "T")


class TestLevelIndex(unittest.TestCase):

    def test_in_range(self):
        for ui in range(1, 9):
            self.assertEqual(to_level_index(ui), ui - 1)

    def test_clamped(self):
        self.assertEqual(to_level_index(0), 0)
        self.assertEqual(to_level_index(-3), 0)
        self.assertEqual(to_level_index(9), 7)
        self.assertEqual(to_level_index(40), 7)


class TestNormalizeOutcome(unittest.TestCase):

    def test_aliases(self):
        self.assertEqual(normalize_outcome("banker"), "B")
        self.assertEqual(normalize_outcome(" p "), "P")
        self.assertEqual(normalize_outcome("Tie"), "T")

    def test_unknown_or_missing(self):
        self.assertIsNone(normalize_outcome(None))
        self.assertIsNone(normalize_outcome(""))
        self.assertIsNone(normalize_outcome("x"))


if __name__ == "__main__":
    unittest.main(verbosity=2)
