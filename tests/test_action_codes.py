#!/usr/bin/env python3
"""
Advice -> action code mapping

Run with: python3 tests/test_action_codes.py
"""

import os
import sys
import unittest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from action_codes import ACTION_DEFAULT, ACTION_RESET, ACTION_START, ACTION_STOP, action_code
from models import Advice


class TestActionCode(unittest.TestCase):

    def test_stop_reasons(self):
        for reason in ("Stop L5 default", "Stop L5 early", "Stop L5: hot/red"):
            self.assertEqual(action_code(Advice(table_id=1, reason=reason)), ACTION_STOP)

    def test_stop_win_flag(self):
        adv = Advice(table_id=1, reason="STOP-WIN", stop_at_l5=True)
        self.assertEqual(action_code(adv), ACTION_STOP)

    def test_disabled_table(self):
        adv = Advice(table_id=1, reason="Table disabled", prediction="Disabled", table_status="🔴 Disabled")
        self.assertEqual(action_code(adv), ACTION_STOP)

    def test_red_status(self):
        self.assertEqual(action_code(Advice(table_id=1, table_status="🔴 Paused")), ACTION_STOP)

    def test_reset(self):
        for reason in ("Martingale reset", "SafeWin", "reset"):
            self.assertEqual(action_code(Advice(table_id=1, reason=reason)), ACTION_RESET)

    def test_start(self):
        self.assertEqual(action_code(Advice(table_id=1, reason="Start shoe")), ACTION_START)

    def test_default(self):
        self.assertEqual(action_code(Advice(table_id=1)), ACTION_DEFAULT)
        self.assertEqual(action_code(Advice(table_id=1, reason="Heavy L6", authorized_heavy=True)), ACTION_DEFAULT)
        self.assertEqual(action_code(None), ACTION_DEFAULT)


if __name__ == "__main__":
    unittest.main(verbosity=2)
