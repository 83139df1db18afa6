from __future__ import annotations

import datetime as dt
import sys
import unittest
from pathlib import Path


class TestTiming(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        repo_root = Path(__file__).resolve().parents[1]
        cls.paths = [repo_root / "src"]
        for path in cls.paths:
            sys.path.insert(0, str(path))

        from lab_grader import timing  # noqa: E402

        cls.timing = timing

    @classmethod
    def tearDownClass(cls) -> None:
        for path in cls.paths:
            try:
                sys.path.remove(str(path))
            except ValueError:
                pass

    def test_fixed_timing(self) -> None:
        t = self.timing.timing_for(None)
        self.assertEqual(t.points(), 20)
        self.assertEqual(t.max_points, 20)
        self.assertIsNone(t.is_late())
        self.assertIsNone(t.describe())

    def test_deadline_on_time_and_late(self) -> None:
        riyadh = dt.timezone(dt.timedelta(hours=3))
        deadline = dt.datetime(2025, 11, 12, 23, 59, 59, tzinfo=riyadh)
        before = self.timing.DeadlineTiming(deadline, clock=lambda: dt.datetime(2025, 11, 12, 20, 0, tzinfo=dt.timezone.utc))
        after = self.timing.DeadlineTiming(deadline, clock=lambda: dt.datetime(2025, 11, 12, 21, 0, tzinfo=dt.timezone.utc))
        self.assertFalse(before.is_late())
        self.assertEqual(before.points(), 20)
        self.assertTrue(after.is_late())
        self.assertEqual(after.points(), 10)
        self.assertEqual(after.max_points, 20)
        self.assertEqual(after.describe(), "2025-11-12T23:59:59+03:00")

    def test_naive_deadline_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self.timing.DeadlineTiming(dt.datetime(2025, 1, 1))


if __name__ == "__main__":
    unittest.main()
