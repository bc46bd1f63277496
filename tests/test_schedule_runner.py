from __future__ import annotations

import unittest
from unittest.mock import patch

from mealquest.jobs.schedule_runner import main


class ScheduleRunnerTests(unittest.TestCase):
    @patch("mealquest.jobs.schedule_runner.run_streak_sweep")
    @patch("mealquest.jobs.schedule_runner.get_schedule_context")
    def test_midnight_window_triggers_sweep(self, get_schedule_context, run_streak_sweep) -> None:
        get_schedule_context.return_value = {
            "local_date": "2026-02-21",
            "local_hour": 0,
            "local_minute": 5,
            "timezone": "Pacific/Auckland",
        }
        run_streak_sweep.return_value = {"today": "2026-02-21", "resets": 2}

        main()

        run_streak_sweep.assert_called_once_with("2026-02-21")

    @patch("mealquest.jobs.schedule_runner.run_streak_sweep")
    @patch("mealquest.jobs.schedule_runner.get_schedule_context")
    def test_outside_window_does_nothing(self, get_schedule_context, run_streak_sweep) -> None:
        get_schedule_context.return_value = {
            "local_date": "2026-02-21",
            "local_hour": 8,
            "local_minute": 5,
            "timezone": "UTC",
        }

        main()

        run_streak_sweep.assert_not_called()


if __name__ == "__main__":
    unittest.main()
