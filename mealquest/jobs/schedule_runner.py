from __future__ import annotations

import logging

from mealquest.config import get_settings
from mealquest.db import get_schedule_context, init_db
from mealquest.jobs.streak_sweep import run_streak_sweep

logger = logging.getLogger(__name__)


def main() -> None:
    ctx = get_schedule_context()
    today = ctx["local_date"]

    # Run this command every 5-10 minutes via cron/systemd timer.
    if ctx["local_hour"] == 0 and ctx["local_minute"] < 15:
        result = run_streak_sweep(today)
        logger.info("Midnight sweep (%s): %s reset(s)", ctx["timezone"], result["resets"])


if __name__ == "__main__":
    logging.basicConfig(level=get_settings().log_level)
    init_db()
    main()
