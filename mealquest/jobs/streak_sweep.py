from __future__ import annotations

import logging

from mealquest.config import get_settings
from mealquest.db import current_time, get_conn, init_db, local_day, transaction
from mealquest.meals import sweep_streaks

logger = logging.getLogger(__name__)


def run_streak_sweep(today: str | None = None) -> dict:
    conn = get_conn()
    try:
        today = today or local_day(current_time(conn), get_settings().timezone)
        with transaction(conn):
            resets = sweep_streaks(conn, today)
    finally:
        conn.close()
    return {"today": today, "resets": resets}


def main() -> None:
    logging.basicConfig(level=get_settings().log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    init_db()
    result = run_streak_sweep()
    logger.info("Streak sweep for %s reset %s streak(s)", result["today"], result["resets"])


if __name__ == "__main__":
    main()
