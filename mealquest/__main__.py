from __future__ import annotations

import argparse
import logging

import uvicorn

from mealquest.config import get_settings


def main() -> int:
    parser = argparse.ArgumentParser(prog="mealquest", description="Run the Meal Quest API server.")
    parser.add_argument("--host", default="127.0.0.1", help="Server host (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8000, help="Server port (default: 8000)")
    parser.add_argument("--reload", action="store_true", help="Enable uvicorn auto-reload")
    args = parser.parse_args()

    settings = get_settings()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run("mealquest.main:app", host=args.host, port=args.port, reload=args.reload, log_level=settings.log_level.lower())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
