"""Entrypoint.

Usage:
  python -m strategybot.app.main engine              # run one bot headless
  python -m strategybot.app.main serve               # run the bot + HTTP control API
  python -m strategybot.app.main engine --bot-id X   # load the bot from the persistence API
"""

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path

from strategybot.app.engine import run_engine


def main() -> None:
    parser = argparse.ArgumentParser("strategybot")
    parser.add_argument("command", choices=["engine", "serve"], help="What to run")
    parser.add_argument("--config", type=Path, default=None, help="Process settings YAML")
    parser.add_argument("--bot-id", default=None, help="Load this bot from the persistence API")
    parser.add_argument(
        "--override-schedule", action="store_true", help="Trade even outside the bot's schedule"
    )
    args = parser.parse_args()

    asyncio.run(
        run_engine(
            args.config,
            bot_id=args.bot_id,
            serve_api=args.command == "serve",
            override_schedule=args.override_schedule,
        )
    )


if __name__ == "__main__":
    main()
