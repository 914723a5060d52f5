"""Marginbot process entry-point.

Usage:
    python -m marginbot [--once] [--source NAME] [--log-level LEVEL] [--log-format FORMAT]

The orchestration logic lives in ``marginbot.orchestrator``.  This module
calls ``configure_logging()`` first so that every subsequent import already
has a working logger, then hands off to the orchestrator.

Default behaviour (no ``--once``) is continuous: one cycle at startup, then
one cycle per interval.  Pass ``--once`` to run a single cycle, print its
JSON snapshot and exit.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from pydantic import ValidationError

from marginbot.core import configure_logging
from marginbot.core.exceptions import ConfigError
from marginbot.core.settings import Settings


async def _run_single(settings: Settings, source: str) -> int:
    from marginbot.orchestrator.metrics import write_status_file  # noqa: PLC0415
    from marginbot.orchestrator.runner import open_orchestrator  # noqa: PLC0415

    async with open_orchestrator(settings) as orchestrator:
        result = await orchestrator.run_cycle(source)
        write_status_file(orchestrator.get_live_status(), settings.status_path)
        snapshot = orchestrator.get_status_snapshot()
    print(json.dumps(snapshot, indent=2, default=str))  # noqa: T201
    return 0 if result.ok else 2


def main() -> None:
    """CLI entry-point registered in ``pyproject.toml``."""
    parser = argparse.ArgumentParser(
        prog="marginbot",
        description="Batch consignment-margin consults with per-tenant hourly windows.",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single cycle and exit instead of looping continuously.",
    )
    parser.add_argument(
        "--source",
        default="manual",
        metavar="NAME",
        help="Trigger label recorded for a --once cycle (default: manual).",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        metavar="LEVEL",
        help="Override LOG_LEVEL env var (DEBUG|INFO|WARNING|ERROR).",
    )
    parser.add_argument(
        "--log-format",
        default=None,
        metavar="FORMAT",
        help="Override LOG_FORMAT env var (text|json).",
    )

    args = parser.parse_args()

    try:
        configure_logging(level=args.log_level, fmt=args.log_format)
    except ValueError as exc:
        print(f"marginbot: configuration error: {exc}", file=sys.stderr)  # noqa: T201
        sys.exit(1)

    logger = logging.getLogger(__name__)
    logger.info("Marginbot starting up")

    from marginbot.orchestrator.scheduler import run_continuous  # noqa: PLC0415

    try:
        try:
            settings = Settings()
        except ValidationError as exc:
            raise ConfigError(str(exc)) from exc

        if args.once:
            logger.info("Running single cycle (--once mode).")
            sys.exit(asyncio.run(_run_single(settings, args.source)))
        else:
            logger.info("Running in continuous mode (Ctrl+C to stop).")
            asyncio.run(run_continuous(settings))
    except ConfigError as exc:
        logger.critical("Configuration error: %s", exc)
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted — exiting.")
        sys.exit(0)
    except asyncio.CancelledError:
        logger.info("Shutdown complete — exiting.")
        sys.exit(0)


if __name__ == "__main__":
    main()
