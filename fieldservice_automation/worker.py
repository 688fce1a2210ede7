"""
Automation worker: runs the dispatcher until SIGINT/SIGTERM.

Usage:
    python -m fieldservice_automation.worker [--config PATH] [--once]

Exits 1 only when startup fails (settings or database unreachable). Once
running, per-definition failures are logged and the loop continues.
"""

from __future__ import annotations

import argparse
import signal
import sys
from pathlib import Path

from sqlalchemy import text

from fieldservice_kernel.logging_config import configure_logging, get_logger

logger = get_logger("automation.worker")


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Poll automation definitions and emit reminders and follow-ups.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Settings file layered over the packaged defaults "
        "(default: $FIELDSERVICE_CONFIG).",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single dispatcher tick and exit.",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)

    # Lazy imports so argument errors surface first
    from fieldservice_automation.services.dispatcher import AutomationDispatcher
    from fieldservice_config import get_active_settings
    from fieldservice_kernel.db.engine import (
        create_engine_from_settings,
        create_session_factory,
    )

    try:
        settings = get_active_settings(args.config)
        configure_logging(level=settings.log_level)
        engine = create_engine_from_settings(settings.database)
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as exc:
        configure_logging()
        logger.exception(
            "worker_boot_failed",
            extra={"error_type": type(exc).__name__, "error": str(exc)},
        )
        return 1

    dispatcher = AutomationDispatcher(
        create_session_factory(engine),
        settings=settings.dispatcher,
    )

    if args.once:
        dispatcher.tick()
        engine.dispose()
        return 0

    def _shutdown(signum, frame):
        logger.info("worker_signal_received", extra={"signal": signum})
        dispatcher.stop(timeout=0)

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    try:
        dispatcher.run_forever()
    finally:
        engine.dispose()
    return 0


if __name__ == "__main__":
    sys.exit(main())
