#!/usr/bin/env python3
"""Standalone liveness monitor.

Sweeps lock records every ``MONITOR_INTERVAL`` seconds until SIGTERM/SIGINT.
Safe to run next to the Celery beat sweep: overlapping sweeps skip.

    python scripts/migration_monitor.py [--once]
"""
import argparse
import json
import logging
import signal
import sys
import threading
from dataclasses import asdict
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from dashboard.core.config import settings  # noqa: E402
from dashboard.core.logging import configure_logging, ctx  # noqa: E402
from dashboard.tasks.monitor import build_monitor  # noqa: E402

log = logging.getLogger("migration_monitor")


def main() -> int:
    parser = argparse.ArgumentParser(description="Reconcile migration locks with live processes")
    parser.add_argument("--once", action="store_true", help="run a single sweep and print the report")
    args = parser.parse_args()

    configure_logging()
    monitor = build_monitor()
    if args.once:
        print(json.dumps(asdict(monitor.sweep()), indent=2))
        return 0

    stop = threading.Event()

    def handle(signum, frame):
        log.info("Received signal %s, stopping", signum, extra=ctx(stage="monitor"))
        stop.set()

    signal.signal(signal.SIGTERM, handle)
    signal.signal(signal.SIGINT, handle)
    log.info("Lock dir %s", settings.cache_dir, extra=ctx(stage="monitor"))
    monitor.run_forever(stop)
    return 0


if __name__ == "__main__":
    sys.exit(main())
