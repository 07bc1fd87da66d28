#!/usr/bin/env python3
"""
CLI for the file integrity monitor.

Usage:
    python -m src.cli init -c config.toml
    python -m src.cli watch -c config.toml -j events.jsonl
    python -m src.cli scan -c config.toml --jsonl drift.jsonl
"""

import argparse
import logging
import signal
import sys
import time
from pathlib import Path
from typing import List, Optional

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv

from src.integrity import (
    BaselineScanner,
    BaselineStore,
    ConfigError,
    DivergenceKind,
    Hasher,
    IntegrityConfig,
    IntegrityMetrics,
    IntegrityMonitor,
    JsonlAuditSink,
    StoreError,
)


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("cli")

_SCAN_LABELS = {
    DivergenceKind.ADDED: "ADDED",
    DivergenceKind.CHANGED: "CHANGED",
    DivergenceKind.MISSING: "MISSING",
    DivergenceKind.UNREADABLE: "UNREADABLE",
}


class GracefulShutdown:
    """Handle graceful shutdown on SIGINT/SIGTERM."""

    def __init__(self):
        self.should_exit = False
        signal.signal(signal.SIGINT, self._handler)
        signal.signal(signal.SIGTERM, self._handler)

    def _handler(self, signum, frame):
        logger.info("Received shutdown signal, stopping...")
        self.should_exit = True


def _load_env() -> None:
    """Load .env from the project root, falling back to the working directory."""
    env_file = Path(__file__).parent.parent / ".env"
    if env_file.exists():
        load_dotenv(env_file)
    else:
        load_dotenv()


def cmd_init(args) -> int:
    """Build the baseline for the configured paths."""
    config = IntegrityConfig.load(Path(args.config))
    config.baseline_db.parent.mkdir(parents=True, exist_ok=True)

    with BaselineStore(config.baseline_db) as store:
        scanner = BaselineScanner(config, store, Hasher(config.hash_alg))
        count = scanner.build_baseline()

    print(f"Baseline built at {config.baseline_db} ({count} files)")
    return 0


def cmd_watch(args) -> int:
    """Watch the filesystem, update the baseline, emit audit lines and metrics."""
    config = IntegrityConfig.load(Path(args.config))
    if args.jsonl:
        config.audit_log = Path(args.jsonl).resolve()
    if args.metrics_bind:
        config.metrics_bind = args.metrics_bind
        config.metrics_address()

    metrics = IntegrityMetrics()
    shutdown = GracefulShutdown()

    with JsonlAuditSink(config.audit_log) as sink, BaselineStore(config.baseline_db) as store:
        with IntegrityMonitor(config, store=store, audit_sink=sink, metrics=metrics) as monitor:
            if not args.no_metrics:
                metrics.serve(config.metrics_address())

            monitor.start_async()

            logger.info(f"Monitoring {len(monitor.get_roots())} root(s)")
            for root in monitor.get_roots():
                logger.info(f"  - {root}")
            logger.info(f"Baseline: {config.baseline_db} ({store.count()} files)")
            logger.info(f"Audit log: {config.audit_log}")
            logger.info("Press Ctrl+C to stop")

            try:
                while not shutdown.should_exit and monitor.fatal_error is None:
                    time.sleep(0.5)
            finally:
                monitor.stop()
                metrics.shutdown()

            if monitor.fatal_error is not None:
                logger.error(f"Monitor stopped after a baseline store failure: {monitor.fatal_error}")
                return 1

    logger.info("Monitor stopped")
    return 0


def cmd_scan(args) -> int:
    """Compare current disk state with the baseline."""
    config = IntegrityConfig.load(Path(args.config))
    if not config.baseline_db.exists():
        logger.error(f"Baseline not found: {config.baseline_db} (run 'init' first)")
        return 1

    with BaselineStore(config.baseline_db) as store:
        scanner = BaselineScanner(config, store, Hasher(config.hash_alg))
        report = scanner.scan()

    if args.jsonl:
        written = report.write_jsonl(Path(args.jsonl))
        logger.info(f"Wrote {written} divergence(s) to {args.jsonl}")
    else:
        for divergence in report:
            print(f"{_SCAN_LABELS[divergence.kind]}: {divergence.path}")

    print(report.summary())
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="sentra-fim",
        description="File integrity monitor with Prometheus metrics and JSONL audit",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Build the baseline
  python -m src.cli init -c config.toml

  # Watch and append audit events
  python -m src.cli watch -c config.toml -j events.jsonl

  # Offline drift report
  python -m src.cli scan -c config.toml --jsonl drift.jsonl
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # Init command
    init_parser = subparsers.add_parser("init", help="Build baseline for configured paths")
    init_parser.add_argument("-c", "--config", default="config.toml", help="Config file (default: config.toml)")
    init_parser.set_defaults(func=cmd_init)

    # Watch command
    watch_parser = subparsers.add_parser("watch", help="Watch filesystem, update baseline, emit JSONL and metrics")
    watch_parser.add_argument("-c", "--config", default="config.toml", help="Config file (default: config.toml)")
    watch_parser.add_argument("-j", "--jsonl", default=None, help="JSONL audit file, appended (default: audit_log from config)")
    watch_parser.add_argument("--metrics-bind", default=None, help="host:port for /metrics (default: metrics_bind from config)")
    watch_parser.add_argument("--no-metrics", action="store_true", help="Do not start the metrics endpoint")
    watch_parser.set_defaults(func=cmd_watch)

    # Scan command
    scan_parser = subparsers.add_parser("scan", help="Offline compare current state vs baseline")
    scan_parser.add_argument("-c", "--config", default="config.toml", help="Config file (default: config.toml)")
    scan_parser.add_argument("--jsonl", default=None, help="Write divergences as JSONL instead of printing them")
    scan_parser.set_defaults(func=cmd_scan)

    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    _load_env()

    try:
        return args.func(args)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 1
    except StoreError as e:
        logger.error(f"Baseline store error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
