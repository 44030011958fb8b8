"""
Command-line entry point (``slot-indexer``).

  slot-indexer run                  ingest until END_SLOT, SIGINT/SIGTERM or a halt
  slot-indexer reset-checkpoint     move a stream's checkpoint (operator only)

Flags override the matching environment variables.
"""

import argparse
import signal
import sys
import threading
from pathlib import Path

from prometheus_client import start_http_server

from indexer_common.observability import init_observability, get_logger, shutdown_tracing

from indexer import __version__
from indexer.checkpoint import CheckpointStore
from indexer.config import IngestSettings
from indexer.database import init_db
from indexer.errors import ConfigError, IngestionHalted

logger = get_logger("slot-indexer")

EXIT_OK = 0
EXIT_HALTED = 1
EXIT_CONFIG = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="slot-indexer", description="Checkpointed Solana slot indexer")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Run the ingestion loop in the foreground")
    _add_stream_args(run)
    run.add_argument("--rpc-url", help="Solana JSON-RPC endpoint (RPC_URL)")
    run.add_argument("--start-slot", type=int, help="First slot of a fresh stream (START_SLOT)")
    run.add_argument("--end-slot", type=int, help="Inclusive last slot (END_SLOT)")
    run.add_argument("--tx-limit", type=int, help="Max transactions stored per slot (TX_LIMIT)")
    run.add_argument("--root-lag", type=int, help="Slots kept behind the finalized tip (ROOT_LAG)")
    run.add_argument(
        "--rate-limit",
        type=float,
        dest="rate_limit_per_second",
        help="RPC calls per second, 0 disables pacing (RPC_RATE_LIMIT_PER_SECOND)",
    )
    run.add_argument("--metrics-port", type=int, help="Prometheus port, 0 disables (METRICS_PORT)")

    reset = subparsers.add_parser("reset-checkpoint", help="Set or clear a stream's checkpoint")
    _add_stream_args(reset)
    reset.add_argument("--slot", type=int, help="New checkpoint; omit to restart from START_SLOT")

    return parser


def _add_stream_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--stream-key", help="Checkpoint key (STREAM_KEY)")
    parser.add_argument("--db", dest="database_path", help="SQLite file (DATABASE_PATH)")


def _settings_from(args: argparse.Namespace) -> IngestSettings:
    overrides = {
        key: getattr(args, key, None)
        for key in (
            "rpc_url",
            "stream_key",
            "start_slot",
            "end_slot",
            "tx_limit",
            "root_lag",
            "rate_limit_per_second",
            "metrics_port",
        )
    }
    if args.database_path:
        overrides["database_path"] = Path(args.database_path)
    return IngestSettings.from_env().with_overrides(**overrides)


def cmd_run(settings: IngestSettings) -> int:
    from indexer.ingestion import build_loop

    if settings.metrics_port:
        try:
            start_http_server(settings.metrics_port)
            logger.info(f"Prometheus metrics server started on port {settings.metrics_port}")
        except Exception as e:
            logger.warning(f"Failed to start metrics server: {e}")

    init_db(settings.database_path, reset=settings.db_reset_on_start)

    stop_event = threading.Event()

    def _request_stop(signum, _frame):
        logger.info("Received %s, finishing the current slot...", signal.Signals(signum).name)
        stop_event.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    loop = build_loop(settings, stop_event=stop_event, db_path=settings.database_path)
    try:
        loop.run()
    except IngestionHalted as halted:
        logger.error(f"Stream '{settings.stream_key}' halted at slot {halted.slot} ({halted.kind.value})")
        return EXIT_HALTED
    finally:
        loop.client.close()
    logger.info("Exited.")
    return EXIT_OK


def cmd_reset_checkpoint(settings: IngestSettings, slot) -> int:
    init_db(settings.database_path)
    store = CheckpointStore(settings.stream_key, settings.start_slot, settings.database_path)
    previous = store.stored_slot()
    store.reset(slot)
    print(f"stream '{settings.stream_key}': checkpoint {previous} -> {slot if slot is not None else 'cleared'}")
    return EXIT_OK


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    # Bootstrap logging + tracing + service-info in one call
    init_observability("slot-indexer", __version__)

    try:
        settings = _settings_from(args)
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        return EXIT_CONFIG

    try:
        if args.command == "run":
            return cmd_run(settings)
        return cmd_reset_checkpoint(settings, args.slot)
    finally:
        shutdown_tracing()


if __name__ == "__main__":
    sys.exit(main())
