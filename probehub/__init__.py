"""probehub - Collect and query health-check reports from monitoring agents."""

import argparse
import logging
import signal
import sys
from datetime import timedelta
from threading import Event
from typing import NoReturn, Optional

__version__ = "0.1.0"

DEFAULT_CONFIG_PATH = "config.yaml"

logger = logging.getLogger(__name__)

# Set while `probehub run` is active; SIGINT/SIGTERM release it
_stop_requested: Optional[Event] = None


def _setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )


def _request_stop(signum: int, frame: object) -> None:
    logger.info("Received %s, stopping probehub", signal.Signals(signum).name)
    if _stop_requested is not None:
        _stop_requested.set()


def _fail(message: str) -> NoReturn:
    """Report a fatal CLI error and exit with status 1."""
    print(f"Error: {message}")
    sys.exit(1)


def _cmd_run(args: argparse.Namespace) -> None:
    """Serve ingest and dashboard requests until a shutdown signal arrives.

    The database must open before anything starts; an API bind failure is
    logged and the sweeper keeps running on its own.
    """
    global _stop_requested

    _setup_logging(args.verbose)
    logger.info("probehub %s starting", __version__)

    # Deferred so logging is configured before these modules log anything
    from .api import ApiError, ApiServer
    from .config import ConfigError, load_config
    from .database import DatabaseError, init_db
    from .sweeper import RetentionSweeper

    try:
        config = load_config(args.config)
        db_conn = init_db(config.database.path)
    except (ConfigError, DatabaseError) as e:
        logger.error("Startup failed: %s", e)
        sys.exit(1)
    logger.info("Store ready at %s (config %s)", config.database.path, args.config)

    _stop_requested = Event()
    for signum in (signal.SIGTERM, signal.SIGINT):
        signal.signal(signum, _request_stop)

    sweeper = RetentionSweeper(db_conn, config.database)
    api_server = ApiServer(config.api, db_conn, config.status) if config.api.enabled else None

    try:
        sweeper.start()
        if api_server is not None:
            try:
                api_server.start()
            except ApiError as e:
                logger.error("API server unavailable, reports cannot be ingested: %s", e)
                api_server = None

        _stop_requested.wait()
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        # Both users of the connection stop before it is closed
        if api_server is not None:
            api_server.stop()
        sweeper.stop()
        db_conn.close()
        logger.info("probehub stopped")


def _retention_for(args: argparse.Namespace, configured_days: int) -> Optional[timedelta]:
    """Window to keep for `clean`, or None to drop every history entry."""
    if args.all:
        return None
    days = configured_days if args.retention_days is None else args.retention_days
    if days < 0:
        _fail("retention-days must be a non-negative integer")
    return timedelta(days=days)


def _cmd_clean(args: argparse.Namespace) -> None:
    """Prune history once and print how many entries were removed."""
    from pathlib import Path

    from .config import ConfigError, load_config
    from .database import DatabaseError, cleanup_old_history, delete_all_history, init_db

    try:
        config = load_config(args.config)
    except ConfigError as e:
        _fail(str(e))

    # clean never creates a store that does not exist yet
    if not Path(config.database.path).exists():
        _fail(f"Database not found at {config.database.path}")

    retention = _retention_for(args, config.database.retention_days)

    try:
        conn = init_db(config.database.path)
    except DatabaseError as e:
        _fail(str(e))

    try:
        if retention is None:
            print(f"Deleted all {delete_all_history(conn)} history entries from database.")
        else:
            deleted = cleanup_old_history(conn, retention)
            print(f"Deleted {deleted} history entries older than {retention.days} days.")
    except DatabaseError as e:
        _fail(str(e))
    finally:
        conn.close()


def _build_parser() -> argparse.ArgumentParser:
    # -c is accepted by every subcommand
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "-c", "--config",
        default=DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {DEFAULT_CONFIG_PATH})",
    )

    parser = argparse.ArgumentParser(
        prog="probehub",
        description="Collect and query health-check reports from monitoring agents",
    )
    parser.add_argument("--version", action="version", version=f"probehub {__version__}")
    parser.set_defaults(func=_cmd_run, config=DEFAULT_CONFIG_PATH, verbose=False)

    commands = parser.add_subparsers(dest="command")

    run = commands.add_parser("run", parents=[common], help="Serve the ingest API and sweep old history (default)")
    run.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    run.set_defaults(func=_cmd_run)

    clean = commands.add_parser("clean", parents=[common], help="Remove old history entries and exit")
    scope = clean.add_mutually_exclusive_group()
    scope.add_argument(
        "--retention-days",
        type=int,
        help="Keep only this many days of history (overrides config)",
    )
    scope.add_argument("--all", action="store_true", help="Delete every history entry")
    clean.set_defaults(func=_cmd_clean)

    return parser


def main() -> None:
    """Entry point for the `probehub` command."""
    args = _build_parser().parse_args()
    args.func(args)
