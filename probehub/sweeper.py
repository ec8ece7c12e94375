"""Retention sweeper that bounds the size of the history table.

Runs on a background thread, deleting history entries older than the
configured retention window once per sweep interval.
"""

import logging
import sqlite3
import threading
from datetime import timedelta

from .config import DatabaseConfig
from .database import DatabaseError, cleanup_old_history

logger = logging.getLogger(__name__)


class RetentionSweeper:
    """Periodically prunes old history entries."""

    def __init__(self, conn: sqlite3.Connection, config: DatabaseConfig) -> None:
        """Initialize the sweeper.

        Args:
            conn: Database connection shared with the rest of the process.
            config: Database configuration with retention window and sweep interval.
        """
        self._conn = conn
        self.config = config
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def retention(self) -> timedelta:
        return timedelta(days=self.config.retention_days)

    def start(self) -> None:
        """Start the sweeper thread."""
        if self._thread and self._thread.is_alive():
            logger.warning("Retention sweeper already running")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="retention-sweeper", daemon=True)
        self._thread.start()
        logger.info(
            "Retention sweeper started (interval: %ds, retention: %d days)",
            self.config.sweep_interval_seconds,
            self.config.retention_days,
        )

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the sweeper thread gracefully."""
        if not self._thread or not self._thread.is_alive():
            return

        logger.info("Stopping retention sweeper...")
        self._stop_event.set()
        self._thread.join(timeout=timeout)

        if self._thread.is_alive():
            logger.warning("Retention sweeper thread did not stop gracefully")
        else:
            logger.info("Retention sweeper stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def sweep_once(self) -> int:
        """Run a single sweep.

        Failures are logged and swallowed so the loop keeps its cadence.

        Returns:
            Number of deleted entries, 0 if the sweep failed.
        """
        try:
            deleted = cleanup_old_history(self._conn, self.retention)
        except (DatabaseError, sqlite3.ProgrammingError) as e:
            # ProgrammingError occurs if the connection was closed during shutdown
            logger.error("Retention sweep failed: %s", e)
            return 0

        if deleted > 0:
            logger.info("Retention sweep deleted %d history entries", deleted)
        else:
            logger.debug("Retention sweep found nothing to delete")
        return deleted

    def _run(self) -> None:
        """Main sweeper loop - runs in background thread."""
        # wait() returns True once stop() is called
        while not self._stop_event.wait(self.config.sweep_interval_seconds):
            self.sweep_once()
