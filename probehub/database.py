"""SQLite persistence for probe reports: schema, ingest and history queries."""

import logging
import sqlite3
import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path

from .models import Client, HistoryFilterOptions, Report, ReportDecodeError, SortField, StatusFilter

logger = logging.getLogger(__name__)


class DatabaseError(Exception):
    """Raised when a database operation fails."""

    pass


class QueryCancelledError(DatabaseError):
    """Raised when a read is cancelled by its caller before it completes."""

    pass


# Global lock for the shared connection.
# Every thread uses the same connection, so an open ingest transaction is
# visible to any statement run on it. Reads take the lock as well so they
# only ever see committed reports.
_db_lock = threading.Lock()

# Allow-list of sortable columns. Request tokens are resolved to a SortField
# first, so only these literals are ever placed in ORDER BY.
_SORT_COLUMNS: dict[SortField, str] = {
    SortField.TIMESTAMP: "timestamp",
    SortField.LATENCY: "latency",
    SortField.STATUS_CODE: "status_code",
    SortField.ERROR_TYPE: "error_type",
}


class _DecodeFailureCounter:
    """Thread-safe count of stored payloads that could not be decoded."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._count = 0

    def increment(self) -> None:
        with self._lock:
            self._count += 1

    @property
    def value(self) -> int:
        with self._lock:
            return self._count

    def reset(self) -> None:
        with self._lock:
            self._count = 0


_decode_failures = _DecodeFailureCounter()


def get_decode_failure_count() -> int:
    """Number of stored rows skipped because their payload failed to decode."""
    return _decode_failures.value


def reset_decode_failure_count() -> None:
    _decode_failures.reset()


def to_db_time(dt: datetime) -> str:
    """Format a timestamp for storage.

    Stored times are UTC with fixed microsecond precision, so comparing the
    text in SQL matches chronological order. Naive datetimes are taken as UTC.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat(timespec="microseconds")


def from_db_time(value: str) -> datetime:
    return datetime.fromisoformat(value)


def decode_stored_report(data: str | None, context: str) -> Report | None:
    """Decode a stored payload, or count and log the failure and return None."""
    try:
        return Report.from_json(data)
    except ReportDecodeError as e:
        _decode_failures.increment()
        logger.warning("Skipping undecodable report for %s: %s", context, e)
        return None


def ensure_schema(conn: sqlite3.Connection) -> None:
    """Create the clients and client_history tables and their index.

    Safe to call on every start: existing objects are left untouched.

    Raises:
        DatabaseError: If a schema statement fails.
    """
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS clients (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                target_url TEXT NOT NULL,
                last_seen TEXT NOT NULL,
                last_data TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS client_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                client_id TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                success INTEGER NOT NULL,
                latency REAL NOT NULL,
                status_code INTEGER NOT NULL,
                error_type TEXT NOT NULL DEFAULT '',
                data TEXT NOT NULL,
                FOREIGN KEY(client_id) REFERENCES clients(id)
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_client_history_client_time
            ON client_history(client_id, timestamp DESC)
        """)
        conn.commit()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to create schema: {e}")


def init_db(db_path: str) -> sqlite3.Connection:
    """Open the database and make sure the schema exists.

    Args:
        db_path: Path to the SQLite database file.

    Returns:
        Database connection with WAL mode and foreign keys enabled.

    Raises:
        DatabaseError: If database initialization fails.
    """
    try:
        parent_dir = Path(db_path).parent
        if not parent_dir.exists():
            parent_dir.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row

        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to initialize database: {e}")
    except OSError as e:
        raise DatabaseError(f"Failed to create database directory: {e}")

    try:
        ensure_schema(conn)
    except DatabaseError:
        conn.close()
        raise
    return conn


def submit_report(conn: sqlite3.Connection, report: Report, received_at: datetime | None = None) -> None:
    """Persist a report: upsert its client row and append a history entry.

    Both writes share one ingest timestamp and one transaction, so either
    both land or neither does. The call returns only after the commit.

    Args:
        conn: Database connection.
        report: Decoded report from an agent.
        received_at: Ingest time, defaults to now (UTC).

    Raises:
        ReportValidationError: If the report fails validation. Nothing is written.
        DatabaseError: If either write fails. Both are rolled back.
    """
    report.validate()

    received = to_db_time(received_at if received_at is not None else datetime.now(UTC))
    payload = report.to_json()
    errors = report.error_details
    error_type = errors.error_type if errors.has_error else ""

    try:
        with _db_lock, conn:
            conn.execute(
                """
                INSERT INTO clients (id, name, target_url, last_seen, last_data)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    target_url = excluded.target_url,
                    last_seen = excluded.last_seen,
                    last_data = excluded.last_data
                """,
                (report.client_id, report.client_id, report.target_url, received, payload),
            )
            conn.execute(
                """
                INSERT INTO client_history
                (client_id, timestamp, success, latency, status_code, error_type, data)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    report.client_id,
                    received,
                    0 if errors.has_error else 1,
                    report.timing_metrics.total_response_ms,
                    report.response_details.status_code,
                    error_type,
                    payload,
                ),
            )
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to store report for {report.client_id}: {e}")


def list_clients(conn: sqlite3.Connection) -> list[Client]:
    """Get all known clients ordered by name.

    Raises:
        DatabaseError: If the query fails.
    """
    try:
        with _db_lock:
            rows = conn.execute("SELECT id, name, target_url FROM clients ORDER BY name, id").fetchall()
        return [Client(id=row["id"], name=row["name"], target_url=row["target_url"]) for row in rows]
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to list clients: {e}")


def _check_cancelled(cancel: threading.Event | None, context: str) -> None:
    if cancel is not None and cancel.is_set():
        raise QueryCancelledError(f"Query cancelled: {context}")


def _fetch_reports(
    conn: sqlite3.Connection,
    query: str,
    params: list,
    context: str,
    cancel: threading.Event | None,
) -> list[Report]:
    """Run a history query and decode each row's payload.

    Undecodable rows are skipped. The cancel event is checked before the
    query and between rows.
    """
    _check_cancelled(cancel, context)
    try:
        with _db_lock:
            cursor = conn.execute(query, params)
            reports: list[Report] = []
            for row in cursor:
                _check_cancelled(cancel, context)
                report = decode_stored_report(row["data"], f"{context} (row {row['id']})")
                if report is not None:
                    reports.append(report)
        return reports
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to query {context}: {e}")


def get_history(
    conn: sqlite3.Connection,
    client_id: str,
    duration: timedelta,
    now: datetime | None = None,
    cancel: threading.Event | None = None,
) -> list[Report]:
    """Get every report for a client within the trailing duration.

    Args:
        conn: Database connection.
        client_id: Agent identifier.
        duration: Window length ending now.
        now: Reference time, defaults to now (UTC).
        cancel: Optional event; when set the query is abandoned.

    Returns:
        Reports ordered by ingest time ascending.

    Raises:
        QueryCancelledError: If cancel was set.
        DatabaseError: If the query fails.
    """
    since = (now if now is not None else datetime.now(UTC)) - duration
    return _fetch_reports(
        conn,
        """
        SELECT id, data FROM client_history
        WHERE client_id = ? AND timestamp > ?
        ORDER BY timestamp ASC, id ASC
        """,
        [client_id, to_db_time(since)],
        f"history of {client_id}",
        cancel,
    )


def get_filtered_history(
    conn: sqlite3.Connection,
    options: HistoryFilterOptions,
    now: datetime | None = None,
    cancel: threading.Event | None = None,
) -> list[Report]:
    """Get a client's history narrowed by status and latency, sorted and limited.

    The sort column comes from the SortField allow-list; every value from
    the options is passed as a bound parameter.

    Raises:
        QueryCancelledError: If cancel was set.
        DatabaseError: If the query fails.
    """
    since = (now if now is not None else datetime.now(UTC)) - options.duration
    clauses = ["client_id = ?", "timestamp > ?"]
    params: list = [options.client_id, to_db_time(since)]

    if options.status_filter is StatusFilter.SUCCESS:
        clauses.append("success = 1")
    elif options.status_filter is StatusFilter.ERROR:
        clauses.append("success = 0")

    if options.min_latency > 0:
        clauses.append("latency >= ?")
        params.append(options.min_latency)
    if options.max_latency > 0:
        clauses.append("latency <= ?")
        params.append(options.max_latency)

    column = _SORT_COLUMNS[options.sort_by]
    direction = "DESC" if options.descending else "ASC"

    query = (
        f"SELECT id, data FROM client_history WHERE {' AND '.join(clauses)} "
        f"ORDER BY {column} {direction}, id {direction}"
    )
    if options.limit > 0:
        query += " LIMIT ?"
        params.append(options.limit)

    return _fetch_reports(conn, query, params, f"filtered history of {options.client_id}", cancel)


def get_anomalies(
    conn: sqlite3.Connection,
    client_id: str,
    threshold_ms: float,
    duration: timedelta,
    limit: int = 0,
    now: datetime | None = None,
    cancel: threading.Event | None = None,
) -> list[Report]:
    """Get failed or slow reports for a client, newest first.

    An entry is an anomaly when it failed or its latency is strictly above
    threshold_ms. A limit of 0 returns every match.

    Raises:
        QueryCancelledError: If cancel was set.
        DatabaseError: If the query fails.
    """
    since = (now if now is not None else datetime.now(UTC)) - duration
    query = """
        SELECT id, data FROM client_history
        WHERE client_id = ? AND (success = 0 OR latency > ?) AND timestamp > ?
        ORDER BY timestamp DESC, id DESC
    """
    params: list = [client_id, threshold_ms, to_db_time(since)]
    if limit > 0:
        query += " LIMIT ?"
        params.append(limit)

    return _fetch_reports(conn, query, params, f"anomalies of {client_id}", cancel)


def cleanup_old_history(conn: sqlite3.Connection, retention: timedelta, now: datetime | None = None) -> int:
    """Delete history entries older than the retention window.

    Client rows are never touched. Thread-safe: acquires global lock.

    Args:
        conn: Database connection.
        retention: Entries older than this are deleted.
        now: Reference time, defaults to now (UTC).

    Returns:
        Number of deleted records.

    Raises:
        DatabaseError: If the cleanup fails.
    """
    cutoff = to_db_time((now if now is not None else datetime.now(UTC)) - retention)
    try:
        with _db_lock, conn:
            cursor = conn.execute("DELETE FROM client_history WHERE timestamp < ?", (cutoff,))
        return cursor.rowcount
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to cleanup old history: {e}")


def delete_all_history(conn: sqlite3.Connection) -> int:
    """Delete every history entry, keeping client rows.

    Returns:
        Number of deleted records.

    Raises:
        DatabaseError: If the deletion fails.
    """
    try:
        with _db_lock, conn:
            cursor = conn.execute("DELETE FROM client_history")
        return cursor.rowcount
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to delete history: {e}")
