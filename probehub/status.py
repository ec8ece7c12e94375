"""Derived client status: online state, success rate and last error.

Everything here is computed at read time from the clients table and the
history entries; nothing is persisted.
"""

import sqlite3
from datetime import UTC, datetime, timedelta

from .config import StatusConfig
from .database import DatabaseError, _db_lock, decode_stored_report, from_db_time, to_db_time
from .models import ClientStatus, DashboardSummary, Report

SUCCESS_RATE_WINDOW = timedelta(hours=24)


def _as_utc(dt: datetime) -> datetime:
    # naive times are taken as UTC, matching to_db_time
    return dt.replace(tzinfo=UTC) if dt.tzinfo is None else dt


def is_online(last_seen: datetime, now: datetime, threshold_seconds: int) -> bool:
    """A client is online while its last report is strictly younger than the threshold."""
    return _as_utc(now) - _as_utc(last_seen) < timedelta(seconds=threshold_seconds)


def get_success_counts(
    conn: sqlite3.Connection,
    client_id: str,
    window: timedelta = SUCCESS_RATE_WINDOW,
    now: datetime | None = None,
) -> tuple[int, int]:
    """Count successful and total history entries within the trailing window.

    Returns:
        Tuple of (successes, total).

    Raises:
        DatabaseError: If the query fails.
    """
    since = (now if now is not None else datetime.now(UTC)) - window
    try:
        with _db_lock:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total, COALESCE(SUM(success), 0) AS successes
                FROM client_history
                WHERE client_id = ? AND timestamp > ?
                """,
                (client_id, to_db_time(since)),
            ).fetchone()
        return row["successes"], row["total"]
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to count history for {client_id}: {e}")


def calculate_success_rate(
    conn: sqlite3.Connection,
    client_id: str,
    window: timedelta = SUCCESS_RATE_WINDOW,
    now: datetime | None = None,
) -> float:
    """Success percentage (0.0-100.0) over the trailing window.

    Returns 0.0 when there is no history in the window; use
    get_success_counts() to tell that apart from a real 0%.
    """
    successes, total = get_success_counts(conn, client_id, window, now)
    if total == 0:
        return 0.0
    return successes / total * 100.0


def get_last_error(conn: sqlite3.Connection, client_id: str) -> tuple[str, datetime | None]:
    """Get the error type and ingest time of the client's most recent failure.

    Returns:
        ("", None) when the client has no failure on record.

    Raises:
        DatabaseError: If the query fails.
    """
    try:
        with _db_lock:
            row = conn.execute(
                """
                SELECT error_type, timestamp FROM client_history
                WHERE client_id = ? AND success = 0
                ORDER BY timestamp DESC, id DESC
                LIMIT 1
                """,
                (client_id,),
            ).fetchone()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get last error for {client_id}: {e}")

    if row is None:
        return "", None
    return row["error_type"], from_db_time(row["timestamp"])


def get_client_statuses(
    conn: sqlite3.Connection,
    config: StatusConfig | None = None,
    now: datetime | None = None,
) -> list[ClientStatus]:
    """Build the current status of every known client.

    Latest latency, status code, timing and network details come from the
    cached snapshot on the client row, not from history.

    Args:
        conn: Database connection.
        config: Online threshold and success-rate window, defaults if omitted.
        now: Reference time, defaults to now (UTC).

    Returns:
        One ClientStatus per client, most recently seen first.

    Raises:
        DatabaseError: If a query fails.
    """
    config = config or StatusConfig()
    now = _as_utc(now) if now is not None else datetime.now(UTC)
    window = timedelta(hours=config.success_rate_window_hours)

    try:
        with _db_lock:
            rows = conn.execute(
                "SELECT id, name, target_url, last_seen, last_data FROM clients ORDER BY last_seen DESC, id"
            ).fetchall()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get clients: {e}")

    statuses: list[ClientStatus] = []
    for row in rows:
        client_id = row["id"]
        # A broken snapshot still yields a status row, with zeroed details
        snapshot = decode_stored_report(row["last_data"], f"snapshot of {client_id}") or Report(client_id=client_id)
        last_seen = from_db_time(row["last_seen"])

        successes, total = get_success_counts(conn, client_id, window, now)
        last_error, last_error_time = get_last_error(conn, client_id)

        statuses.append(
            ClientStatus(
                id=client_id,
                name=row["name"],
                target_url=row["target_url"],
                last_seen=last_seen,
                is_online=is_online(last_seen, now, config.online_threshold_seconds),
                last_latency=snapshot.timing_metrics.total_response_ms,
                last_status_code=snapshot.response_details.status_code,
                success_rate=(successes / total * 100.0) if total > 0 else 0.0,
                checks_24h=total,
                last_error=last_error,
                last_error_time=last_error_time,
                timing_breakdown=snapshot.timing_metrics,
                network_info=snapshot.network_info,
            )
        )

    return statuses


def build_dashboard_summary(statuses: list[ClientStatus]) -> DashboardSummary:
    """Summarize client statuses for the dashboard header.

    Clients are ordered online first, then by name. The average latency only
    counts clients with a positive last latency.
    """
    ordered = sorted(statuses, key=lambda s: (not s.is_online, s.name))
    online = sum(1 for s in ordered if s.is_online)
    latencies = [s.last_latency for s in ordered if s.last_latency > 0]

    return DashboardSummary(
        online_count=online,
        offline_count=len(ordered) - online,
        total_count=len(ordered),
        average_latency=(sum(latencies) / len(latencies)) if latencies else 0.0,
        clients=ordered,
    )
