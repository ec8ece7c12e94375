"""HTTP API server for probe ingest and dashboard data."""

import json
import logging
import re
import sqlite3
import threading
from datetime import timedelta
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, urlparse

from .config import ApiConfig, StatusConfig
from .database import (
    DatabaseError,
    QueryCancelledError,
    get_anomalies,
    get_decode_failure_count,
    get_filtered_history,
    list_clients,
    submit_report,
)
from .models import (
    ClientStatus,
    DashboardSummary,
    HistoryFilterOptions,
    Report,
    ReportDecodeError,
    ReportValidationError,
)
from .status import build_dashboard_summary, get_client_statuses

logger = logging.getLogger(__name__)

# Reports are small JSON documents; anything larger is rejected unread.
MAX_BODY_BYTES = 1024 * 1024

# Defaults for /api/dashboard_data when query parameters are missing.
DEFAULT_DURATION = timedelta(hours=1)
DEFAULT_HISTORY_LIMIT = 50
# Longest window a query may ask for; anything longer falls back to the default.
MAX_DURATION = timedelta(days=3650)
ANOMALY_LIMIT = 100

_DURATION_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days"}
_DURATION_PART = re.compile(r"(\d+)([smhd])")


class ApiError(Exception):
    """Raised when an API operation fails."""
    pass


def parse_duration(value: Optional[str], default: timedelta = DEFAULT_DURATION) -> timedelta:
    """Parse durations like "30m", "6h", "7d" or "1h30m".

    Returns the default for empty, malformed, zero-length or overlong values.
    """
    if not value or not re.fullmatch(r"(?:\d+[smhd])+", value):
        return default

    kwargs: Dict[str, int] = {}
    try:
        for amount, unit in _DURATION_PART.findall(value):
            key = _DURATION_UNITS[unit]
            kwargs[key] = kwargs.get(key, 0) + int(amount)
        duration = timedelta(**kwargs)
    except (OverflowError, ValueError):
        # int() refuses very long digit strings, timedelta very large values
        return default
    return duration if timedelta(0) < duration <= MAX_DURATION else default


def _parse_non_negative_float(value: Optional[str]) -> float:
    if not value:
        return 0.0
    try:
        parsed = float(value)
    except ValueError:
        return 0.0
    return parsed if parsed >= 0 else 0.0


def _parse_positive_int(value: Optional[str], default: int) -> int:
    if not value:
        return default
    try:
        parsed = int(value)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _client_status_to_dict(status: ClientStatus) -> Dict[str, Any]:
    """Convert a ClientStatus object to a JSON-serializable dictionary."""
    return {
        "id": status.id,
        "name": status.name,
        "target_url": status.target_url,
        "last_seen": status.last_seen.isoformat(),
        "is_online": status.is_online,
        "last_latency": status.last_latency,
        "last_status_code": status.last_status_code,
        "success_rate": round(status.success_rate, 2),
        "checks_24h": status.checks_24h,
        "last_error": status.last_error,
        "last_error_time": status.last_error_time.isoformat() if status.last_error_time else None,
        "timing_breakdown": {
            "dns_lookup_ms": status.timing_breakdown.dns_lookup_ms,
            "tcp_connect_ms": status.timing_breakdown.tcp_connect_ms,
            "tls_handshake_ms": status.timing_breakdown.tls_handshake_ms,
            "request_sent_ms": status.timing_breakdown.request_sent_ms,
            "first_byte_ms": status.timing_breakdown.first_byte_ms,
            "total_response_ms": status.timing_breakdown.total_response_ms,
        },
        "network_info": {
            "local_ip": status.network_info.local_ip,
            "remote_ip": status.network_info.remote_ip,
            "connection_reused": status.network_info.connection_reused,
            "protocol_version": status.network_info.protocol_version,
        },
    }


def _build_dashboard_response(summary: DashboardSummary) -> Dict[str, Any]:
    """Build the dashboard response with fleet summary."""
    return {
        "online_count": summary.online_count,
        "offline_count": summary.offline_count,
        "total_count": summary.total_count,
        "average_latency": round(summary.average_latency, 2),
        "clients": [_client_status_to_dict(s) for s in summary.clients],
    }


def _history_options_from_query(client_id: str, query: Dict[str, List[str]]) -> HistoryFilterOptions:
    """Build history filters from dashboard query parameters."""

    def first(name: str) -> Optional[str]:
        values = query.get(name)
        return values[0] if values else None

    return HistoryFilterOptions(
        client_id=client_id,
        duration=parse_duration(first("duration")),
        status_filter=first("status_filter") or "all",
        min_latency=_parse_non_negative_float(first("min_latency")),
        max_latency=_parse_non_negative_float(first("max_latency")),
        sort_by=first("sort_by") or "timestamp",
        sort_order=first("sort_order") or "desc",
        limit=_parse_positive_int(first("limit"), DEFAULT_HISTORY_LIMIT),
    )


class ProbeHandler(BaseHTTPRequestHandler):
    """HTTP request handler for ingest and dashboard endpoints."""

    # Class-level references set by factory
    db_conn: Optional[sqlite3.Connection] = None
    api_config: ApiConfig = ApiConfig()
    status_config: StatusConfig = StatusConfig()

    def log_message(self, format: str, *args: Any) -> None:
        """Override to use Python logging instead of stderr."""
        logger.debug("API %s - %s", self.address_string(), format % args)

    def _send_json(self, code: int, data: Any) -> None:
        """Send a JSON response with the given status code."""
        body = json.dumps(data).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Cache-Control", "no-cache, no-store, must-revalidate")
        self.send_header("Connection", "close")
        self.end_headers()
        self.wfile.write(body)

    def _send_error_json(self, code: int, message: str) -> None:
        """Send a JSON error response."""
        self._send_json(code, {"error": message})

    def _start_deadline(self) -> tuple[threading.Event, threading.Timer]:
        """Create a cancel event that fires after the configured request timeout."""
        cancel = threading.Event()
        timer = threading.Timer(self.api_config.request_timeout_seconds, cancel.set)
        timer.daemon = True
        timer.start()
        return cancel, timer

    def do_GET(self) -> None:
        """Handle GET requests."""
        parsed = urlparse(self.path)
        try:
            if parsed.path == "/health":
                self._handle_health()
            elif parsed.path == "/api/clients":
                self._handle_clients()
            elif parsed.path == "/api/dashboard_data":
                self._handle_dashboard_data(parse_qs(parsed.query))
            else:
                self._send_error_json(404, "Not found")
        except Exception as e:
            logger.exception("Error handling request: %s", e)
            self._send_error_json(500, "Internal server error")

    def do_POST(self) -> None:
        """Handle POST requests."""
        try:
            if urlparse(self.path).path == "/data":
                self._handle_ingest()
            else:
                self._send_error_json(404, "Not found")
        except Exception as e:
            logger.exception("Error handling POST request: %s", e)
            self._send_error_json(500, "Internal server error")

    def _handle_health(self) -> None:
        """Handle GET /health endpoint."""
        self._send_json(200, {"status": "ok", "skipped_rows": get_decode_failure_count()})

    def _handle_ingest(self) -> None:
        """Handle POST /data endpoint - store one probe report.

        The response is sent only after the report is committed, so a 200
        means the report is durable.
        """
        if self.db_conn is None:
            self._send_error_json(503, "Database not available")
            return

        try:
            length = int(self.headers.get("Content-Length", "0"))
        except ValueError:
            self._send_error_json(400, "Invalid Content-Length")
            return
        if length <= 0:
            self._send_error_json(400, "Request body is required")
            return
        if length > MAX_BODY_BYTES:
            self._send_error_json(413, "Request body too large")
            return

        body = self.rfile.read(length)

        try:
            report = Report.from_json(body)
            submit_report(self.db_conn, report)
        except ReportDecodeError as e:
            logger.warning("Rejected undecodable report from %s: %s", self.address_string(), e)
            self._send_error_json(400, f"Invalid report: {e}")
            return
        except ReportValidationError as e:
            logger.warning("Rejected invalid report from %s: %s", self.address_string(), e)
            self._send_error_json(400, f"Invalid report: {e}")
            return
        except DatabaseError as e:
            logger.error("Database error in /data: %s", e)
            self._send_error_json(500, "Database error")
            return

        if report.error_details.has_error:
            logger.info("%s ERROR - %s", report.client_id, report.error_details.error_type)
        else:
            logger.info(
                "%s OK - %dms (status %d)",
                report.client_id,
                int(report.timing_metrics.total_response_ms),
                report.response_details.status_code,
            )

        self._send_json(200, {"status": "ok"})

    def _handle_clients(self) -> None:
        """Handle GET /api/clients endpoint."""
        if self.db_conn is None:
            self._send_error_json(503, "Database not available")
            return

        try:
            clients = list_clients(self.db_conn)
        except DatabaseError as e:
            logger.error("Database error in /api/clients: %s", e)
            self._send_error_json(500, "Database error")
            return

        self._send_json(200, [{"id": c.id, "name": c.name, "target_url": c.target_url} for c in clients])

    def _handle_dashboard_data(self, query: Dict[str, List[str]]) -> None:
        """Handle GET /api/dashboard_data endpoint.

        With ?client=<id> naming a known client, the response also carries
        that client's filtered history and anomalies. Unknown ids are ignored.
        """
        if self.db_conn is None:
            self._send_error_json(503, "Database not available")
            return

        cancel, timer = self._start_deadline()
        try:
            statuses = get_client_statuses(self.db_conn, self.status_config)
            response = _build_dashboard_response(build_dashboard_summary(statuses))

            client_id = query.get("client", [""])[0]
            selected = next((s for s in statuses if s.id == client_id), None) if client_id else None
            if selected is not None:
                self._add_selected_client(response, selected, query, cancel)

            self._send_json(200, response)
        except QueryCancelledError as e:
            logger.warning("Dashboard query timed out: %s", e)
            self._send_error_json(503, "Query timed out")
        except DatabaseError as e:
            logger.error("Database error in /api/dashboard_data: %s", e)
            self._send_error_json(500, "Database error")
        finally:
            timer.cancel()

    def _add_selected_client(
        self,
        response: Dict[str, Any],
        selected: ClientStatus,
        query: Dict[str, List[str]],
        cancel: threading.Event,
    ) -> None:
        """Attach the selected client's history and anomalies to the response.

        A failed lookup is logged and the response keeps the summary and the
        selected client status. Cancellation still propagates.
        """
        response["selected_client"] = _client_status_to_dict(selected)
        options = _history_options_from_query(selected.id, query)
        try:
            history = get_filtered_history(self.db_conn, options, cancel=cancel)
            anomalies = get_anomalies(
                self.db_conn,
                selected.id,
                self.api_config.anomaly_threshold_ms,
                options.duration,
                ANOMALY_LIMIT,
                cancel=cancel,
            )
        except QueryCancelledError:
            raise
        except DatabaseError as e:
            logger.error("Failed to load history for %s: %s", selected.id, e)
            return

        response["client_history"] = [r.to_dict() for r in history]
        response["client_anomalies"] = [r.to_dict() for r in anomalies]


def _create_handler_class(
    db_conn: sqlite3.Connection,
    api_config: ApiConfig,
    status_config: StatusConfig,
) -> type:
    """Create a handler class with the database connection and config bound."""

    class BoundProbeHandler(ProbeHandler):
        pass

    BoundProbeHandler.db_conn = db_conn
    BoundProbeHandler.api_config = api_config
    BoundProbeHandler.status_config = status_config
    return BoundProbeHandler


class ApiServer:
    """HTTP API server running on a background thread."""

    def __init__(
        self,
        config: ApiConfig,
        db_conn: sqlite3.Connection,
        status_config: Optional[StatusConfig] = None,
    ) -> None:
        """Initialize the API server.

        Args:
            config: API configuration.
            db_conn: Database connection for ingest and queries.
            status_config: Thresholds for derived client status.
        """
        self.config = config
        self.db_conn = db_conn
        self.status_config = status_config or StatusConfig()
        self._server: Optional[HTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._shutdown_event = threading.Event()

    def start(self) -> None:
        """Start the API server in a background thread.

        Raises:
            ApiError: If the server fails to start.
        """
        if self._thread is not None and self._thread.is_alive():
            logger.warning("API server is already running")
            return

        try:
            handler_class = _create_handler_class(self.db_conn, self.config, self.status_config)
            self._server = HTTPServer(("", self.config.port), handler_class)
            self._server.timeout = 1.0  # Allow periodic shutdown checks

            self._shutdown_event.clear()
            self._thread = threading.Thread(
                target=self._serve_forever,
                name="api-server",
                daemon=True,
            )
            self._thread.start()

            logger.info("API server started on port %d", self.config.port)

        except OSError as e:
            if e.errno == 98 or e.errno == 48:  # EADDRINUSE (Linux=98, macOS=48)
                raise ApiError(
                    f"Port {self.config.port} is already in use. "
                    f"Another process may be using this port, or probehub is already running."
                )
            elif e.errno == 13:  # EACCES - Permission denied
                raise ApiError(
                    f"Permission denied for port {self.config.port}. "
                    f"Ports below 1024 require root privileges. "
                    f"Use a port >= 1024 or run with elevated permissions."
                )
            else:
                raise ApiError(f"Failed to start API server on port {self.config.port}: {e}")

    def _serve_forever(self) -> None:
        """Server loop that checks for shutdown."""
        while not self._shutdown_event.is_set():
            if self._server:
                self._server.handle_request()

    def stop(self) -> None:
        """Stop the API server gracefully."""
        if self._thread is None:
            return

        logger.info("Stopping API server...")
        self._shutdown_event.set()

        if self._thread.is_alive():
            self._thread.join(timeout=5.0)

        if self._server:
            self._server.server_close()

        self._server = None
        self._thread = None
        logger.info("API server stopped")

    @property
    def is_running(self) -> bool:
        """Check if the server is running."""
        return self._thread is not None and self._thread.is_alive()
