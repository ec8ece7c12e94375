"""Data models for probe reports and derived client views."""

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any


class ReportDecodeError(Exception):
    """Raised when a payload cannot be decoded into a Report."""

    pass


class ReportValidationError(Exception):
    """Raised when a decoded report violates field constraints."""

    pass


def _section(data: dict, key: str) -> dict:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ReportDecodeError(f"'{key}' must be an object")
    return value


def _str(data: dict, key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ReportDecodeError(f"'{key}' must be a string")
    return value


def _float(data: dict, key: str) -> float:
    value = data.get(key)
    if value is None:
        return 0.0
    # bool is a subclass of int, reject it explicitly
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ReportDecodeError(f"'{key}' must be a number")
    return float(value)


def _int(data: dict, key: str) -> int:
    value = data.get(key)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ReportDecodeError(f"'{key}' must be an integer")
    return value


def _bool(data: dict, key: str) -> bool:
    value = data.get(key)
    if value is None:
        return False
    if not isinstance(value, bool):
        raise ReportDecodeError(f"'{key}' must be a boolean")
    return value


def _str_map(data: dict, key: str) -> dict[str, str]:
    value = _section(data, key)
    result: dict[str, str] = {}
    for k, v in value.items():
        # null decodes to the zero value, anything else must already be a string
        if v is None:
            v = ""
        elif not isinstance(v, str):
            raise ReportDecodeError(f"'{key}.{k}' must be a string")
        result[k] = v
    return result


@dataclass(frozen=True)
class TimingMetrics:
    """Timing breakdown of a probe request, all values in milliseconds."""

    dns_lookup_ms: float = 0.0
    tcp_connect_ms: float = 0.0
    tls_handshake_ms: float = 0.0
    request_sent_ms: float = 0.0
    first_byte_ms: float = 0.0
    total_response_ms: float = 0.0

    @classmethod
    def from_dict(cls, data: dict) -> "TimingMetrics":
        return cls(
            dns_lookup_ms=_float(data, "dns_lookup_ms"),
            tcp_connect_ms=_float(data, "tcp_connect_ms"),
            tls_handshake_ms=_float(data, "tls_handshake_ms"),
            request_sent_ms=_float(data, "request_sent_ms"),
            first_byte_ms=_float(data, "first_byte_ms"),
            total_response_ms=_float(data, "total_response_ms"),
        )


@dataclass(frozen=True)
class ResponseDetails:
    """HTTP response observed by the agent."""

    status_code: int = 0
    status_text: str = ""
    headers_received: dict[str, str] = field(default_factory=dict)
    body_size: int = 0
    body_preview: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "ResponseDetails":
        return cls(
            status_code=_int(data, "status_code"),
            status_text=_str(data, "status_text"),
            headers_received=_str_map(data, "headers_received"),
            body_size=_int(data, "body_size"),
            body_preview=_str(data, "body_preview"),
        )


@dataclass(frozen=True)
class NetworkInfo:
    """Connection-level details of a probe request."""

    local_ip: str = ""
    remote_ip: str = ""
    connection_reused: bool = False
    protocol_version: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "NetworkInfo":
        return cls(
            local_ip=_str(data, "local_ip"),
            remote_ip=_str(data, "remote_ip"),
            connection_reused=_bool(data, "connection_reused"),
            protocol_version=_str(data, "protocol_version"),
        )


@dataclass(frozen=True)
class ErrorDetails:
    """Failure information; error_type is empty when has_error is False."""

    has_error: bool = False
    error_type: str = ""
    error_message: str = ""
    retry_count: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> "ErrorDetails":
        return cls(
            has_error=_bool(data, "has_error"),
            error_type=_str(data, "error_type"),
            error_message=_str(data, "error_message"),
            retry_count=_int(data, "retry_count"),
        )


@dataclass(frozen=True)
class Report:
    """A single probe report submitted by a monitoring agent.

    The JSON shape produced by to_dict() is the wire format agents send and
    the blob stored for every history entry and client snapshot.

    Attributes:
        client_id: Stable identifier of the reporting agent.
        timestamp: ISO-8601 timestamp set by the agent.
        target_url: URL the agent probed.
        request_details: Free-form request metadata.
        timing_metrics: DNS/connect/TLS/first-byte/total timings.
        response_details: Status code, headers snapshot and body preview.
        network_info: Local/remote IP, connection reuse and protocol.
        error_details: Error flag, type, message and retry count.
    """

    client_id: str
    timestamp: str = ""
    target_url: str = ""
    request_details: dict[str, str] = field(default_factory=dict)
    timing_metrics: TimingMetrics = field(default_factory=TimingMetrics)
    response_details: ResponseDetails = field(default_factory=ResponseDetails)
    network_info: NetworkInfo = field(default_factory=NetworkInfo)
    error_details: ErrorDetails = field(default_factory=ErrorDetails)

    @classmethod
    def from_dict(cls, data: Any) -> "Report":
        """Build a Report from a decoded JSON object.

        Missing keys take zero values; wrongly typed values are rejected.

        Raises:
            ReportDecodeError: If the payload is not a structurally valid report.
        """
        if not isinstance(data, dict):
            raise ReportDecodeError("Report must be a JSON object")

        return cls(
            client_id=_str(data, "client_id"),
            timestamp=_str(data, "timestamp"),
            target_url=_str(data, "target_url"),
            request_details=_str_map(data, "request_details"),
            timing_metrics=TimingMetrics.from_dict(_section(data, "timing_metrics")),
            response_details=ResponseDetails.from_dict(_section(data, "response_details")),
            network_info=NetworkInfo.from_dict(_section(data, "network_info")),
            error_details=ErrorDetails.from_dict(_section(data, "error_details")),
        )

    @classmethod
    def from_json(cls, payload: str | bytes) -> "Report":
        """Decode a Report from its JSON text.

        Raises:
            ReportDecodeError: If the text is not JSON or not a valid report.
        """
        try:
            data = json.loads(payload)
        except (ValueError, TypeError) as e:
            raise ReportDecodeError(f"Invalid JSON: {e}")
        return cls.from_dict(data)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    def validate(self) -> None:
        """Check required fields before the report is persisted.

        Raises:
            ReportValidationError: If client_id is empty or a numeric field is negative.
        """
        if not self.client_id.strip():
            raise ReportValidationError("client_id cannot be empty")

        for name, value in asdict(self.timing_metrics).items():
            if value < 0:
                raise ReportValidationError(f"timing_metrics.{name} must be non-negative (got {value})")

        if self.response_details.status_code < 0:
            raise ReportValidationError(
                f"response_details.status_code must be non-negative (got {self.response_details.status_code})"
            )
        if self.response_details.body_size < 0:
            raise ReportValidationError(
                f"response_details.body_size must be non-negative (got {self.response_details.body_size})"
            )
        if self.error_details.retry_count < 0:
            raise ReportValidationError(
                f"error_details.retry_count must be non-negative (got {self.error_details.retry_count})"
            )


@dataclass(frozen=True)
class Client:
    """A known reporting agent."""

    id: str
    name: str
    target_url: str


@dataclass(frozen=True)
class ClientStatus:
    """Current status summary for a reporting agent.

    Attributes:
        id: Agent identifier.
        name: Display name (the identifier unless set otherwise).
        target_url: URL the agent probes.
        last_seen: Ingest time of the most recent report.
        is_online: Whether the agent reported within the online threshold.
        last_latency: Total response time of the latest report (ms).
        last_status_code: HTTP status code of the latest report.
        success_rate: Success percentage over the trailing window (0.0-100.0).
        checks_24h: Number of reports in the trailing window; 0 means no data.
        last_error: Error type of the most recent failure, empty if none.
        last_error_time: Ingest time of the most recent failure, or None.
        timing_breakdown: Timing metrics of the latest report.
        network_info: Network info of the latest report.
    """

    id: str
    name: str
    target_url: str
    last_seen: datetime
    is_online: bool
    last_latency: float
    last_status_code: int
    success_rate: float
    checks_24h: int = 0
    last_error: str = ""
    last_error_time: datetime | None = None
    timing_breakdown: TimingMetrics = field(default_factory=TimingMetrics)
    network_info: NetworkInfo = field(default_factory=NetworkInfo)


@dataclass(frozen=True)
class DashboardSummary:
    """Fleet-wide counts shown above the client list."""

    online_count: int
    offline_count: int
    total_count: int
    average_latency: float
    clients: list[ClientStatus]


class StatusFilter(Enum):
    ALL = "all"
    SUCCESS = "success"
    ERROR = "error"

    @classmethod
    def parse(cls, token: str | None) -> "StatusFilter":
        """Map a request token to a filter, unknown tokens mean no filtering."""
        try:
            return cls((token or "").lower())
        except ValueError:
            return cls.ALL


class SortField(Enum):
    TIMESTAMP = "timestamp"
    LATENCY = "latency"
    STATUS_CODE = "status_code"
    ERROR_TYPE = "error_type"

    @classmethod
    def parse(cls, token: str | None) -> "SortField":
        """Map a request token to a sort field, falling back to timestamp."""
        try:
            return cls((token or "").lower())
        except ValueError:
            return cls.TIMESTAMP


@dataclass(frozen=True)
class HistoryFilterOptions:
    """Filters for get_filtered_history.

    Zero values for min_latency, max_latency and limit mean "unset".
    sort_order "desc" sorts descending; any other value sorts ascending.
    """

    client_id: str
    duration: timedelta
    status_filter: StatusFilter | str = StatusFilter.ALL
    min_latency: float = 0.0
    max_latency: float = 0.0
    sort_by: SortField | str = SortField.TIMESTAMP
    sort_order: str = "asc"
    limit: int = 0

    def __post_init__(self) -> None:
        # Raw request tokens are normalized to enum members
        if not isinstance(self.status_filter, StatusFilter):
            object.__setattr__(self, "status_filter", StatusFilter.parse(self.status_filter))
        if not isinstance(self.sort_by, SortField):
            object.__setattr__(self, "sort_by", SortField.parse(self.sort_by))

    @property
    def descending(self) -> bool:
        return self.sort_order.lower() == "desc"
