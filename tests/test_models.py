"""Tests for the models module."""

import json
from datetime import timedelta

import pytest

from probehub.models import (
    ErrorDetails,
    HistoryFilterOptions,
    Report,
    ReportDecodeError,
    ReportValidationError,
    ResponseDetails,
    SortField,
    StatusFilter,
    TimingMetrics,
)


@pytest.fixture
def report_payload() -> dict:
    """Return a complete report as an agent would send it."""
    return {
        "client_id": "agent-1",
        "timestamp": "2026-01-17T10:30:00Z",
        "target_url": "https://example.com/health",
        "request_details": {"method": "GET", "user_agent": "probe/1.0"},
        "timing_metrics": {
            "dns_lookup_ms": 1.5,
            "tcp_connect_ms": 10.25,
            "tls_handshake_ms": 30.0,
            "request_sent_ms": 0.5,
            "first_byte_ms": 80.0,
            "total_response_ms": 120.75,
        },
        "response_details": {
            "status_code": 200,
            "status_text": "200 OK",
            "headers_received": {"Content-Type": "text/html"},
            "body_size": 512,
            "body_preview": "<html>",
        },
        "network_info": {
            "local_ip": "10.0.0.2",
            "remote_ip": "93.184.216.34",
            "connection_reused": True,
            "protocol_version": "HTTP/2.0",
        },
        "error_details": {
            "has_error": False,
            "error_type": "",
            "error_message": "",
            "retry_count": 0,
        },
    }


class TestReportDecoding:
    """Tests for Report.from_dict and Report.from_json."""

    def test_decodes_all_sections(self, report_payload: dict) -> None:
        """Every field group is decoded from the wire payload."""
        report = Report.from_dict(report_payload)

        assert report.client_id == "agent-1"
        assert report.target_url == "https://example.com/health"
        assert report.request_details == {"method": "GET", "user_agent": "probe/1.0"}
        assert report.timing_metrics.total_response_ms == 120.75
        assert report.response_details.status_code == 200
        assert report.response_details.headers_received == {"Content-Type": "text/html"}
        assert report.network_info.connection_reused is True
        assert report.error_details.has_error is False

    def test_to_dict_matches_wire_shape(self, report_payload: dict) -> None:
        """Serialized report has the same shape as the wire payload."""
        assert Report.from_dict(report_payload).to_dict() == report_payload

    def test_json_round_trip(self, report_payload: dict) -> None:
        """A report survives serialization to its stored JSON form."""
        report = Report.from_dict(report_payload)
        assert Report.from_json(report.to_json()) == report

    def test_missing_fields_take_zero_values(self) -> None:
        """Absent keys decode to empty strings, zeros and empty maps."""
        report = Report.from_dict({"client_id": "agent-2"})

        assert report.timestamp == ""
        assert report.request_details == {}
        assert report.timing_metrics == TimingMetrics()
        assert report.response_details == ResponseDetails()
        assert report.error_details == ErrorDetails()

    def test_integer_latency_is_accepted(self) -> None:
        """Whole-number timings are stored as floats."""
        report = Report.from_dict({"client_id": "a", "timing_metrics": {"total_response_ms": 80}})
        assert report.timing_metrics.total_response_ms == 80.0
        assert isinstance(report.timing_metrics.total_response_ms, float)

    def test_rejects_non_object(self) -> None:
        """A JSON array is not a report."""
        with pytest.raises(ReportDecodeError, match="JSON object"):
            Report.from_dict(["agent-1"])

    def test_rejects_invalid_json(self) -> None:
        """Malformed JSON text raises ReportDecodeError."""
        with pytest.raises(ReportDecodeError, match="Invalid JSON"):
            Report.from_json("{not json")

    def test_rejects_none_payload(self) -> None:
        """A missing stored payload raises ReportDecodeError."""
        with pytest.raises(ReportDecodeError):
            Report.from_json(None)

    def test_rejects_wrong_types(self) -> None:
        """Wrongly typed fields are rejected."""
        with pytest.raises(ReportDecodeError, match="total_response_ms"):
            Report.from_dict({"client_id": "a", "timing_metrics": {"total_response_ms": "fast"}})
        with pytest.raises(ReportDecodeError, match="status_code"):
            Report.from_dict({"client_id": "a", "response_details": {"status_code": 200.5}})
        with pytest.raises(ReportDecodeError, match="has_error"):
            Report.from_dict({"client_id": "a", "error_details": {"has_error": "yes"}})
        with pytest.raises(ReportDecodeError, match="network_info"):
            Report.from_dict({"client_id": "a", "network_info": "eth0"})

    def test_rejects_bool_as_number(self) -> None:
        """Booleans are not accepted where numbers are expected."""
        with pytest.raises(ReportDecodeError):
            Report.from_dict({"client_id": "a", "timing_metrics": {"dns_lookup_ms": True}})


class TestReportValidation:
    """Tests for Report.validate."""

    def test_valid_report_passes(self, report_payload: dict) -> None:
        """A complete report validates without errors."""
        Report.from_dict(report_payload).validate()

    def test_rejects_empty_client_id(self) -> None:
        """Reports must carry a client identifier."""
        with pytest.raises(ReportValidationError, match="client_id"):
            Report(client_id="").validate()
        with pytest.raises(ReportValidationError, match="client_id"):
            Report(client_id="   ").validate()

    def test_rejects_negative_timing(self) -> None:
        """Negative timings are rejected."""
        report = Report(client_id="a", timing_metrics=TimingMetrics(first_byte_ms=-1.0))
        with pytest.raises(ReportValidationError, match="first_byte_ms"):
            report.validate()

    def test_rejects_negative_counts(self) -> None:
        """Negative status code, body size and retry count are rejected."""
        with pytest.raises(ReportValidationError, match="status_code"):
            Report(client_id="a", response_details=ResponseDetails(status_code=-1)).validate()
        with pytest.raises(ReportValidationError, match="body_size"):
            Report(client_id="a", response_details=ResponseDetails(body_size=-5)).validate()
        with pytest.raises(ReportValidationError, match="retry_count"):
            Report(client_id="a", error_details=ErrorDetails(retry_count=-1)).validate()

    def test_zero_values_are_valid(self) -> None:
        """A failed probe with all-zero measurements is still valid."""
        Report(client_id="a", error_details=ErrorDetails(has_error=True, error_type="dns")).validate()


class TestFilterTokens:
    """Tests for SortField, StatusFilter and HistoryFilterOptions."""

    @pytest.mark.parametrize(
        "token,expected",
        [
            ("timestamp", SortField.TIMESTAMP),
            ("latency", SortField.LATENCY),
            ("STATUS_CODE", SortField.STATUS_CODE),
            ("error_type", SortField.ERROR_TYPE),
            ("latency; DROP TABLE clients", SortField.TIMESTAMP),
            ("", SortField.TIMESTAMP),
            (None, SortField.TIMESTAMP),
        ],
    )
    def test_sort_field_parse(self, token: str | None, expected: SortField) -> None:
        """Unknown sort tokens fall back to timestamp."""
        assert SortField.parse(token) is expected

    def test_status_filter_parse(self) -> None:
        """Unknown status tokens mean no filtering."""
        assert StatusFilter.parse("error") is StatusFilter.ERROR
        assert StatusFilter.parse("success") is StatusFilter.SUCCESS
        assert StatusFilter.parse("bogus") is StatusFilter.ALL

    def test_options_normalize_tokens(self) -> None:
        """Raw string tokens are converted to enum members."""
        options = HistoryFilterOptions(
            client_id="a",
            duration=timedelta(hours=1),
            status_filter="error",
            sort_by="nonsense",
        )
        assert options.status_filter is StatusFilter.ERROR
        assert options.sort_by is SortField.TIMESTAMP

    def test_sort_order(self) -> None:
        """Only "desc" sorts descending."""
        assert HistoryFilterOptions("a", timedelta(hours=1), sort_order="desc").descending
        assert HistoryFilterOptions("a", timedelta(hours=1), sort_order="DESC").descending
        assert not HistoryFilterOptions("a", timedelta(hours=1), sort_order="asc").descending
        assert not HistoryFilterOptions("a", timedelta(hours=1), sort_order="sideways").descending

    def test_wire_payload_is_plain_json(self, report_payload: dict) -> None:
        """to_json output is compact JSON equal to the input payload."""
        text = Report.from_dict(report_payload).to_json()
        assert json.loads(text) == report_payload


class TestStringMaps:
    """Tests for header and request-detail maps."""

    def test_null_value_decodes_to_empty_string(self) -> None:
        report = Report.from_dict({"client_id": "a", "response_details": {"headers_received": {"X-Id": None}}})
        assert report.response_details.headers_received == {"X-Id": ""}

    def test_rejects_non_string_value(self) -> None:
        """Numbers are not silently turned into strings."""
        with pytest.raises(ReportDecodeError, match="headers_received.Content-Length"):
            Report.from_dict(
                {"client_id": "a", "response_details": {"headers_received": {"Content-Length": 1}}}
            )
        with pytest.raises(ReportDecodeError, match="request_details.retries"):
            Report.from_dict({"client_id": "a", "request_details": {"retries": True}})
