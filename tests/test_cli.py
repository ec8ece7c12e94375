"""Tests for the command-line entry point."""

import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from probehub import main
from probehub.database import init_db, submit_report
from probehub.models import Report


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """Write a config pointing at a seeded database."""
    db_path = tmp_path / "probehub.db"
    conn = init_db(str(db_path))
    now = datetime.now(UTC)
    submit_report(conn, Report(client_id="agent-1"), received_at=now - timedelta(days=10))
    submit_report(conn, Report(client_id="agent-1"), received_at=now - timedelta(days=3))
    submit_report(conn, Report(client_id="agent-1"), received_at=now)
    conn.close()

    path = tmp_path / "config.yaml"
    path.write_text(f"database:\n  path: {db_path}\n  retention_days: 7\n")
    return path


def _history_count(config_file: Path) -> int:
    conn = init_db(str(config_file.parent / "probehub.db"))
    try:
        return conn.execute("SELECT COUNT(*) FROM client_history").fetchone()[0]
    finally:
        conn.close()


class TestCleanCommand:
    """Tests for `probehub clean`."""

    def test_uses_configured_retention(self, config_file: Path, monkeypatch, capsys) -> None:
        monkeypatch.setattr(sys, "argv", ["probehub", "clean", "-c", str(config_file)])

        main()

        assert "Deleted 1 history entries older than 7 days." in capsys.readouterr().out
        assert _history_count(config_file) == 2

    def test_retention_days_override(self, config_file: Path, monkeypatch, capsys) -> None:
        monkeypatch.setattr(sys, "argv", ["probehub", "clean", "-c", str(config_file), "--retention-days", "1"])

        main()

        assert "older than 1 days" in capsys.readouterr().out
        assert _history_count(config_file) == 1

    def test_all(self, config_file: Path, monkeypatch, capsys) -> None:
        monkeypatch.setattr(sys, "argv", ["probehub", "clean", "-c", str(config_file), "--all"])

        main()

        assert "Deleted all 3 history entries" in capsys.readouterr().out
        assert _history_count(config_file) == 0

    def test_missing_database_exits(self, tmp_path: Path, monkeypatch) -> None:
        path = tmp_path / "config.yaml"
        path.write_text(f"database:\n  path: {tmp_path / 'missing.db'}\n")
        monkeypatch.setattr(sys, "argv", ["probehub", "clean", "-c", str(path)])

        with pytest.raises(SystemExit) as exc_info:
            main()

        assert exc_info.value.code == 1

    def test_negative_retention_exits(self, config_file: Path, monkeypatch) -> None:
        monkeypatch.setattr(sys, "argv", ["probehub", "clean", "-c", str(config_file), "--retention-days", "-1"])

        with pytest.raises(SystemExit):
            main()

        assert _history_count(config_file) == 3

    def test_all_and_retention_days_conflict(self, config_file: Path, monkeypatch) -> None:
        monkeypatch.setattr(sys, "argv", ["probehub", "clean", "-c", str(config_file), "--all", "--retention-days", "1"])

        with pytest.raises(SystemExit) as exc_info:
            main()

        assert exc_info.value.code == 2
        assert _history_count(config_file) == 3
