"""Tests for the header-modifier command-line interface.

Each test runs main() against a temporary state directory and inspects
stdout, stderr, the exit code and the files left behind.
"""

import json
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from header_modifier import cli
from header_modifier import logging as hm_logging


@pytest.fixture(autouse=True)
def log_files(tmp_path, monkeypatch):
    """Send the operational log and event file into the test's tmp dir."""
    monkeypatch.setattr(hm_logging, "LOG_FILE", str(tmp_path / "header-modifier.log"))
    monkeypatch.setattr(hm_logging, "EVENTS_FILE", str(tmp_path / "events.jsonl"))
    yield tmp_path
    hm_logging.close_logging()


@pytest.fixture
def state_dir(tmp_path):
    return tmp_path / "state"


def run_cli(monkeypatch, state_dir, *args):
    """Run the CLI; returns the exit code (0 when main returns normally)."""
    monkeypatch.setattr(sys, "argv", ["header-modifier", "--state-dir", str(state_dir), *args])
    try:
        cli.main()
    except SystemExit as e:
        return e.code
    return 0


class TestSave:
    """save and validate commands."""

    def test_save_applies_rules(self, monkeypatch, capsys, state_dir):
        code = run_cli(
            monkeypatch, state_dir, "save", "--header", "X-Test=123", "--domain", "example.com"
        )
        out = capsys.readouterr().out
        assert code == 0
        assert "Changes applied successfully." in out
        assert "Rules: 1 added, 0 removed" in out

        storage = json.loads((state_dir / "storage.json").read_text())
        assert storage["domains"] == ["example.com"]
        rules = json.loads((state_dir / "rules.json").read_text())
        assert rules[0]["condition"]["urlFilter"] == "||example.com/"

    def test_save_with_minutes(self, monkeypatch, capsys, state_dir):
        code = run_cli(monkeypatch, state_dir, "save", "--header", "X-Test=1", "--minutes", "10")
        out = capsys.readouterr().out
        assert code == 0
        assert "Changes applied. Auto-disable in 10 minute(s)." in out
        assert "header-modifier run" in out

    def test_save_invalid_exits_1(self, monkeypatch, capsys, state_dir):
        code = run_cli(monkeypatch, state_dir, "save", "--header", "Bad Key=1")
        assert code == 1
        assert "Invalid header key: Bad Key" in capsys.readouterr().err
        assert not (state_dir / "storage.json").exists()
        assert not (state_dir / "rules.json").exists()

    def test_save_from_yaml_file(self, monkeypatch, capsys, tmp_path, state_dir):
        draft = tmp_path / "draft.yaml"
        draft.write_text(
            "headers:\n"
            "  X-Api-Key: secret\n"
            "domains:\n"
            "  - api.example.com\n"
            "  - '*.example.org'\n"
            "mode: subdomains_only\n"
        )
        code = run_cli(monkeypatch, state_dir, "save", "--file", str(draft))
        assert code == 0
        storage = json.loads((state_dir / "storage.json").read_text())
        assert storage["domainMatchMode"] == "subdomains_only"
        assert storage["domains"] == ["*.example.org", "api.example.com"]

    def test_save_string_header_row_exits_1(self, monkeypatch, capsys, tmp_path, state_dir):
        draft = tmp_path / "draft.yaml"
        draft.write_text("headers:\n  - \"X-Test: 1\"\n")
        code = run_cli(monkeypatch, state_dir, "save", "--file", str(draft))
        assert code == 1
        assert "Header rows must be key/value pairs" in capsys.readouterr().err
        assert not (state_dir / "storage.json").exists()

    def test_save_zero_header_value(self, monkeypatch, capsys, tmp_path, state_dir):
        draft = tmp_path / "draft.yaml"
        draft.write_text("headers:\n  X-Retry: 0\n")
        code = run_cli(monkeypatch, state_dir, "save", "--file", str(draft))
        assert code == 0
        storage = json.loads((state_dir / "storage.json").read_text())
        assert storage["headers"] == [{"key": "X-Retry", "value": "0"}]

    def test_save_non_boolean_enabled_exits_1(self, monkeypatch, capsys, tmp_path, state_dir):
        draft = tmp_path / "draft.yaml"
        draft.write_text("headers:\n  X-Test: \"1\"\nenabled: \"false\"\n")
        code = run_cli(monkeypatch, state_dir, "save", "--file", str(draft))
        assert code == 1
        assert "enabled must be true or false" in capsys.readouterr().err
        assert not (state_dir / "storage.json").exists()

    def test_save_missing_file_exits_2(self, monkeypatch, capsys, tmp_path, state_dir):
        code = run_cli(monkeypatch, state_dir, "save", "--file", str(tmp_path / "nope.yaml"))
        assert code == 2
        assert "File not found" in capsys.readouterr().err

    def test_save_invalid_yaml_exits_2(self, monkeypatch, capsys, tmp_path, state_dir):
        draft = tmp_path / "draft.yaml"
        draft.write_text("headers: [unclosed\n")
        code = run_cli(monkeypatch, state_dir, "save", "--file", str(draft))
        assert code == 2
        assert "Invalid YAML" in capsys.readouterr().err

    def test_save_logs_rule_event(self, monkeypatch, log_files, state_dir):
        run_cli(monkeypatch, state_dir, "save", "--header", "X-Test=1")
        lines = (log_files / "events.jsonl").read_text().splitlines()
        events = [json.loads(line) for line in lines]
        applied = [e for e in events if e["event"] == "rules_applied"]
        assert applied[0]["added"] == [1]
        assert list(applied[0])[0] == "ts"

    def test_validate_reports_all_errors(self, monkeypatch, capsys, state_dir):
        code = run_cli(
            monkeypatch,
            state_dir,
            "validate",
            "--header",
            "Bad Key=1",
            "--domain",
            "localhost",
            "--mode",
            "subdomains_only",
            "--minutes",
            "5000",
        )
        out = capsys.readouterr().out
        assert code == 1
        assert "invalid_header_name" in out
        assert "unsupported_mode_for_domain" in out
        assert "invalid_expiry_minutes" in out
        assert "Validation failed: 3 error(s)" in out

    def test_validate_ok(self, monkeypatch, capsys, state_dir):
        code = run_cli(monkeypatch, state_dir, "validate", "--header", "X-Test=1")
        assert code == 0
        assert "Validation passed" in capsys.readouterr().out


class TestQueries:
    """status, check and export commands."""

    def test_status(self, monkeypatch, capsys, state_dir):
        run_cli(monkeypatch, state_dir, "save", "--header", "X-Test=1", "--domain", "a.com,b.com")
        capsys.readouterr()

        code = run_cli(monkeypatch, state_dir, "status")
        out = capsys.readouterr().out
        assert code == 0
        assert "Enabled:    yes" in out
        assert "Domains:    a.com, b.com" in out
        assert "Installed:  2 rule(s)" in out

    def test_check(self, monkeypatch, capsys, state_dir):
        run_cli(monkeypatch, state_dir, "save", "--header", "X-Test=123", "--domain", "example.com")
        capsys.readouterr()

        run_cli(monkeypatch, state_dir, "check", "https://api.example.com/v1")
        assert capsys.readouterr().out.strip() == "X-Test: 123"

        run_cli(monkeypatch, state_dir, "check", "https://example.net/")
        assert "No rule matches" in capsys.readouterr().out

    def test_export_to_file(self, monkeypatch, capsys, tmp_path, state_dir):
        run_cli(monkeypatch, state_dir, "save", "--header", "X-Test=1", "--domain", "a.com")
        output = tmp_path / "http-header-modifier-config.json"

        code = run_cli(monkeypatch, state_dir, "export", "-o", str(output))
        assert code == 0
        data = json.loads(output.read_text())
        assert data["domains"] == ["a.com"]
        assert data["headers"] == [{"key": "X-Test", "value": "1"}]

    def test_corrupt_storage_exits_2(self, monkeypatch, capsys, state_dir):
        state_dir.mkdir()
        (state_dir / "storage.json").write_text("{broken")
        code = run_cli(monkeypatch, state_dir, "status")
        assert code == 2
        assert "Failed to read storage" in capsys.readouterr().err

    @pytest.mark.parametrize(
        "command", [["status"], ["check", "https://a.com/"], ["save", "--header", "X-Test=1"]]
    )
    def test_corrupt_rules_exits_2(self, monkeypatch, capsys, state_dir, command):
        state_dir.mkdir()
        (state_dir / "rules.json").write_text("[1]")
        code = run_cli(monkeypatch, state_dir, *command)
        assert code == 2
        assert "Failed to read dynamic rules" in capsys.readouterr().err


class TestImport:
    """import command."""

    def test_import_preview_does_not_save(self, monkeypatch, capsys, tmp_path, state_dir):
        doc = tmp_path / "config.json"
        doc.write_text(json.dumps({"headers": [{"key": "X-A", "value": "1"}], "temporaryMinutes": 7.6}))

        code = run_cli(monkeypatch, state_dir, "import", str(doc))
        out = capsys.readouterr().out
        assert code == 0
        assert json.loads(out)["temporaryMinutes"] == "8"
        assert not (state_dir / "storage.json").exists()

    def test_import_apply(self, monkeypatch, capsys, tmp_path, state_dir):
        doc = tmp_path / "config.json"
        doc.write_text(
            json.dumps(
                {
                    "version": 1,
                    "enabled": True,
                    "headers": [{"key": "X-A", "value": "1"}],
                    "domains": ["a.com"],
                    "domainMatchMode": "exact",
                    "temporaryMinutes": 0,
                }
            )
        )
        code = run_cli(monkeypatch, state_dir, "import", str(doc), "--apply")
        assert code == 0
        assert "Changes applied successfully." in capsys.readouterr().out
        storage = json.loads((state_dir / "storage.json").read_text())
        assert storage["domainMatchMode"] == "exact"

    def test_import_invalid_json_exits_1(self, monkeypatch, capsys, tmp_path, state_dir):
        doc = tmp_path / "config.json"
        doc.write_text("not json")
        code = run_cli(monkeypatch, state_dir, "import", str(doc))
        assert code == 1
        assert "Failed to import config JSON" in capsys.readouterr().err


class TestRun:
    """run command: start event plus expiry timer."""

    def test_run_with_nothing_armed_returns(self, monkeypatch, capsys, state_dir):
        run_cli(monkeypatch, state_dir, "save", "--header", "X-Test=1")
        capsys.readouterr()

        code = run_cli(monkeypatch, state_dir, "run")
        assert code == 0
        assert "Expiry state: disarmed" in capsys.readouterr().out

    def test_run_fires_overdue_expiry(self, monkeypatch, capsys, state_dir):
        run_cli(monkeypatch, state_dir, "save", "--header", "X-Test=1", "--minutes", "5")
        storage_path = state_dir / "storage.json"
        storage = json.loads(storage_path.read_text())
        storage["temporaryUntil"] -= 10 * 60_000
        storage_path.write_text(json.dumps(storage))
        capsys.readouterr()

        code = run_cli(monkeypatch, state_dir, "run")
        assert code == 0
        storage = json.loads(storage_path.read_text())
        assert storage["enabled"] is False
        assert storage["temporaryUntil"] is None
        assert json.loads((state_dir / "rules.json").read_text()) == []
