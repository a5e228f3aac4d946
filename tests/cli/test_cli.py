"""Tests for the mapflow command line."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from mapflow.cli import app


runner = CliRunner()


def _write(tmp_path: Path, name: str, content) -> Path:
    path = tmp_path / name
    path.write_text(json.dumps(content))
    return path


@pytest.fixture
def mapping_file(tmp_path, user_mapping):
    return _write(tmp_path, "mapping.json", user_mapping)


@pytest.fixture
def data_file(tmp_path, user_records):
    return _write(tmp_path, "data.json", user_records)


# ── run ──────────────────────────────────────────────────────────────


class TestRunCommand:
    """Tests for the 'run' command."""

    def test_run_json(self, mapping_file, data_file):
        result = runner.invoke(app, ["run", str(mapping_file), str(data_file), "--json"])
        assert result.exit_code == 0, result.output
        payload = json.loads(result.stdout)
        assert payload["success"] is True
        assert [r["fullName"] for r in payload["data"]] == ["JOHN DOE", "JANE ROE", "ANN POE"]
        assert payload["metrics"]["executionCount"] == 1

    def test_run_table_and_output_file(self, mapping_file, data_file, tmp_path):
        out = tmp_path / "out.json"
        result = runner.invoke(
            app, ["run", str(mapping_file), str(data_file), "--executor", "batch", "-b", "2", "-o", str(out)]
        )
        assert result.exit_code == 0, result.output
        assert "3 processed" in result.stdout
        assert json.loads(out.read_text())[0] == {"userId": 1, "fullName": "JOHN DOE", "isActive": True}

    def test_run_missing_file(self, mapping_file, tmp_path):
        result = runner.invoke(app, ["run", str(mapping_file), str(tmp_path / "missing.json")])
        assert result.exit_code == 2

    def test_run_invalid_mapping(self, data_file, tmp_path):
        bad = _write(tmp_path, "bad.json", {"id": "x", "rules": []})
        result = runner.invoke(app, ["run", str(bad), str(data_file)])
        assert result.exit_code == 1


# ── validate ─────────────────────────────────────────────────────────


class TestValidateCommand:
    """Tests for the 'validate' command."""

    def test_valid_mapping(self, mapping_file):
        result = runner.invoke(app, ["validate", str(mapping_file), "--json"])
        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout)["valid"] is True

    def test_unmapped_required_target(self, tmp_path, user_mapping):
        mapping = {
            **user_mapping,
            "targetSchema": {"name": "users", "columns": [{"name": "email", "type": "string", "nullable": False}]},
        }
        result = runner.invoke(app, ["validate", str(_write(tmp_path, "m.json", mapping)), "--json"])
        assert result.exit_code == 1
        payload = json.loads(result.stdout)
        assert payload["valid"] is False
        assert payload["errors"][0]["code"] == "unmapped_required"

    def test_malformed_document(self, tmp_path):
        result = runner.invoke(app, ["validate", str(_write(tmp_path, "m.json", {"id": "x", "rules": "no"}))])
        assert result.exit_code == 1

    def test_not_json(self, tmp_path):
        path = tmp_path / "m.json"
        path.write_text("{not json")
        assert runner.invoke(app, ["validate", str(path)]).exit_code == 2


# ── recommend ────────────────────────────────────────────────────────


class TestRecommendCommand:
    """Tests for the 'recommend' command."""

    def test_recommend_json(self):
        result = runner.invoke(
            app,
            ["recommend", "200000", "--available-memory", "0.9", "--cpu-usage", "0.1", "--json"],
        )
        assert result.exit_code == 0, result.output
        payload = json.loads(result.stdout)
        assert payload["executorType"] == "stream"
        assert payload["batchSize"] == 2000

    def test_recommend_table(self):
        result = runner.invoke(app, ["recommend", "50", "--available-memory", "0.9", "--cpu-usage", "0.1"])
        assert result.exit_code == 0, result.output
        assert "sequential" in result.stdout

    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert result.stdout.startswith("mapflow ")
