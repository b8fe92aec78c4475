"""Tests for the CLI interface."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from conftest import seed_data
from ctxgraph.cli import main


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def export_file(tmp_path: Path) -> Path:
    path = tmp_path / "export.json"
    path.write_text(json.dumps(seed_data()))
    return path


@pytest.fixture
def project(tmp_path: Path, export_file: Path) -> Path:
    """An initialized project with the seed data ingested."""
    root = tmp_path / "proj"
    root.mkdir()
    runner = CliRunner()
    result = runner.invoke(main, ["init", "--path", str(root)])
    assert result.exit_code == 0, f"Init failed: {result.output}"
    result = runner.invoke(main, ["ingest", str(export_file), "--path", str(root)])
    assert result.exit_code == 0, f"Ingest failed: {result.output}"
    return root


class TestCLIInit:
    def test_init_basic(self, runner: CliRunner, tmp_path: Path):
        result = runner.invoke(main, ["init", "--path", str(tmp_path)])
        assert result.exit_code == 0
        assert "Initializing" in result.output

    def test_init_creates_ctxgraph_dir(self, runner: CliRunner, tmp_path: Path):
        runner.invoke(main, ["init", "--path", str(tmp_path)])
        assert (tmp_path / ".ctxgraph" / "config.json").exists()
        assert (tmp_path / ".ctxgraph" / "context.db").exists()

    def test_init_nonexistent_path(self, runner: CliRunner):
        result = runner.invoke(main, ["init", "--path", "/nonexistent/path"])
        assert result.exit_code != 0

    def test_version(self, runner: CliRunner):
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output


class TestCLIIngest:
    def test_ingest(self, runner: CliRunner, tmp_path: Path, export_file: Path):
        runner.invoke(main, ["init", "--path", str(tmp_path)])
        result = runner.invoke(main, ["ingest", str(export_file), "--path", str(tmp_path)])
        assert result.exit_code == 0
        assert "Ingested 8 artifacts across 2 programs" in result.output

    def test_ingest_bad_json(self, runner: CliRunner, tmp_path: Path):
        runner.invoke(main, ["init", "--path", str(tmp_path)])
        bad = tmp_path / "bad.json"
        bad.write_text("{not json")
        result = runner.invoke(main, ["ingest", str(bad), "--path", str(tmp_path)])
        assert result.exit_code == 1
        assert "Ingest failed" in result.output


class TestCLIBuild:
    def test_build(self, runner: CliRunner, project: Path):
        result = runner.invoke(main, ["build", "a1", "--path", str(project)])
        assert result.exit_code == 0, result.output
        assert "Enriched Context" in result.output
        assert "## Related Artifacts" in result.output
        assert "invoice-01.pdf" in result.output

    def test_build_json(self, runner: CliRunner, project: Path):
        result = runner.invoke(
            main, ["build", "a1", "--json", "--no-cache", "--path", str(project)]
        )
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["target_artifact_id"] == "a1"
        assert data["related_artifacts"][0]["artifact_id"] == "a2"

    def test_build_budget(self, runner: CliRunner, project: Path):
        result = runner.invoke(main, ["build", "a1", "--budget", "10", "--path", str(project)])
        assert result.exit_code == 0, result.output
        assert "over budget" in result.output

    def test_build_unknown_artifact(self, runner: CliRunner, project: Path):
        result = runner.invoke(main, ["build", "missing", "--path", str(project)])
        assert result.exit_code == 1
        assert "Artifact not found: missing" in result.output

    def test_build_no_project(self, runner: CliRunner, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        result = runner.invoke(main, ["build", "a1"])
        assert result.exit_code == 1
        assert "No ctxgraph project found" in result.output

    def test_build_invalid_weights(self, runner: CliRunner, project: Path):
        runner.invoke(main, ["config", "set", "scoring.semantic", "0.9", "--path", str(project)])
        result = runner.invoke(main, ["build", "a1", "--path", str(project)])
        assert result.exit_code == 1
        assert "Invalid configuration" in result.output


class TestCLIProgram:
    def test_sequences(self, runner: CliRunner, project: Path):
        result = runner.invoke(main, ["sequences", "p1", "--save", "--path", str(project)])
        assert result.exit_code == 0, result.output
        assert "Weekly" in result.output
        assert "Saved 2 sequences" in result.output

    def test_sequences_none(self, runner: CliRunner, project: Path):
        result = runner.invoke(main, ["sequences", "p2", "--path", str(project)])
        assert result.exit_code == 0
        assert "No sequences" in result.output

    def test_people(self, runner: CliRunner, project: Path):
        result = runner.invoke(main, ["people", "carol", "-P", "p1", "--path", str(project)])
        assert result.exit_code == 0, result.output
        assert "Carol" in result.output
        assert "Dave" in result.output

    def test_people_unknown(self, runner: CliRunner, project: Path):
        result = runner.invoke(main, ["people", "zed", "-P", "p1", "--path", str(project)])
        assert result.exit_code == 1

    def test_stats(self, runner: CliRunner, project: Path):
        result = runner.invoke(main, ["stats", "p1", "--path", str(project)])
        assert result.exit_code == 0, result.output
        assert "Program Statistics" in result.output
        assert "Carol" in result.output

    def test_facts(self, runner: CliRunner, project: Path):
        result = runner.invoke(main, ["facts", "p1", "total_value", "--path", str(project)])
        assert result.exit_code == 0, result.output
        assert "$1,200,000" in result.output
        assert "mean" in result.output

    def test_facts_unknown_key(self, runner: CliRunner, project: Path):
        result = runner.invoke(main, ["facts", "p1", "nope", "--path", str(project)])
        assert result.exit_code == 0
        assert "No facts recorded" in result.output


class TestCLICache:
    def test_cache_cycle(self, runner: CliRunner, project: Path):
        runner.invoke(main, ["build", "a1", "--path", str(project)])

        result = runner.invoke(main, ["cache", "stats", "--path", str(project)])
        assert result.exit_code == 0, result.output
        assert "durable" in result.output

        result = runner.invoke(main, ["cache", "invalidate", "a1", "--path", str(project)])
        assert result.exit_code == 0
        assert "Invalidated a1" in result.output

    def test_invalidate_program(self, runner: CliRunner, project: Path):
        result = runner.invoke(
            main, ["cache", "invalidate-program", "p1", "--path", str(project)]
        )
        assert result.exit_code == 0
        assert "Invalidated 7 artifacts in program p1" in result.output

    def test_sweep(self, runner: CliRunner, project: Path):
        result = runner.invoke(main, ["cache", "sweep", "--path", str(project)])
        assert result.exit_code == 0
        assert "Removed 0 expired entries" in result.output

    def test_warm(self, runner: CliRunner, project: Path):
        result = runner.invoke(main, ["warm", "p1", "--limit", "3", "--path", str(project)])
        assert result.exit_code == 0, result.output
        assert "Warmed 3 contexts" in result.output

    def test_cache_disabled(self, runner: CliRunner, project: Path):
        runner.invoke(main, ["config", "set", "cache.enabled", "false", "--path", str(project)])
        result = runner.invoke(main, ["cache", "stats", "--path", str(project)])
        assert result.exit_code == 1
        assert "Caching is disabled" in result.output


class TestCLIConfig:
    def test_config_show(self, runner: CliRunner, project: Path):
        result = runner.invoke(main, ["config", "show", "--path", str(project)])
        assert result.exit_code == 0
        assert "token_budget" in result.output

    def test_config_get(self, runner: CliRunner, project: Path):
        result = runner.invoke(main, ["config", "get", "budget.token_budget", "--path", str(project)])
        assert result.exit_code == 0
        assert "4000" in result.output

    def test_config_set(self, runner: CliRunner, project: Path):
        result = runner.invoke(
            main, ["config", "set", "budget.token_budget", "2500", "--path", str(project)]
        )
        assert result.exit_code == 0
        result = runner.invoke(main, ["config", "get", "budget.token_budget", "--path", str(project)])
        assert "2500" in result.output

    def test_config_set_unknown(self, runner: CliRunner, project: Path):
        result = runner.invoke(main, ["config", "set", "nope.key", "1", "--path", str(project)])
        assert result.exit_code == 1
