"""Tests for the command-line interface."""

import pytest
import yaml
from click.testing import CliRunner

from conftest import CONTENT_PRIMARY_KEYS, content_frames
from ontoforge import cli as cli_module
from ontoforge.cli import cli
from ontoforge.models import STAGE_ORDER, RunKind, StageName
from ontoforge.storage import Database, RunRepository


@pytest.fixture(autouse=True)
def wide_console(monkeypatch):
    """Keep table cells on one line."""
    monkeypatch.setattr(cli_module.console, "width", 200)


@pytest.fixture
def samples(tmp_path):
    sample_dir = tmp_path / "samples"
    sample_dir.mkdir()
    for name, df in content_frames().items():
        df.to_parquet(sample_dir / f"{name}.parquet", index=False)
    with open(sample_dir / "schema.yaml", "w") as f:
        yaml.safe_dump({"tables": {t: {"primary_key": pk} for t, pk in CONTENT_PRIMARY_KEYS.items()}}, f)
    return sample_dir


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'cli.db'}"


class TestCli:
    """Tests for extract, status, refresh and relationships commands."""

    def test_extract_and_inspect(self, samples, db_url):
        runner = CliRunner()

        result = runner.invoke(cli, ["--db", db_url, "extract", "demo", "--samples", str(samples), "--no_llm"])
        assert result.exit_code == 0, result.output
        assert "completed" in result.output

        result = runner.invoke(cli, ["--db", db_url, "relationships", "demo"])
        assert result.exit_code == 0
        assert "content_posts.author_id" in result.output

        result = runner.invoke(cli, ["--db", db_url, "status", "--project", "demo"])
        assert result.exit_code == 0
        assert "ontology_finalization" in result.output

    def test_refresh_without_changes(self, samples, db_url):
        runner = CliRunner()
        runner.invoke(cli, ["--db", db_url, "extract", "demo", "--samples", str(samples), "--no_llm"])

        result = runner.invoke(cli, ["--db", db_url, "refresh", "demo", "--samples", str(samples), "--no_llm"])

        assert result.exit_code == 0, result.output
        assert "No changes" in result.output

    def test_refresh_with_corrections(self, samples, db_url, tmp_path):
        runner = CliRunner()
        runner.invoke(cli, ["--db", db_url, "extract", "demo", "--samples", str(samples), "--no_llm"])
        corrections = tmp_path / "fixes.yaml"
        with open(corrections, "w") as f:
            yaml.safe_dump({"changes": [
                {"change_type": "attribute_edit", "table": "users", "payload": {"description": "Members"}},
            ]}, f)

        result = runner.invoke(cli, [
            "--db", db_url, "refresh", "demo", "--samples", str(samples), "--no_llm",
            "--no_detect", "--corrections", str(corrections),
        ])

        assert result.exit_code == 0, result.output
        assert "attribute_edit users" in result.output
        assert "completed" in result.output

    def test_extract_requires_source(self, db_url):
        result = CliRunner().invoke(cli, ["--db", db_url, "extract", "demo"])
        assert result.exit_code != 0

    def test_status_unknown_run(self, db_url):
        result = CliRunner().invoke(cli, ["--db", db_url, "status", "--run", "missing"])
        assert result.exit_code != 0
        assert "No matching run" in result.output

    def test_extract_takes_over_orphaned_run(self, samples, db_url):
        db = Database(db_url)
        db.create_tables()
        runs = RunRepository(db)
        runs.create_run("demo", "orphan", RunKind.EXTRACTION, STAGE_ORDER)
        runs.claim_run("orphan", "dead-owner")
        runs.start_stage("orphan", "dead-owner", StageName.SCHEMA_SNAPSHOT)
        runs.release_ownership("orphan", "dead-owner")
        db.dispose()

        result = CliRunner().invoke(cli, ["--db", db_url, "extract", "demo", "--samples", str(samples), "--no_llm"])

        assert result.exit_code == 0, result.output
        assert "Recovered 1 orphaned runs of demo" in result.output
        assert "orphan" in result.output
        assert "completed" in result.output
