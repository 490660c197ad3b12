"""
Test Suite for the Command-Line Interface
=========================================
Click commands run through ``CliRunner`` against a throwaway data dir.
"""

from __future__ import annotations

import json
import logging

import pytest
from click.testing import CliRunner

from packparser import database as db
from packparser.cli import cli


@pytest.fixture
def runner(config, monkeypatch) -> CliRunner:
    monkeypatch.setenv("PACKPARSER_DATA_DIR", config.data_dir)
    monkeypatch.setenv("PACKPARSER_DB_PATH", config.db_path)
    yield CliRunner()
    # handlers were bound to the runner's captured streams
    logging.getLogger("packparser").handlers.clear()


# ═══════════════════════════════════════════════════════════════════════════════
# DRY RUN
# ═══════════════════════════════════════════════════════════════════════════════


class TestParseCommand:
    """Test ``packparser parse``."""

    def test_json_output(self, runner, config, make_docx):
        result = runner.invoke(cli, ["parse", make_docx(), "--json-output"])

        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["result"]["package"]["title"] == "Кубок Києва 2024"
        assert data["result"]["confidence"] == 1.0
        assert data["report"]["total_questions"] == 4
        # dry run stores nothing
        assert db.list_packages(db_path=config.db_path) == []

    def test_tree_display(self, runner, make_docx):
        result = runner.invoke(cli, ["parse", make_docx()])
        assert result.exit_code == 0, result.output
        assert "Кубок Києва 2024" in result.output
        assert "Review Report" in result.output

    def test_unsupported_file(self, runner, tmp_path):
        path = tmp_path / "notes.txt"
        path.write_text("Тур 1", encoding="utf-8")
        result = runner.invoke(cli, ["parse", str(path)])
        assert result.exit_code == 1


# ═══════════════════════════════════════════════════════════════════════════════
# JOBS
# ═══════════════════════════════════════════════════════════════════════════════


class TestJobCommands:
    """Test import / status / jobs / cancel / renumber."""

    def test_import_and_wait(self, runner, config, make_docx):
        result = runner.invoke(cli, ["import", make_docx()])

        assert result.exit_code == 0, result.output
        [package] = db.list_packages(db_path=config.db_path)
        assert package["total_questions"] == 4

        [job] = db.list_jobs(db_path=config.db_path)
        assert job["status"] == "succeeded"
        assert job["owner_id"] == "cli"

    def test_queue_only_then_cancel(self, runner, config, make_docx):
        result = runner.invoke(cli, ["import", make_docx(), "--no-wait"])
        assert result.exit_code == 0, result.output
        [job] = db.list_jobs(db_path=config.db_path)
        assert job["status"] == "queued"

        listing = runner.invoke(cli, ["jobs", "--status", "queued"])
        assert listing.exit_code == 0
        assert "Import Jobs" in listing.output

        result = runner.invoke(cli, ["cancel", job["id"]])
        assert result.exit_code == 0
        assert db.get_job(job["id"], db_path=config.db_path)["status"] == "cancelled"

        result = runner.invoke(cli, ["status", job["id"]])
        assert result.exit_code == 0
        assert "cancelled" in result.output

    def test_unknown_job(self, runner):
        assert runner.invoke(cli, ["status", "missing"]).exit_code == 1
        assert runner.invoke(cli, ["cancel", "missing"]).exit_code == 1

    def test_renumber(self, runner, config, make_docx):
        runner.invoke(cli, ["import", make_docx()])
        [package] = db.list_packages(db_path=config.db_path)

        result = runner.invoke(cli, ["renumber", str(package["id"]), "--mode", "per_tour"])
        assert result.exit_code == 0, result.output
        assert "per_tour" in result.output
        assert runner.invoke(cli, ["renumber", "999"]).exit_code == 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
