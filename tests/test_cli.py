"""Tests for the command-line interface."""

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from ideastore import cli
from ideastore.api import IdeaStore
from ideastore.config import CONFIG_FILENAME, load_config
from ideastore.document_store import SqliteRecordStore

from tests.conftest import MockEmbeddingProvider, MockVectorIndex

runner = CliRunner()


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    """Point the CLI at tmp_path and back it with SQLite plus the mock index."""
    monkeypatch.setenv("IDEASTORE_CONFIG_DIR", str(tmp_path))
    monkeypatch.setattr(cli, "_json_output", False)
    index = MockVectorIndex()

    def fake_open_store(config, *, embedder=None):
        return IdeaStore(
            SqliteRecordStore(tmp_path / "ideas.db"),
            index,
            MockEmbeddingProvider(),
            search_defaults=config.search,
        )

    monkeypatch.setattr(cli, "open_store", fake_open_store)
    return tmp_path


def invoke(*args: str):
    return runner.invoke(cli.app, list(args))


def add_idea(*args: str) -> dict:
    result = invoke("--json", "add", *args)
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)


class TestInit:

    def test_writes_local_config(self, cli_env):
        result = invoke("init")
        assert result.exit_code == 0, result.output
        config = load_config(cli_env)
        assert config.backend == "local"
        assert config.local.database == "ideas.db"
        assert config.local.chroma_path == "chroma"

    def test_postgres_options(self, cli_env):
        result = invoke("init", "--backend", "postgres", "--dsn", "postgresql://db/ideas",
                        "--embedding", "ollama", "--model", "nomic-embed-text", "--dimension", "768")
        assert result.exit_code == 0, result.output
        config = load_config(cli_env)
        assert config.backend == "postgres"
        assert config.postgres.dsn == "postgresql://db/ideas"
        assert config.embedding.name == "ollama"
        assert config.dimension == 768
        assert (cli_env / CONFIG_FILENAME).exists()


class TestCommands:

    def test_add_and_get(self, cli_env):
        idea = add_idea("Enterprise Strategy", "Target multi-guild accounts",
                        "--user", "u1", "--tag", "growth", "--priority", "high")
        assert idea["priority"] == "high"
        assert idea["tags"] == ["growth"]

        result = invoke("get", idea["id"])
        assert result.exit_code == 0
        assert "Enterprise Strategy" in result.stdout
        assert "Target multi-guild accounts" in result.stdout

    def test_get_missing(self, cli_env):
        result = invoke("get", "nope")
        assert result.exit_code == 1
        assert "Not found" in result.output

    def test_validation_error_exits_1(self, cli_env):
        result = invoke("add", "Title", "Body", "--user", "u1", "--category", "hobbies")
        assert result.exit_code == 1
        assert "Error:" in result.output
        assert "category" in result.output

    def test_bad_time(self, cli_env):
        result = invoke("due", "--at", "yesterday")
        assert result.exit_code != 0

    def test_list_filters(self, cli_env):
        add_idea("Pricing tiers", "Seat based pricing", "--user", "u1")
        add_idea("Hiring plan", "Two support engineers", "--user", "u2", "--category", "team")

        result = invoke("--json", "list", "--user", "u2")
        assert result.exit_code == 0
        assert [i["title"] for i in json.loads(result.stdout)] == ["Hiring plan"]

        result = invoke("list", "--category", "sales")
        assert "No ideas." in result.stdout

    def test_search(self, cli_env):
        add_idea("Pricing tiers", "Seat based pricing for enterprise", "--user", "u1")
        add_idea("Hiring plan", "Two support engineers", "--user", "u1")

        result = invoke("--json", "search", "enterprise pricing", "--limit", "1")
        assert result.exit_code == 0, result.output
        hits = json.loads(result.stdout)
        assert len(hits) == 1
        assert hits[0]["idea"]["title"] == "Pricing tiers"
        assert 0.0 <= hits[0]["score"] <= 1.0

    def test_update_and_delete(self, cli_env):
        idea = add_idea("Partner program", "Referral fees", "--user", "u1")

        result = invoke("--json", "update", idea["id"], "--status", "in_progress")
        assert result.exit_code == 0
        assert json.loads(result.stdout)["status"] == "in_progress"

        assert invoke("delete", idea["id"]).exit_code == 0
        assert invoke("delete", idea["id"]).exit_code == 1

    def test_reminders(self, cli_env):
        idea = add_idea("Quarterly review", "Pipeline review", "--user", "u1",
                        "--remind-at", "2025-01-01T09:00:00", "--message", "review time")
        reminder_id = idea["reminders"][0]["id"]

        result = invoke("--json", "due", "--at", "2025-01-01T09:00:00Z")
        assert [r["id"] for r in json.loads(result.stdout)] == [reminder_id]

        result = invoke("--json", "sent", reminder_id)
        assert result.exit_code == 0
        assert json.loads(result.stdout)["changed"] is True
        assert "already sent" in invoke("sent", reminder_id).stdout
        result = invoke("due", "--at", "2025-01-02T00:00:00Z")
        assert "Nothing due." in result.stdout

    def test_stats(self, cli_env):
        add_idea("Pricing tiers", "Seat based pricing", "--user", "u1")
        result = invoke("--json", "stats")
        assert result.exit_code == 0
        assert json.loads(result.stdout)["count"] == 1

    def test_ops_log_written(self, cli_env):
        add_idea("Pricing tiers", "Seat based pricing", "--user", "u1")
        assert Path(cli_env / "ideastore-ops.log").exists()
