"""Tests for threadline init / project / search / version CLI commands."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from conftest import DIMS, FakeEmbeddingProvider
from threadline.cli.main import app
from threadline.config import ConfigError, ThreadlineConfig
from threadline.db.connection import Database
from threadline.db.migrations import initialize
from threadline.db.models import Message, Thread
from threadline.db.repository import Repository
from threadline.ingest.embedder import Embedder

runner = CliRunner()


@pytest.fixture
def cfg(tmp_path: Path) -> ThreadlineConfig:
    cfg = ThreadlineConfig()
    cfg.database.path = str(tmp_path / ".threadline.db")
    cfg.embedding.dimensions = DIMS
    return cfg


@pytest.fixture
def provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture(autouse=True)
def cli_env(cfg, provider, monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    embedder = Embedder(provider, dimensions=DIMS, max_retries=0)
    with (
        patch("threadline.cli.runtime.load_config", return_value=cfg),
        patch("threadline.cli.runtime.configure_logging"),
        patch("threadline.cli.runtime.Embedder.from_cfg", return_value=embedder),
    ):
        yield


@pytest.fixture
def db(cfg) -> Path:
    with Database(cfg.database.path) as conn:
        initialize(conn)
    return Path(cfg.database.path)


def _repo_call(cfg, fn):
    with Database(cfg.database.path) as conn:
        return fn(Repository(conn))


# ------------------------------------------------------------------
# init / version
# ------------------------------------------------------------------


def test_init_creates_scaffold(tmp_path):
    global_cfg = tmp_path / "home" / "config.yaml"
    with patch("threadline.cli.init.ensure_global_config", return_value=global_cfg) as ensure:
        result = runner.invoke(app, ["init", str(tmp_path / "proj")])

    assert result.exit_code == 0, result.output
    proj = tmp_path / "proj"
    assert (proj / ".threadline.db").exists()
    assert "retrieval:" in (proj / "threadline.yaml").read_text(encoding="utf-8")
    assert ".threadline.db" in (proj / ".gitignore").read_text(encoding="utf-8").splitlines()
    ensure.assert_called_once()


def test_init_is_idempotent(tmp_path):
    proj = tmp_path / "proj"
    proj.mkdir()
    (proj / "threadline.yaml").write_text("retrieval:\n  top_k: 9\n", encoding="utf-8")
    (proj / ".gitignore").write_text(".threadline.db\n", encoding="utf-8")

    with patch("threadline.cli.init.ensure_global_config", return_value=tmp_path / "g.yaml"):
        runner.invoke(app, ["init", str(proj)])
        result = runner.invoke(app, ["init", str(proj)])

    assert result.exit_code == 0, result.output
    assert "top_k: 9" in (proj / "threadline.yaml").read_text(encoding="utf-8")
    assert (proj / ".gitignore").read_text(encoding="utf-8").count(".threadline.db") == 1
    assert "data kept" in result.output


def test_version_flag():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert result.output.startswith("threadline ")


def test_invalid_config_exits_with_message(db):
    with patch("threadline.cli.runtime.load_config", side_effect=ConfigError("retrieval.top_k must be >= 1")):
        result = runner.invoke(app, ["project", "list"])
    assert result.exit_code == 1
    assert "top_k" in result.output


# ------------------------------------------------------------------
# project
# ------------------------------------------------------------------


def test_project_create_and_list(cfg, db, tmp_path):
    instructions = tmp_path / "rules.txt"
    instructions.write_text("Answer in metric units.", encoding="utf-8")

    result = runner.invoke(
        app,
        ["project", "create", "Manuals", "--owner", "alice", "-d", "Device docs",
         "--instructions", str(instructions)],
    )
    assert result.exit_code == 0, result.output

    projects = _repo_call(cfg, lambda r: r.list_projects("alice"))
    assert [p.name for p in projects] == ["Manuals"]
    assert projects[0].instructions == "Answer in metric units."

    listed = runner.invoke(app, ["project", "list"])
    assert listed.exit_code == 0
    assert "Manuals" in listed.output


def test_project_list_empty(db):
    result = runner.invoke(app, ["project", "list"])
    assert result.exit_code == 0
    assert "No projects yet" in result.output


def test_project_show(cfg, db):
    runner.invoke(app, ["project", "create", "Manuals"])
    result = runner.invoke(app, ["project", "show", "Manuals"])
    assert result.exit_code == 0, result.output
    assert "No documents" in result.output


def test_project_show_unknown(db):
    result = runner.invoke(app, ["project", "show", "Nope"])
    assert result.exit_code == 1
    assert "not found" in result.output


def test_project_instructions_update_and_clear(cfg, db, tmp_path):
    runner.invoke(app, ["project", "create", "Manuals"])
    rules = tmp_path / "rules.txt"
    rules.write_text("Be brief.", encoding="utf-8")

    assert runner.invoke(app, ["project", "instructions", "Manuals", "--file", str(rules)]).exit_code == 0
    assert _repo_call(cfg, lambda r: r.list_projects())[0].instructions == "Be brief."

    assert runner.invoke(app, ["project", "instructions", "Manuals", "--clear"]).exit_code == 0
    assert _repo_call(cfg, lambda r: r.list_projects())[0].instructions is None


def test_project_instructions_needs_one_option(db):
    runner.invoke(app, ["project", "create", "Manuals"])
    result = runner.invoke(app, ["project", "instructions", "Manuals"])
    assert result.exit_code == 1


def test_project_delete_unlinks_threads(cfg, db):
    runner.invoke(app, ["project", "create", "Manuals"])
    project = _repo_call(cfg, lambda r: r.list_projects())[0]
    thread = Thread(user_id="local", project_id=project.id)
    _repo_call(cfg, lambda r: r.save_turn(thread, [Message(thread.id, "user", "hi", "openai", "gpt-4o")]))

    result = runner.invoke(app, ["project", "delete", "Manuals", "--yes"])

    assert result.exit_code == 0, result.output
    assert _repo_call(cfg, lambda r: r.list_projects()) == []
    assert _repo_call(cfg, lambda r: r.get_thread(thread.id)).project_id is None


def test_project_delete_declined(cfg, db):
    runner.invoke(app, ["project", "create", "Manuals"])
    result = runner.invoke(app, ["project", "delete", "Manuals"], input="n\n")
    assert "Cancelled" in result.output
    assert len(_repo_call(cfg, lambda r: r.list_projects())) == 1


# ------------------------------------------------------------------
# search
# ------------------------------------------------------------------


def test_search_lists_matches(cfg, db, tmp_path):
    runner.invoke(app, ["project", "create", "Manuals"])
    notes = tmp_path / "relays.md"
    notes.write_text("A relay switches a load.", encoding="utf-8")
    runner.invoke(app, ["ingest", "Manuals", "--file", str(notes)])

    result = runner.invoke(app, ["search", "Manuals", "relay"])

    assert result.exit_code == 0, result.output
    assert "relays.md #0" in result.output
    assert "1.000" in result.output


def test_search_nothing_above_threshold(cfg, db, provider, tmp_path):
    runner.invoke(app, ["project", "create", "Manuals"])
    notes = tmp_path / "relays.md"
    notes.write_text("A relay switches a load.", encoding="utf-8")
    runner.invoke(app, ["ingest", "Manuals", "--file", str(notes)])
    provider.vectors["unrelated"] = [0.0, 1.0]

    result = runner.invoke(app, ["search", "Manuals", "unrelated"])

    assert result.exit_code == 0
    assert "No chunks above similarity 0.72" in result.output


def test_search_rejects_bad_top_k(db):
    result = runner.invoke(app, ["search", "Manuals", "x", "--top-k", "0"])
    assert result.exit_code == 1
    assert "top_k" in result.output


def test_search_embed_failure(db, provider):
    runner.invoke(app, ["project", "create", "Manuals"])
    provider.errors = [RuntimeError("provider down")]
    result = runner.invoke(app, ["search", "Manuals", "relay"])
    assert result.exit_code == 1
    assert "Could not embed" in result.output
