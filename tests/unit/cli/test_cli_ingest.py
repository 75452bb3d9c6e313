"""Tests for threadline ingest / reembed / remove CLI commands."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from conftest import DIMS, FakeEmbeddingProvider
from threadline.cli.main import app
from threadline.config import ThreadlineConfig
from threadline.db.connection import Database
from threadline.db.migrations import initialize
from threadline.db.models import Project
from threadline.db.repository import Repository
from threadline.ingest.embedder import Embedder

runner = CliRunner()


# ------------------------------------------------------------------
# Fixtures
# ------------------------------------------------------------------


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
    """Config from *cfg*, a fake embedder and an OpenAI key in the environment."""
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    embedder = Embedder(provider, dimensions=DIMS, max_retries=0)
    with (
        patch("threadline.cli.runtime.load_config", return_value=cfg),
        patch("threadline.cli.runtime.configure_logging"),
        patch("threadline.cli.runtime.Embedder.from_cfg", return_value=embedder),
    ):
        yield


@pytest.fixture
def project(cfg) -> Project:
    with Database(cfg.database.path) as conn:
        initialize(conn)
        return Repository(conn).add_project(Project(owner="local", name="Manuals"))


@pytest.fixture
def notes(tmp_path: Path) -> Path:
    path = tmp_path / "notes.md"
    path.write_text("# Relays\n\nA relay switches a load.\n\nCoils need flyback diodes.", encoding="utf-8")
    return path


def _documents(cfg, project_id):
    with Database(cfg.database.path) as conn:
        repo = Repository(conn)
        return [(d, repo.count_chunks(d.id)) for d in repo.list_documents(project_id)]


def _embedded(cfg) -> int:
    with Database(cfg.database.path) as conn:
        return conn.execute("SELECT COUNT(*) FROM chunk_embeddings").fetchone()[0]


# ------------------------------------------------------------------
# ingest
# ------------------------------------------------------------------


def test_ingest_requires_file(project):
    result = runner.invoke(app, ["ingest", "Manuals"])
    assert result.exit_code == 1
    assert "--file" in result.output


def test_ingest_requires_database(cfg, notes):
    result = runner.invoke(app, ["ingest", "Manuals", "--file", str(notes)])
    assert result.exit_code == 1
    assert "threadline init" in result.output


def test_ingest_requires_api_key(project, notes, monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY")
    result = runner.invoke(app, ["ingest", "Manuals", "--file", str(notes)])
    assert result.exit_code == 1
    assert "OPENAI_API_KEY" in result.output


def test_ingest_stores_and_embeds(cfg, project, notes):
    result = runner.invoke(app, ["ingest", "Manuals", "--file", str(notes)])

    assert result.exit_code == 0, result.output
    documents = _documents(cfg, project.id)
    assert len(documents) == 1
    document, chunk_count = documents[0]
    assert document.filename == "notes.md"
    assert document.content_type == "text/markdown"
    assert chunk_count >= 1
    assert _embedded(cfg) == chunk_count
    assert f"{chunk_count}/{chunk_count}" in result.output


def test_ingest_accepts_project_id(cfg, project, notes):
    result = runner.invoke(app, ["ingest", project.id, "--file", str(notes)])
    assert result.exit_code == 0, result.output


def test_ingest_unknown_project(project, notes):
    result = runner.invoke(app, ["ingest", "Nope", "--file", str(notes)])
    assert result.exit_code == 1
    assert "not found" in result.output


def test_ingest_skips_duplicate_without_replace(cfg, project, notes):
    runner.invoke(app, ["ingest", "Manuals", "--file", str(notes)])
    result = runner.invoke(app, ["ingest", "Manuals", "--file", str(notes)])

    assert result.exit_code == 0
    assert "Already ingested" in result.output
    assert len(_documents(cfg, project.id)) == 1


def test_ingest_replace_swaps_document(cfg, project, notes):
    runner.invoke(app, ["ingest", "Manuals", "--file", str(notes)])
    first_id = _documents(cfg, project.id)[0][0].id
    notes.write_text("Completely new text.", encoding="utf-8")

    result = runner.invoke(app, ["ingest", "Manuals", "--file", str(notes), "--replace"])

    assert result.exit_code == 0, result.output
    documents = _documents(cfg, project.id)
    assert len(documents) == 1
    assert documents[0][0].id != first_id
    assert documents[0][0].content == "Completely new text."


def test_ingest_rejects_non_utf8(cfg, project, tmp_path):
    blob = tmp_path / "blob.bin"
    blob.write_bytes(b"\xff\xfe\x00bad")
    result = runner.invoke(app, ["ingest", "Manuals", "--file", str(blob)])

    assert result.exit_code == 1
    assert _documents(cfg, project.id) == []


def test_embed_failure_keeps_document_then_reembed(cfg, project, notes, provider):
    provider.errors = [RuntimeError("provider down")]
    result = runner.invoke(app, ["ingest", "Manuals", "--file", str(notes)])

    assert result.exit_code == 1
    assert "reembed" in result.output
    assert len(_documents(cfg, project.id)) == 1
    assert _embedded(cfg) == 0

    result = runner.invoke(app, ["reembed", "Manuals"])
    assert result.exit_code == 0, result.output
    assert _embedded(cfg) == _documents(cfg, project.id)[0][1]

    result = runner.invoke(app, ["reembed", "Manuals"])
    assert "already has an embedding" in result.output


# ------------------------------------------------------------------
# remove
# ------------------------------------------------------------------


def test_remove_deletes_document(cfg, project, notes):
    runner.invoke(app, ["ingest", "Manuals", "--file", str(notes)])
    document = _documents(cfg, project.id)[0][0]

    result = runner.invoke(app, ["remove", document.id, "--yes"])

    assert result.exit_code == 0, result.output
    assert _documents(cfg, project.id) == []
    assert _embedded(cfg) == 0


def test_remove_declined_keeps_document(cfg, project, notes):
    runner.invoke(app, ["ingest", "Manuals", "--file", str(notes)])
    document = _documents(cfg, project.id)[0][0]

    result = runner.invoke(app, ["remove", document.id], input="n\n")

    assert "Cancelled" in result.output
    assert len(_documents(cfg, project.id)) == 1


def test_remove_unknown_document(project):
    result = runner.invoke(app, ["remove", "missing-id", "--yes"])
    assert result.exit_code == 0
    assert "missing-id" in result.output
