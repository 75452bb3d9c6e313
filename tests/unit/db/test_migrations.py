"""Tests for the migration runner and schema constraints."""

from __future__ import annotations

import sqlite3

import pytest

from threadline.db.migrations import MIGRATIONS, initialize, run_migrations

EXPECTED_TABLES = {
    "schema_version",
    "projects",
    "project_documents",
    "document_chunks",
    "chunk_embeddings",
    "threads",
    "messages",
}


def _tables(conn: sqlite3.Connection) -> set[str]:
    rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
    return {r[0] for r in rows}


def test_initialize_creates_all_tables(tmp_db):
    assert EXPECTED_TABLES <= _tables(tmp_db)


def test_schema_version_recorded(tmp_db):
    version = tmp_db.execute("SELECT MAX(version) FROM schema_version").fetchone()[0]
    assert version == MIGRATIONS[-1][0]


def test_run_migrations_is_idempotent(tmp_db):
    run_migrations(tmp_db)
    initialize(tmp_db)
    count = tmp_db.execute("SELECT COUNT(*) FROM schema_version").fetchone()[0]
    assert count == len(MIGRATIONS)


def test_migration_versions_ascending():
    versions = [v for v, _ in MIGRATIONS]
    assert versions == sorted(versions)
    assert len(set(versions)) == len(versions)


def test_message_role_check_constraint(tmp_db):
    tmp_db.execute("INSERT INTO threads (id) VALUES ('t1')")
    with pytest.raises(sqlite3.IntegrityError):
        tmp_db.execute(
            "INSERT INTO messages (thread_id, role, content, active_lab, active_model) "
            "VALUES ('t1', 'robot', 'x', 'openai', 'gpt-4o')"
        )


def test_message_status_check_constraint(tmp_db):
    tmp_db.execute("INSERT INTO threads (id) VALUES ('t1')")
    with pytest.raises(sqlite3.IntegrityError):
        tmp_db.execute(
            "INSERT INTO messages (thread_id, role, content, active_lab, active_model, status) "
            "VALUES ('t1', 'assistant', 'x', 'openai', 'gpt-4o', 'partial')"
        )


def test_chunk_index_unique_per_document(tmp_db):
    tmp_db.execute("INSERT INTO projects (id, owner, name) VALUES ('p1', 'u', 'P')")
    tmp_db.execute(
        "INSERT INTO project_documents (id, project_id, filename, content, file_size) "
        "VALUES ('d1', 'p1', 'a.txt', 'abc', 3)"
    )
    insert = (
        "INSERT INTO document_chunks (id, document_id, chunk_text, chunk_index, start_char, end_char) "
        "VALUES (?, 'd1', 'abc', 0, 0, 3)"
    )
    tmp_db.execute(insert, ("c1",))
    with pytest.raises(sqlite3.IntegrityError):
        tmp_db.execute(insert, ("c2",))
