"""Repository pattern for threadline's relational data.

Single interface for: projects, documents + chunks, threads, messages.
Embeddings and similarity search live in threadline.db.vector_store.

Methods are synchronous and operate on one sqlite3.Connection; async code
reaches them through ConnectionPool.run(), e.g.::

    project = await pool.run(lambda conn: Repository(conn).get_project(pid))
"""

from __future__ import annotations

import sqlite3

from threadline.db.models import Chunk, Document, Message, Project, Thread


class Repository:
    """Data access layer for projects, documents, chunks, threads and messages.

    Wraps an open sqlite3.Connection. The connection is owned by the caller.
    Every write method commits (or rolls back) its own transaction.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def add_project(self, project: Project) -> Project:
        """Insert *project* and return it with timestamps populated."""
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO projects (id, owner, name, description, instructions)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    project.id,
                    project.owner,
                    project.name,
                    project.description,
                    project.instructions,
                ),
            )
        return self.get_project(project.id)  # type: ignore[return-value]

    def get_project(self, project_id: str) -> Project | None:
        row = self._conn.execute(
            "SELECT * FROM projects WHERE id = ?", (project_id,)
        ).fetchone()
        return _row_to_project(row) if row else None

    def list_projects(self, owner: str | None = None) -> list[Project]:
        """Return projects (optionally only *owner*'s), oldest first."""
        if owner is None:
            rows = self._conn.execute(
                "SELECT * FROM projects ORDER BY created_at, id"
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM projects WHERE owner = ? ORDER BY created_at, id",
                (owner,),
            ).fetchall()
        return [_row_to_project(r) for r in rows]

    def update_instructions(self, project_id: str, instructions: str | None) -> bool:
        with self._conn:
            cur = self._conn.execute(
                """
                UPDATE projects
                SET instructions = ?, updated_at = strftime('%Y-%m-%dT%H:%M:%f', 'now')
                WHERE id = ?
                """,
                (instructions, project_id),
            )
        return cur.rowcount > 0

    def delete_project(self, project_id: str) -> bool:
        """Delete a project; documents, chunks and embeddings cascade."""
        with self._conn:
            cur = self._conn.execute("DELETE FROM projects WHERE id = ?", (project_id,))
        return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Documents + chunks
    # ------------------------------------------------------------------

    def add_document(self, document: Document, chunks: list[Chunk]) -> Document:
        """Insert *document* and all of its *chunks* in one transaction."""
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO project_documents
                    (id, project_id, filename, content, content_type, file_size)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    document.id,
                    document.project_id,
                    document.filename,
                    document.content,
                    document.content_type,
                    document.file_size,
                ),
            )
            self._conn.executemany(
                """
                INSERT INTO document_chunks
                    (id, document_id, chunk_text, chunk_index, start_char, end_char, metadata)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (c.id, document.id, c.text, c.chunk_index, c.start_char, c.end_char, c.metadata)
                    for c in chunks
                ],
            )
        return self.get_document(document.id)  # type: ignore[return-value]

    def get_document(self, document_id: str) -> Document | None:
        row = self._conn.execute(
            "SELECT * FROM project_documents WHERE id = ?", (document_id,)
        ).fetchone()
        return _row_to_document(row) if row else None

    def get_document_by_filename(self, project_id: str, filename: str) -> Document | None:
        """Return the newest document named *filename* in *project_id*."""
        row = self._conn.execute(
            """
            SELECT * FROM project_documents
            WHERE project_id = ? AND filename = ?
            ORDER BY created_at DESC LIMIT 1
            """,
            (project_id, filename),
        ).fetchone()
        return _row_to_document(row) if row else None

    def list_documents(self, project_id: str) -> list[Document]:
        rows = self._conn.execute(
            "SELECT * FROM project_documents WHERE project_id = ? ORDER BY created_at, id",
            (project_id,),
        ).fetchall()
        return [_row_to_document(r) for r in rows]

    def list_chunks(self, document_id: str) -> list[Chunk]:
        """Return the chunks of *document_id* in index order."""
        rows = self._conn.execute(
            "SELECT * FROM document_chunks WHERE document_id = ? ORDER BY chunk_index",
            (document_id,),
        ).fetchall()
        return [_row_to_chunk(r) for r in rows]

    def count_chunks(self, document_id: str) -> int:
        return self._conn.execute(
            "SELECT COUNT(*) FROM document_chunks WHERE document_id = ?", (document_id,)
        ).fetchone()[0]

    # ------------------------------------------------------------------
    # Threads + messages
    # ------------------------------------------------------------------

    def get_thread(self, thread_id: str) -> Thread | None:
        row = self._conn.execute(
            "SELECT * FROM threads WHERE id = ?", (thread_id,)
        ).fetchone()
        return _row_to_thread(row) if row else None

    def list_threads(self, user_id: str | None = None) -> list[Thread]:
        """Return threads (optionally only *user_id*'s), most recently updated first."""
        if user_id is None:
            rows = self._conn.execute(
                "SELECT * FROM threads ORDER BY updated_at DESC"
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM threads WHERE user_id = ? ORDER BY updated_at DESC",
                (user_id,),
            ).fetchall()
        return [_row_to_thread(r) for r in rows]

    def search_threads(self, query: str, user_id: str | None = None) -> list[Thread]:
        """Return threads whose id or any message contains *query*.

        Matching is a case-insensitive substring match (SQL ``LIKE``).
        Results are most recently updated first, each thread once.
        """
        pattern = f"%{query}%"
        sql = """
            SELECT DISTINCT t.* FROM threads t
            LEFT JOIN messages m ON m.thread_id = t.id
            WHERE (t.id LIKE ? OR m.content LIKE ?)
        """
        params: list[str] = [pattern, pattern]
        if user_id is not None:
            sql += " AND t.user_id = ?"
            params.append(user_id)
        sql += " ORDER BY t.updated_at DESC"
        rows = self._conn.execute(sql, params).fetchall()
        return [_row_to_thread(r) for r in rows]

    def delete_thread(self, thread_id: str) -> bool:
        """Delete a thread; its messages cascade."""
        with self._conn:
            cur = self._conn.execute("DELETE FROM threads WHERE id = ?", (thread_id,))
        return cur.rowcount > 0

    def set_thread_title(self, thread_id: str, title: str) -> None:
        with self._conn:
            self._conn.execute(
                "UPDATE threads SET title = ? WHERE id = ?", (title, thread_id)
            )

    def list_messages(self, thread_id: str) -> list[Message]:
        """Return the messages of *thread_id* in creation order."""
        rows = self._conn.execute(
            "SELECT * FROM messages WHERE thread_id = ? ORDER BY created_at, id",
            (thread_id,),
        ).fetchall()
        return [_row_to_message(r) for r in rows]

    def save_turn(self, thread: Thread, messages: list[Message]) -> list[int]:
        """Append *messages* to *thread* in one transaction.

        The thread row is created here if it does not exist yet, so a thread
        only materializes together with its first persisted turn.

        Returns:
            The new message ids, in insertion order.
        """
        ids: list[int] = []
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO threads (id, user_id, project_id, title)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    updated_at = strftime('%Y-%m-%dT%H:%M:%f', 'now')
                """,
                (thread.id, thread.user_id, thread.project_id, thread.title),
            )
            for message in messages:
                cur = self._conn.execute(
                    """
                    INSERT INTO messages
                        (thread_id, role, content, active_lab, active_model,
                         status, error, user_id)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        thread.id,
                        message.role,
                        message.content,
                        message.lab,
                        message.model,
                        message.status,
                        message.error,
                        message.user_id,
                    ),
                )
                ids.append(cur.lastrowid)
        return ids


# ------------------------------------------------------------------
# Row → model helpers
# ------------------------------------------------------------------


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        owner=row["owner"],
        name=row["name"],
        description=row["description"],
        instructions=row["instructions"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_document(row: sqlite3.Row) -> Document:
    return Document(
        id=row["id"],
        project_id=row["project_id"],
        filename=row["filename"],
        content=row["content"],
        content_type=row["content_type"],
        created_at=row["created_at"],
    )


def _row_to_chunk(row: sqlite3.Row) -> Chunk:
    return Chunk(
        id=row["id"],
        document_id=row["document_id"],
        chunk_index=row["chunk_index"],
        text=row["chunk_text"],
        start_char=row["start_char"],
        end_char=row["end_char"],
        metadata=row["metadata"],
        created_at=row["created_at"],
    )


def _row_to_thread(row: sqlite3.Row) -> Thread:
    return Thread(
        id=row["id"],
        user_id=row["user_id"],
        project_id=row["project_id"],
        title=row["title"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_message(row: sqlite3.Row) -> Message:
    return Message(
        id=row["id"],
        thread_id=row["thread_id"],
        role=row["role"],
        content=row["content"],
        lab=row["active_lab"],
        model=row["active_model"],
        status=row["status"],
        error=row["error"],
        user_id=row["user_id"],
        created_at=row["created_at"],
    )
