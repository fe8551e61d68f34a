"""Secondary full-text index of direct messages (SQLite FTS5).

Not authoritative: it is written only by the search sync worker, and every
hit is re-checked against the primary store before it reaches a client.
"""
import os
from datetime import datetime, timezone

import aiosqlite

from parley.config import settings

SEARCH_SCHEMA = """
CREATE VIRTUAL TABLE IF NOT EXISTS message_documents USING fts5(
    message_id UNINDEXED,
    conversation_id UNINDEXED,
    author_id UNINDEXED,
    content,
    image_ref UNINDEXED,
    edited UNINDEXED,
    created_at UNINDEXED,
    indexed_at UNINDEXED
);
"""


def _db_path() -> str:
    return settings.search_db_path


def match_expression(query: str) -> str:
    """Quote every term so user input cannot inject FTS5 operators."""
    terms = [term.replace('"', '""') for term in query.split()]
    return " ".join(f'"{term}"' for term in terms if term)


async def init_search_db() -> None:
    path = _db_path()
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    async with aiosqlite.connect(path) as db:
        await db.executescript(SEARCH_SCHEMA)
        await db.commit()


async def upsert_document(document: dict) -> None:
    now = datetime.now(timezone.utc).isoformat()
    async with aiosqlite.connect(_db_path()) as db:
        await db.execute(
            "DELETE FROM message_documents WHERE message_id = ?",
            (document["message_id"],),
        )
        await db.execute(
            """INSERT INTO message_documents
               (message_id, conversation_id, author_id, content, image_ref,
                edited, created_at, indexed_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                document["message_id"],
                document["conversation_id"],
                document["author_id"],
                document["content"] or "",
                document["image_ref"],
                1 if document["edited"] else 0,
                document["created_at"],
                now,
            ),
        )
        await db.commit()


async def delete_document(message_id: int) -> bool:
    async with aiosqlite.connect(_db_path()) as db:
        cursor = await db.execute(
            "DELETE FROM message_documents WHERE message_id = ?", (message_id,)
        )
        await db.commit()
        return cursor.rowcount > 0


async def get_document(message_id: int) -> dict | None:
    async with aiosqlite.connect(_db_path()) as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(
            "SELECT * FROM message_documents WHERE message_id = ?", (message_id,)
        )
        row = await cursor.fetchone()
        return dict(row) if row else None


async def search_documents(
    conversation_id: str, query: str, limit: int = 20, offset: int = 0
) -> list[int]:
    """Candidate message ids, best match first."""
    expression = match_expression(query)
    if not expression:
        return []
    async with aiosqlite.connect(_db_path()) as db:
        cursor = await db.execute(
            """SELECT message_id FROM message_documents
               WHERE message_documents MATCH ? AND conversation_id = ?
               ORDER BY rank LIMIT ? OFFSET ?""",
            (expression, conversation_id, limit, offset),
        )
        rows = await cursor.fetchall()
        return [int(row[0]) for row in rows]
