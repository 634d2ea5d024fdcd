"""Shared test helpers: a recording runner over in-memory SQLite, and seed data."""

import asyncio
import sqlite3
from typing import Any, Optional


SCHEMA = """
CREATE TABLE countries (id INTEGER PRIMARY KEY, name TEXT);
CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT, country_id INTEGER);
CREATE TABLE posts (id INTEGER PRIMARY KEY, user_id INTEGER, title TEXT,
                    created_at TEXT, deleted_at TEXT);
CREATE TABLE comments (id INTEGER PRIMARY KEY, post_id INTEGER, body TEXT);
CREATE TABLE tags (id INTEGER PRIMARY KEY, name TEXT);
CREATE TABLE post_tag (post_id INTEGER, tag_id INTEGER, weight INTEGER, tagged_at TEXT);
CREATE TABLE images (id INTEGER PRIMARY KEY, url TEXT, imageable_type TEXT,
                     imageable_id INTEGER, created_at TEXT);
"""

SEED = {
    "countries": [
        (1, "France"),
        (2, "Japan"),
    ],
    "users": [
        (1, "alice", 1),
        (2, "bob", 1),
        (3, "carol", 2),
        (4, "dave", None),
    ],
    "posts": [
        (1, 1, "alice-1", "2024-01-01", None),
        (2, 1, "alice-2", "2024-03-01", None),
        (3, 2, "bob-1", "2024-02-01", None),
        (4, 3, "carol-1", "2024-01-15", None),
        (5, 1, "alice-deleted", "2024-05-01", "2024-05-02T10:00:00"),
    ],
    "comments": [
        (1, 1, "first"),
        (2, 1, "second"),
        (3, 3, "on bob"),
    ],
    "tags": [
        (1, "python"),
        (2, "sql"),
    ],
    "post_tag": [
        (1, 1, 5, "2024-01-02"),
        (1, 2, 1, "2024-01-03"),
        (3, 1, 9, "2024-02-02"),
    ],
    "images": [
        (1, "u1-old.png", "User", 1, "2024-01-01"),
        (2, "u1-new.png", "User", 1, "2024-06-01"),
        (3, "p1.png", "Post", 1, "2024-01-01"),
        (4, "orphan.png", "Video", 7, "2024-01-01"),
        (5, "nothing.png", None, None, "2024-01-01"),
    ],
}


def create_database() -> sqlite3.Connection:
    """In-memory SQLite database with the test schema and seed rows."""
    connection = sqlite3.connect(":memory:")
    connection.executescript(SCHEMA)
    for table, rows in SEED.items():
        placeholders = ", ".join("?" for _ in rows[0])
        connection.executemany(f"INSERT INTO {table} VALUES ({placeholders})", rows)
    connection.commit()
    return connection


class RecordingRunner:
    """Async runner recording every ``(sql, params)`` pair before answering from SQLite.

    ``delay`` suspends each call (letting concurrent tasks interleave);
    ``fail_on`` makes any statement containing that text raise RuntimeError.
    """

    def __init__(self, connection: sqlite3.Connection, delay: float = 0, fail_on: Optional[str] = None):
        self.connection = connection
        self.delay = delay
        self.fail_on = fail_on
        self.calls: list[tuple[str, list[Any]]] = []

    async def __call__(self, sql: str, params: list[Any]) -> list[dict[str, Any]]:
        self.calls.append((sql, list(params)))
        await asyncio.sleep(self.delay)
        if self.fail_on is not None and self.fail_on in sql:
            raise RuntimeError(f"runner failure on {self.fail_on}")
        cursor = self.connection.execute(sql, params)
        names = [column[0] for column in cursor.description]
        return [dict(zip(names, row)) for row in cursor.fetchall()]

    def statements_on(self, table: str) -> list[tuple[str, list[Any]]]:
        """Recorded calls whose FROM clause reads table."""
        return [call for call in self.calls if f" FROM {table}" in call[0]]

    def reset(self) -> None:
        self.calls.clear()
