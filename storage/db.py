"""
SQLite database holding events, read markers and sync watermarks.
One connection per Database, serialized with an RLock; rows come back as sqlite3.Row.
"""

import os
import sqlite3
import logging
import threading
from contextlib import contextmanager
from typing import Optional, Iterable, Any, List

from errors import StoreError

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = os.getenv("CATCHUP_DB", "catchup.db")

# noinspection SqlResolve
SQL_CREATE = """
CREATE TABLE IF NOT EXISTS events (
    seq              INTEGER PRIMARY KEY,
    id               TEXT NOT NULL UNIQUE,
    user_id          TEXT NOT NULL,
    natural_key      TEXT NOT NULL,
    type             TEXT NOT NULL CHECK (type IN ('issue', 'merge_request', 'comment')),
    status           TEXT CHECK (status IN ('open', 'closed', 'merged')),
    title            TEXT NOT NULL,
    body             TEXT,
    author           TEXT NOT NULL,
    author_avatar    TEXT,
    project          TEXT NOT NULL,
    project_id       TEXT NOT NULL,
    iid              INTEGER,
    labels           TEXT NOT NULL DEFAULT '[]',
    assignees        TEXT NOT NULL DEFAULT '[]',
    url              TEXT NOT NULL,
    created_at       TEXT NOT NULL,
    parent_type      TEXT,
    remote_parent_id INTEGER,
    parent_event_id  TEXT REFERENCES events(id),
    is_system_note   INTEGER NOT NULL DEFAULT 0,
    mentioned_ids    TEXT NOT NULL DEFAULT '[]',
    closes_issue_ids TEXT NOT NULL DEFAULT '[]',
    last_activity_at TEXT,
    comment_count    INTEGER,
    participants     TEXT,
    UNIQUE (user_id, natural_key)
);

CREATE INDEX IF NOT EXISTS idx_events_user_created ON events(user_id, created_at DESC, id DESC);
CREATE INDEX IF NOT EXISTS idx_events_user_parent ON events(user_id, parent_event_id);
CREATE INDEX IF NOT EXISTS idx_events_unlinked ON events(user_id, remote_parent_id) WHERE parent_event_id IS NULL;

CREATE TABLE IF NOT EXISTS read_markers (
    user_id  TEXT NOT NULL,
    event_id TEXT NOT NULL REFERENCES events(id) ON DELETE CASCADE,
    read_at  TEXT NOT NULL,
    UNIQUE (user_id, event_id)
);

CREATE TABLE IF NOT EXISTS sync_state (
    user_id      TEXT PRIMARY KEY,
    last_sync_at TEXT
);

-- FTS5 full-text search with sync triggers
CREATE VIRTUAL TABLE IF NOT EXISTS events_fts USING fts5(
    title, body, content='events', content_rowid='seq', tokenize='porter unicode61'
);

CREATE TRIGGER IF NOT EXISTS events_fts_insert AFTER INSERT ON events BEGIN
    INSERT INTO events_fts(rowid, title, body) VALUES (new.seq, new.title, new.body);
END;
CREATE TRIGGER IF NOT EXISTS events_fts_update AFTER UPDATE OF title, body ON events BEGIN
    INSERT INTO events_fts(events_fts, rowid, title, body) VALUES('delete', old.seq, old.title, old.body);
    INSERT INTO events_fts(rowid, title, body) VALUES (new.seq, new.title, new.body);
END;
CREATE TRIGGER IF NOT EXISTS events_fts_delete AFTER DELETE ON events BEGIN
    INSERT INTO events_fts(events_fts, rowid, title, body) VALUES('delete', old.seq, old.title, old.body);
END;
"""


class Database:
    def __init__(self, path: Optional[str] = None):
        """Open (and create if needed) the database.

        :param path: SQLite file path; ':memory:' for a throwaway database. Defaults to CATCHUP_DB.
        """
        self.path = path or DEFAULT_DB_PATH
        self.conn = sqlite3.connect(self.path, check_same_thread=False, isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._in_transaction = False
        self._init_db()

    def _init_db(self):
        with self._lock:
            self.conn.execute("PRAGMA foreign_keys = ON")
            try:
                self.conn.executescript(SQL_CREATE)
            except sqlite3.Error as ex:
                raise StoreError(f"failed to initialize database at {self.path}: {ex}") from ex

    def close(self):
        with self._lock:
            if self.conn is not None:
                self.conn.close()
                self.conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    @contextmanager
    def transaction(self):
        """BEGIN IMMEDIATE ... COMMIT, rolled back on any exception. Nested use joins the outer transaction."""
        with self._lock:
            if self._in_transaction:
                yield self.conn
                return
            self.conn.execute("BEGIN IMMEDIATE")
            self._in_transaction = True
            try:
                yield self.conn
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise
            else:
                self.conn.execute("COMMIT")
            finally:
                self._in_transaction = False

    def execute(self, sql: str, params: Iterable[Any] = ()) -> sqlite3.Cursor:
        with self._lock:
            return self.conn.execute(sql, tuple(params))

    def query(self, sql: str, params: Iterable[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, tuple(params)).fetchall()

    def query_one(self, sql: str, params: Iterable[Any] = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, tuple(params)).fetchone()


__all__ = ["Database", "DEFAULT_DB_PATH"]
