"""
Bulk event storage with natural-key deduplication, plus the per-user sync watermark.
"""

import json
import uuid
import sqlite3
import logging
from datetime import datetime
from typing import List, Optional, Dict, Any, Sequence

from errors import StoreError
from normalize.models import Event
from normalize.util import format_timestamp, parse_timestamp
from storage.db import Database

logger = logging.getLogger(__name__)

STORE_BATCH_SIZE = 500

JSON_COLUMNS = ("labels", "assignees", "mentioned_ids", "closes_issue_ids", "participants")

COLUMNS = (
    "id", "user_id", "natural_key", "type", "status", "title", "body", "author", "author_avatar",
    "project", "project_id", "iid", "labels", "assignees", "url", "created_at", "parent_type",
    "remote_parent_id", "parent_event_id", "is_system_note", "mentioned_ids", "closes_issue_ids",
    "last_activity_at", "comment_count", "participants",
)

# noinspection SqlResolve
SQL_INSERT = (
    f"INSERT INTO events ({', '.join(COLUMNS)}) VALUES ({', '.join('?' for _ in COLUMNS)}) "
    "ON CONFLICT(user_id, natural_key) DO NOTHING"
)


class StoreResult:
    def __init__(self, stored: int = 0, skipped: int = 0):
        self.stored = stored
        self.skipped = skipped

    def __repr__(self):
        return f"StoreResult(stored={self.stored}, skipped={self.skipped})"


def new_event_id() -> str:
    return uuid.uuid4().hex


def event_to_row(event: Event, user_id: str) -> tuple:
    values = {
        "id": event.id or new_event_id(),
        "user_id": user_id,
        "natural_key": event.natural_key,
        "type": event.type,
        "status": event.status,
        "title": event.title,
        "body": event.body,
        "author": event.author,
        "author_avatar": event.author_avatar,
        "project": event.project,
        "project_id": event.project_id,
        "iid": event.iid,
        "labels": json.dumps(event.labels),
        "assignees": json.dumps(event.assignees),
        "url": event.url,
        "created_at": format_timestamp(event.created_at),
        "parent_type": event.parent_type,
        "remote_parent_id": event.remote_parent_id,
        "parent_event_id": event.parent_event_id,
        "is_system_note": 1 if event.is_system_note else 0,
        "mentioned_ids": json.dumps(event.mentioned_ids),
        "closes_issue_ids": json.dumps(event.closes_issue_ids),
        "last_activity_at": format_timestamp(event.last_activity_at),
        "comment_count": event.comment_count,
        "participants": json.dumps(event.participants) if event.participants is not None else None,
    }
    return tuple(values[c] for c in COLUMNS)


def _loads(raw: Optional[str]):
    return json.loads(raw) if raw is not None else None


def row_to_event(row: sqlite3.Row) -> Event:
    return Event(
        id=row["id"],
        user_id=row["user_id"],
        natural_key=row["natural_key"],
        type=row["type"],
        status=row["status"],
        title=row["title"],
        body=row["body"],
        author=row["author"],
        author_avatar=row["author_avatar"],
        project=row["project"],
        project_id=row["project_id"],
        iid=row["iid"],
        labels=_loads(row["labels"]),
        assignees=_loads(row["assignees"]),
        url=row["url"],
        created_at=parse_timestamp(row["created_at"]),
        parent_type=row["parent_type"],
        remote_parent_id=row["remote_parent_id"],
        parent_event_id=row["parent_event_id"],
        is_system_note=bool(row["is_system_note"]),
        mentioned_ids=_loads(row["mentioned_ids"]),
        closes_issue_ids=_loads(row["closes_issue_ids"]),
        last_activity_at=parse_timestamp(row["last_activity_at"]),
        comment_count=row["comment_count"],
        participants=_loads(row["participants"]),
    )


def row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    """Plain dict for listings; JSON columns decoded, is_system_note as bool."""
    d = {k: row[k] for k in row.keys()}
    for col in JSON_COLUMNS:
        if col in d:
            d[col] = _loads(d[col])
    if "is_system_note" in d:
        d["is_system_note"] = bool(d["is_system_note"])
    d.pop("seq", None)
    return d


def store_events(db: Database, user_id: str, events: Sequence[Event], batch_size: int = STORE_BATCH_SIZE) -> StoreResult:
    """Insert events, skipping any whose natural key this user already has.

    All batches run in one transaction; any database error rolls back and is raised as StoreError.
    """
    result = StoreResult()
    if not events:
        return result
    try:
        with db.transaction() as conn:
            for start in range(0, len(events), batch_size):
                batch = events[start:start + batch_size]
                for ev in batch:
                    cur = conn.execute(SQL_INSERT, event_to_row(ev, user_id))
                    if cur.rowcount == 1:
                        result.stored += 1
                    else:
                        result.skipped += 1
                logger.debug("stored batch of %d for %s (%d new so far)", len(batch), user_id, result.stored)
    except sqlite3.Error as ex:
        logger.error("storing %d events for %s failed: %s", len(events), user_id, ex)
        raise StoreError(f"failed to store events: {ex}") from ex
    logger.info("stored %d new events for %s, skipped %d duplicates", result.stored, user_id, result.skipped)
    return result


# noinspection SqlResolve
def get_event(db: Database, user_id: str, event_id: str) -> Optional[Event]:
    row = db.query_one("SELECT * FROM events WHERE user_id = ? AND id = ?", (user_id, event_id))
    return row_to_event(row) if row else None


# noinspection SqlResolve
def get_event_by_natural_key(db: Database, user_id: str, natural_key: str) -> Optional[Event]:
    row = db.query_one("SELECT * FROM events WHERE user_id = ? AND natural_key = ?", (user_id, natural_key))
    return row_to_event(row) if row else None


# noinspection SqlResolve
def count_events(db: Database, user_id: str) -> int:
    row = db.query_one("SELECT COUNT(1) FROM events WHERE user_id = ?", (user_id,))
    return int(row[0] or 0)


# noinspection SqlResolve
def get_last_sync(db: Database, user_id: str) -> Optional[datetime]:
    row = db.query_one("SELECT last_sync_at FROM sync_state WHERE user_id = ?", (user_id,))
    return parse_timestamp(row["last_sync_at"]) if row else None


# noinspection SqlResolve
def set_last_sync(db: Database, user_id: str, when: datetime):
    db.execute(
        "INSERT INTO sync_state(user_id, last_sync_at) VALUES (?, ?) "
        "ON CONFLICT(user_id) DO UPDATE SET last_sync_at = excluded.last_sync_at",
        (user_id, format_timestamp(when)),
    )


# noinspection SqlResolve
def wipe_user(db: Database, user_id: str) -> int:
    """Delete every row owned by user_id. Returns the number of events removed."""
    try:
        with db.transaction() as conn:
            conn.execute("DELETE FROM read_markers WHERE user_id = ?", (user_id,))
            conn.execute("DELETE FROM sync_state WHERE user_id = ?", (user_id,))
            cur = conn.execute("DELETE FROM events WHERE user_id = ?", (user_id,))
            removed = cur.rowcount
    except sqlite3.Error as ex:
        raise StoreError(f"failed to wipe data for {user_id}: {ex}") from ex
    logger.info("wiped %d events for %s", removed, user_id)
    return removed


__all__ = [
    "StoreResult", "store_events", "get_event", "get_event_by_natural_key", "count_events",
    "get_last_sync", "set_last_sync", "wipe_user", "row_to_event", "row_to_dict", "event_to_row",
]
