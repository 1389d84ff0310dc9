"""
Per-user read/unread state for top-level work items.

Unread-ness is never stored. It is derived from two timestamps:
- no marker: unread
- marker and no activity: read
- marker and activity: unread only when last_activity_at is strictly after read_at
"""
import logging
import sqlite3
from datetime import datetime
from typing import Optional, Iterable, List

from errors import NotFoundError, StoreError
from normalize.util import format_timestamp, parse_timestamp, utcnow
from storage.db import Database

logger = logging.getLogger(__name__)


def is_unread(last_activity_at: Optional[datetime], read_at: Optional[datetime]) -> bool:
    if read_at is None:
        return True
    if last_activity_at is None:
        return False
    return last_activity_at > read_at


# SQL form of is_unread over events e LEFT JOIN read_markers m; timestamps are fixed-width text
UNREAD_SQL = "(m.read_at IS NULL OR (e.last_activity_at IS NOT NULL AND e.last_activity_at > m.read_at))"

# noinspection SqlResolve
SQL_UPSERT_MARKER = (
    "INSERT INTO read_markers(user_id, event_id, read_at) VALUES (?, ?, ?) "
    "ON CONFLICT(user_id, event_id) DO UPDATE SET read_at = excluded.read_at"
)


def _placeholders(n: int) -> str:
    return ", ".join("?" for _ in range(n))


# noinspection SqlResolve
def _owned_top_level(conn, user_id: str, item_ids: List[str]) -> List[str]:
    rows = conn.execute(
        f"SELECT id FROM events WHERE user_id = ? AND type IN ('issue', 'merge_request') "
        f"AND parent_event_id IS NULL AND id IN ({_placeholders(len(item_ids))})",
        [user_id, *item_ids],
    ).fetchall()
    return [r["id"] for r in rows]


def mark_as_read(db: Database, user_id: str, item_id: str, now: Optional[datetime] = None) -> datetime:
    """Record that user_id has seen item_id as of now. Raises NotFoundError for anything but an owned work item."""
    read_at = now or utcnow()
    try:
        with db.transaction() as conn:
            if not _owned_top_level(conn, user_id, [item_id]):
                raise NotFoundError(f"work item {item_id} not found")
            conn.execute(SQL_UPSERT_MARKER, (user_id, item_id, format_timestamp(read_at)))
    except sqlite3.Error as ex:
        raise StoreError(f"failed to mark {item_id} as read: {ex}") from ex
    return read_at


def mark_many_as_read(db: Database, user_id: str, item_ids: Iterable[str], now: Optional[datetime] = None) -> int:
    """Mark several items read in one transaction. Ids that are not owned work items are dropped.

    Returns the number of markers written.
    """
    ids = list(dict.fromkeys(item_ids))
    if not ids:
        return 0
    read_at = format_timestamp(now or utcnow())
    try:
        with db.transaction() as conn:
            valid = _owned_top_level(conn, user_id, ids)
            conn.executemany(SQL_UPSERT_MARKER, [(user_id, item_id, read_at) for item_id in valid])
    except sqlite3.Error as ex:
        raise StoreError(f"failed to mark items as read: {ex}") from ex
    if len(valid) < len(ids):
        logger.debug("dropped %d unknown item id(s) for %s", len(ids) - len(valid), user_id)
    return len(valid)


# noinspection SqlResolve
def clear_read_status(db: Database, user_id: str, item_id: str) -> int:
    """Remove the marker so the item reads as never seen. Returns the number of rows deleted."""
    try:
        cur = db.execute("DELETE FROM read_markers WHERE user_id = ? AND event_id = ?", (user_id, item_id))
    except sqlite3.Error as ex:
        raise StoreError(f"failed to clear read status for {item_id}: {ex}") from ex
    return cur.rowcount


# noinspection SqlResolve
def get_read_at(db: Database, user_id: str, item_id: str) -> Optional[datetime]:
    row = db.query_one("SELECT read_at FROM read_markers WHERE user_id = ? AND event_id = ?", (user_id, item_id))
    return parse_timestamp(row["read_at"]) if row else None


# noinspection SqlResolve
def unread_count(db: Database, user_id: str) -> int:
    row = db.query_one(
        "SELECT COUNT(1) FROM events e LEFT JOIN read_markers m ON m.event_id = e.id AND m.user_id = e.user_id "
        f"WHERE e.user_id = ? AND e.type IN ('issue', 'merge_request') AND e.parent_event_id IS NULL AND {UNREAD_SQL}",
        (user_id,),
    )
    return int(row[0] or 0)


__all__ = ["is_unread", "mark_as_read", "mark_many_as_read", "clear_read_status", "get_read_at", "unread_count", "UNREAD_SQL"]
