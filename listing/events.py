"""
Chronological event feed, newest first, cursor-paginated.
"""
from typing import Dict, Any, Optional

from pagination.cursor import cursor_clause, decode_cursor, next_cursor
from search.fts import clamp_limit
from storage.db import Database
from storage.events import row_to_dict


# noinspection SqlResolve
def list_events(
    db: Database,
    user_id: str,
    cursor: Optional[str] = None,
    limit: Optional[int] = 20,
    event_type: Optional[str] = None,
    label: Optional[str] = None,
) -> Dict[str, Any]:
    size = clamp_limit(limit)
    clause, params = cursor_clause(decode_cursor(cursor), "e.created_at", "e.id")
    where = ["e.user_id = ?", clause]
    args = [user_id, *params]
    if event_type:
        where.append("e.type = ?")
        args.append(event_type)
    if label:
        where.append("EXISTS (SELECT 1 FROM json_each(e.labels) WHERE json_each.value = ?)")
        args.append(label)
    rows = db.query(
        f"SELECT e.* FROM events e WHERE {' AND '.join(where)} ORDER BY e.created_at DESC, e.id DESC LIMIT ?",
        [*args, size + 1],
    )
    page, has_more, token = next_cursor(rows, size, "created_at")
    return {"items": [row_to_dict(r) for r in page], "has_more": has_more, "next_cursor": token}


__all__ = ["list_events"]
