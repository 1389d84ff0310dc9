"""
Work-item (issue / merge request) listings and detail views with derived unread state.
"""
import logging
from typing import Dict, Any, Optional, List, Sequence

from errors import NotFoundError
from normalize.util import parse_timestamp
from pagination.cursor import cursor_clause, decode_cursor, next_cursor
from readstate.markers import UNREAD_SQL, is_unread
from search.fts import clamp_limit
from storage.db import Database
from storage.events import row_to_dict

logger = logging.getLogger(__name__)

SORT_EXPR = "COALESCE(e.last_activity_at, e.created_at)"

# noinspection SqlResolve
BASE_SELECT = (
    f"SELECT e.*, m.read_at AS last_read_at, {SORT_EXPR} AS sort_at "
    "FROM events e LEFT JOIN read_markers m ON m.event_id = e.id AND m.user_id = e.user_id"
)


def _in_clause(column: str, values: Sequence[str]):
    return f"{column} IN ({', '.join('?' for _ in values)})", list(values)


def _with_unread(row) -> Dict[str, Any]:
    item = row_to_dict(row)
    item["is_unread"] = is_unread(parse_timestamp(row["last_activity_at"]), parse_timestamp(row["last_read_at"]))
    return item


def list_work_items(
    db: Database,
    user_id: str,
    cursor: Optional[str] = None,
    limit: Optional[int] = 20,
    statuses: Optional[Sequence[str]] = None,
    types: Optional[Sequence[str]] = None,
    projects: Optional[Sequence[str]] = None,
    unread_only: bool = False,
) -> Dict[str, Any]:
    """Top-level items by latest activity (falling back to creation), newest first."""
    size = clamp_limit(limit)
    clause, params = cursor_clause(decode_cursor(cursor), SORT_EXPR, "e.id")
    where = ["e.user_id = ?", "e.type IN ('issue', 'merge_request')", "e.parent_event_id IS NULL", clause]
    args: List[Any] = [user_id, *params]
    for column, values in (("e.status", statuses), ("e.type", types), ("e.project_id", projects)):
        if values:
            sql, vals = _in_clause(column, values)
            where.append(sql)
            args.extend(vals)
    if unread_only:
        where.append(UNREAD_SQL)
    rows = db.query(
        f"{BASE_SELECT} WHERE {' AND '.join(where)} ORDER BY sort_at DESC, e.id DESC LIMIT ?",
        [*args, size + 1],
    )
    page, has_more, token = next_cursor(rows, size, "sort_at")
    items = [_with_unread(r) for r in page]
    for item in items:
        item.pop("sort_at", None)
    return {
        "items": items,
        "has_more": has_more,
        "next_cursor": token,
        "unread_count": sum(1 for i in items if i["is_unread"]),
    }


# noinspection SqlResolve
def _related_items(db: Database, user_id: str, item: Dict[str, Any]) -> Dict[str, List[Dict[str, Any]]]:
    related = {"closes": [], "closed_by": [], "mentioned": []}
    project_id = item["project_id"]
    closes = item.get("closes_issue_ids") or []
    if closes:
        sql, vals = _in_clause("iid", closes)
        rows = db.query(
            f"SELECT * FROM events WHERE user_id = ? AND project_id = ? AND type = 'issue' AND {sql} ORDER BY iid",
            [user_id, project_id, *vals],
        )
        related["closes"] = [row_to_dict(r) for r in rows]
    if item["type"] == "issue" and item.get("iid") is not None:
        rows = db.query(
            "SELECT * FROM events WHERE user_id = ? AND project_id = ? AND type = 'merge_request' "
            "AND EXISTS (SELECT 1 FROM json_each(closes_issue_ids) WHERE json_each.value = ?) ORDER BY created_at",
            (user_id, project_id, item["iid"]),
        )
        related["closed_by"] = [row_to_dict(r) for r in rows]
    mentioned = [i for i in (item.get("mentioned_ids") or []) if i != item.get("iid")]
    if mentioned:
        sql, vals = _in_clause("iid", mentioned)
        rows = db.query(
            f"SELECT * FROM events WHERE user_id = ? AND project_id = ? AND type IN ('issue', 'merge_request') AND {sql} ORDER BY iid",
            [user_id, project_id, *vals],
        )
        related["mentioned"] = [row_to_dict(r) for r in rows]
    return related


# noinspection SqlResolve
def get_work_item(db: Database, user_id: str, item_id: str, include_related: bool = True) -> Dict[str, Any]:
    """Return {item, activities, related_items}; raises NotFoundError for unknown or foreign ids."""
    row = db.query_one(
        f"{BASE_SELECT} WHERE e.user_id = ? AND e.id = ? AND e.type IN ('issue', 'merge_request') AND e.parent_event_id IS NULL",
        (user_id, item_id),
    )
    if row is None:
        raise NotFoundError(f"work item {item_id} not found")
    item = _with_unread(row)
    item.pop("sort_at", None)
    read_at = parse_timestamp(row["last_read_at"])
    children = db.query(
        "SELECT * FROM events WHERE user_id = ? AND parent_event_id = ? ORDER BY created_at, seq",
        (user_id, item_id),
    )
    activities = []
    for child in children:
        activity = row_to_dict(child)
        activity["is_unread"] = is_unread(parse_timestamp(child["created_at"]), read_at)
        activities.append(activity)
    related = _related_items(db, user_id, item) if include_related else {"closes": [], "closed_by": [], "mentioned": []}
    return {"item": item, "activities": activities, "related_items": related}


__all__ = ["list_work_items", "get_work_item"]
