"""
Ranked keyword search over a user's events using the SQLite FTS5 index (events_fts).
Keywords are tokenized and AND-joined; every token is quoted so user input can never
reach FTS5 query syntax.
"""
import re
import logging
import sqlite3
from typing import List, Dict, Any, Optional, Iterable

from errors import SearchError
from pagination.cursor import cursor_clause, decode_cursor, next_cursor
from storage.db import Database
from storage.events import row_to_dict

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 20
MAX_LIMIT = 100

TOKEN_PATTERN = re.compile(r"\w+", re.UNICODE)
FTS_OPERATORS = {"AND", "OR", "NOT", "NEAR"}

MARK_OPEN = "<mark>"
MARK_CLOSE = "</mark>"


def build_match_query(keywords: Iterable[str]) -> str:
    """Build an FTS5 MATCH expression; '' when no usable token remains."""
    tokens: List[str] = []
    for keyword in keywords or []:
        for token in TOKEN_PATTERN.findall(keyword or ""):
            if token.upper() in FTS_OPERATORS:
                continue
            tokens.append(f'"{token}"')
    return " AND ".join(tokens)


def clamp_limit(limit: Optional[int]) -> int:
    if not limit or limit < 1:
        return DEFAULT_LIMIT
    return min(int(limit), MAX_LIMIT)


def _empty_page() -> Dict[str, Any]:
    return {"items": [], "has_more": False, "next_cursor": None}


# noinspection SqlResolve
def search_events(
    db: Database,
    user_id: str,
    keywords: Iterable[str],
    cursor: Optional[str] = None,
    limit: Optional[int] = DEFAULT_LIMIT,
) -> Dict[str, Any]:
    """Return {items, has_more, next_cursor}; items ordered by relevance, then recency.

    The cursor only carries (created_at, id), so a page boundary can skip or repeat a row whose
    rank differs from its neighbours; owner scoping is applied independently of the cursor.
    """
    match = build_match_query(keywords)
    if not match:
        return _empty_page()
    size = clamp_limit(limit)
    clause, clause_params = cursor_clause(decode_cursor(cursor), "e.created_at", "e.id")
    sql = (
        "SELECT e.*, -bm25(events_fts) AS rank, "
        f"snippet(events_fts, 0, '{MARK_OPEN}', '{MARK_CLOSE}', '...', 16) AS highlighted_title, "
        f"snippet(events_fts, 1, '{MARK_OPEN}', '{MARK_CLOSE}', '...', 48) AS highlighted_snippet "
        "FROM events_fts JOIN events e ON e.seq = events_fts.rowid "
        f"WHERE events_fts MATCH ? AND e.user_id = ? AND {clause} "
        "ORDER BY bm25(events_fts) ASC, e.created_at DESC, e.id DESC LIMIT ?"
    )
    try:
        rows = db.query(sql, [match, user_id, *clause_params, size + 1])
    except sqlite3.Error as ex:
        logger.error("search failed for %r: %s", match, ex)
        raise SearchError(f"search failed: {ex}") from ex
    page, has_more, next_token = next_cursor(rows, size, "created_at")
    return {"items": [row_to_dict(r) for r in page], "has_more": has_more, "next_cursor": next_token}


# noinspection SqlResolve
def count_search_results(db: Database, user_id: str, keywords: Iterable[str]) -> int:
    match = build_match_query(keywords)
    if not match:
        return 0
    try:
        row = db.query_one(
            "SELECT COUNT(1) FROM events_fts JOIN events e ON e.seq = events_fts.rowid "
            "WHERE events_fts MATCH ? AND e.user_id = ?",
            (match, user_id),
        )
    except sqlite3.Error as ex:
        raise SearchError(f"search count failed: {ex}") from ex
    return int(row[0] or 0)


__all__ = ["build_match_query", "search_events", "count_search_results", "DEFAULT_LIMIT", "MAX_LIMIT"]
