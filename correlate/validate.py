"""
Relationship validation: recompute derived relationship fields from stored rows and report drift.
"""
import json
import logging
from typing import List, Dict, Any

from correlate.linker import aggregate_children
from correlate.models import ValidationReport
from normalize.references import extract_mentions, parse_closes
from storage.db import Database

logger = logging.getLogger(__name__)


def _mismatch(row, field: str, stored, expected) -> Dict[str, Any]:
    return {"event_id": row["id"], "natural_key": row["natural_key"], "field": field, "stored": stored, "expected": expected}


# noinspection SqlResolve
def _check_item(db: Database, user_id: str, row) -> List[Dict[str, Any]]:
    found = []
    expected_closes = parse_closes(row["body"]) if row["type"] == "merge_request" else []
    stored_closes = json.loads(row["closes_issue_ids"])
    if sorted(stored_closes) != sorted(expected_closes):
        found.append(_mismatch(row, "closes_issue_ids", stored_closes, expected_closes))

    expected_mentions = extract_mentions(row["body"])
    stored_mentions = json.loads(row["mentioned_ids"])
    if sorted(stored_mentions) != sorted(expected_mentions):
        found.append(_mismatch(row, "mentioned_ids", stored_mentions, expected_mentions))

    children = db.query(
        "SELECT author, created_at, is_system_note FROM events WHERE user_id = ? AND parent_event_id = ? ORDER BY created_at, seq",
        (user_id, row["id"]),
    )
    agg = aggregate_children(row["author"], children)
    if row["comment_count"] != agg["comment_count"]:
        found.append(_mismatch(row, "comment_count", row["comment_count"], agg["comment_count"]))
    stored_participants = json.loads(row["participants"]) if row["participants"] is not None else None
    if stored_participants != agg["participants"]:
        found.append(_mismatch(row, "participants", stored_participants, agg["participants"]))
    return found


# noinspection SqlResolve
def _misparented_children(db: Database, user_id: str) -> List[Dict[str, Any]]:
    """Linked children whose parent's natural key does not match their remote parent reference."""
    rows = db.query(
        "SELECT c.id, c.natural_key, c.parent_type, c.remote_parent_id, p.natural_key AS parent_key "
        "FROM events c JOIN events p ON p.id = c.parent_event_id "
        "WHERE c.user_id = ? AND c.parent_event_id IS NOT NULL",
        (user_id,),
    )
    found = []
    for r in rows:
        prefix = "issue" if r["parent_type"] == "issue" else "mr"
        expected = f"{prefix}-{r['remote_parent_id']}"
        if r["parent_key"] != expected:
            found.append(_mismatch(r, "parent_event_id", r["parent_key"], expected))
    return found


# noinspection SqlResolve
def validate_relationships(db: Database, user_id: str, sample_size: int = 20) -> ValidationReport:
    """Check up to sample_size top-level items (most recent first) plus every parent link."""
    items = db.query(
        "SELECT * FROM events WHERE user_id = ? AND type IN ('issue', 'merge_request') AND parent_event_id IS NULL "
        "ORDER BY created_at DESC, id DESC LIMIT ?",
        (user_id, sample_size),
    )
    report = ValidationReport(checked=len(items))
    for row in items:
        report.mismatches.extend(_check_item(db, user_id, row))
    report.mismatches.extend(_misparented_children(db, user_id))
    unlinked = db.query_one(
        "SELECT COUNT(1) FROM events WHERE user_id = ? AND remote_parent_id IS NOT NULL AND parent_event_id IS NULL",
        (user_id,),
    )
    report.unlinked_comments = int(unlinked[0] or 0)
    if report.mismatches:
        logger.warning("%d relationship mismatch(es) for %s", len(report.mismatches), user_id)
    return report


__all__ = ["validate_relationships"]
