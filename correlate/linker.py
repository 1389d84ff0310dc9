"""
Relationship linker: resolves comment -> parent pointers and recomputes activity aggregates.
Two idempotent passes, safe to re-run after every sync:
- phase 1 maps each child's remote parent id to the parent's internal id via the natural key
- phase 2 recomputes last_activity_at / comment_count / participants for top-level items from scratch
Children whose parent has not been ingested yet stay unlinked until a later pass.
"""
import json
import logging
import sqlite3
from typing import List, Dict

from correlate.models import LinkResult
from errors import StoreError
from normalize.util import parent_natural_key
from storage.db import Database

logger = logging.getLogger(__name__)

LINK_BATCH_SIZE = 100
AGGREGATE_BATCH_SIZE = 50


def _placeholders(n: int) -> str:
    return ", ".join("?" for _ in range(n))


# helper: children still waiting for a parent pointer
# noinspection SqlResolve
def _unlinked_children(db: Database, user_id: str, after_seq: int, batch_size: int) -> List[sqlite3.Row]:
    return db.query(
        "SELECT seq, id, natural_key, parent_type, remote_parent_id FROM events "
        "WHERE user_id = ? AND remote_parent_id IS NOT NULL AND parent_event_id IS NULL AND seq > ? "
        "ORDER BY seq LIMIT ?",
        (user_id, after_seq, batch_size),
    )


# helper: one lookup for every parent key in a batch
# noinspection SqlResolve
def _parent_ids_by_key(db: Database, user_id: str, keys: List[str]) -> Dict[str, str]:
    if not keys:
        return {}
    rows = db.query(
        f"SELECT natural_key, id FROM events WHERE user_id = ? AND type IN ('issue', 'merge_request') "
        f"AND natural_key IN ({_placeholders(len(keys))})",
        [user_id, *keys],
    )
    return {r["natural_key"]: r["id"] for r in rows}


def link_parent_events(db: Database, user_id: str, batch_size: int = LINK_BATCH_SIZE) -> LinkResult:
    """Phase 1: set parent_event_id for every child whose parent is now stored."""
    result = LinkResult()
    after_seq = 0
    try:
        while True:
            children = _unlinked_children(db, user_id, after_seq, batch_size)
            if not children:
                break
            after_seq = children[-1]["seq"]
            expected = {c["id"]: parent_natural_key(c["parent_type"], c["remote_parent_id"]) for c in children}
            parents = _parent_ids_by_key(db, user_id, sorted(set(expected.values())))
            updates = []
            for child in children:
                parent_id = parents.get(expected[child["id"]])
                if parent_id is None:
                    result.unresolved += 1
                    result.unresolved_keys.append(child["natural_key"])
                    logger.debug("parent %s not found for %s; deferring", expected[child["id"]], child["natural_key"])
                    continue
                updates.append((parent_id, user_id, child["id"]))
            if updates:
                with db.transaction() as conn:
                    conn.executemany("UPDATE events SET parent_event_id = ? WHERE user_id = ? AND id = ?", updates)
                result.linked += len(updates)
    except sqlite3.Error as ex:
        raise StoreError(f"parent linking failed: {ex}") from ex
    if result.unresolved:
        logger.info("%d child event(s) for %s still awaiting their parent", result.unresolved, user_id)
    logger.info("linked %d child event(s) for %s", result.linked, user_id)
    return result


def aggregate_children(author: str, children: List[sqlite3.Row]) -> Dict[str, object]:
    """Aggregate fields for one top-level item; children must be in chronological order.

    System notes count as activity but not as conversation.
    """
    last_activity = max((c["created_at"] for c in children), default=None)
    human = [c for c in children if not c["is_system_note"]]
    participants: List[str] = [author]
    for c in human:
        if c["author"] not in participants:
            participants.append(c["author"])
    return {"last_activity_at": last_activity, "comment_count": len(human), "participants": participants}


# noinspection SqlResolve
def _top_level_batch(db: Database, user_id: str, after_seq: int, batch_size: int) -> List[sqlite3.Row]:
    return db.query(
        "SELECT seq, id, author FROM events WHERE user_id = ? AND type IN ('issue', 'merge_request') "
        "AND seq > ? ORDER BY seq LIMIT ?",
        (user_id, after_seq, batch_size),
    )


# noinspection SqlResolve
def _children_by_parent(db: Database, user_id: str, parent_ids: List[str]) -> Dict[str, List[sqlite3.Row]]:
    rows = db.query(
        f"SELECT parent_event_id, author, created_at, is_system_note FROM events "
        f"WHERE user_id = ? AND parent_event_id IN ({_placeholders(len(parent_ids))}) "
        f"ORDER BY created_at, seq",
        [user_id, *parent_ids],
    )
    grouped: Dict[str, List[sqlite3.Row]] = {pid: [] for pid in parent_ids}
    for r in rows:
        grouped[r["parent_event_id"]].append(r)
    return grouped


def update_activity_metadata(db: Database, user_id: str, batch_size: int = AGGREGATE_BATCH_SIZE) -> int:
    """Phase 2: recompute aggregates for every top-level item. Returns the number of items updated."""
    updated = 0
    after_seq = 0
    try:
        while True:
            items = _top_level_batch(db, user_id, after_seq, batch_size)
            if not items:
                break
            after_seq = items[-1]["seq"]
            grouped = _children_by_parent(db, user_id, [i["id"] for i in items])
            updates = []
            for item in items:
                agg = aggregate_children(item["author"], grouped[item["id"]])
                updates.append((agg["last_activity_at"], agg["comment_count"], json.dumps(agg["participants"]), user_id, item["id"]))
            with db.transaction() as conn:
                conn.executemany(
                    "UPDATE events SET last_activity_at = ?, comment_count = ?, participants = ? WHERE user_id = ? AND id = ?",
                    updates,
                )
            updated += len(updates)
    except sqlite3.Error as ex:
        raise StoreError(f"activity aggregation failed: {ex}") from ex
    logger.info("updated activity metadata for %d work item(s) of %s", updated, user_id)
    return updated


def run_linker(db: Database, user_id: str) -> Dict[str, object]:
    """Link parents, then aggregate. Returns {'link': LinkResult, 'updated': int}."""
    link = link_parent_events(db, user_id)
    updated = update_activity_metadata(db, user_id)
    return {"link": link, "updated": updated}


__all__ = ["link_parent_events", "update_activity_metadata", "run_linker", "aggregate_children"]
