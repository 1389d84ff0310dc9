"""
Client-side guard against firing a second mark-as-read for an item while the first is in flight.
"""
import threading
from datetime import datetime
from typing import Optional

from readstate.markers import mark_as_read
from storage.db import Database


class PendingReads:
    def __init__(self):
        self._lock = threading.Lock()
        self._ids = set()

    def begin(self, item_id: str) -> bool:
        """Claim item_id; False when a call for it is already in flight."""
        with self._lock:
            if item_id in self._ids:
                return False
            self._ids.add(item_id)
            return True

    def end(self, item_id: str):
        with self._lock:
            self._ids.discard(item_id)

    def __contains__(self, item_id: str) -> bool:
        with self._lock:
            return item_id in self._ids


def mark_as_read_once(db: Database, user_id: str, item_id: str, pending: PendingReads, now: Optional[datetime] = None) -> Optional[datetime]:
    """mark_as_read unless the same item is already being marked; returns None for the suppressed call."""
    if not pending.begin(item_id):
        return None
    try:
        return mark_as_read(db, user_id, item_id, now=now)
    finally:
        pending.end(item_id)


__all__ = ["PendingReads", "mark_as_read_once"]
