"""
Data models for sync cycle results.
"""
from datetime import datetime
from typing import List, Optional


class SyncSummary:
    """
    Represents the outcome of one sync cycle for a user.
    status is one of: ok, partial (some projects failed), failed, skipped (credentials rejected).
    """
    def __init__(self, user_id: str, started_at: Optional[datetime] = None):
        self.user_id = user_id
        self.started_at = started_at
        self.status = "ok"
        self.fetched = 0
        self.stored = 0
        self.skipped = 0
        self.failed = 0
        self.linked = 0
        self.unresolved = 0
        self.updated = 0
        self.watermark_advanced = False
        self.errors: List[str] = []

    def to_dict(self):
        return {
            "user_id": self.user_id,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "status": self.status,
            "fetched": self.fetched,
            "stored": self.stored,
            "skipped": self.skipped,
            "failed": self.failed,
            "linked": self.linked,
            "unresolved": self.unresolved,
            "updated": self.updated,
            "watermark_advanced": self.watermark_advanced,
            "errors": list(self.errors),
        }

    def __str__(self):
        lines = [
            f"User: {self.user_id}",
            f"Status: {self.status}",
            f"Fetched: {self.fetched}",
            f"Stored: {self.stored}",
            f"Skipped: {self.skipped}",
            f"Failed: {self.failed}",
            f"Linked: {self.linked}",
            f"Unresolved: {self.unresolved}",
            f"Updated Work Items: {self.updated}",
        ]
        lines.extend(f"Error: {e}" for e in self.errors)
        return "\n".join(lines)
