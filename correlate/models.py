"""
Result records for the relationship linker and the relationship validator.
"""

from typing import List, Dict, Any


class LinkResult:
    """
    Outcome of one parent-linking pass.
    """

    def __init__(self, linked: int = 0, unresolved: int = 0, unresolved_keys: List[str] = None):
        self.linked = linked
        self.unresolved = unresolved
        self.unresolved_keys = unresolved_keys or []

    def __str__(self):
        return f"Linked: {self.linked}\nUnresolved: {self.unresolved}"


class ValidationReport:
    """
    Mismatches between stored relationship fields and values recomputed from stored rows.
    Each mismatch is a dict with 'event_id', 'natural_key', 'field', 'stored' and 'expected'.
    """

    def __init__(self, checked: int = 0, mismatches: List[Dict[str, Any]] = None, unlinked_comments: int = 0):
        self.checked = checked
        self.mismatches = mismatches or []
        self.unlinked_comments = unlinked_comments

    @property
    def ok(self) -> bool:
        return not self.mismatches

    def __str__(self):
        lines = [
            f"Checked: {self.checked}",
            f"Mismatches: {len(self.mismatches)}",
            f"Unlinked comments: {self.unlinked_comments}",
        ]
        for m in self.mismatches:
            lines.append(f"  {m['natural_key']} {m['field']}: stored={m['stored']!r} expected={m['expected']!r}")
        return "\n".join(lines)
