"""
Read-state package: derived unread flags and read markers for work items.
"""

from .markers import is_unread, mark_as_read, mark_many_as_read, clear_read_status, unread_count
from .pending import PendingReads, mark_as_read_once

__all__ = ["is_unread", "mark_as_read", "mark_many_as_read", "clear_read_status", "unread_count", "PendingReads", "mark_as_read_once"]
