"""
Correlate package: expose linker functionality for resolving parent links and activity aggregates.
"""

from .linker import link_parent_events, update_activity_metadata, run_linker
from .validate import validate_relationships

__all__ = ["link_parent_events", "update_activity_metadata", "run_linker", "validate_relationships"]
