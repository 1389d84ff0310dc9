"""
Unified event model shared by ingestion, storage, linking and retrieval.
"""

from datetime import datetime
from typing import List, Optional, Dict, Any

EVENT_TYPES = ("issue", "merge_request", "comment")
TOP_LEVEL_TYPES = ("issue", "merge_request")
STATUSES = ("open", "closed", "merged")


class Event:
    """
    Normalized issue, merge request or comment.

    natural_key is derived from the remote type and id ("issue-42", "mr-99", "note-7") and is unique per user.
    parent_event_id and the aggregated fields (last_activity_at, comment_count, participants) are owned by the linker.
    """

    def __init__(
        self,
        natural_key: str,
        type: str,
        title: str,
        author: str,
        project: str,
        project_id: str,
        url: str,
        created_at: datetime,
        body: Optional[str] = None,
        author_avatar: Optional[str] = None,
        status: Optional[str] = None,
        iid: Optional[int] = None,
        labels: Optional[List[str]] = None,
        assignees: Optional[List[str]] = None,
        parent_type: Optional[str] = None,
        remote_parent_id: Optional[int] = None,
        parent_event_id: Optional[str] = None,
        is_system_note: bool = False,
        mentioned_ids: Optional[List[int]] = None,
        closes_issue_ids: Optional[List[int]] = None,
        last_activity_at: Optional[datetime] = None,
        comment_count: Optional[int] = None,
        participants: Optional[List[str]] = None,
        id: Optional[str] = None,
        user_id: Optional[str] = None,
    ):
        if type not in EVENT_TYPES:
            raise ValueError(f"unknown event type: {type}")
        if status is not None and status not in STATUSES:
            raise ValueError(f"unknown status: {status}")
        self.id = id
        self.user_id = user_id
        self.natural_key = natural_key
        self.type = type
        self.status = status
        self.title = title
        self.body = body
        self.author = author
        self.author_avatar = author_avatar
        self.project = project
        self.project_id = project_id
        self.iid = iid
        self.labels = labels or []
        self.assignees = assignees or []
        self.url = url
        self.created_at = created_at
        self.parent_type = parent_type  # issue / merge_request for comments
        self.remote_parent_id = remote_parent_id
        self.parent_event_id = parent_event_id
        self.is_system_note = is_system_note
        self.mentioned_ids = mentioned_ids or []
        self.closes_issue_ids = closes_issue_ids or []
        self.last_activity_at = last_activity_at
        self.comment_count = comment_count
        self.participants = participants

    @property
    def is_top_level(self) -> bool:
        return self.type in TOP_LEVEL_TYPES and self.parent_event_id is None

    def to_dict(self) -> Dict[str, Any]:
        d = dict(self.__dict__)
        for key in ("created_at", "last_activity_at"):
            if isinstance(d.get(key), datetime):
                d[key] = d[key].isoformat()
        return d

    def __repr__(self):
        return f"Event(natural_key={self.natural_key!r}, type={self.type!r}, id={self.id!r})"


def embedding_input(event: Event) -> Dict[str, Optional[str]]:
    """The only data the similarity/embedding collaborator consumes."""
    return {"title": event.title, "body": event.body}
