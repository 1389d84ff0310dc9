"""
Pydantic models for the GitLab API v4 payloads the fetcher consumes.
Only the fields the normalizer reads are declared; everything else GitLab sends is ignored.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class RemoteUser(BaseModel):
    model_config = ConfigDict(extra='ignore')

    username: str
    avatar_url: Optional[str] = None


class RemoteIssue(BaseModel):
    model_config = ConfigDict(extra='ignore')

    id: int
    iid: int
    project_id: int
    title: str
    description: Optional[str] = None
    state: str
    author: RemoteUser
    assignees: List[RemoteUser] = Field(default_factory=list)
    labels: List[str] = Field(default_factory=list)
    web_url: str
    created_at: datetime
    updated_at: datetime


class RemoteMergeRequest(RemoteIssue):
    """Merge requests share the issue shape; state may also be 'merged' or 'locked'."""


class RemoteNote(BaseModel):
    model_config = ConfigDict(extra='ignore')

    id: int
    body: str = ''
    author: RemoteUser
    system: bool = False
    noteable_id: int
    noteable_type: str
    created_at: datetime
    # not part of the notes payload; attached by the fetcher from the parent item
    project_id: Optional[int] = None
    web_url: Optional[str] = None


class RemoteProject(BaseModel):
    model_config = ConfigDict(extra='ignore')

    id: int
    name: str
    path_with_namespace: str


__all__ = ["RemoteUser", "RemoteIssue", "RemoteMergeRequest", "RemoteNote", "RemoteProject"]
