"""
Normalization utility helpers.
Small helpers to normalize validated GitLab payloads into normalize.models.Event entities.
"""
from datetime import datetime, timezone
from typing import Dict, List, Optional

from ingest.schemas import RemoteIssue, RemoteMergeRequest, RemoteNote, RemoteProject
from normalize.models import Event
from normalize.references import comment_title, extract_mentions, parse_closes

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

ISSUE_STATUS = {"opened": "open", "closed": "closed", "locked": "open"}
MR_STATUS = {"opened": "open", "closed": "closed", "merged": "merged", "locked": "open"}

NOTEABLE_PARENT = {"Issue": "issue", "MergeRequest": "merge_request"}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value) -> Optional[datetime]:
    """Parse an ISO-8601 string (GitLab's 'Z' suffix included) into an aware UTC datetime."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC text; lexical order equals chronological order."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def _project_display(project_id: int, projects: Dict[int, RemoteProject]):
    """Return (display name, project id string); falls back to the numeric id when info is missing."""
    info = projects.get(project_id)
    if info is None:
        return f"Project {project_id}", str(project_id)
    return info.name, info.path_with_namespace


def normalize_issue(raw: RemoteIssue, projects: Optional[Dict[int, RemoteProject]] = None) -> Event:
    """Create a normalized Event from a GitLab issue. Issues never populate closes_issue_ids."""
    project, project_id = _project_display(raw.project_id, projects or {})
    return Event(
        natural_key=f"issue-{raw.id}",
        type="issue",
        status=ISSUE_STATUS.get(raw.state, "open"),
        title=raw.title,
        body=raw.description,
        author=raw.author.username,
        author_avatar=raw.author.avatar_url,
        project=project,
        project_id=project_id,
        iid=raw.iid,
        labels=list(raw.labels),
        assignees=[a.username for a in raw.assignees],
        url=raw.web_url,
        created_at=parse_timestamp(raw.created_at),
        mentioned_ids=extract_mentions(raw.description),
    )


def normalize_merge_request(raw: RemoteMergeRequest, projects: Optional[Dict[int, RemoteProject]] = None) -> Event:
    project, project_id = _project_display(raw.project_id, projects or {})
    return Event(
        natural_key=f"mr-{raw.id}",
        type="merge_request",
        status=MR_STATUS.get(raw.state, "open"),
        title=raw.title,
        body=raw.description,
        author=raw.author.username,
        author_avatar=raw.author.avatar_url,
        project=project,
        project_id=project_id,
        iid=raw.iid,
        labels=list(raw.labels),
        assignees=[a.username for a in raw.assignees],
        url=raw.web_url,
        created_at=parse_timestamp(raw.created_at),
        mentioned_ids=extract_mentions(raw.description),
        closes_issue_ids=parse_closes(raw.description),
    )


def normalize_note(raw: RemoteNote, projects: Optional[Dict[int, RemoteProject]] = None) -> Optional[Event]:
    """Create a comment Event; notes on anything but issues and merge requests are skipped (None)."""
    parent_type = NOTEABLE_PARENT.get(raw.noteable_type)
    if parent_type is None:
        return None
    project, project_id = _project_display(raw.project_id, projects or {})
    return Event(
        natural_key=f"note-{raw.id}",
        type="comment",
        title=comment_title(raw.body),
        body=raw.body,
        author=raw.author.username,
        author_avatar=raw.author.avatar_url,
        project=project,
        project_id=project_id,
        url=raw.web_url or "",
        created_at=parse_timestamp(raw.created_at),
        parent_type=parent_type,
        remote_parent_id=raw.noteable_id,
        is_system_note=raw.system,
        mentioned_ids=extract_mentions(raw.body),
    )


def parent_natural_key(parent_type: str, remote_parent_id: int) -> str:
    """Natural key a comment's parent is stored under."""
    prefix = "issue" if parent_type == "issue" else "mr"
    return f"{prefix}-{remote_parent_id}"


def normalize_fetch_result(result) -> List[Event]:
    """Normalize everything in an ingest.gitlab.FetchResult; top-level items come before comments."""
    projects = result.projects
    events: List[Event] = [normalize_issue(i, projects) for i in result.issues]
    events.extend(normalize_merge_request(m, projects) for m in result.merge_requests)
    for note in result.notes:
        ev = normalize_note(note, projects)
        if ev is not None:
            events.append(ev)
    return events


__all__ = [
    "utcnow", "parse_timestamp", "format_timestamp", "normalize_issue", "normalize_merge_request",
    "normalize_note", "normalize_fetch_result", "parent_natural_key",
]
