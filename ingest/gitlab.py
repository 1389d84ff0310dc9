"""
GitLab ingestion client.
Fetches issues, merge requests and their notes for a set of monitored projects, with bounded
concurrency, Link-header pagination, per-resource page caps and schema validation of every page.
"""
import os
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import List, Dict, Any, Optional, Iterable

from pydantic import BaseModel, ValidationError
from requests.utils import quote

from errors import AuthInvalidError, PayloadValidationError, RemoteAPIError
from ingest.schemas import RemoteIssue, RemoteMergeRequest, RemoteNote, RemoteProject
from normalize.util import format_timestamp
from storage.retry import perform_request_with_retries

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://gitlab.com"

PROJECT_WORKERS = 3
NOTE_WORKERS = 5


class ProjectFailure:
    """A project whose fetch failed; sibling projects are unaffected."""

    def __init__(self, project_id: str, error: RemoteAPIError):
        self.project_id = project_id
        self.error = error

    def __repr__(self):
        return f"ProjectFailure(project_id={self.project_id!r}, error={self.error!s})"


class FetchResult:
    """Everything fetched in one cycle, across all projects."""

    def __init__(self):
        self.issues: List[RemoteIssue] = []
        self.merge_requests: List[RemoteMergeRequest] = []
        self.notes: List[RemoteNote] = []
        self.projects: Dict[int, RemoteProject] = {}
        self.failures: List[ProjectFailure] = []

    @property
    def fetched(self) -> int:
        return len(self.issues) + len(self.merge_requests) + len(self.notes)


class GitLabClient:
    """Client for GitLab API v4 scoped to one user's bearer token."""

    def __init__(
        self,
        token: str,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        per_page: int = 50,
        notes_per_page: int = 20,
        issue_page_cap: int = 2,
        mr_page_cap: int = 2,
        note_page_cap: int = 1,
        notes_item_limit: int = 30,
        project_workers: int = PROJECT_WORKERS,
        note_workers: int = NOTE_WORKERS,
    ):
        self.token = token
        root = base_url or os.getenv("GITLAB_URL") or DEFAULT_BASE_URL
        self.base_url = root.rstrip('/') + "/api/v4"
        self.headers = {
            "Authorization": f"Bearer {self.token}" if self.token else "",
            "Accept": "application/json",
        }
        self.timeout = timeout
        self.per_page = per_page
        self.notes_per_page = notes_per_page
        self.issue_page_cap = issue_page_cap
        self.mr_page_cap = mr_page_cap
        self.note_page_cap = note_page_cap
        self.notes_item_limit = notes_item_limit
        self.project_workers = project_workers
        self.note_workers = min(note_workers, NOTE_WORKERS)

    def _project_url(self, project_id: str) -> str:
        return f"{self.base_url}/projects/{quote(str(project_id), safe='')}"

    def _get(self, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return perform_request_with_retries(url, headers=self.headers, params=params, timeout=self.timeout)

    @staticmethod
    def _validate_page(body: Any, model: type, url: str) -> List[BaseModel]:
        if not isinstance(body, list):
            raise PayloadValidationError(f"expected a JSON array page, got {type(body).__name__}", 200, url)
        try:
            return [model.model_validate(item) for item in body]
        except ValidationError as ex:
            raise PayloadValidationError(f"malformed page: {ex.error_count()} validation error(s)", 200, url) from ex

    def _fetch_paginated(self, url: str, params: Dict[str, Any], model: type, max_pages: Optional[int]) -> List[BaseModel]:
        """Follow rel="next" links until exhausted or max_pages pages were read."""
        results: List[BaseModel] = []
        next_url: Optional[str] = url
        next_params: Optional[Dict[str, Any]] = params
        pages = 0
        while next_url and (not max_pages or pages < max_pages):
            res = self._get(next_url, next_params)
            results.extend(self._validate_page(res.get('response'), model, next_url))
            pages += 1
            next_url = res.get('next_url')
            # the next link already carries the query string
            next_params = None
        if next_url:
            logger.debug("page cap (%s) reached for %s", max_pages, url)
        return results

    def _list_params(self, updated_after: Optional[str]) -> Dict[str, Any]:
        params = {"per_page": self.per_page, "scope": "all", "order_by": "updated_at", "sort": "desc"}
        if updated_after:
            params["updated_after"] = updated_after
        return params

    def fetch_project(self, project_id: str) -> RemoteProject:
        url = self._project_url(project_id)
        res = self._get(url)
        body = res.get('response')
        try:
            return RemoteProject.model_validate(body)
        except ValidationError as ex:
            raise PayloadValidationError("malformed project payload", 200, url) from ex

    def fetch_issues(self, project_id: str, updated_after: Optional[str] = None) -> List[RemoteIssue]:
        url = f"{self._project_url(project_id)}/issues"
        return self._fetch_paginated(url, self._list_params(updated_after), RemoteIssue, self.issue_page_cap)

    def fetch_merge_requests(self, project_id: str, updated_after: Optional[str] = None) -> List[RemoteMergeRequest]:
        url = f"{self._project_url(project_id)}/merge_requests"
        return self._fetch_paginated(url, self._list_params(updated_after), RemoteMergeRequest, self.mr_page_cap)

    def fetch_item_notes(self, project_id: str, kind: str, item: RemoteIssue) -> List[RemoteNote]:
        """Notes for one issue (kind='issues') or merge request (kind='merge_requests')."""
        url = f"{self._project_url(project_id)}/{kind}/{item.iid}/notes"
        params = {"per_page": self.notes_per_page, "order_by": "created_at", "sort": "desc"}
        notes = self._fetch_paginated(url, params, RemoteNote, self.note_page_cap)
        noteable_type = "Issue" if kind == "issues" else "MergeRequest"
        return [
            n.model_copy(update={
                "project_id": item.project_id,
                "web_url": f"{item.web_url}#note_{n.id}",
                "noteable_type": noteable_type,
                "noteable_id": item.id,
            })
            for n in notes
        ]

    def _safe_item_notes(self, project_id: str, kind: str, item: RemoteIssue) -> List[RemoteNote]:
        try:
            return self.fetch_item_notes(project_id, kind, item)
        except AuthInvalidError:
            raise
        except RemoteAPIError as ex:
            logger.warning("notes unavailable for %s %s in project %s: %s", kind, item.iid, project_id, ex)
            return []

    def _fetch_notes(self, project_id: str, kind: str, items: Iterable[RemoteIssue], note_pool: ThreadPoolExecutor) -> List[RemoteNote]:
        limited = list(items)[: self.notes_item_limit]
        futures = [note_pool.submit(self._safe_item_notes, project_id, kind, item) for item in limited]
        notes: List[RemoteNote] = []
        # settle all before inspecting; only auth failures escape _safe_item_notes
        errors = []
        for fut in futures:
            try:
                notes.extend(fut.result())
            except AuthInvalidError as ex:
                errors.append(ex)
        if errors:
            raise errors[0]
        return notes

    def fetch_project_events(self, project_id: str, updated_after: Optional[str], note_pool: ThreadPoolExecutor) -> Dict[str, Any]:
        """Issues and merge requests first; their notes depend on the fetched items."""
        issues = self.fetch_issues(project_id, updated_after)
        merge_requests = self.fetch_merge_requests(project_id, updated_after)
        notes = self._fetch_notes(project_id, "issues", issues, note_pool)
        notes.extend(self._fetch_notes(project_id, "merge_requests", merge_requests, note_pool))
        try:
            project = self.fetch_project(project_id)
        except AuthInvalidError:
            raise
        except RemoteAPIError as ex:
            logger.info("project info unavailable for %s: %s", project_id, ex)
            project = None
        return {"issues": issues, "merge_requests": merge_requests, "notes": notes, "project": project}

    def fetch_events(self, project_ids: List[str], updated_after: Optional[Any] = None) -> FetchResult:
        """Fetch all issues, merge requests and notes updated after updated_after across project_ids.

        Per-project failures are collected in result.failures. A 401 for any project is re-raised
        once every project has settled because the token is shared by all of them.
        """
        if isinstance(updated_after, datetime):
            updated_after = format_timestamp(updated_after)
        result = FetchResult()
        if not project_ids:
            return result

        with ThreadPoolExecutor(max_workers=self.note_workers) as note_pool, ThreadPoolExecutor(max_workers=self.project_workers) as project_pool:
            futures = {pid: project_pool.submit(self.fetch_project_events, pid, updated_after, note_pool) for pid in project_ids}
            for pid, fut in futures.items():
                try:
                    data = fut.result()
                except RemoteAPIError as ex:
                    logger.error("fetch failed for project %s: %s", pid, ex)
                    result.failures.append(ProjectFailure(pid, ex))
                    continue
                result.issues.extend(data["issues"])
                result.merge_requests.extend(data["merge_requests"])
                result.notes.extend(data["notes"])
                if data["project"] is not None:
                    result.projects[data["project"].id] = data["project"]

        for failure in result.failures:
            if isinstance(failure.error, AuthInvalidError):
                raise failure.error

        logger.info(
            "fetched %d issues, %d merge requests, %d notes from %d project(s); %d failed",
            len(result.issues), len(result.merge_requests), len(result.notes), len(project_ids), len(result.failures),
        )
        return result


__all__ = ["GitLabClient", "FetchResult", "ProjectFailure"]
