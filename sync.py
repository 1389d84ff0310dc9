"""
Sync cycle orchestration: fetch -> normalize -> store -> link -> aggregate -> watermark.
"""
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

from correlate.linker import link_parent_events, update_activity_metadata
from errors import AuthInvalidError, CatchupError
from ingest.gitlab import GitLabClient
from models import SyncSummary
from normalize.util import normalize_fetch_result, utcnow
from storage.db import Database
from storage.events import get_last_sync, set_last_sync, store_events

logger = logging.getLogger(__name__)


def sync_user(db: Database, client: GitLabClient, user_id: str, project_ids: Sequence[str], now: Optional[datetime] = None) -> SyncSummary:
    """Run one sync cycle for user_id.

    The watermark moves to the cycle start time only when every project fetched and storing succeeded;
    otherwise the next cycle re-fetches the same window and deduplication absorbs the overlap.
    AuthInvalidError and StoreError propagate.
    """
    started_at = now or utcnow()
    summary = SyncSummary(user_id, started_at)
    since = get_last_sync(db, user_id)
    logger.info("sync for %s over %d project(s) since %s", user_id, len(project_ids), since or "the beginning")

    fetched = client.fetch_events(list(project_ids), updated_after=since)
    summary.fetched = fetched.fetched
    summary.failed = len(fetched.failures)
    summary.errors.extend(f"project {f.project_id}: {f.error}" for f in fetched.failures)

    events = normalize_fetch_result(fetched)
    stored = store_events(db, user_id, events)
    summary.stored = stored.stored
    summary.skipped = stored.skipped

    link = link_parent_events(db, user_id)
    summary.linked = link.linked
    summary.unresolved = link.unresolved
    summary.updated = update_activity_metadata(db, user_id)

    if fetched.failures:
        summary.status = "partial"
        logger.warning("watermark for %s not advanced: %d project(s) failed", user_id, len(fetched.failures))
    else:
        set_last_sync(db, user_id, started_at)
        summary.watermark_advanced = True
    return summary


def sync_users(
    db: Database,
    client_factory: Callable[[str], GitLabClient],
    users: Dict[str, Sequence[str]],
    now: Optional[datetime] = None,
) -> List[SyncSummary]:
    """Run independent cycles for several users ({user_id: project_ids}); one user's failure never stops the others."""
    summaries: List[SyncSummary] = []
    for user_id, project_ids in users.items():
        try:
            summaries.append(sync_user(db, client_factory(user_id), user_id, project_ids, now=now))
        except AuthInvalidError as ex:
            logger.warning("skipping %s: credentials rejected (%s)", user_id, ex)
            summary = SyncSummary(user_id, now)
            summary.status = "skipped"
            summary.errors.append(str(ex))
            summaries.append(summary)
        except CatchupError as ex:
            logger.error("sync failed for %s: %s", user_id, ex)
            summary = SyncSummary(user_id, now)
            summary.status = "failed"
            summary.errors.append(str(ex))
            summaries.append(summary)
    return summaries


__all__ = ["sync_user", "sync_users"]
