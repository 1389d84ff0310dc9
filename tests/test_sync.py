import unittest
from unittest.mock import patch

from errors import AuthInvalidError, StoreError, TransientNetworkError
from ingest.gitlab import FetchResult, GitLabClient, ProjectFailure
from ingest.schemas import RemoteIssue, RemoteMergeRequest, RemoteNote, RemoteProject
from storage.db import Database
from storage.events import get_event_by_natural_key, get_last_sync
from sync import sync_user, sync_users
from factories import FakeGitLab, at, gitlab_project_routes, raw_issue, raw_mr, raw_note, raw_project


class FakeClient:
    """Returns one prepared FetchResult per fetch_events call and records the watermark it was given."""

    def __init__(self, results):
        self.results = list(results)
        self.since = []

    def fetch_events(self, project_ids, updated_after=None):
        self.since.append(updated_after)
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


def _result(issues=(), mrs=(), notes=(), failures=()):
    result = FetchResult()
    result.issues = [RemoteIssue.model_validate(i) for i in issues]
    result.merge_requests = [RemoteMergeRequest.model_validate(m) for m in mrs]
    result.notes = [
        RemoteNote.model_validate(n).model_copy(update={"project_id": 7, "web_url": f"https://gitlab.example.com/x#note_{n['id']}"})
        for n in notes
    ]
    result.projects = {7: RemoteProject.model_validate(raw_project(7))}
    result.failures = list(failures)
    return result


class TestSyncCycle(unittest.TestCase):
    def setUp(self):
        self.db = Database(':memory:')

    def tearDown(self):
        self.db.close()

    def test_two_cycles_resolve_out_of_order_data(self):
        cycle1 = _result(
            mrs=[raw_mr(42, 4, description="closes #10")],
            notes=[raw_note(500, 42, "MergeRequest", body="Nice work", created_at="2024-03-01T13:00:00.000Z")],
        )
        cycle2 = _result(issues=[raw_issue(10, 10)])
        client = FakeClient([cycle1, cycle2])

        first = sync_user(self.db, client, "u1", ["7"], now=at(60))
        self.assertEqual((first.fetched, first.stored, first.linked), (2, 2, 1))
        second = sync_user(self.db, client, "u1", ["7"], now=at(120))
        self.assertEqual(second.stored, 1)
        self.assertEqual(client.since, [None, at(60)])

        mr = get_event_by_natural_key(self.db, "u1", "mr-42")
        note = get_event_by_natural_key(self.db, "u1", "note-500")
        self.assertEqual(mr.closes_issue_ids, [10])
        self.assertEqual(note.parent_event_id, mr.id)
        self.assertEqual(mr.comment_count, 1)
        self.assertEqual(mr.participants, ["bob", "carol"])
        self.assertEqual(get_last_sync(self.db, "u1"), at(120))

    def test_repeat_cycle_is_idempotent(self):
        data = _result(issues=[raw_issue(10, 10)], notes=[raw_note(1, 10)])
        client = FakeClient([data, data])
        sync_user(self.db, client, "u1", ["7"], now=at(1))
        again = sync_user(self.db, client, "u1", ["7"], now=at(2))
        self.assertEqual((again.stored, again.skipped), (0, 2))

    def test_partial_failure_keeps_watermark(self):
        failure = ProjectFailure("8", TransientNetworkError("unavailable", 503))
        client = FakeClient([_result(issues=[raw_issue(10, 10)], failures=[failure])])
        summary = sync_user(self.db, client, "u1", ["7", "8"], now=at(5))
        self.assertEqual(summary.status, "partial")
        self.assertEqual(summary.failed, 1)
        self.assertEqual(summary.stored, 1)
        self.assertFalse(summary.watermark_advanced)
        self.assertIsNone(get_last_sync(self.db, "u1"))
        self.assertIn("project 8", summary.errors[0])

    def test_store_failure_aborts_cycle(self):
        client = FakeClient([_result(issues=[raw_issue(10, 10)])])
        with patch('sync.store_events', side_effect=StoreError("disk full")):
            with self.assertRaises(StoreError):
                sync_user(self.db, client, "u1", ["7"], now=at(5))
        self.assertIsNone(get_last_sync(self.db, "u1"))

    def test_sync_users_isolates_failures(self):
        clients = {
            "ok": FakeClient([_result(issues=[raw_issue(10, 10)])]),
            "expired": FakeClient([AuthInvalidError("access token rejected", 401)]),
            "broken": FakeClient([StoreError("disk full")]),
        }
        summaries = sync_users(self.db, clients.__getitem__, {"ok": ["7"], "expired": ["7"], "broken": ["7"]}, now=at(1))
        self.assertEqual([s.status for s in summaries], ["ok", "skipped", "failed"])
        self.assertEqual(summaries[0].stored, 1)

    def test_bad_payload_in_one_project_spares_siblings_and_other_users(self):
        routes = gitlab_project_routes(pid=7, issues=[raw_issue(101, 1, project_id=7, created_at="not-a-timestamp")])
        routes.update(gitlab_project_routes(pid=8, issues=[raw_issue(201, 1, project_id=8)]))
        client = GitLabClient("secret-token", base_url="https://gitlab.example.com")
        with patch('ingest.gitlab.perform_request_with_retries', side_effect=FakeGitLab(routes)):
            summaries = sync_users(self.db, lambda user_id: client, {"u1": ["7", "8"], "u2": ["8"]}, now=at(1))
        self.assertEqual([s.status for s in summaries], ["partial", "ok"])
        self.assertEqual([s.stored for s in summaries], [1, 1])
        self.assertIn("project 7", summaries[0].errors[0])
        self.assertIsNotNone(get_event_by_natural_key(self.db, "u1", "issue-201"))
        self.assertIsNone(get_last_sync(self.db, "u1"))
        self.assertEqual(get_last_sync(self.db, "u2"), at(1))


if __name__ == '__main__':
    unittest.main()
