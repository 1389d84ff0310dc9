import unittest
from datetime import datetime, timezone

from ingest.gitlab import FetchResult
from ingest.schemas import RemoteIssue, RemoteMergeRequest, RemoteNote, RemoteProject
from normalize.models import Event, embedding_input
from normalize.references import comment_title, extract_mentions, parse_closes
from normalize.util import (
    format_timestamp,
    normalize_fetch_result,
    normalize_issue,
    normalize_merge_request,
    normalize_note,
    parse_timestamp,
)
from factories import raw_issue, raw_mr, raw_note, raw_project

PROJECTS = {7: RemoteProject.model_validate(raw_project(7))}


class TestReferences(unittest.TestCase):
    def test_extract_mentions(self):
        self.assertEqual(extract_mentions("Fixed #1, #2 and #3"), [1, 2, 3])
        self.assertEqual(extract_mentions("#abc"), [])
        self.assertEqual(extract_mentions("#5 is like #5"), [5])
        self.assertEqual(extract_mentions("see !12 and #4"), [12, 4])
        self.assertEqual(extract_mentions(None), [])

    def test_parse_closes(self):
        self.assertEqual(parse_closes("Closes #100\nFixes #200"), [100, 200])
        self.assertEqual(parse_closes("CLOSES #42"), [42])
        self.assertEqual(parse_closes("resolved #3, fixed #3"), [3])
        self.assertEqual(parse_closes("mentions #7 only"), [])
        self.assertEqual(parse_closes("autoclose #5 and unfixed #6"), [5, 6])
        self.assertEqual(parse_closes(""), [])

    def test_comment_title(self):
        self.assertEqual(comment_title("\n  LGTM  \nsecond line"), "Comment: LGTM")
        self.assertEqual(comment_title(""), "Comment: Comment")
        long = "x" * 150
        title = comment_title(long)
        self.assertEqual(title, "Comment: " + "x" * 97 + "...")


class TestTimestamps(unittest.TestCase):
    def test_parse_gitlab_timestamp(self):
        dt = parse_timestamp("2024-03-01T12:00:00.123Z")
        self.assertEqual(dt, datetime(2024, 3, 1, 12, 0, 0, 123000, tzinfo=timezone.utc))

    def test_offsets_are_converted_to_utc(self):
        self.assertEqual(format_timestamp(parse_timestamp("2024-03-01T14:00:00+02:00")), "2024-03-01T12:00:00.000000Z")

    def test_fixed_width_ordering(self):
        a = format_timestamp(datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc))
        b = format_timestamp(datetime(2024, 3, 1, 10, 0, 0, 1, tzinfo=timezone.utc))
        self.assertLess(a, b)
        self.assertEqual(len(a), len(b))


class TestNormalizeItems(unittest.TestCase):
    def test_issue(self):
        ev = normalize_issue(RemoteIssue.model_validate(raw_issue(42, 3, description="closes #10, see #11")), PROJECTS)
        self.assertEqual(ev.natural_key, "issue-42")
        self.assertEqual(ev.type, "issue")
        self.assertEqual(ev.status, "open")
        self.assertEqual(ev.project, "App")
        self.assertEqual(ev.project_id, "group/app")
        self.assertEqual(ev.iid, 3)
        self.assertEqual(ev.assignees, ["dave"])
        self.assertEqual(ev.labels, ["bug"])
        self.assertEqual(ev.mentioned_ids, [10, 11])
        # only merge requests close issues
        self.assertEqual(ev.closes_issue_ids, [])
        self.assertIsNone(ev.last_activity_at)
        self.assertIsNone(ev.remote_parent_id)

    def test_merge_request_status_and_closes(self):
        ev = normalize_merge_request(RemoteMergeRequest.model_validate(raw_mr(99, 5, state="merged", description="Closes #10")), PROJECTS)
        self.assertEqual(ev.natural_key, "mr-99")
        self.assertEqual(ev.status, "merged")
        self.assertEqual(ev.closes_issue_ids, [10])

    def test_locked_merge_request_is_open(self):
        ev = normalize_merge_request(RemoteMergeRequest.model_validate(raw_mr(99, 5, state="locked")), PROJECTS)
        self.assertEqual(ev.status, "open")

    def test_missing_project_info_falls_back_to_id(self):
        ev = normalize_issue(RemoteIssue.model_validate(raw_issue(1, 1, project_id=55)), {})
        self.assertEqual(ev.project, "Project 55")
        self.assertEqual(ev.project_id, "55")

    def test_note(self):
        note = RemoteNote.model_validate(raw_note(7, 42, "MergeRequest", body="Refs #3\nmore", system=True)).model_copy(update={"project_id": 7, "web_url": "u#note_7"})
        ev = normalize_note(note, PROJECTS)
        self.assertEqual(ev.natural_key, "note-7")
        self.assertEqual(ev.type, "comment")
        self.assertIsNone(ev.status)
        self.assertEqual(ev.title, "Comment: Refs #3")
        self.assertEqual(ev.parent_type, "merge_request")
        self.assertEqual(ev.remote_parent_id, 42)
        self.assertTrue(ev.is_system_note)
        self.assertEqual(ev.mentioned_ids, [3])
        self.assertIsNone(ev.comment_count)

    def test_note_on_unsupported_noteable_is_skipped(self):
        note = RemoteNote.model_validate(raw_note(7, 42, "Snippet"))
        self.assertIsNone(normalize_note(note, PROJECTS))

    def test_fetch_result_puts_items_before_comments(self):
        result = FetchResult()
        result.notes.append(RemoteNote.model_validate(raw_note(1, 42)))
        result.issues.append(RemoteIssue.model_validate(raw_issue(42, 1)))
        result.merge_requests.append(RemoteMergeRequest.model_validate(raw_mr(43, 2)))
        result.projects = PROJECTS
        keys = [e.natural_key for e in normalize_fetch_result(result)]
        self.assertEqual(keys, ["issue-42", "mr-43", "note-1"])


class TestEventModel(unittest.TestCase):
    def test_rejects_unknown_type(self):
        with self.assertRaises(ValueError):
            Event(natural_key="x-1", type="epic", title="t", author="a", project="p", project_id="p", url="u", created_at=None)

    def test_embedding_input(self):
        ev = normalize_issue(RemoteIssue.model_validate(raw_issue(1, 1, description="body text", title="Title")), PROJECTS)
        self.assertEqual(embedding_input(ev), {"title": "Title", "body": "body text"})


if __name__ == '__main__':
    unittest.main()
