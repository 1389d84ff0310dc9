import unittest

from errors import NotFoundError
from correlate.linker import run_linker
from listing import get_work_item, list_events, list_work_items
from readstate.markers import mark_as_read
from storage.db import Database
from storage.events import get_event_by_natural_key, store_events
from factories import at, make_comment, make_issue, make_mr


class TestListings(unittest.TestCase):
    def setUp(self):
        self.db = Database(':memory:')
        store_events(self.db, "u1", [
            make_issue(10, iid=1, title="Broken build", minutes=0, labels=["ci"]),
            make_issue(11, iid=2, title="Docs typo", minutes=5, status="closed"),
            make_mr(20, iid=3, title="Fix build", body="Closes #1, see #2", minutes=10, closes=[1], mentions=[1, 2], status="merged"),
            make_comment(30, 10, minutes=30, author="dave"),
            make_comment(31, 10, minutes=31, author="erin", system=True),
            make_comment(32, 20, parent_type="merge_request", minutes=12),
        ])
        run_linker(self.db, "u1")
        self.ids = {k: get_event_by_natural_key(self.db, "u1", k).id for k in ("issue-10", "issue-11", "mr-20", "note-30")}

    def tearDown(self):
        self.db.close()

    def test_events_newest_first_with_filters(self):
        keys = [e["natural_key"] for e in list_events(self.db, "u1")["items"]]
        self.assertEqual(keys, ["note-31", "note-30", "note-32", "mr-20", "issue-11", "issue-10"])
        comments = list_events(self.db, "u1", event_type="comment")["items"]
        self.assertEqual(len(comments), 3)
        labelled = list_events(self.db, "u1", label="ci")["items"]
        self.assertEqual([e["natural_key"] for e in labelled], ["issue-10"])
        self.assertEqual(labelled[0]["labels"], ["ci"])

    def test_work_items_sorted_by_latest_activity(self):
        page = list_work_items(self.db, "u1")
        keys = [i["natural_key"] for i in page["items"]]
        # issue-10 last active at 31, mr-20 at 12, issue-11 has no activity (created at 5)
        self.assertEqual(keys, ["issue-10", "mr-20", "issue-11"])
        self.assertTrue(all(i["is_unread"] for i in page["items"]))
        self.assertEqual(page["unread_count"], 3)
        self.assertNotIn("sort_at", page["items"][0])

    def test_work_item_filters(self):
        self.assertEqual(len(list_work_items(self.db, "u1", statuses=["merged"])["items"]), 1)
        self.assertEqual(len(list_work_items(self.db, "u1", types=["issue"])["items"]), 2)
        self.assertEqual(len(list_work_items(self.db, "u1", projects=["other/project"])["items"]), 0)

    def test_unread_only_paginates_over_unread_items(self):
        mark_as_read(self.db, "u1", self.ids["issue-10"])
        first = list_work_items(self.db, "u1", unread_only=True, limit=1)
        self.assertEqual([i["natural_key"] for i in first["items"]], ["mr-20"])
        self.assertTrue(first["has_more"])
        second = list_work_items(self.db, "u1", unread_only=True, limit=1, cursor=first["next_cursor"])
        self.assertEqual([i["natural_key"] for i in second["items"]], ["issue-11"])
        self.assertFalse(second["has_more"])

    def test_detail_view(self):
        detail = get_work_item(self.db, "u1", self.ids["issue-10"])
        self.assertEqual(detail["item"]["comment_count"], 1)
        self.assertEqual([a["natural_key"] for a in detail["activities"]], ["note-30", "note-31"])
        self.assertTrue(all(a["is_unread"] for a in detail["activities"]))
        self.assertEqual([r["natural_key"] for r in detail["related_items"]["closed_by"]], ["mr-20"])

    def test_detail_related_items_for_merge_request(self):
        detail = get_work_item(self.db, "u1", self.ids["mr-20"])
        related = detail["related_items"]
        self.assertEqual([r["natural_key"] for r in related["closes"]], ["issue-10"])
        self.assertEqual([r["natural_key"] for r in related["mentioned"]], ["issue-10", "issue-11"])
        self.assertEqual(related["closed_by"], [])

    def test_detail_activity_unread_relative_to_marker(self):
        mark_as_read(self.db, "u1", self.ids["issue-10"], now=at(30))
        detail = get_work_item(self.db, "u1", self.ids["issue-10"])
        self.assertEqual([a["is_unread"] for a in detail["activities"]], [False, True])
        self.assertTrue(detail["item"]["is_unread"])

    def test_detail_not_found(self):
        with self.assertRaises(NotFoundError):
            get_work_item(self.db, "u1", self.ids["note-30"])
        with self.assertRaises(NotFoundError):
            get_work_item(self.db, "u2", self.ids["issue-10"])


if __name__ == '__main__':
    unittest.main()
