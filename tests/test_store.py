import unittest

from errors import StoreError
from storage.db import Database
from storage.events import (
    count_events,
    get_event_by_natural_key,
    get_last_sync,
    set_last_sync,
    store_events,
    wipe_user,
)
from factories import at, make_comment, make_issue, make_mr


class TestStoreEvents(unittest.TestCase):
    def setUp(self):
        self.db = Database(':memory:')

    def tearDown(self):
        self.db.close()

    def _batch(self):
        return [make_issue(1), make_mr(2, closes=[1]), make_comment(3, 1, minutes=5)]

    def test_second_ingest_is_a_no_op(self):
        first = store_events(self.db, "u1", self._batch())
        second = store_events(self.db, "u1", self._batch())
        self.assertEqual((first.stored, first.skipped), (3, 0))
        self.assertEqual((second.stored, second.skipped), (0, 3))
        self.assertEqual(count_events(self.db, "u1"), 3)

    def test_natural_key_maps_to_one_id(self):
        store_events(self.db, "u1", self._batch())
        before = get_event_by_natural_key(self.db, "u1", "issue-1").id
        store_events(self.db, "u1", [make_issue(1, title="changed")])
        after = get_event_by_natural_key(self.db, "u1", "issue-1")
        self.assertEqual(after.id, before)
        self.assertEqual(after.title, "An issue")

    def test_same_natural_key_is_stored_per_user(self):
        store_events(self.db, "u1", [make_issue(1)])
        res = store_events(self.db, "u2", [make_issue(1)])
        self.assertEqual(res.stored, 1)
        a = get_event_by_natural_key(self.db, "u1", "issue-1")
        b = get_event_by_natural_key(self.db, "u2", "issue-1")
        self.assertNotEqual(a.id, b.id)

    def test_round_trip_fields(self):
        store_events(self.db, "u1", [make_mr(2, body="closes #1", closes=[1], mentions=[1]), make_comment(3, 2, parent_type="merge_request", system=True)])
        mr = get_event_by_natural_key(self.db, "u1", "mr-2")
        self.assertEqual(mr.closes_issue_ids, [1])
        self.assertEqual(mr.created_at, at(0))
        self.assertEqual(len(mr.id), 32)
        note = get_event_by_natural_key(self.db, "u1", "note-3")
        self.assertTrue(note.is_system_note)
        self.assertEqual(note.remote_parent_id, 2)
        self.assertIsNone(note.parent_event_id)

    def test_failure_rolls_back_and_raises(self):
        bad = make_issue(9)
        bad.status = "archived"
        with self.assertRaises(StoreError):
            store_events(self.db, "u1", [make_issue(1), bad])
        self.assertEqual(count_events(self.db, "u1"), 0)

    def test_empty_input(self):
        res = store_events(self.db, "u1", [])
        self.assertEqual((res.stored, res.skipped), (0, 0))

    def test_batches(self):
        events = [make_issue(n) for n in range(1, 12)]
        res = store_events(self.db, "u1", events, batch_size=5)
        self.assertEqual(res.stored, 11)


class TestSyncStateAndWipe(unittest.TestCase):
    def setUp(self):
        self.db = Database(':memory:')

    def tearDown(self):
        self.db.close()

    def test_watermark(self):
        self.assertIsNone(get_last_sync(self.db, "u1"))
        set_last_sync(self.db, "u1", at(1))
        set_last_sync(self.db, "u1", at(2))
        self.assertEqual(get_last_sync(self.db, "u1"), at(2))

    def test_wipe_only_touches_one_user(self):
        store_events(self.db, "u1", [make_issue(1), make_comment(2, 1)])
        store_events(self.db, "u2", [make_issue(1)])
        set_last_sync(self.db, "u1", at(1))
        self.assertEqual(wipe_user(self.db, "u1"), 2)
        self.assertEqual(count_events(self.db, "u1"), 0)
        self.assertEqual(count_events(self.db, "u2"), 1)
        self.assertIsNone(get_last_sync(self.db, "u1"))


def test_database_file_persists(tmp_path):
    path = str(tmp_path / "catchup.db")
    with Database(path) as db:
        store_events(db, "u1", [make_issue(1)])
    with Database(path) as db:
        assert count_events(db, "u1") == 1


if __name__ == '__main__':
    unittest.main()
