import base64
import json
import unittest
from datetime import datetime, timezone

import pytest

from errors import ConfigurationError
from listing.events import list_events
from pagination.cursor import CursorPosition, configure_cursor_secret, cursor_clause, decode_cursor, encode_cursor
from storage.db import Database
from storage.events import store_events
from factories import at, make_issue


class TestCursorCodec(unittest.TestCase):
    def test_round_trip(self):
        for pos in (
            CursorPosition(at(0), "a" * 32),
            CursorPosition(datetime(1999, 12, 31, 23, 59, 59, 999999, tzinfo=timezone.utc), "z"),
        ):
            self.assertEqual(decode_cursor(encode_cursor(pos)), pos)

    def test_token_is_url_safe_without_padding(self):
        token = encode_cursor(CursorPosition(at(0), "abc"))
        self.assertNotIn("=", token)
        self.assertNotIn("+", token)
        self.assertNotIn("/", token)

    def test_tampered_signature_is_rejected(self):
        token = encode_cursor(CursorPosition(at(0), "abc"))
        envelope = json.loads(base64.urlsafe_b64decode(token + "=" * (-len(token) % 4)))
        envelope["d"] = json.dumps({"k": "2030-01-01T00:00:00.000000Z", "i": "abc"})
        forged = base64.urlsafe_b64encode(json.dumps(envelope).encode()).decode().rstrip("=")
        self.assertIsNone(decode_cursor(forged))

    def test_wrong_secret_is_rejected(self):
        token = encode_cursor(CursorPosition(at(0), "abc"), secret="one")
        self.assertIsNone(decode_cursor(token, secret="two"))

    def test_garbage_is_rejected(self):
        for token in ("", None, "!!!", "bm90LWpzb24", base64.urlsafe_b64encode(b"[1,2]").decode()):
            self.assertIsNone(decode_cursor(token))

    def test_unsigned_cursor_is_rejected(self):
        legacy = base64.urlsafe_b64encode(json.dumps({"k": "2024-03-01T12:00:00.000000Z", "i": "abc"}).encode()).decode()
        self.assertIsNone(decode_cursor(legacy))

    def test_cursor_clause(self):
        sql, params = cursor_clause(CursorPosition(at(0), "abc"), "e.created_at", "e.id")
        self.assertEqual(sql, "(e.created_at < ? OR (e.created_at = ? AND e.id < ?))")
        self.assertEqual(params, ["2024-03-01T12:00:00.000000Z", "2024-03-01T12:00:00.000000Z", "abc"])
        self.assertEqual(cursor_clause(None, "x"), ("1 = 1", []))


def test_encoding_without_secret_fails():
    configure_cursor_secret(None)
    with pytest.raises(ConfigurationError):
        encode_cursor(CursorPosition(at(0), "abc"), secret=None)


def test_decoding_without_secret_returns_none():
    token = encode_cursor(CursorPosition(at(0), "abc"))
    configure_cursor_secret(None)
    assert decode_cursor(token) is None


def test_pages_cover_everything_once(db):
    store_events(db, "u1", [make_issue(n, minutes=n % 3) for n in range(1, 8)])
    seen = []
    cursor = None
    while True:
        page = list_events(db, "u1", cursor=cursor, limit=3)
        seen.extend(i["natural_key"] for i in page["items"])
        if not page["has_more"]:
            assert page["next_cursor"] is None
            break
        cursor = page["next_cursor"]
    assert sorted(seen) == sorted(f"issue-{n}" for n in range(1, 8))
    assert len(seen) == len(set(seen))


def test_cursor_replayed_by_another_user_yields_nothing(db):
    store_events(db, "u1", [make_issue(n, minutes=n) for n in range(1, 5)])
    page = list_events(db, "u1", limit=2)
    assert page["has_more"]
    other = list_events(db, "u2", cursor=page["next_cursor"], limit=2)
    assert other["items"] == []


if __name__ == '__main__':
    unittest.main()
