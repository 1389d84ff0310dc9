"""
Signed, opaque pagination cursors.

A cursor encodes the (sort key, id) of the last row of a page. The payload is signed with
HMAC-SHA256 so clients cannot forge positions; anything that fails to decode or verify is
treated as "no cursor" and pagination restarts from the beginning.
"""

import os
import hmac
import json
import base64
import hashlib
import binascii
import logging
from datetime import datetime
from typing import Optional, Tuple, List, Any

from errors import ConfigurationError
from normalize.util import format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)

DEFAULT_CURSOR_SECRET = os.getenv("CATCHUP_CURSOR_SECRET")

# runtime-override
_runtime_secret: Optional[str] = None


def configure_cursor_secret(secret: Optional[str]):
    """Set (or with None, clear) the signing secret at runtime."""
    global _runtime_secret
    _runtime_secret = secret


def _resolve_secret(secret: Optional[str]) -> Optional[str]:
    for candidate in (secret, _runtime_secret, DEFAULT_CURSOR_SECRET):
        if candidate:
            return candidate
    return None


class CursorPosition:
    def __init__(self, sort_key: datetime, tiebreak_id: str):
        self.sort_key = sort_key
        self.tiebreak_id = tiebreak_id

    def __eq__(self, other):
        if not isinstance(other, CursorPosition):
            return NotImplemented
        return self.sort_key == other.sort_key and self.tiebreak_id == other.tiebreak_id

    def __repr__(self):
        return f"CursorPosition(sort_key={self.sort_key!r}, tiebreak_id={self.tiebreak_id!r})"


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def _sign(data: str, secret: str) -> str:
    return _b64encode(hmac.new(secret.encode("utf-8"), data.encode("utf-8"), hashlib.sha256).digest())


def encode_cursor(position: CursorPosition, secret: Optional[str] = None) -> str:
    key = _resolve_secret(secret)
    if not key:
        raise ConfigurationError("cursor secret is not configured (set CATCHUP_CURSOR_SECRET)")
    data = json.dumps({"k": format_timestamp(position.sort_key), "i": position.tiebreak_id}, separators=(",", ":"))
    envelope = json.dumps({"d": data, "s": _sign(data, key)}, separators=(",", ":"))
    return _b64encode(envelope.encode("utf-8"))


def decode_cursor(token: Optional[str], secret: Optional[str] = None) -> Optional[CursorPosition]:
    """Return the position, or None for empty, malformed, tampered or unsigned tokens."""
    if not token:
        return None
    key = _resolve_secret(secret)
    if not key:
        logger.warning("cursor secret is not configured; ignoring cursor")
        return None
    try:
        envelope = json.loads(_b64decode(token).decode("utf-8"))
        data, signature = envelope["d"], envelope["s"]
        if not isinstance(data, str) or not isinstance(signature, str):
            return None
        if not hmac.compare_digest(signature, _sign(data, key)):
            logger.debug("cursor signature mismatch")
            return None
        payload = json.loads(data)
        sort_key = parse_timestamp(payload["k"])
        tiebreak_id = payload["i"]
    except (binascii.Error, UnicodeDecodeError, ValueError, KeyError, TypeError):
        return None
    if sort_key is None or not isinstance(tiebreak_id, str) or not tiebreak_id:
        return None
    return CursorPosition(sort_key, tiebreak_id)


def cursor_clause(position: Optional[CursorPosition], sort_column: str, id_column: str = "id") -> Tuple[str, List[Any]]:
    """SQL condition selecting rows strictly after position in (sort DESC, id DESC) order."""
    if position is None:
        return "1 = 1", []
    key = format_timestamp(position.sort_key)
    return (
        f"({sort_column} < ? OR ({sort_column} = ? AND {id_column} < ?))",
        [key, key, position.tiebreak_id],
    )


def next_cursor(rows: List[Any], limit: int, sort_field: str, id_field: str = "id") -> Tuple[List[Any], bool, Optional[str]]:
    """Trim a limit+1 fetch to a page; returns (page, has_more, next_cursor)."""
    has_more = len(rows) > limit
    page = rows[:limit]
    if not has_more or not page:
        return page, has_more, None
    last = page[-1]
    return page, has_more, encode_cursor(CursorPosition(parse_timestamp(last[sort_field]), last[id_field]))


__all__ = ["CursorPosition", "encode_cursor", "decode_cursor", "configure_cursor_secret", "cursor_clause", "next_cursor"]
