"""
Cross-reference heuristics over free text.
- #123 references an issue, !456 a merge request
- closing keywords ("closes #12", "Fixes #3", ...) name issues a merge request claims to close
"""
import re
from typing import List, Optional

MENTION_PATTERN = re.compile(r"[#!](\d+)")
CLOSES_PATTERN = re.compile(r"(?:close[sd]?|fix(?:e[sd])?|resolve[sd]?)\s+#(\d+)", re.IGNORECASE)

COMMENT_TITLE_PREFIX = "Comment: "
COMMENT_TITLE_MAX = 100


def _unique_ints(matches) -> List[int]:
    ids: List[int] = []
    for m in matches:
        value = int(m.group(1))
        if value not in ids:
            ids.append(value)
    return ids


def extract_mentions(text: Optional[str]) -> List[int]:
    """Return referenced issue/MR numbers in order of first appearance, without duplicates."""
    if not text:
        return []
    return _unique_ints(MENTION_PATTERN.finditer(text))


def parse_closes(text: Optional[str]) -> List[int]:
    """Return issue numbers named by closing keywords. Callers apply this to merge request bodies only."""
    if not text:
        return []
    return _unique_ints(CLOSES_PATTERN.finditer(text))


def comment_title(body: Optional[str]) -> str:
    first_line = next((line.strip() for line in (body or "").split("\n") if line.strip()), "Comment")
    if len(first_line) > COMMENT_TITLE_MAX:
        first_line = first_line[: COMMENT_TITLE_MAX - 3] + "..."
    return COMMENT_TITLE_PREFIX + first_line


__all__ = ["extract_mentions", "parse_closes", "comment_title"]
