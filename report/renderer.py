"""
Report renderer: generate text/Markdown/CSV/JSON/HTML output for sync summaries and unread digests.
HTML and Markdown digests use the Jinja2 templates in report/templates.
"""

from typing import Optional, List, Dict, Any, Sequence
import os
import json
import io
import csv

from jinja2 import Environment, FileSystemLoader, select_autoescape

from models import SyncSummary

TEMPLATE_DIR = os.path.join(os.path.dirname(__file__), 'templates')

DIGEST_COLUMNS = ['id', 'type', 'status', 'project', 'iid', 'title', 'author', 'comment_count', 'last_activity_at', 'url']


def _environment() -> Environment:
    return Environment(loader=FileSystemLoader(TEMPLATE_DIR), autoescape=select_autoescape(['html', 'xml', 'html.j2']))


def render_summary_markdown(summary: SyncSummary) -> str:
    """Render a Markdown section for one sync cycle."""
    md = []
    md.append(f"# Sync Summary: {summary.user_id}\n")
    md.append(f"- Status: **{summary.status}**")
    md.append(f"- Fetched: **{summary.fetched}**")
    md.append(f"- Stored: **{summary.stored}**")
    md.append(f"- Skipped (duplicates): **{summary.skipped}**")
    md.append(f"- Failed projects: **{summary.failed}**")
    md.append(f"- Linked: **{summary.linked}** (unresolved: {summary.unresolved})")
    md.append(f"- Updated work items: **{summary.updated}**")
    for err in summary.errors:
        md.append(f"- Error: `{err}`")
    return "\n".join(md)


def render_summary_csv(summaries: Sequence[SyncSummary]) -> str:
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(['user_id', 'status', 'fetched', 'stored', 'skipped', 'failed', 'linked', 'unresolved', 'updated', 'errors'])
    for s in summaries:
        writer.writerow([s.user_id, s.status, s.fetched, s.stored, s.skipped, s.failed, s.linked, s.unresolved, s.updated, '; '.join(s.errors)])
    return output.getvalue()


def render_sync_summary(summary, fmt: str = 'text') -> str:
    """Render one SyncSummary or a list of them."""
    summaries = list(summary) if isinstance(summary, (list, tuple)) else [summary]
    fmt_l = (fmt or 'text').lower()
    if fmt_l in ('md', 'markdown'):
        return '\n\n---\n\n'.join(render_summary_markdown(s) for s in summaries)
    if fmt_l == 'csv':
        return render_summary_csv(summaries)
    if fmt_l in ('json', 'js'):
        return json.dumps([s.to_dict() for s in summaries], indent=2)
    return '\n\n'.join(str(s) for s in summaries)


def _digest_row(item: Dict[str, Any]) -> list:
    return [item.get(c, '') if item.get(c) is not None else '' for c in DIGEST_COLUMNS]


def render_digest_csv(items: List[Dict[str, Any]]) -> str:
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(DIGEST_COLUMNS)
    for item in items:
        writer.writerow(_digest_row(item))
    return output.getvalue()


def render_digest_text(items: List[Dict[str, Any]], user_id: Optional[str] = None) -> str:
    if not items:
        return f"No unread work items{' for ' + user_id if user_id else ''}."
    lines = []
    for item in items:
        ref = ('!' if item.get('type') == 'merge_request' else '#') + str(item.get('iid', ''))
        lines.append(f"[{item.get('project')}{ref}] {item.get('title')} ({item.get('status')}, {item.get('comment_count') or 0} comments)")
    return "\n".join(lines)


def _group_by_project(items: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for item in items:
        grouped.setdefault(item.get('project') or '', []).append(item)
    return grouped


def render_digest(
    items: List[Dict[str, Any]],
    fmt: str = 'text',
    user_id: Optional[str] = None,
    unread_total: Optional[int] = None,
    generated_at: Optional[str] = None,
) -> str:
    """Render a digest of work items (usually the unread ones)."""
    fmt_l = (fmt or 'text').lower()
    if fmt_l == 'csv':
        return render_digest_csv(items)
    if fmt_l in ('json', 'js'):
        return json.dumps(items, indent=2, default=str)
    context = {
        'items': items,
        'projects': _group_by_project(items),
        'user_id': user_id,
        'unread_total': unread_total if unread_total is not None else len(items),
        'generated_at': generated_at,
    }
    if fmt_l in ('md', 'markdown'):
        return _environment().get_template('digest.md.j2').render(**context)
    if fmt_l in ('html', 'htm'):
        return _environment().get_template('digest.html.j2').render(**context)
    return render_digest_text(items, user_id)


__all__ = ["render_sync_summary", "render_digest"]
