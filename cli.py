"""
CLI entry point for catchup. Wires the pipeline: fetch -> normalize -> store -> link -> read state / search / report
"""

import argparse
import logging
import webbrowser
import os
import sys
import json
from datetime import datetime, timezone

from correlate.linker import run_linker
from correlate.validate import validate_relationships
from errors import AuthInvalidError, CatchupError, NotFoundError
from ingest.gitlab import GitLabClient
from listing.events import list_events
from listing.work_items import get_work_item, list_work_items
from pagination.cursor import configure_cursor_secret
from readstate.markers import clear_read_status, mark_as_read, mark_many_as_read, unread_count
from report.renderer import render_digest, render_sync_summary
from search.fts import count_search_results, search_events
from storage.db import Database, DEFAULT_DB_PATH
from storage.events import wipe_user
from storage.retry import configure_retry
from sync import sync_user

logger = logging.getLogger(__name__)

DEFAULT_USER = os.getenv("CATCHUP_USER", "default")


def _print_json(obj):
    print(json.dumps(obj, indent=2, default=str))


def _open_file_in_browser(path: str):
    """Open a file URL in the system default web browser."""
    webbrowser.open("file://" + os.path.abspath(path))


def _write_report_file(path: str, content: str, open_html: bool = False):
    """Write the rendered content to a file and optionally open HTML in the browser."""
    out_dir = os.path.dirname(path)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
    # newline='' is safe for CSV on Windows and harmless for other formats
    with open(path, 'w', encoding='utf-8', newline='') as fh:
        fh.write(content)
    print(f"Wrote report to {path}")
    if open_html:
        try:
            _open_file_in_browser(path)
        except webbrowser.Error:
            print('Failed to open browser automatically; file saved at', path)


def write_output(fmt: str, rendered: str, args, prefix: str = "catchup"):
    """Write output to file or stdout; html/md/csv always go to a file."""
    if fmt in ("html", "md", "csv") or args.out_file:
        out_path = args.out_file.strip() or f"{prefix}_{args.user}_{datetime.now(timezone.utc).strftime('%Y%m%dT%H%M%SZ')}.{fmt}"
        _write_report_file(out_path, rendered, open_html=(getattr(args, 'open', False) and fmt == "html"))
    else:
        print(rendered)


def _resolve_token(args, parser):
    """Resolve the GitLab token from --token or GITLAB_TOKEN; parser.error() when missing."""
    token = args.token if args.token else os.getenv('GITLAB_TOKEN')
    if not token:
        parser.error('Missing required token: CLI flag --token or env GITLAB_TOKEN')
    args.token = token


def _resolve_projects(args, parser):
    projects = list(args.project or [])
    if not projects:
        projects = [p.strip() for p in os.getenv('CATCHUP_PROJECTS', '').split(',') if p.strip()]
    if not projects:
        parser.error('No projects to sync: pass --project (repeatable) or set CATCHUP_PROJECTS')
    args.project = projects


def _confirm(prompt: str) -> bool:
    answer = input(prompt)
    return answer.strip().lower() in ("y", "yes")


def cmd_sync(args, db, parser) -> int:
    _resolve_token(args, parser)
    _resolve_projects(args, parser)
    client = GitLabClient(args.token, base_url=args.gitlab_url or None, timeout=args.timeout)
    try:
        summary = sync_user(db, client, args.user, args.project)
    except AuthInvalidError as ex:
        print(f"GitLab rejected the access token: {ex}", file=sys.stderr)
        return 2
    write_output((args.output or 'text').lower(), render_sync_summary(summary, fmt=args.output), args, prefix="catchup_sync")
    return 0 if summary.status == "ok" else 1


def cmd_link(args, db, parser) -> int:
    result = run_linker(db, args.user)
    print(result["link"])
    print(f"Updated Work Items: {result['updated']}")
    return 0


def cmd_validate(args, db, parser) -> int:
    report = validate_relationships(db, args.user, sample_size=args.sample_size)
    print(report)
    return 0 if report.ok else 1


def cmd_events(args, db, parser) -> int:
    _print_json(list_events(db, args.user, cursor=args.cursor, limit=args.limit, event_type=args.type, label=args.label))
    return 0


def cmd_items(args, db, parser) -> int:
    page = list_work_items(
        db, args.user, cursor=args.cursor, limit=args.limit, statuses=args.status, types=args.type,
        projects=args.project, unread_only=args.unread_only,
    )
    _print_json(page)
    return 0


def cmd_show(args, db, parser) -> int:
    _print_json(get_work_item(db, args.user, args.item_id, include_related=not args.no_related))
    return 0


def cmd_search(args, db, parser) -> int:
    if args.count:
        print(count_search_results(db, args.user, args.keywords))
        return 0
    _print_json(search_events(db, args.user, args.keywords, cursor=args.cursor, limit=args.limit))
    return 0


def cmd_mark_read(args, db, parser) -> int:
    if len(args.item_ids) == 1:
        read_at = mark_as_read(db, args.user, args.item_ids[0])
        print(f"Marked {args.item_ids[0]} as read at {read_at.isoformat()}")
        return 0
    written = mark_many_as_read(db, args.user, args.item_ids)
    print(f"Marked {written} of {len(args.item_ids)} item(s) as read")
    return 0


def cmd_mark_unread(args, db, parser) -> int:
    removed = clear_read_status(db, args.user, args.item_id)
    print(f"Cleared read status for {args.item_id}" if removed else f"{args.item_id} had no read marker")
    return 0


def cmd_digest(args, db, parser) -> int:
    page = list_work_items(db, args.user, limit=args.limit, unread_only=True)
    fmt = (args.output or 'text').lower()
    rendered = render_digest(
        page["items"], fmt=fmt, user_id=args.user, unread_total=unread_count(db, args.user),
        generated_at=datetime.now(timezone.utc).isoformat(),
    )
    write_output(fmt, rendered, args, prefix="catchup_digest")
    return 0


def cmd_wipe(args, db, parser) -> int:
    if not args.force and not _confirm(f"Are you sure you want to delete all data for '{args.user}' in {db.path}? This cannot be undone. [y/N]: "):
        print("Aborted wipe.")
        return 1
    removed = wipe_user(db, args.user)
    print(f"Removed {removed} event(s) for {args.user}")
    return 0


def _add_page_flags(p):
    p.add_argument("--cursor", type=str, default=None, help="Opaque cursor from a previous page's next_cursor")
    p.add_argument("--limit", type=int, default=20, help="Page size (max 100)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Catch up on GitLab activity")
    parser.add_argument("--db", type=str, default=DEFAULT_DB_PATH, help="Path to SQLite database (overrides CATCHUP_DB env)")
    parser.add_argument("--user", type=str, default=DEFAULT_USER, help="User whose data to operate on (overrides CATCHUP_USER env)")
    parser.add_argument("--log-level", type=str, default=os.getenv("CATCHUP_LOG_LEVEL", "WARNING"), help="Logging level (overrides CATCHUP_LOG_LEVEL env)")
    # retry/backoff knobs: optional CLI overrides of the CATCHUP_* environment defaults
    parser.add_argument("--max-retries", type=int, default=None, help="Maximum retry attempts for HTTP requests (overrides CATCHUP_MAX_RETRIES env)")
    parser.add_argument("--backoff-base", type=float, default=None, help="Base backoff seconds (overrides CATCHUP_BACKOFF_BASE env)")
    parser.add_argument("--backoff-jitter", type=float, default=None, help="Jitter seconds added to backoff (overrides CATCHUP_BACKOFF_JITTER env)")
    parser.add_argument("--max-backoff", type=float, default=None, help="Maximum backoff cap in seconds (overrides CATCHUP_MAX_BACKOFF env)")
    parser.add_argument("--timeout", type=float, default=None, help="Per-request timeout in seconds (overrides CATCHUP_REQUEST_TIMEOUT env)")
    parser.add_argument("--cursor-secret", type=str, default=None, help="Secret used to sign page cursors (overrides CATCHUP_CURSOR_SECRET env)")

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("sync", help="Fetch new activity, store it and relink")
    p.add_argument("--token", type=str, help="GitLab access token (or env GITLAB_TOKEN)")
    p.add_argument("--project", action="append", help="Project id or path; repeatable (or env CATCHUP_PROJECTS)")
    p.add_argument("--gitlab-url", type=str, default="", help="GitLab base URL (or env GITLAB_URL)")
    p.add_argument("--output", type=str, default="text", help="Summary format (text, md, csv, json)")
    p.add_argument("--out-file", type=str, default="", help="Write the summary to this file")
    p.set_defaults(func=cmd_sync)

    p = sub.add_parser("link", help="Resolve parent links and recompute activity metadata")
    p.set_defaults(func=cmd_link)

    p = sub.add_parser("validate", help="Check stored relationship fields against recomputed values")
    p.add_argument("--sample-size", type=int, default=20)
    p.set_defaults(func=cmd_validate)

    p = sub.add_parser("events", help="List events, newest first")
    _add_page_flags(p)
    p.add_argument("--type", choices=("issue", "merge_request", "comment"), default=None)
    p.add_argument("--label", type=str, default=None)
    p.set_defaults(func=cmd_events)

    p = sub.add_parser("items", help="List work items by latest activity")
    _add_page_flags(p)
    p.add_argument("--status", action="append", choices=("open", "closed", "merged"))
    p.add_argument("--type", action="append", choices=("issue", "merge_request"))
    p.add_argument("--project", action="append")
    p.add_argument("--unread-only", action="store_true")
    p.set_defaults(func=cmd_items)

    p = sub.add_parser("show", help="Show a work item with its activity and related items")
    p.add_argument("item_id")
    p.add_argument("--no-related", action="store_true")
    p.set_defaults(func=cmd_show)

    p = sub.add_parser("search", help="Ranked keyword search (all keywords must match)")
    p.add_argument("keywords", nargs="*")
    _add_page_flags(p)
    p.add_argument("--count", action="store_true", help="Print only the number of matches")
    p.set_defaults(func=cmd_search)

    p = sub.add_parser("mark-read", help="Mark one or more work items as read")
    p.add_argument("item_ids", nargs="+")
    p.set_defaults(func=cmd_mark_read)

    p = sub.add_parser("mark-unread", help="Clear the read marker of a work item")
    p.add_argument("item_id")
    p.set_defaults(func=cmd_mark_unread)

    p = sub.add_parser("digest", help="Render unread work items as a report")
    p.add_argument("--limit", type=int, default=100)
    p.add_argument("--output", type=str, default="text", help="Output format (text, md, csv, json, html)")
    p.add_argument("--out-file", type=str, default="", help="Output file path (for HTML/CSV/MD). If omitted a default name will be used")
    p.add_argument("--open", action="store_true", help="Open the generated HTML report in the default browser")
    p.set_defaults(func=cmd_digest)

    p = sub.add_parser("wipe", help="Delete all stored data for the user")
    p.add_argument("--force", action="store_true", help="Skip the confirmation prompt")
    p.set_defaults(func=cmd_wipe)
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=getattr(logging, str(args.log_level).upper(), logging.WARNING), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    # CLI flags take precedence over environment variables
    configure_retry(max_retries=args.max_retries, backoff_base=args.backoff_base, backoff_jitter=args.backoff_jitter, max_backoff=args.max_backoff, timeout=args.timeout)
    if args.cursor_secret:
        configure_cursor_secret(args.cursor_secret)

    db = Database(args.db)
    try:
        return args.func(args, db, parser)
    except NotFoundError as ex:
        print(f"Not found: {ex}", file=sys.stderr)
        return 3
    except CatchupError as ex:
        print(f"Error: {ex}", file=sys.stderr)
        return 1
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
