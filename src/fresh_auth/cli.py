"""fresh-auth command line.

Usage:
    fresh-auth login [--name NAME]
    fresh-auth logout
    fresh-auth status
    fresh-auth request <notion|drive|mail|cal>
    fresh-auth notion <command> ...
    fresh-auth drive|mail|cal <command> ...
    fresh-auth serve [--http]

Progress messages go to stderr through logging; command results go to stdout.
Every failure ends with its message on stderr and exit status 1.
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Optional

import httpx

from fresh_auth.broker import BrokerClient, collect_status
from fresh_auth.config import get_settings
from fresh_auth.errors import CLI_NAME, FreshAuthError
from fresh_auth.graph import (
    GraphClient,
    render_drive_info,
    render_drive_list,
    render_drive_search,
    render_event_days,
    render_mail_list,
    render_mail_message,
    render_mail_search,
)
from fresh_auth.grants import GrantFlow, LoginFlow
from fresh_auth.notion import (
    NotionClient,
    block_summary,
    is_probable_notion_id,
    resolve_notion_ref,
    summarize_database,
)
from fresh_auth.pipeline import ProxyPipeline
from fresh_auth.services import SERVICES

logger = logging.getLogger("fresh-auth")

DEFAULT_AGENT_NAME = "Fresh Auth CLI"


def build_broker() -> BrokerClient:
    """Broker client for one CLI invocation."""
    return BrokerClient(get_settings())


def print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


def read_markdown(value: str) -> str:
    """Markdown argument, or stdin when the argument is '-'."""
    if value == "-":
        return sys.stdin.read()
    return value


# =============================================================================
# Session Commands
# =============================================================================


async def cmd_login(args, broker: BrokerClient) -> None:
    await LoginFlow(broker).run(args.name)
    print(f"Next: run '{CLI_NAME} request <notion|drive|mail|cal>' to request access.")


async def cmd_logout(args, broker: BrokerClient) -> None:
    session = broker.store.load()
    if not session:
        print("No active session.")
        return
    await broker.delete_session(session)
    broker.store.clear()
    print("Session cleared.")


async def cmd_status(args, broker: BrokerClient) -> None:
    print_json(await collect_status(broker))


async def cmd_request(args, broker: BrokerClient) -> None:
    service = SERVICES.get(args.service)
    if service is None:
        raise FreshAuthError(
            f"Unknown service: {args.service}\n"
            f"Usage: {CLI_NAME} request <{'|'.join(SERVICES)}>"
        )
    await GrantFlow(broker).run(service)
    print("Access granted.")


# =============================================================================
# Notion Commands
# =============================================================================


async def require_database_id(notion: NotionClient, ref: str) -> str:
    """Resolve a database reference, listing matches when it is not an id."""
    resolved = resolve_notion_ref(ref)
    if is_probable_notion_id(resolved):
        return resolved

    matches = await notion.find_databases(ref)
    lines = [f"'{ref}' is not a database ID."]
    if matches:
        lines.append("Matching databases:")
        lines += [f"  {db['id']}  {db['title']}" for db in matches]
    else:
        lines.append(f"No databases match. List them with: {CLI_NAME} notion find-db")
    raise FreshAuthError("\n".join(lines))


async def cmd_notion(args, broker: BrokerClient) -> None:
    notion = NotionClient.from_pipeline(ProxyPipeline(broker))
    action = args.notion_command

    if action == "me":
        print_json(await notion.me())
    elif action == "search":
        print_json(await notion.search(args.query))
    elif action == "find-db":
        print_json(await notion.find_databases(args.query))
    elif action == "query-db":
        db_id = await require_database_id(notion, args.database)
        print_json(await notion.query_rows(db_id, args.filter_prop, args.filter_value))
    elif action == "backlog":
        print_json(await notion.backlog(args.roadmap))
    elif action == "get-page":
        print_json(await notion.get_page(resolve_notion_ref(args.page)))
    elif action == "get-blocks":
        blocks = await notion.list_block_children(resolve_notion_ref(args.page))
        print_json([block_summary(b) for b in blocks])
    elif action == "get-markdown":
        print(await notion.get_markdown(resolve_notion_ref(args.page)))
    elif action == "get-db":
        db_id = await require_database_id(notion, args.database)
        print_json(summarize_database(await notion.get_database(db_id)))
    elif action == "create":
        db_id = await require_database_id(notion, args.database)
        print_json(await notion.create_page(db_id, args.title, args.props))
    elif action == "create-backlog":
        print_json(await notion.create_backlog_item(args.title, args.props))
    elif action == "update":
        print_json(await notion.update_page(resolve_notion_ref(args.page), args.props))
    elif action == "archive":
        print_json(await notion.archive_page(resolve_notion_ref(args.page)))
    elif action == "set-body":
        print_json(await notion.set_body(resolve_notion_ref(args.page), read_markdown(args.markdown)))
    elif action == "append-body":
        print_json(await notion.append_body(resolve_notion_ref(args.page), read_markdown(args.markdown)))


# =============================================================================
# Microsoft Graph Commands
# =============================================================================


async def cmd_drive(args, broker: BrokerClient) -> None:
    graph = GraphClient(ProxyPipeline(broker))
    action = args.drive_command

    if action == "list":
        print(render_drive_list(await graph.drive_list(args.path), args.path))
    elif action == "search":
        print(render_drive_search(await graph.drive_search(args.query), args.query))
    elif action == "info":
        print(render_drive_info(await graph.drive_info(args.item_id)))
    elif action == "download":
        print(await graph.drive_download(args.item_id, args.output))
    elif action == "content":
        print(await graph.drive_content(args.item_id))


async def cmd_mail(args, broker: BrokerClient) -> None:
    graph = GraphClient(ProxyPipeline(broker))
    action = args.mail_command

    if action in ("inbox", "unread"):
        unread = action == "unread"
        folder = getattr(args, "folder", "inbox")
        messages = await graph.mail_inbox(args.count, unread, folder)
        print(render_mail_list(messages, unread, folder))
    elif action == "search":
        messages = await graph.mail_search(args.query, args.count, args.include_junk)
        print(render_mail_search(messages, args.query))
    elif action == "read":
        print(render_mail_message(await graph.mail_read(args.message_id)))


async def cmd_cal(args, broker: BrokerClient) -> None:
    graph = GraphClient(ProxyPipeline(broker))
    action = args.cal_command

    if action == "events":
        logger.info(f"Fetching calendar events for the next {args.days} day{'s' if args.days != 1 else ''}...")
        days = await graph.calendar_events(args.days, args.details)
        print(render_event_days(days, args.days, args.details))
    elif action == "today":
        print(render_event_days(await graph.calendar_today(args.details), 1, args.details))
    elif action == "tomorrow":
        logger.info("Fetching tomorrow's events...")
        print(render_event_days(await graph.calendar_tomorrow(args.details), 1, args.details))


COMMANDS = {
    "login": cmd_login,
    "logout": cmd_logout,
    "status": cmd_status,
    "request": cmd_request,
    "notion": cmd_notion,
    "drive": cmd_drive,
    "mail": cmd_mail,
    "cal": cmd_cal,
}


async def run_command(args) -> None:
    async with build_broker() as broker:
        await COMMANDS[args.command](args, broker)


# =============================================================================
# Argument Parsing
# =============================================================================


def _add_notion_parser(subparsers) -> None:
    notion = subparsers.add_parser("notion", help="Notion pages and databases")
    sub = notion.add_subparsers(dest="notion_command", required=True)

    sub.add_parser("me", help="Show the integration user")
    p = sub.add_parser("search", help="Search pages and databases")
    p.add_argument("query", nargs="?", default="")
    p = sub.add_parser("find-db", help="Find databases by title")
    p.add_argument("query", nargs="?", default="")

    p = sub.add_parser("query-db", help="Query a database as flat rows")
    p.add_argument("database")
    p.add_argument("--filter-prop", default="")
    p.add_argument("--filter-value", default="")

    p = sub.add_parser("backlog", help="Backlog items grouped by roadmap")
    p.add_argument("--roadmap", default="")

    for name, help_text in (
        ("get-page", "Raw page object"),
        ("get-blocks", "Child blocks of a page"),
        ("get-markdown", "Page content as markdown"),
        ("archive", "Archive a page"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("page")

    p = sub.add_parser("get-db", help="Database schema summary")
    p.add_argument("database")

    p = sub.add_parser("create", help="Create a page in a database")
    p.add_argument("database")
    p.add_argument("title")
    p.add_argument("props", nargs=argparse.REMAINDER,
                   help="-p NAME=VALUE or --TYPE-NAME=VALUE")

    p = sub.add_parser("create-backlog", help="Create a backlog item")
    p.add_argument("title")
    p.add_argument("props", nargs=argparse.REMAINDER,
                   help="--roadmap=NAME --status=NAME -p NAME=VALUE")

    p = sub.add_parser("update", help="Update page properties")
    p.add_argument("page")
    p.add_argument("props", nargs=argparse.REMAINDER,
                   help="-p NAME=VALUE or --TYPE-NAME=VALUE")

    for name, help_text in (
        ("set-body", "Replace page content with markdown"),
        ("append-body", "Append markdown to a page"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("page")
        p.add_argument("markdown", help="Markdown text, or '-' to read stdin")


def _add_graph_parsers(subparsers) -> None:
    drive = subparsers.add_parser("drive", help="OneDrive files")
    sub = drive.add_subparsers(dest="drive_command", required=True)
    p = sub.add_parser("list", help="List a folder")
    p.add_argument("path", nargs="?", default="")
    p = sub.add_parser("search", help="Search files")
    p.add_argument("query")
    for name in ("info", "content"):
        p = sub.add_parser(name)
        p.add_argument("item_id")
    p = sub.add_parser("download", help="Download a file")
    p.add_argument("item_id")
    p.add_argument("-o", "--output")

    mail = subparsers.add_parser("mail", help="Outlook mail")
    sub = mail.add_subparsers(dest="mail_command", required=True)
    p = sub.add_parser("inbox", help="Recent messages")
    p.add_argument("--count", type=int, default=20)
    p.add_argument("--folder", default="inbox")
    p = sub.add_parser("unread", help="Unread messages")
    p.add_argument("--count", type=int, default=20)
    p = sub.add_parser("search", help="Search messages")
    p.add_argument("query")
    p.add_argument("--count", type=int, default=15)
    p.add_argument("--include-junk", action="store_true")
    p = sub.add_parser("read", help="Read one message")
    p.add_argument("message_id")

    cal = subparsers.add_parser("cal", help="Calendar")
    sub = cal.add_subparsers(dest="cal_command", required=True)
    p = sub.add_parser("events", help="Upcoming events")
    p.add_argument("--days", type=int, default=7)
    p.add_argument("--details", action="store_true")
    for name in ("today", "tomorrow"):
        p = sub.add_parser(name)
        p.add_argument("--details", action="store_true")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=CLI_NAME,
        description="Agent-session CLI for Notion and Microsoft 365 via the Fresh auth broker",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    p = subparsers.add_parser("login", help="Register this agent and wait for approval")
    p.add_argument("--name", default=DEFAULT_AGENT_NAME)
    subparsers.add_parser("logout", help="Revoke and delete the agent session")
    subparsers.add_parser("status", help="Session and grant status as JSON")
    p = subparsers.add_parser("request", help="Request a grant for a service")
    p.add_argument("service", help=f"One of: {', '.join(SERVICES)}")

    _add_notion_parser(subparsers)
    _add_graph_parsers(subparsers)

    p = subparsers.add_parser("serve", help="Run the MCP tool server")
    p.add_argument("--http", action="store_true", help="Serve HTTP on localhost:2053 instead of stdio")
    return parser


def main(argv: Optional[list[str]] = None) -> None:
    """Entry point for the fresh-auth console script."""
    args = build_parser().parse_args(argv)

    if args.verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S"
        )
    else:
        logging.basicConfig(level=logging.INFO, format="%(message)s")
    # Keep request lines out of the progress output
    logging.getLogger("httpx").setLevel(logging.WARNING)

    if args.command == "serve":
        from fresh_auth.server import serve
        serve(http=args.http)
        return

    try:
        asyncio.run(run_command(args))
    except httpx.HTTPError as e:
        logger.debug("Command failed", exc_info=True)
        print(f"Network error: {type(e).__name__}: {e}", file=sys.stderr)
        raise SystemExit(1)
    except (FreshAuthError, ValueError) as e:
        logger.debug("Command failed", exc_info=True)
        print(str(e) or type(e).__name__, file=sys.stderr)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
