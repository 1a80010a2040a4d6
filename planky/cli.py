"""
Headless command line front end.

Usage:
    planky login https://planka.example.com alice
    planky add "Ship release" --due 2026-11-01
    planky list [QUERY]
    planky doing 3f2a
    planky done 3f2a
    planky rm 3f2a
    planky sync
    planky status
    planky boards [--use BOARD_ID]

Todo IDs may be abbreviated to any unique prefix.
"""

import argparse
import asyncio
import getpass
import sys
from datetime import datetime
from typing import List, Optional

from planky import __version__
from planky.errors import InvalidInputError, PlankyError
from planky.logging_setup import get_logger, setup_logging
from planky.models import Todo, TodoStatus
from planky.service import TodoService

logger = get_logger(__name__)

STATUS_MARKS = {
    TodoStatus.PENDING: "[ ]",
    TodoStatus.DOING: "[~]",
    TodoStatus.DONE: "[x]",
}


def parse_due(value: str) -> datetime:
    """Parse `YYYY-MM-DD` or `YYYY-MM-DD HH:MM` as local time."""
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid date '{value}', use YYYY-MM-DD [HH:MM]") from None


def resolve_todo_id(service: TodoService, prefix: str) -> str:
    """Expand an abbreviated todo ID within the active project."""
    matches = [todo.id for todo in service.todos() if todo.id.startswith(prefix)]
    if not matches:
        raise InvalidInputError(f"No todo matches '{prefix}'")
    if len(matches) > 1:
        raise InvalidInputError(f"'{prefix}' is ambiguous ({len(matches)} todos)")
    return matches[0]


def format_todo(todo: Todo, pending: bool) -> str:
    line = f"{STATUS_MARKS[todo.status]} {todo.id[:8]}  {todo.description}"
    if todo.due_date is not None:
        line += f"  (due {todo.due_date.astimezone():%Y-%m-%d %H:%M})"
    if pending:
        line += "  *"
    return line


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="planky", description="Local-first todos synced with Planka")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    login = sub.add_parser("login", help="Log in to a Planka server and load its boards")
    login.add_argument("server_url")
    login.add_argument("username")
    login.add_argument("--password", help="Prompted for when omitted")

    add = sub.add_parser("add", help="Add a todo to the active board")
    add.add_argument("description")
    add.add_argument("--due", type=parse_due, help="Due date, YYYY-MM-DD [HH:MM]")

    listing = sub.add_parser("list", help="Show todos of the active board")
    listing.add_argument("query", nargs="?", default="", help="Filter by text or due date")

    sub.add_parser("status", help="Show sync status")

    for name, help_text in (("done", "Mark a todo done"), ("doing", "Mark a todo in progress")):
        command = sub.add_parser(name, help=help_text)
        command.add_argument("todo_id")

    remove = sub.add_parser("rm", help="Delete a todo")
    remove.add_argument("todo_id")

    sub.add_parser("sync", help="Push pending changes and pull the active board")

    boards = sub.add_parser("boards", help="List boards, optionally switching the active one")
    boards.add_argument("--use", metavar="BOARD_ID", help="Make this board active")

    return parser


async def run(args: argparse.Namespace, service: TodoService) -> int:
    """Execute one command; returns the process exit code."""
    command = args.command

    if command == "login":
        password = args.password or getpass.getpass("Password: ")
        projects = await service.login(args.server_url, args.username, password)
        print(f"✅ Logged in, {len(projects)} board(s) available")
        print(f"   Active board: {service.active_project.name}")
        return 0

    if command == "add":
        todo = service.create_todo(args.description, args.due)
        print(f"Added {todo.id[:8]}  {todo.description}")
        return 0

    if command == "list":
        pending = service.queue.pending_todo_ids()
        todos = service.visible_todos(args.query)
        print(f"{service.active_project.name} ({len(todos)} todos)")
        for todo in todos:
            print(f"  {format_todo(todo, todo.id in pending)}")
        due = service.due_today()
        if due:
            print(f"\n⏰ {len(due)} due today")
        return 0

    if command in ("done", "doing"):
        status = TodoStatus.DONE if command == "done" else TodoStatus.DOING
        todo = service.set_status(resolve_todo_id(service, args.todo_id), status)
        print(format_todo(todo, service.queue.has_pending(todo.id)))
        return 0

    if command == "rm":
        todo_id = resolve_todo_id(service, args.todo_id)
        service.delete_todo(todo_id)
        print(f"Deleted {todo_id[:8]}")
        return 0

    if command == "sync":
        await service.coordinator.sync_once()
        status = service.status()
        for notice in service.coordinator.take_notices():
            print(f"⚠️  {notice.message}")
        if status.last_error:
            print(f"⚠️  Sync incomplete: {status.last_error}")
            return 1
        print(f"✅ Synced, {status.pending_count} change(s) pending")
        return 0

    if command == "status":
        status = service.status()
        print(f"Board:    {service.active_project.name}")
        print(f"State:    {status.state.value}")
        print(f"Pending:  {status.pending_count}")
        if status.last_sync_at:
            print(f"Synced:   {status.last_sync_at.astimezone():%Y-%m-%d %H:%M:%S}")
        if status.auth_required:
            print("Login required")
        if status.last_error:
            print(f"Error:    {status.last_error}")
        if status.persistence_error:
            print(f"Storage:  {status.persistence_error}")
        return 0

    if command == "boards":
        if args.use:
            service.set_active_project(args.use)
        active = service.active_project.id
        for project in service.projects():
            mark = "*" if project.id == active else " "
            owner = f"{project.remote_project_name} / " if project.remote_project_name else ""
            print(f"{mark} {project.id}  {owner}{project.name}")
        return 0

    raise InvalidInputError(f"Unknown command '{command}'")


async def _main(argv: Optional[List[str]]) -> int:
    args = build_parser().parse_args(argv)
    service = TodoService()
    try:
        return await run(args, service)
    except PlankyError as e:
        logger.warning("Command failed", extra={"command": args.command, "error": str(e)})
        print(f"❌ {e}", file=sys.stderr)
        return 1
    finally:
        await service.coordinator.close()


def main(argv: Optional[List[str]] = None) -> int:
    setup_logging()
    return asyncio.run(_main(argv))


if __name__ == "__main__":
    sys.exit(main())
