"""Pytest configuration and shared fixtures."""

import threading
from datetime import datetime, timezone
from unittest.mock import DEFAULT, AsyncMock, MagicMock

import pytest

from planky.models import BoardLists, Project, RemoteCard, RemoteList, TodoStatus
from planky.outbound import OutboundQueue
from planky.planka_client import PlankaClient
from planky.session import SessionStore
from planky.store import LocalStore

BOARD_ID = "7"
TODO_LIST_ID = "10"
DOING_LIST_ID = "11"
DONE_LIST_ID = "12"
SERVER_URL = "https://planka.example.com"


def make_card(**overrides) -> RemoteCard:
    """Build a remote card on the test board."""
    defaults = {
        "id": "42",
        "board_id": BOARD_ID,
        "list_id": TODO_LIST_ID,
        "name": "Ship release",
        "created_at": datetime(2026, 10, 1, 9, 0, tzinfo=timezone.utc),
        "updated_at": datetime(2026, 10, 1, 9, 0, tzinfo=timezone.utc),
    }
    defaults.update(overrides)
    return RemoteCard(**defaults)


def make_lists() -> list[RemoteList]:
    """The three classified lists of the test board, plus an unclassified one."""
    return [
        RemoteList(id=TODO_LIST_ID, board_id=BOARD_ID, name="To Do", position=1),
        RemoteList(id=DOING_LIST_ID, board_id=BOARD_ID, name="Doing", position=2),
        RemoteList(id=DONE_LIST_ID, board_id=BOARD_ID, name="Done", position=3),
        RemoteList(id="13", board_id=BOARD_ID, name="Ideas", position=4),
    ]


@pytest.fixture
def board_lists() -> BoardLists:
    """Classification of the test board's lists."""
    return BoardLists(
        board_id=BOARD_ID,
        targets={
            TodoStatus.PENDING: TODO_LIST_ID,
            TodoStatus.DOING: DOING_LIST_ID,
            TodoStatus.DONE: DONE_LIST_ID,
        },
        classified={
            TODO_LIST_ID: TodoStatus.PENDING,
            DOING_LIST_ID: TodoStatus.DOING,
            DONE_LIST_ID: TodoStatus.DONE,
        },
    )


@pytest.fixture
def store(tmp_path) -> LocalStore:
    """Local store backed by a temp file."""
    return LocalStore(path=tmp_path / "todos.json", lock=threading.RLock())


@pytest.fixture
def queue(tmp_path, store) -> OutboundQueue:
    """Outbound queue sharing the store's lock."""
    return OutboundQueue(
        path=tmp_path / "pending_ops.json",
        lock=store.lock,
        base_delay=2.0,
        max_delay=300.0,
    )


@pytest.fixture
def session(tmp_path, board_lists) -> SessionStore:
    """Logged-in session with the test board active and its lists cached."""
    s = SessionStore(path=tmp_path / "session.json")
    s.set_credentials(SERVER_URL, "alice", "tok_abcdefghijklmnop")
    s.set_projects(
        [
            Project(id=BOARD_ID, name="Work", remote_project_id="1", remote_project_name="Team"),
            Project(id="8", name="Home", remote_project_id="1", remote_project_name="Team"),
        ]
    )
    s.set_active_project(BOARD_ID)
    s.set_board_lists(board_lists)
    return s


@pytest.fixture
def mock_client():
    """Planka client with every remote call mocked.

    `fetch_board` serves `return_value` for the test board and an empty board
    for any other board id.
    """
    client = MagicMock(spec=PlankaClient)
    for name in (
        "login",
        "list_boards",
        "fetch_board",
        "list_lists",
        "list_cards",
        "create_project",
        "create_board",
        "create_list",
        "create_card",
        "move_card",
        "update_card",
        "delete_card",
        "get_card",
        "list_comments",
        "create_comment",
        "close",
    ):
        setattr(client, name, AsyncMock())
    client.fetch_board.return_value = (make_lists(), [])
    client.fetch_board.side_effect = lambda board_id: DEFAULT if board_id == BOARD_ID else ([], [])
    client.list_lists.return_value = make_lists()
    return client
