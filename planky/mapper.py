"""Data mapping between Planka cards/lists and local todos."""

from typing import Iterable, List, Optional

from planky.logging_setup import get_logger
from planky.models import (
    BoardLists,
    Project,
    RemoteBoard,
    RemoteCard,
    RemoteLink,
    RemoteList,
    SyncMetadata,
    Todo,
    TodoStatus,
)
from planky.utils import normalize_list_name, utc_now

logger = get_logger(__name__)

# Normalized list names recognised for each status
LIST_NAME_ALIASES: dict[TodoStatus, frozenset[str]] = {
    TodoStatus.PENDING: frozenset({"todo", "todos", "pending", "backlog"}),
    TodoStatus.DOING: frozenset({"doing", "inprogress", "wip"}),
    TodoStatus.DONE: frozenset({"done", "completed", "finished"}),
}

# Lists created for a new board
DEFAULT_LIST_NAMES: dict[TodoStatus, str] = {
    TodoStatus.PENDING: "Todo",
    TodoStatus.DOING: "Doing",
    TodoStatus.DONE: "Done",
}


def classify_list_name(name: str) -> Optional[TodoStatus]:
    """
    Classify a remote list name into a todo status.

    Matching ignores case and spacing. Anything not recognised is
    unclassified and returned as None.

    Args:
        name: Remote list name, e.g. "To Do" or "In Progress"

    Returns:
        The status the list represents, or None for an unclassified list
    """
    normalized = normalize_list_name(name)
    for status, aliases in LIST_NAME_ALIASES.items():
        if normalized in aliases:
            return status
    return None


def build_board_lists(board_id: str, lists: Iterable[RemoteList]) -> BoardLists:
    """
    Classify a board's lists.

    Every recognised list is kept for reconciliation; the first one by
    position becomes the push target for its status.
    """
    board_lists = BoardLists(board_id=board_id)
    for remote_list in sorted(lists, key=lambda item: item.position):
        status = classify_list_name(remote_list.name)
        if status is None:
            logger.debug(
                "Ignoring unclassified list",
                extra={"board_id": board_id, "list_name": remote_list.name},
            )
            continue
        board_lists.classified[remote_list.id] = status
        board_lists.targets.setdefault(status, remote_list.id)
    return board_lists


def map_board_to_project(board: RemoteBoard) -> Project:
    """Map a Planka board to a local project scope."""
    return Project(
        id=board.id,
        name=board.name,
        remote_project_id=board.project_id,
        remote_project_name=board.project_name,
    )


def map_card_to_todo(card: RemoteCard, status: TodoStatus) -> Todo:
    """
    Build a local todo for a card discovered on the board.

    Args:
        card: Remote card
        status: Status implied by the card's list

    Returns:
        New linked Todo
    """
    now = utc_now()
    return Todo(
        project_id=card.board_id,
        description=card.name,
        due_date=card.due_date,
        status=status,
        created_at=card.created_at or now,
        updated_at=now,
        remote=RemoteLink(board_id=card.board_id, list_id=card.list_id, card_id=card.id),
        sync=SyncMetadata(revision=card.revision, last_synced_at=now),
    )


def card_differs(todo: Todo, card: RemoteCard, status: TodoStatus) -> bool:
    """Check whether applying a card would change any local field."""
    return (
        todo.description != card.name
        or todo.due_date != card.due_date
        or todo.status != status
        or todo.remote is None
        or todo.remote.list_id != card.list_id
    )


def apply_card_to_todo(todo: Todo, card: RemoteCard, status: TodoStatus) -> Todo:
    """
    Return a copy of the todo with the remote card's fields applied.

    The local identity and creation time are kept; the revision marker
    advances to the card's.
    """
    now = utc_now()
    return todo.model_copy(
        update={
            "description": card.name,
            "due_date": card.due_date,
            "status": status,
            "remote": RemoteLink(board_id=card.board_id, list_id=card.list_id, card_id=card.id),
            "sync": SyncMetadata(revision=card.revision, last_synced_at=now),
        }
    )


def cards_in_classified_lists(cards: Iterable[RemoteCard], board_lists: BoardLists) -> List[RemoteCard]:
    """Keep only the cards whose list maps to a status."""
    return [card for card in cards if board_lists.status_of(card.list_id) is not None]
