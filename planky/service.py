"""Todo service: the API the interactive layer calls."""

import threading
from datetime import datetime
from typing import Any, List, Optional, Union

from planky.coordinator import SyncCoordinator
from planky.errors import InvalidInputError
from planky.logging_setup import get_logger
from planky.mapper import DEFAULT_LIST_NAMES, build_board_lists, map_board_to_project
from planky.models import (
    INBOX_PROJECT_ID,
    OutboundOp,
    Project,
    RemoteCard,
    RemoteComment,
    SyncStatus,
    Todo,
    TodoStatus,
)
from planky.outbound import OutboundQueue
from planky.planka_client import DEFAULT_POSITION
from planky.session import SessionStore
from planky.store import LocalStore
from planky.utils import ensure_aware, utc_now

logger = get_logger(__name__)

# Board created together with a new project
DEFAULT_BOARD_NAME = "Main"

# Display order of the grouped view
STATUS_ORDER = (TodoStatus.DOING, TodoStatus.PENDING, TodoStatus.DONE)


class _Unchanged:
    def __repr__(self) -> str:
        return "UNCHANGED"


# Marker for "leave this field as it is" where None is a meaningful value
UNCHANGED: Any = _Unchanged()


class TodoService:
    """Local-first todo operations.

    Every mutation updates the local store and records its remote intent in
    the outbound queue in one step, then returns without touching the network.
    """

    def __init__(
        self,
        store: Optional[LocalStore] = None,
        queue: Optional[OutboundQueue] = None,
        session: Optional[SessionStore] = None,
        coordinator: Optional[SyncCoordinator] = None,
    ) -> None:
        self.store = store or LocalStore(lock=threading.RLock())
        self.queue = queue or OutboundQueue(lock=self.store.lock)
        self.session = session or SessionStore()
        self.coordinator = coordinator or SyncCoordinator(self.store, self.queue, self.session)

    def start(self) -> None:
        self.coordinator.start()

    def stop(self) -> None:
        self.coordinator.stop()
        self.store.flush()
        self.queue.flush()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @property
    def active_project(self) -> Project:
        return self.session.active_project

    def _syncs(self, project_id: str) -> bool:
        """Whether todos of this project are mirrored to a board."""
        project = self.session.get_project(project_id)
        if project is not None:
            return not project.local_only
        return project_id != INBOX_PROJECT_ID

    @staticmethod
    def _clean_description(description: str) -> str:
        cleaned = (description or "").strip()
        if not cleaned:
            raise InvalidInputError("Description must not be empty")
        return cleaned

    @staticmethod
    def _coerce_status(status: Union[TodoStatus, str]) -> TodoStatus:
        try:
            return TodoStatus(status)
        except ValueError:
            raise InvalidInputError(f"Unknown status '{status}'") from None

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create_todo(self, description: str, due_date: Optional[datetime] = None) -> Todo:
        """
        Create a todo in the active project.

        Args:
            description: Todo text (must not be blank)
            due_date: Resolved due date, naive values are taken as local time

        Returns:
            The new todo
        """
        project = self.active_project
        todo = Todo(
            project_id=project.id,
            description=self._clean_description(description),
            due_date=ensure_aware(due_date),
        )

        with self.store.lock:
            self.store.upsert(todo)
            if self._syncs(project.id):
                self.queue.enqueue(OutboundOp.create(todo))

        logger.info("Created todo", extra={"todo_id": todo.id, "board_id": project.id})
        return todo

    def edit_todo(
        self,
        todo_id: str,
        description: str,
        due_date: Union[datetime, None, _Unchanged] = UNCHANGED,
    ) -> Todo:
        """
        Change a todo's description and, optionally, its due date.

        Args:
            todo_id: Todo ID
            description: New text
            due_date: New due date, None to clear it, UNCHANGED to keep it

        Returns:
            The updated todo
        """
        description = self._clean_description(description)

        with self.store.lock:
            todo = self.store.require(todo_id)
            changes: dict[str, Any] = {}
            if description != todo.description:
                changes["description"] = description
            if due_date is not UNCHANGED:
                due_date = ensure_aware(due_date)
                if due_date != todo.due_date:
                    changes["due_date"] = due_date
            if not changes:
                return todo

            updated = todo.model_copy(update={**changes, "updated_at": utc_now()})
            self.store.upsert(updated)

            if self._syncs(updated.project_id):
                if "description" in changes:
                    self.queue.enqueue(OutboundOp.update_description(updated))
                if "due_date" in changes:
                    self.queue.enqueue(OutboundOp.update_due_date(updated))

        logger.info("Edited todo", extra={"todo_id": todo_id, "fields": sorted(changes)})
        return updated

    def set_status(self, todo_id: str, status: Union[TodoStatus, str]) -> Todo:
        """Move a todo to another workflow status."""
        status = self._coerce_status(status)

        with self.store.lock:
            todo = self.store.require(todo_id)
            if todo.status == status:
                return todo
            updated = todo.model_copy(update={"status": status, "updated_at": utc_now()})
            self.store.upsert(updated)
            if self._syncs(updated.project_id):
                self.queue.enqueue(OutboundOp.update_status(updated))

        logger.info("Changed todo status", extra={"todo_id": todo_id, "status": status})
        return updated

    def delete_todo(self, todo_id: str) -> None:
        """Delete a todo locally and queue removal of its card."""
        with self.store.lock:
            todo = self.store.require(todo_id)
            self.store.remove(todo_id)
            if self._syncs(todo.project_id):
                self.queue.enqueue(OutboundOp.delete(todo))

        logger.info("Deleted todo", extra={"todo_id": todo_id, "card_id": todo.card_id})

    # ------------------------------------------------------------------
    # Sync and projects
    # ------------------------------------------------------------------

    def trigger_sync(self) -> bool:
        return self.coordinator.trigger_sync()

    def switch_project(self, direction: int) -> Project:
        """Activate the next (+1) or previous (-1) project, wrapping around."""
        if direction not in (1, -1):
            raise InvalidInputError("Direction must be +1 or -1")
        project = self.session.cycle_project(direction)
        self.coordinator.trigger_sync()
        return project

    def set_active_project(self, project_id: str) -> Project:
        try:
            project = self.session.set_active_project(project_id)
        except KeyError:
            raise InvalidInputError(f"Unknown project '{project_id}'") from None
        self.coordinator.trigger_sync()
        return project

    def projects(self) -> List[Project]:
        return self.session.projects

    async def login(self, server_url: str, username: str, password: str) -> List[Project]:
        """
        Log in to a Planka server and load its boards as projects.

        The password is used for the token exchange only and never stored.
        """
        if not server_url.strip() or not username.strip():
            raise InvalidInputError("Server URL and username are required")
        if not password:
            raise InvalidInputError("Password is required")
        return await self.coordinator.login(server_url.strip(), username.strip(), password)

    async def create_project(self, name: str) -> Project:
        """Create a Planka project with a first board and make it active."""
        name = (name or "").strip()
        if not name:
            raise InvalidInputError("Project name must not be empty")
        project_id = await self.coordinator.require_client().create_project(name)
        project = await self.create_board(project_id, DEFAULT_BOARD_NAME)
        return self.session.set_active_project(project.id)

    async def create_board(self, project_id: str, name: str) -> Project:
        """
        Create a board in a Planka project, seeded with Todo, Doing and Done lists.

        Returns:
            The new board as a local project
        """
        name = (name or "").strip()
        if not name:
            raise InvalidInputError("Board name must not be empty")

        client = self.coordinator.require_client()
        board = await client.create_board(project_id, name)
        lists = []
        for index, list_name in enumerate(DEFAULT_LIST_NAMES.values(), start=1):
            lists.append(await client.create_list(board.id, list_name, position=DEFAULT_POSITION * index))

        await self.coordinator.refresh_projects()
        self.session.set_board_lists(build_board_lists(board.id, lists))
        logger.info("Created board", extra={"board_id": board.id, "project_id": project_id})
        return self.session.get_project(board.id) or map_board_to_project(board)

    # ------------------------------------------------------------------
    # Card details
    # ------------------------------------------------------------------

    def _linked_card_id(self, todo_id: str) -> str:
        todo = self.store.require(todo_id)
        if todo.card_id is None:
            raise InvalidInputError(f"Todo {todo_id} is not synced to a card yet")
        return todo.card_id

    async def card_details(self, todo_id: str) -> RemoteCard:
        card_id = self._linked_card_id(todo_id)
        return await self.coordinator.require_client().get_card(card_id)

    async def comments(self, todo_id: str) -> List[RemoteComment]:
        card_id = self._linked_card_id(todo_id)
        return await self.coordinator.require_client().list_comments(card_id)

    async def add_comment(self, todo_id: str, text: str) -> str:
        text = (text or "").strip()
        if not text:
            raise InvalidInputError("Comment must not be empty")
        card_id = self._linked_card_id(todo_id)
        return await self.coordinator.require_client().create_comment(card_id, text)

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------

    def todos(self) -> List[Todo]:
        """Todos of the active project in insertion order."""
        return self.store.list(self.active_project.id)

    def visible_todos(self, query: str = "") -> List[Todo]:
        """
        Todos of the active project for display: Doing, then Pending, then Done.

        Args:
            query: Case-insensitive filter on description or due date (YYYY-MM-DD)
        """
        needle = query.strip().casefold()
        todos = self.todos()
        if needle:
            todos = [todo for todo in todos if _matches(todo, needle)]
        return sorted(todos, key=lambda todo: STATUS_ORDER.index(todo.status))

    def due_today(self, now: Optional[datetime] = None) -> List[Todo]:
        """Unfinished todos of the active project due on the current local date."""
        today = (ensure_aware(now) or utc_now()).astimezone().date()
        return [
            todo
            for todo in self.todos()
            if todo.status != TodoStatus.DONE
            and todo.due_date is not None
            and todo.due_date.astimezone().date() == today
        ]

    def pending_count(self) -> int:
        return self.coordinator.pending_count

    def last_sync_error(self) -> Optional[str]:
        return self.coordinator.status().last_error

    def status(self) -> SyncStatus:
        return self.coordinator.status()


def _matches(todo: Todo, needle: str) -> bool:
    if needle in todo.description.casefold():
        return True
    if todo.due_date is not None:
        return needle in todo.due_date.astimezone().strftime("%Y-%m-%d %H:%M")
    return False
