"""File-backed local store for todos and their sync metadata."""

import threading
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional

from pydantic import ValidationError

from planky.errors import LocalPersistenceError, TodoNotFoundError
from planky.logging_setup import get_logger
from planky.models import RemoteLink, Todo
from planky.persistence import read_json, write_json_atomic
from planky.settings import settings
from planky.utils import utc_now

logger = get_logger(__name__)


class LocalStore:
    """In-memory todo set, persisted to a JSON file after every mutation.

    Todos keep insertion order so the interactive list stays stable. All
    mutations run under `lock`, which the outbound queue shares.
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        lock: Optional[threading.RLock] = None,
    ) -> None:
        """
        Initialize the store and load any persisted todos.

        Args:
            path: JSON file (defaults to settings)
            lock: Mutual-exclusion domain shared with the outbound queue
        """
        self.path = path or settings.path_for(settings.todos_file)
        self.lock = lock or threading.RLock()
        self.persistence_error: Optional[str] = None
        self._todos: dict[str, Todo] = {}
        self._load()

    def _load(self) -> None:
        data = read_json(self.path)
        if not data:
            return

        for raw in data.get("todos", []):
            try:
                todo = Todo.model_validate(raw)
            except ValidationError as e:
                logger.error(
                    "Skipping invalid todo record",
                    extra={"todo_id": raw.get("id"), "error": str(e)},
                )
                continue
            self._todos[todo.id] = todo

        logger.info("Loaded todos", extra={"count": len(self._todos), "path": str(self.path)})

    def _persist(self) -> None:
        """Write the todo set; failures are recorded, never raised."""
        data = {"todos": [todo.model_dump(mode="json") for todo in self._todos.values()]}
        try:
            write_json_atomic(self.path, data)
        except LocalPersistenceError as e:
            logger.error("Failed to persist todos", extra={"error": str(e)})
            self.persistence_error = str(e)
            return
        self.persistence_error = None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, todo_id: str) -> Optional[Todo]:
        with self.lock:
            return self._todos.get(todo_id)

    def require(self, todo_id: str) -> Todo:
        todo = self.get(todo_id)
        if todo is None:
            raise TodoNotFoundError(todo_id)
        return todo

    def list(self, project_id: str) -> List[Todo]:
        """Todos of a project in insertion order."""
        with self.lock:
            return [todo for todo in self._todos.values() if todo.project_id == project_id]

    def linked(self, project_id: str) -> List[Todo]:
        """Todos of a project that are linked to a remote card."""
        return [todo for todo in self.list(project_id) if todo.remote is not None]

    def find_by_card(self, project_id: str, card_id: str) -> Optional[Todo]:
        with self.lock:
            for todo in self._todos.values():
                if todo.project_id == project_id and todo.card_id == card_id:
                    return todo
        return None

    def __len__(self) -> int:
        return len(self._todos)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def upsert(self, todo: Todo) -> Todo:
        """Insert or replace a todo. Replacing keeps its list position."""
        with self.lock:
            self._todos[todo.id] = todo
            self._persist()
        return todo

    def upsert_many(self, todos: Iterable[Todo]) -> None:
        """Insert or replace several todos with a single write."""
        with self.lock:
            for todo in todos:
                self._todos[todo.id] = todo
            self._persist()

    def remove(self, todo_id: str) -> Optional[Todo]:
        with self.lock:
            removed = self._todos.pop(todo_id, None)
            if removed is not None:
                self._persist()
        return removed

    def remove_many(self, todo_ids: Iterable[str]) -> int:
        with self.lock:
            removed = [self._todos.pop(todo_id) for todo_id in list(todo_ids) if todo_id in self._todos]
            if removed:
                self._persist()
        return len(removed)

    def mark_remote_linked(
        self,
        todo_id: str,
        board_id: str,
        list_id: str,
        card_id: str,
        revision: Optional[str] = None,
    ) -> Optional[Todo]:
        """
        Record the remote card a todo was pushed to.

        Returns:
            The updated todo, or None if it was deleted in the meantime
        """
        with self.lock:
            todo = self._todos.get(todo_id)
            if todo is None:
                return None
            todo.remote = RemoteLink(board_id=board_id, list_id=list_id, card_id=card_id)
            self._stamp_synced(todo, revision)
            self._persist()
            return todo

    def set_list(self, todo_id: str, list_id: str) -> None:
        """Record the list a linked todo's card was moved to.

        The revision marker is left alone; the next reconcile compares content
        and picks up any remote edit that landed before the move.
        """
        with self.lock:
            todo = self._todos.get(todo_id)
            if todo is None or todo.remote is None:
                return
            todo.remote = todo.remote.model_copy(update={"list_id": list_id})
            self._stamp_synced(todo, None)
            self._persist()

    def mark_pushed(self, todo_id: str) -> None:
        """Stamp the sync time after a confirmed update push."""
        with self.lock:
            todo = self._todos.get(todo_id)
            if todo is None:
                return
            self._stamp_synced(todo, None)
            self._persist()

    @staticmethod
    def _stamp_synced(todo: Todo, revision: Optional[str], at: Optional[datetime] = None) -> None:
        if revision is not None:
            todo.sync.revision = revision
        todo.sync.last_synced_at = at or utc_now()

    def flush(self) -> None:
        """Retry persisting the current state, e.g. after a failed write."""
        with self.lock:
            self._persist()
