"""Persisted remote session: credentials token, boards and list classification."""

import threading
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from planky.errors import LocalPersistenceError
from planky.logging_setup import get_logger
from planky.models import BoardLists, Project, Session, inbox_project
from planky.persistence import read_json, write_json_atomic
from planky.settings import settings

logger = get_logger(__name__)


class SessionStore:
    """Owns `session.json`: server, token, known boards, active project."""

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = path or settings.path_for(settings.session_file)
        self.lock = threading.RLock()
        self.persistence_error: Optional[str] = None
        self.session = self._load()

    def _load(self) -> Session:
        data = read_json(self.path)
        if not data:
            return Session()
        try:
            return Session.model_validate(data)
        except ValidationError as e:
            logger.error("Invalid session file, starting fresh", extra={"error": str(e)})
            return Session()

    def save(self) -> None:
        with self.lock:
            try:
                write_json_atomic(self.path, self.session.model_dump(mode="json"))
            except LocalPersistenceError as e:
                logger.error("Failed to persist session", extra={"error": str(e)})
                self.persistence_error = str(e)
                return
            self.persistence_error = None

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    @property
    def is_configured(self) -> bool:
        return bool(self.session.server_url and self.session.token)

    def set_credentials(self, server_url: str, username: str, token: str) -> None:
        with self.lock:
            self.session.server_url = server_url.rstrip("/")
            self.session.username = username
            self.session.token = token
            self.save()

    def clear_token(self) -> None:
        with self.lock:
            self.session.token = None
            self.save()

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    @property
    def projects(self) -> List[Project]:
        with self.lock:
            return list(self.session.projects)

    @property
    def active_project(self) -> Project:
        with self.lock:
            for project in self.session.projects:
                if project.id == self.session.active_project_id:
                    return project
            if self.session.projects:
                return self.session.projects[0]
            return inbox_project()

    def get_project(self, project_id: str) -> Optional[Project]:
        with self.lock:
            for project in self.session.projects:
                if project.id == project_id:
                    return project
        return None

    def set_projects(self, projects: List[Project]) -> None:
        """
        Replace the known boards.

        The active project falls back to the first board when the stored one
        disappeared. An empty board list restores the local Inbox.
        """
        with self.lock:
            self.session.projects = projects or [inbox_project()]
            known = {project.id for project in self.session.projects}
            if self.session.active_project_id not in known:
                self.session.active_project_id = self.session.projects[0].id
            self.session.lists = {
                board_id: lists for board_id, lists in self.session.lists.items() if board_id in known
            }
            self.save()

    def set_active_project(self, project_id: str) -> Project:
        with self.lock:
            project = self.get_project(project_id)
            if project is None:
                raise KeyError(project_id)
            self.session.active_project_id = project.id
            self.save()
            return project

    def cycle_project(self, direction: int) -> Project:
        """Move the active project forwards (+1) or backwards (-1), wrapping."""
        with self.lock:
            if not self.session.projects:
                self.session.projects = [inbox_project()]
            projects = self.session.projects
            ids = [project.id for project in projects]
            try:
                pos = ids.index(self.session.active_project_id)
            except ValueError:
                pos = 0
                direction = 0
            project = projects[(pos + direction) % len(projects)]
            self.session.active_project_id = project.id
            self.save()
            return project

    # ------------------------------------------------------------------
    # List classification cache
    # ------------------------------------------------------------------

    def board_lists(self, board_id: str) -> Optional[BoardLists]:
        with self.lock:
            return self.session.lists.get(board_id)

    def set_board_lists(self, lists: BoardLists) -> None:
        with self.lock:
            if self.session.lists.get(lists.board_id) == lists:
                return
            self.session.lists[lists.board_id] = lists
            self.save()
