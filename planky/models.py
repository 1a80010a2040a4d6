"""Pydantic models for todos, remote board payloads and sync state."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from planky.utils import ensure_aware, new_id, utc_now

INBOX_PROJECT_ID = "inbox"


# ============================================================================
# Local models
# ============================================================================


class TodoStatus(str, Enum):
    """Workflow status of a todo."""

    PENDING = "pending"
    DOING = "doing"
    DONE = "done"


class RemoteLink(BaseModel):
    """Remote identifiers of the card a todo is mirrored to.

    All three identifiers are required, so a partially linked todo cannot be
    constructed or loaded.
    """

    board_id: str = Field(min_length=1)
    list_id: str = Field(min_length=1)
    card_id: str = Field(min_length=1)


class SyncMetadata(BaseModel):
    """Per-todo sync bookkeeping."""

    revision: Optional[str] = None  # Remote revision marker last applied locally
    last_synced_at: Optional[datetime] = None


class Todo(BaseModel):
    """A local todo, optionally linked to a remote card."""

    id: str = Field(default_factory=new_id)
    project_id: str
    description: str
    due_date: Optional[datetime] = None
    status: TodoStatus = TodoStatus.PENDING
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    remote: Optional[RemoteLink] = None
    sync: SyncMetadata = Field(default_factory=SyncMetadata)

    @field_validator("due_date", "created_at", "updated_at")
    @classmethod
    def _attach_timezone(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_aware(value)

    @property
    def card_id(self) -> Optional[str]:
        return self.remote.card_id if self.remote else None


class Project(BaseModel):
    """A board the todo list can be scoped to."""

    id: str  # Remote board ID
    name: str
    remote_project_id: Optional[str] = None
    remote_project_name: Optional[str] = None
    local_only: bool = False


def inbox_project() -> Project:
    """Default project used before any board is known."""
    return Project(id=INBOX_PROJECT_ID, name="Inbox", local_only=True)


class BoardLists(BaseModel):
    """Classification of a board's lists into todo statuses."""

    board_id: str
    targets: dict[TodoStatus, str] = Field(default_factory=dict)  # status -> list ID
    classified: dict[str, TodoStatus] = Field(default_factory=dict)  # list ID -> status

    def list_for(self, status: TodoStatus) -> Optional[str]:
        """List a card with the given status should live in, if the board has one."""
        return self.targets.get(status)

    def status_of(self, list_id: str) -> Optional[TodoStatus]:
        """Status implied by a list, or None for an unclassified list."""
        return self.classified.get(list_id)


class Session(BaseModel):
    """Persisted remote session and project configuration."""

    server_url: str = ""
    username: str = ""
    token: Optional[str] = None
    projects: list[Project] = Field(default_factory=lambda: [inbox_project()])
    active_project_id: str = INBOX_PROJECT_ID
    lists: dict[str, BoardLists] = Field(default_factory=dict)  # board ID -> lists


# ============================================================================
# Outbound operations
# ============================================================================


class OpKind(str, Enum):
    """Kinds of intended remote effects."""

    CREATE = "create"
    UPDATE_DESCRIPTION = "update_description"
    UPDATE_STATUS = "update_status"
    UPDATE_DUE_DATE = "update_due_date"
    DELETE = "delete"


UPDATE_KINDS = (OpKind.UPDATE_DESCRIPTION, OpKind.UPDATE_STATUS, OpKind.UPDATE_DUE_DATE)


class OutboundOp(BaseModel):
    """One queued local mutation awaiting application to the remote board."""

    id: str = Field(default_factory=new_id)
    kind: OpKind
    todo_id: str
    board_id: str

    # New values; which ones are meaningful depends on `kind`
    description: Optional[str] = None
    status: Optional[TodoStatus] = None
    due_date: Optional[datetime] = None
    card_id: Optional[str] = None  # Delete carries the link, the todo is gone locally

    # Queue bookkeeping
    seq: int = 0
    revision: int = 0
    attempts: int = 0
    next_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    enqueued_at: datetime = Field(default_factory=utc_now)
    idempotency_key: str = Field(default_factory=new_id)

    @classmethod
    def create(cls, todo: Todo) -> "OutboundOp":
        return cls(
            kind=OpKind.CREATE,
            todo_id=todo.id,
            board_id=todo.project_id,
            description=todo.description,
            status=todo.status,
            due_date=todo.due_date,
        )

    @classmethod
    def update_description(cls, todo: Todo) -> "OutboundOp":
        return cls(
            kind=OpKind.UPDATE_DESCRIPTION,
            todo_id=todo.id,
            board_id=todo.project_id,
            description=todo.description,
        )

    @classmethod
    def update_status(cls, todo: Todo) -> "OutboundOp":
        return cls(
            kind=OpKind.UPDATE_STATUS,
            todo_id=todo.id,
            board_id=todo.project_id,
            status=todo.status,
        )

    @classmethod
    def update_due_date(cls, todo: Todo) -> "OutboundOp":
        return cls(
            kind=OpKind.UPDATE_DUE_DATE,
            todo_id=todo.id,
            board_id=todo.project_id,
            due_date=todo.due_date,
        )

    @classmethod
    def delete(cls, todo: Todo) -> "OutboundOp":
        return cls(
            kind=OpKind.DELETE,
            todo_id=todo.id,
            board_id=todo.project_id,
            card_id=todo.card_id,
        )


# ============================================================================
# Planka payloads
# ============================================================================


class PlankaModel(BaseModel):
    """Base for payloads read from the Planka API (camelCase keys)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RemoteBoard(PlankaModel):
    """Planka board object."""

    id: str
    name: str
    project_id: Optional[str] = None
    project_name: Optional[str] = None
    position: float = 0


class RemoteList(PlankaModel):
    """Planka list object."""

    id: str
    board_id: str
    name: str = ""
    position: float = 0


class RemoteCard(PlankaModel):
    """Planka card object."""

    id: str
    board_id: str
    list_id: str
    name: str
    description: Optional[str] = None
    due_date: Optional[datetime] = None
    position: float = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def revision(self) -> Optional[str]:
        """Revision marker: last update time, or creation time for untouched cards."""
        stamp = self.updated_at or self.created_at
        return stamp.isoformat() if stamp else None


class RemoteComment(PlankaModel):
    """A comment on a Planka card."""

    id: str
    card_id: str
    text: str
    user_name: Optional[str] = None
    created_at: Optional[datetime] = None


# ============================================================================
# Sync state
# ============================================================================


class SyncState(str, Enum):
    """Sync coordinator state."""

    IDLE = "idle"
    SYNCING = "syncing"
    BACKOFF = "backoff"


class SyncNotice(BaseModel):
    """A permanent sync failure surfaced once to the user."""

    todo_id: str
    kind: OpKind
    message: str
    at: datetime = Field(default_factory=utc_now)


class ReconcileSummary(BaseModel):
    """Counts produced by one reconciliation pass."""

    created: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0  # Remote changes ignored because a local op is pending


class DrainSummary(BaseModel):
    """Outcome of applying one batch of outbound ops."""

    acked: int = 0
    retried: int = 0
    dropped: int = 0
    notices: list[SyncNotice] = Field(default_factory=list)


class SyncStatus(BaseModel):
    """Read-only snapshot published to the interactive layer."""

    state: SyncState = SyncState.IDLE
    pending_count: int = 0
    last_error: Optional[str] = None
    auth_required: bool = False
    last_sync_at: Optional[datetime] = None
    persistence_error: Optional[str] = None
    notices: list[SyncNotice] = Field(default_factory=list)
