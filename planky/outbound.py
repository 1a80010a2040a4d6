"""Durable outbound queue of local mutations awaiting remote application."""

import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional, Set

from pydantic import ValidationError

from planky.errors import LocalPersistenceError
from planky.logging_setup import get_logger
from planky.models import UPDATE_KINDS, OpKind, OutboundOp
from planky.persistence import read_json, write_json_atomic
from planky.settings import settings
from planky.utils import utc_now

logger = get_logger(__name__)

# Field of OutboundOp carrying the new value for each update kind
VALUE_FIELDS = {
    OpKind.UPDATE_DESCRIPTION: "description",
    OpKind.UPDATE_STATUS: "status",
    OpKind.UPDATE_DUE_DATE: "due_date",
}


class OutboundQueue:
    """Ordered, coalesced log of pending remote mutations.

    Holds at most one entry per (todo, kind). Updates to a todo whose Create
    has not been confirmed fold into that Create. Every change is written to
    disk atomically, so a restart never loses an op.
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        lock: Optional[threading.RLock] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
    ) -> None:
        """
        Initialize the queue and load persisted ops.

        Args:
            path: JSON file (defaults to settings)
            lock: Mutual-exclusion domain shared with the local store
            base_delay: First retry delay in seconds (defaults to settings)
            max_delay: Retry delay cap in seconds (defaults to settings)
        """
        self.path = path or settings.path_for(settings.pending_ops_file)
        self.lock = lock or threading.RLock()
        self.base_delay = base_delay if base_delay is not None else settings.retry_base_delay
        self.max_delay = max_delay if max_delay is not None else settings.retry_max_delay
        self.persistence_error: Optional[str] = None
        self._ops: dict[str, OutboundOp] = {}
        self._next_seq = 1
        self._load()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> None:
        data = read_json(self.path)
        if not data:
            return

        for raw in data.get("ops", []):
            try:
                op = OutboundOp.model_validate(raw)
            except ValidationError as e:
                logger.error("Skipping invalid queued op", extra={"op": raw, "error": str(e)})
                continue
            self._ops[op.id] = op

        highest = max((op.seq for op in self._ops.values()), default=0)
        self._next_seq = max(int(data.get("next_seq", 1)), highest + 1)
        logger.info("Loaded outbound queue", extra={"pending": len(self._ops)})

    def _persist(self) -> None:
        data = {
            "next_seq": self._next_seq,
            "ops": [op.model_dump(mode="json") for op in self._ordered()],
        }
        try:
            write_json_atomic(self.path, data)
        except LocalPersistenceError as e:
            logger.error("Failed to persist outbound queue", extra={"error": str(e)})
            self.persistence_error = str(e)
            return
        self.persistence_error = None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ordered(self) -> List[OutboundOp]:
        return sorted(self._ops.values(), key=lambda op: op.seq)

    def _for_todo(self, todo_id: str) -> List[OutboundOp]:
        return [op for op in self._ordered() if op.todo_id == todo_id]

    def _insert(self, op: OutboundOp) -> OutboundOp:
        op.seq = self._next_seq
        self._next_seq += 1
        self._ops[op.id] = op
        return op

    @staticmethod
    def _refresh(op: OutboundOp) -> None:
        """Mark an op as carrying a newer intent; earlier failures no longer apply."""
        op.revision += 1
        op.attempts = 0
        op.next_attempt_at = None
        op.last_error = None

    def backoff_delay(self, attempts: int) -> float:
        """Seconds to wait after the given number of failed attempts."""
        return min(self.max_delay, self.base_delay * (2 ** max(attempts - 1, 0)))

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------

    def enqueue(self, op: OutboundOp) -> Optional[OutboundOp]:
        """
        Add a local mutation, coalescing with what is already queued.

        Args:
            op: The new intent

        Returns:
            The queued entry now carrying the intent, or None when the intent
            cancelled out (e.g. deleting a todo that never reached the board)
        """
        with self.lock:
            existing = self._for_todo(op.todo_id)
            create = next((o for o in existing if o.kind == OpKind.CREATE), None)
            result: Optional[OutboundOp]

            if op.kind == OpKind.DELETE:
                for queued in existing:
                    del self._ops[queued.id]
                if create is not None or op.card_id is None:
                    logger.info("Delete cancelled unpushed todo", extra={"todo_id": op.todo_id})
                    result = None
                else:
                    result = self._insert(op)

            elif any(o.kind == OpKind.DELETE for o in existing):
                logger.warning(
                    "Ignoring update for todo pending deletion",
                    extra={"todo_id": op.todo_id, "kind": op.kind},
                )
                return None

            elif op.kind == OpKind.CREATE:
                if create is not None:
                    create.description = op.description
                    create.status = op.status
                    create.due_date = op.due_date
                    self._refresh(create)
                    result = create
                else:
                    result = self._insert(op)

            elif create is not None:
                field = VALUE_FIELDS[op.kind]
                setattr(create, field, getattr(op, field))
                self._refresh(create)
                result = create

            else:
                same = next((o for o in existing if o.kind == op.kind), None)
                if same is not None:
                    field = VALUE_FIELDS[op.kind]
                    setattr(same, field, getattr(op, field))
                    self._refresh(same)
                    result = same
                else:
                    result = self._insert(op)

            self._persist()

        logger.info(
            "Enqueued outbound op",
            extra={
                "todo_id": op.todo_id,
                "kind": op.kind,
                "coalesced_into": result.kind if result is not None else None,
            },
        )
        return result

    def peek_batch(self, max_n: int, now: Optional[datetime] = None) -> List[OutboundOp]:
        """
        Return up to `max_n` ops that are due, oldest first.

        Ops waiting out a backoff are skipped. The queue is not modified; the
        returned ops are copies, to be resolved with `ack` or `fail`.
        """
        now = now or utc_now()
        with self.lock:
            ready = [
                op for op in self._ordered()
                if op.next_attempt_at is None or op.next_attempt_at <= now
            ]
            return [op.model_copy() for op in ready[:max_n]]

    def ack(self, op_id: str, revision: Optional[int] = None) -> bool:
        """
        Remove an op after the remote confirmed it.

        Args:
            op_id: Queued op ID
            revision: Revision of the op as it was sent. If a newer intent was
                coalesced in since, the op stays queued to push that intent.

        Returns:
            True if the op was removed
        """
        with self.lock:
            op = self._ops.get(op_id)
            if op is None:
                return False

            if revision is not None and op.revision != revision:
                if op.kind == OpKind.CREATE:
                    self._convert_create(op)
                else:
                    op.attempts = 0
                    op.next_attempt_at = None
                    op.last_error = None
                self._persist()
                logger.info(
                    "Acked op carries a newer intent, keeping it queued",
                    extra={"todo_id": op.todo_id, "kind": op.kind},
                )
                return False

            del self._ops[op_id]
            self._persist()
            return True

    def _convert_create(self, create: OutboundOp) -> None:
        """The card exists now; push the newer values as plain updates."""
        del self._ops[create.id]
        for kind in UPDATE_KINDS:
            field = VALUE_FIELDS[kind]
            update = OutboundOp(
                kind=kind,
                todo_id=create.todo_id,
                board_id=create.board_id,
                **{field: getattr(create, field)},
            )
            self._insert(update)

    def fail(
        self,
        op_id: str,
        retriable: bool,
        error: str,
        revision: Optional[int] = None,
        retry_after: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> Optional[OutboundOp]:
        """
        Record a failed attempt.

        Retriable failures keep the op queued with exponential backoff.
        Permanent failures drop it and hand it back so the caller can tell the
        user which todo is now out of sync.

        Args:
            op_id: Queued op ID
            retriable: Whether the failure is transient
            error: Failure description
            revision: Revision of the op as it was sent
            retry_after: Minimum delay requested by the server
            now: Clock override

        Returns:
            The dropped op for permanent failures, otherwise None
        """
        now = now or utc_now()
        with self.lock:
            op = self._ops.get(op_id)
            if op is None:
                return None

            if revision is not None and op.revision != revision:
                # The failed attempt carried a superseded value
                op.attempts = 0
                op.next_attempt_at = None
                self._persist()
                return None

            if retriable:
                op.attempts += 1
                delay = self.backoff_delay(op.attempts)
                if retry_after is not None:
                    delay = max(delay, retry_after)
                op.next_attempt_at = now + timedelta(seconds=delay)
                op.last_error = error
                self._persist()
                logger.warning(
                    "Outbound op failed, will retry",
                    extra={
                        "todo_id": op.todo_id,
                        "kind": op.kind,
                        "attempts": op.attempts,
                        "retry_in": delay,
                        "error": error,
                    },
                )
                return None

            del self._ops[op_id]
            op.last_error = error
            self._persist()
            logger.error(
                "Outbound op dropped after permanent failure",
                extra={"todo_id": op.todo_id, "kind": op.kind, "error": error},
            )
            return op

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def get(self, op_id: str) -> Optional[OutboundOp]:
        with self.lock:
            op = self._ops.get(op_id)
            return op.model_copy() if op is not None else None

    def has_pending(self, todo_id: str) -> bool:
        with self.lock:
            return any(op.todo_id == todo_id for op in self._ops.values())

    def pending_for(self, todo_id: str) -> List[OutboundOp]:
        with self.lock:
            return [op.model_copy() for op in self._for_todo(todo_id)]

    def pending_todo_ids(self) -> Set[str]:
        with self.lock:
            return {op.todo_id for op in self._ops.values()}

    def pending_count(self) -> int:
        with self.lock:
            return len(self._ops)

    def all(self) -> List[OutboundOp]:
        with self.lock:
            return [op.model_copy() for op in self._ordered()]

    def flush(self) -> None:
        with self.lock:
            self._persist()
