"""Outbound worker: applies queued local mutations to the Planka board."""

from typing import Optional

from planky.errors import (
    InvalidRequest,
    MissingList,
    NetworkUnavailable,
    NotFound,
    RateLimited,
    RemoteError,
    Unauthorized,
)
from planky.logging_setup import get_logger
from planky.mapper import build_board_lists
from planky.models import DrainSummary, OpKind, OutboundOp, SyncNotice, TodoStatus
from planky.outbound import OutboundQueue
from planky.planka_client import PlankaClient
from planky.session import SessionStore
from planky.store import LocalStore

logger = get_logger(__name__)

NOTICE_TEMPLATES = {
    OpKind.CREATE: "Could not create card for todo {todo_id}: {error}",
    OpKind.UPDATE_DESCRIPTION: "Could not update description of todo {todo_id}: {error}",
    OpKind.UPDATE_STATUS: "Could not move todo {todo_id}: {error}",
    OpKind.UPDATE_DUE_DATE: "Could not update due date of todo {todo_id}: {error}",
    OpKind.DELETE: "Could not delete card of todo {todo_id}: {error}",
}


class OutboundWorker:
    """Drain batches of outbound ops through the remote gateway."""

    def __init__(
        self,
        client: PlankaClient,
        store: LocalStore,
        queue: OutboundQueue,
        session: SessionStore,
    ) -> None:
        """
        Initialize outbound worker.

        Args:
            client: Planka API client
            store: Local todo store
            queue: Outbound queue to drain
            session: Session store holding the list classification cache
        """
        self.client = client
        self.store = store
        self.queue = queue
        self.session = session

    async def drain(self, max_n: int) -> DrainSummary:
        """
        Apply up to `max_n` ready ops, oldest first.

        A network outage or rate limit stops the batch early; the remaining
        ops are not attempted and keep their backoff state.

        Raises:
            Unauthorized: The session token was rejected; the op is not penalized
        """
        summary = DrainSummary()
        batch = self.queue.peek_batch(max_n)
        if not batch:
            return summary

        logger.info("Draining outbound queue", extra={"batch": len(batch)})

        for op in batch:
            try:
                follow_up = await self._apply(op)

            except Unauthorized:
                logger.warning("Outbound drain stopped: unauthorized", extra={"todo_id": op.todo_id})
                raise

            except (NetworkUnavailable, RateLimited) as e:
                self.queue.fail(
                    op.id,
                    retriable=True,
                    error=str(e),
                    revision=op.revision,
                    retry_after=getattr(e, "retry_after", None),
                )
                summary.retried += 1
                logger.warning("Outbound drain paused", extra={"error": str(e)})
                break

            except NotFound as e:
                if op.kind == OpKind.DELETE:
                    # Already gone remotely
                    self.queue.ack(op.id, op.revision)
                    summary.acked += 1
                    continue
                self._drop(op, e, summary)

            except RemoteError as e:
                if e.retriable:
                    self.queue.fail(op.id, retriable=True, error=str(e), revision=op.revision)
                    summary.retried += 1
                else:
                    self._drop(op, e, summary)

            else:
                self.queue.ack(op.id, op.revision)
                summary.acked += 1
                if follow_up is not None:
                    self.queue.enqueue(follow_up)

        logger.info(
            "Outbound drain finished",
            extra={"acked": summary.acked, "retried": summary.retried, "dropped": summary.dropped},
        )
        return summary

    def _drop(self, op: OutboundOp, error: RemoteError, summary: DrainSummary) -> None:
        dropped = self.queue.fail(op.id, retriable=False, error=str(error), revision=op.revision)
        if dropped is None:
            return
        summary.dropped += 1
        summary.notices.append(
            SyncNotice(
                todo_id=op.todo_id,
                kind=op.kind,
                message=NOTICE_TEMPLATES[op.kind].format(todo_id=op.todo_id, error=error),
            )
        )

    # ------------------------------------------------------------------
    # Op application
    # ------------------------------------------------------------------

    async def resolve_list(self, board_id: str, status: TodoStatus) -> str:
        """
        Find the list a card with the given status belongs in.

        Uses the cached classification and refreshes it from the board on a miss.

        Raises:
            MissingList: The board has no list for this status
        """
        lists = self.session.board_lists(board_id)
        if lists is None or lists.list_for(status) is None:
            remote_lists = await self.client.list_lists(board_id)
            lists = build_board_lists(board_id, remote_lists)
            self.session.set_board_lists(lists)

        list_id = lists.list_for(status)
        if list_id is None:
            raise MissingList(f"Board {board_id} has no list for status '{status.value}'")
        return list_id

    def _card_id(self, op: OutboundOp) -> str:
        todo = self.store.get(op.todo_id)
        if todo is None:
            raise NotFound(f"Todo {op.todo_id} no longer exists locally")
        if todo.remote is None:
            raise InvalidRequest(f"Todo {op.todo_id} has no remote card")
        return todo.remote.card_id

    async def _apply(self, op: OutboundOp) -> Optional[OutboundOp]:
        """
        Apply one op remotely and record the outcome locally.

        Returns:
            A follow-up op to enqueue once this one is acked, if any
        """
        logger.info("Applying outbound op", extra={"todo_id": op.todo_id, "kind": op.kind})

        if op.kind == OpKind.CREATE:
            list_id = await self.resolve_list(op.board_id, op.status or TodoStatus.PENDING)
            card = await self.client.create_card(
                list_id,
                op.description or "",
                due_date=op.due_date,
                idempotency_key=op.idempotency_key,
            )
            linked = self.store.mark_remote_linked(
                op.todo_id, card.board_id, card.list_id, card.id, card.revision
            )
            if linked is None:
                # Deleted locally while the card was being created
                logger.info("Removing card of todo deleted during create", extra={"todo_id": op.todo_id})
                return OutboundOp(
                    kind=OpKind.DELETE,
                    todo_id=op.todo_id,
                    board_id=op.board_id,
                    card_id=card.id,
                )
            return None

        if op.kind == OpKind.UPDATE_DESCRIPTION:
            await self.client.update_card(self._card_id(op), name=op.description or "")
            self.store.mark_pushed(op.todo_id)
            return None

        if op.kind == OpKind.UPDATE_DUE_DATE:
            await self.client.update_card(
                self._card_id(op),
                due_date=op.due_date,
                clear_due_date=op.due_date is None,
            )
            self.store.mark_pushed(op.todo_id)
            return None

        if op.kind == OpKind.UPDATE_STATUS:
            card_id = self._card_id(op)
            list_id = await self.resolve_list(op.board_id, op.status or TodoStatus.PENDING)
            card = await self.client.move_card(card_id, list_id)
            self.store.set_list(op.todo_id, card.list_id)
            return None

        if op.kind == OpKind.DELETE:
            if op.card_id is None:
                return None
            await self.client.delete_card(op.card_id)
            return None

        raise InvalidRequest(f"Unknown op kind {op.kind}")
