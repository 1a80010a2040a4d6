"""Inbound reconciliation: merge remote board state into the local store."""

from typing import Dict, List

from planky.logging_setup import get_logger
from planky.mapper import (
    apply_card_to_todo,
    build_board_lists,
    card_differs,
    cards_in_classified_lists,
    map_card_to_todo,
)
from planky.models import BoardLists, Project, ReconcileSummary, RemoteCard, Todo
from planky.outbound import OutboundQueue
from planky.planka_client import PlankaClient
from planky.session import SessionStore
from planky.store import LocalStore

logger = get_logger(__name__)


class InboundReconciler:
    """Fetch a board and merge it into the local store.

    A todo with a queued outbound op is never touched: local intent wins until
    the op is acknowledged or dropped.
    """

    def __init__(
        self,
        client: PlankaClient,
        store: LocalStore,
        queue: OutboundQueue,
        session: SessionStore,
    ) -> None:
        """
        Initialize reconciler.

        Args:
            client: Planka API client
            store: Local todo store
            queue: Outbound queue, consulted for pending ops
            session: Session store holding the list classification cache
        """
        self.client = client
        self.store = store
        self.queue = queue
        self.session = session

    async def reconcile(self, project: Project) -> ReconcileSummary:
        """
        Run one reconciliation pass for a project.

        Everything is fetched before anything is applied, so a fetch failure
        raises and leaves the local store unchanged.

        Args:
            project: Project (board) to reconcile

        Returns:
            Counts of todos created, updated and deleted locally
        """
        if project.local_only:
            return ReconcileSummary()

        logger.info("Starting reconciliation", extra={"board_id": project.id})

        # Step 1-2: fetch lists and cards
        lists, cards = await self.client.fetch_board(project.id)
        board_lists = build_board_lists(project.id, lists)
        remote_cards = cards_in_classified_lists(cards, board_lists)

        # Step 3-4: merge under the store lock
        with self.store.lock:
            self.session.set_board_lists(board_lists)
            summary = self._merge(project, remote_cards, board_lists)

        logger.info("Reconciliation completed", extra={"board_id": project.id, **summary.model_dump()})
        return summary

    def _merge(
        self,
        project: Project,
        remote_cards: List[RemoteCard],
        board_lists: BoardLists,
    ) -> ReconcileSummary:
        summary = ReconcileSummary()
        pending = self.queue.pending_todo_ids()
        local_by_card: Dict[str, Todo] = {
            todo.remote.card_id: todo for todo in self.store.linked(project.id)
        }

        to_write: List[Todo] = []
        seen_cards = set()

        for card in remote_cards:
            seen_cards.add(card.id)
            status = board_lists.status_of(card.list_id)
            local = local_by_card.get(card.id)

            if local is None:
                todo = map_card_to_todo(card, status)
                to_write.append(todo)
                summary.created += 1
                logger.info(
                    "Discovered remote card",
                    extra={"card_id": card.id, "todo_id": todo.id},
                )
                continue

            if local.id in pending:
                if card.revision != local.sync.revision:
                    summary.skipped += 1
                continue

            if card.revision == local.sync.revision:
                continue

            if card_differs(local, card, status):
                to_write.append(apply_card_to_todo(local, card, status))
                summary.updated += 1
            else:
                # Same content, newer marker
                sync = local.sync.model_copy(update={"revision": card.revision})
                to_write.append(local.model_copy(update={"sync": sync}))

        to_delete = [
            todo.id
            for card_id, todo in local_by_card.items()
            if card_id not in seen_cards and todo.id not in pending
        ]
        summary.deleted = len(to_delete)

        if to_write:
            self.store.upsert_many(to_write)
        if to_delete:
            self.store.remove_many(to_delete)
            logger.info("Removed todos deleted remotely", extra={"todo_ids": to_delete})

        return summary
