"""Tests for the outbound worker."""

from datetime import datetime, timezone

import pytest

from planky.errors import (
    InvalidRequest,
    MissingList,
    NetworkUnavailable,
    NotFound,
    RateLimited,
    ServerError,
    Unauthorized,
)
from planky.models import BoardLists, OpKind, OutboundOp, RemoteList, Todo, TodoStatus
from planky.reconciler import InboundReconciler
from planky.sync_worker import OutboundWorker

from conftest import BOARD_ID, DOING_LIST_ID, DONE_LIST_ID, TODO_LIST_ID, make_card, make_lists


@pytest.fixture
def worker(mock_client, store, queue, session):
    return OutboundWorker(mock_client, store, queue, session)


def _create(store, queue, description="Ship release", **fields) -> Todo:
    todo = store.upsert(Todo(project_id=BOARD_ID, description=description, **fields))
    queue.enqueue(OutboundOp.create(todo))
    return todo


def _linked(store, todo_id="5", card_id="42", list_id=TODO_LIST_ID) -> Todo:
    todo = store.upsert(Todo(id=todo_id, project_id=BOARD_ID, description="Pay invoices"))
    return store.mark_remote_linked(todo.id, BOARD_ID, list_id, card_id, "rev-0")


# ============================================================================
# Create
# ============================================================================


class TestCreate:
    async def test_ship_release_scenario(self, worker, mock_client, store, queue):
        """Server files the card in "Doing"; local status stays as the user set it."""
        todo = _create(store, queue)
        mock_client.create_card.return_value = make_card(id="42", board_id="7", list_id=DOING_LIST_ID)

        summary = await worker.drain(25)

        mock_client.create_card.assert_awaited_once()
        args, kwargs = mock_client.create_card.call_args
        assert args == (TODO_LIST_ID, "Ship release")
        assert kwargs["idempotency_key"]

        stored = store.get(todo.id)
        assert stored.remote.card_id == "42"
        assert stored.remote.board_id == "7"
        assert stored.remote.list_id == DOING_LIST_ID
        assert stored.status == TodoStatus.PENDING
        assert queue.pending_count() == 0
        assert summary.acked == 1

    async def test_create_sends_due_date_and_status_list(self, worker, mock_client, store, queue):
        due = datetime(2026, 11, 1, 12, 0, tzinfo=timezone.utc)
        _create(store, queue, due_date=due, status=TodoStatus.DONE)
        mock_client.create_card.return_value = make_card(list_id=DONE_LIST_ID)

        await worker.drain(25)

        args, kwargs = mock_client.create_card.call_args
        assert args[0] == DONE_LIST_ID
        assert kwargs["due_date"] == due

    async def test_lists_are_fetched_when_not_cached(self, worker, mock_client, store, queue, session):
        session.session.lists.clear()
        _create(store, queue)
        mock_client.create_card.return_value = make_card()

        await worker.drain(25)

        mock_client.list_lists.assert_awaited_once_with(BOARD_ID)
        assert session.board_lists(BOARD_ID).list_for(TodoStatus.PENDING) == TODO_LIST_ID

    async def test_missing_list_keeps_op_queued(self, worker, mock_client, store, queue, session):
        session.set_board_lists(BoardLists(board_id=BOARD_ID))
        mock_client.list_lists.return_value = [RemoteList(id="13", board_id=BOARD_ID, name="Ideas")]
        _create(store, queue)

        summary = await worker.drain(25)

        mock_client.create_card.assert_not_awaited()
        (op,) = queue.all()
        assert op.attempts == 1
        assert "no list" in op.last_error
        assert summary.retried == 1

    async def test_todo_deleted_during_create_queues_card_removal(self, worker, mock_client, store, queue):
        todo = _create(store, queue)

        async def create_then_user_deletes(*args, **kwargs):
            store.remove(todo.id)
            queue.enqueue(OutboundOp.delete(todo))
            return make_card(id="42")

        mock_client.create_card.side_effect = create_then_user_deletes

        await worker.drain(25)

        (op,) = queue.all()
        assert op.kind == OpKind.DELETE
        assert op.card_id == "42"
        assert store.get(todo.id) is None

    async def test_edit_during_create_is_pushed_as_update(self, worker, mock_client, store, queue):
        todo = _create(store, queue)

        async def create_then_user_edits(*args, **kwargs):
            edited = todo.model_copy(update={"description": "Ship release 1.2"})
            store.upsert(edited)
            queue.enqueue(OutboundOp.update_description(edited))
            return make_card(id="42")

        mock_client.create_card.side_effect = create_then_user_edits

        await worker.drain(25)

        assert store.get(todo.id).card_id == "42"
        update = next(op for op in queue.all() if op.kind == OpKind.UPDATE_DESCRIPTION)
        assert update.description == "Ship release 1.2"


# ============================================================================
# Updates and delete
# ============================================================================


class TestUpdates:
    async def test_status_update_moves_card(self, worker, mock_client, store, queue):
        todo = _linked(store)
        done = store.upsert(todo.model_copy(update={"status": TodoStatus.DONE}))
        queue.enqueue(OutboundOp.update_status(done))
        mock_client.move_card.return_value = make_card(
            list_id=DONE_LIST_ID, updated_at=datetime(2026, 10, 19, tzinfo=timezone.utc)
        )

        await worker.drain(25)

        mock_client.move_card.assert_awaited_once_with("42", DONE_LIST_ID)
        stored = store.get("5")
        assert stored.remote.list_id == DONE_LIST_ID
        assert stored.sync.revision == "rev-0"
        assert stored.sync.last_synced_at is not None
        assert queue.pending_count() == 0

    async def test_description_update(self, worker, mock_client, store, queue):
        todo = _linked(store)
        queue.enqueue(OutboundOp.update_description(todo.model_copy(update={"description": "Pay all invoices"})))
        mock_client.update_card.return_value = make_card(name="Pay all invoices")

        await worker.drain(25)

        mock_client.update_card.assert_awaited_once_with("42", name="Pay all invoices")
        assert store.get("5").sync.revision == "rev-0"

    async def test_clearing_due_date(self, worker, mock_client, store, queue):
        todo = _linked(store)
        queue.enqueue(OutboundOp.update_due_date(todo))
        mock_client.update_card.return_value = make_card()

        await worker.drain(25)

        mock_client.update_card.assert_awaited_once_with("42", due_date=None, clear_due_date=True)

    async def test_delete(self, worker, mock_client, store, queue):
        todo = _linked(store)
        store.remove(todo.id)
        queue.enqueue(OutboundOp.delete(todo))

        await worker.drain(25)

        mock_client.delete_card.assert_awaited_once_with("42")
        assert queue.pending_count() == 0

    async def test_delete_of_missing_card_counts_as_success(self, worker, mock_client, store, queue):
        todo = _linked(store)
        queue.enqueue(OutboundOp.delete(todo))
        mock_client.delete_card.side_effect = NotFound("HTTP 404", 404)

        summary = await worker.drain(25)

        assert queue.pending_count() == 0
        assert summary.acked == 1
        assert summary.notices == []


# ============================================================================
# Remote edits during a push
# ============================================================================


class TestRemoteEditsDuringPush:
    @pytest.fixture
    def reconciler(self, mock_client, store, queue, session):
        return InboundReconciler(mock_client, store, queue, session)

    def _link(self, store, card):
        store.upsert(Todo(id="5", project_id=BOARD_ID, description=card.name))
        return store.mark_remote_linked("5", BOARD_ID, card.list_id, card.id, card.revision)

    async def test_rename_made_while_move_was_queued_is_applied(
        self, worker, reconciler, mock_client, store, queue, session
    ):
        todo = self._link(store, make_card())
        done = store.upsert(todo.model_copy(update={"status": TodoStatus.DONE}))
        queue.enqueue(OutboundOp.update_status(done))

        renamed = make_card(name="Renamed remotely", updated_at=datetime(2026, 10, 2, tzinfo=timezone.utc))
        mock_client.fetch_board.return_value = (make_lists(), [renamed])
        await reconciler.reconcile(session.active_project)
        assert store.get("5").description == "Ship release"

        moved = make_card(
            name="Renamed remotely",
            list_id=DONE_LIST_ID,
            updated_at=datetime(2026, 10, 3, tzinfo=timezone.utc),
        )
        mock_client.move_card.return_value = moved
        await worker.drain(25)
        assert queue.pending_count() == 0

        mock_client.fetch_board.return_value = (make_lists(), [moved])
        await reconciler.reconcile(session.active_project)
        await reconciler.reconcile(session.active_project)

        stored = store.get("5")
        assert stored.description == "Renamed remotely"
        assert stored.status == TodoStatus.DONE
        assert stored.sync.revision == moved.revision

    async def test_own_push_is_not_counted_as_remote_change(
        self, worker, reconciler, mock_client, store, queue, session
    ):
        todo = self._link(store, make_card())
        edited = store.upsert(todo.model_copy(update={"description": "Ship release 1.2"}))
        queue.enqueue(OutboundOp.update_description(edited))
        pushed = make_card(name="Ship release 1.2", updated_at=datetime(2026, 10, 2, tzinfo=timezone.utc))
        mock_client.update_card.return_value = pushed

        await worker.drain(25)
        mock_client.fetch_board.return_value = (make_lists(), [pushed])
        summary = await reconciler.reconcile(session.active_project)

        assert summary.updated == 0
        assert store.get("5").description == "Ship release 1.2"
        assert store.get("5").sync.revision == pushed.revision


# ============================================================================
# Failures
# ============================================================================


class TestFailures:
    async def test_network_outage_stops_batch(self, worker, mock_client, store, queue):
        _create(store, queue, "first")
        _create(store, queue, "second")
        mock_client.create_card.side_effect = NetworkUnavailable("offline")

        summary = await worker.drain(25)

        assert mock_client.create_card.await_count == 1
        first, second = queue.all()
        assert first.attempts == 1
        assert second.attempts == 0
        assert summary.retried == 1

    async def test_rate_limit_stops_batch_and_honours_retry_after(self, worker, mock_client, store, queue):
        _create(store, queue, "first")
        _create(store, queue, "second")
        mock_client.create_card.side_effect = RateLimited("HTTP 429", retry_after=120)

        await worker.drain(25)

        first, second = queue.all()
        assert first.next_attempt_at is not None
        assert (first.next_attempt_at - first.enqueued_at).total_seconds() >= 119
        assert second.attempts == 0

    async def test_server_error_retries_and_continues(self, worker, mock_client, store, queue):
        _create(store, queue, "first")
        _create(store, queue, "second")
        mock_client.create_card.side_effect = [ServerError("HTTP 502", 502), make_card(id="43")]

        summary = await worker.drain(25)

        assert mock_client.create_card.await_count == 2
        (remaining,) = queue.all()
        assert remaining.description == "first"
        assert summary.retried == 1
        assert summary.acked == 1

    async def test_unauthorized_propagates_without_penalty(self, worker, mock_client, store, queue):
        _create(store, queue)
        mock_client.create_card.side_effect = Unauthorized("HTTP 401", 401)

        with pytest.raises(Unauthorized):
            await worker.drain(25)

        (op,) = queue.all()
        assert op.attempts == 0

    async def test_invalid_request_drops_op_with_notice(self, worker, mock_client, store, queue):
        todo = _linked(store)
        queue.enqueue(OutboundOp.update_description(todo))
        mock_client.update_card.side_effect = InvalidRequest("HTTP 422", 422)

        summary = await worker.drain(25)

        assert queue.pending_count() == 0
        assert summary.dropped == 1
        (notice,) = summary.notices
        assert notice.todo_id == "5"
        assert "5" in notice.message

    async def test_update_for_missing_card_drops_op(self, worker, mock_client, store, queue):
        todo = _linked(store)
        queue.enqueue(OutboundOp.update_status(todo.model_copy(update={"status": TodoStatus.DONE})))
        mock_client.move_card.side_effect = NotFound("HTTP 404", 404)

        summary = await worker.drain(25)

        assert queue.pending_count() == 0
        assert summary.notices[0].kind == OpKind.UPDATE_STATUS

    async def test_batch_size_is_respected(self, worker, mock_client, store, queue):
        for i in range(5):
            _create(store, queue, f"todo {i}")
        mock_client.create_card.side_effect = [make_card(id=str(100 + i)) for i in range(5)]

        await worker.drain(2)

        assert mock_client.create_card.await_count == 2
        assert queue.pending_count() == 3

    async def test_missing_list_error_is_retriable(self):
        assert MissingList("no list").retriable
