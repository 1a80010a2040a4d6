"""Tests for the todo service API."""

from datetime import datetime, timedelta, timezone

import pytest

from planky.coordinator import SyncCoordinator
from planky.errors import InvalidInputError, NotLoggedInError, TodoNotFoundError
from planky.models import (
    INBOX_PROJECT_ID,
    OpKind,
    RemoteBoard,
    RemoteComment,
    RemoteList,
    SyncState,
    TodoStatus,
)
from planky.service import TodoService
from planky.session import SessionStore

from conftest import BOARD_ID, DOING_LIST_ID, TODO_LIST_ID, make_card, make_lists

DUE = datetime(2026, 11, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def coordinator(mock_client, store, queue, session):
    return SyncCoordinator(store, queue, session, client=mock_client, backoff_interval=0.05)


@pytest.fixture
def service(store, queue, session, coordinator):
    return TodoService(store=store, queue=queue, session=session, coordinator=coordinator)


def _linked(service, description="Pay invoices"):
    todo = service.create_todo(description)
    op = service.queue.pending_for(todo.id)[0]
    service.queue.ack(op.id)
    return service.store.mark_remote_linked(todo.id, BOARD_ID, TODO_LIST_ID, "42", "rev-0")


# ============================================================================
# Mutations
# ============================================================================


class TestCreateTodo:
    def test_create_is_local_and_queued(self, service, mock_client):
        todo = service.create_todo("  Ship release  ", DUE)

        assert todo.description == "Ship release"
        assert todo.project_id == BOARD_ID
        assert todo.status == TodoStatus.PENDING
        assert service.todos() == [todo]
        (op,) = service.queue.all()
        assert op.kind == OpKind.CREATE
        assert op.due_date == DUE
        assert service.pending_count() == 1
        mock_client.create_card.assert_not_called()

    def test_blank_description_rejected(self, service):
        with pytest.raises(InvalidInputError):
            service.create_todo("   ")
        assert service.todos() == []
        assert service.pending_count() == 0

    def test_naive_due_date_is_local_time(self, service):
        todo = service.create_todo("Call bank", datetime(2026, 11, 1, 9, 0))
        assert todo.due_date.tzinfo is not None
        assert todo.due_date.replace(tzinfo=None) == datetime(2026, 11, 1, 9, 0)

    def test_inbox_todos_are_not_queued(self, tmp_path, store, queue):
        service = TodoService(store=store, queue=queue, session=SessionStore(path=tmp_path / "s.json"))

        todo = service.create_todo("Offline only")

        assert todo.project_id == INBOX_PROJECT_ID
        assert service.pending_count() == 0


class TestEditTodo:
    def test_edit_folds_into_pending_create(self, service):
        todo = service.create_todo("Ship release")

        service.edit_todo(todo.id, "Ship release 1.2")

        (op,) = service.queue.all()
        assert op.kind == OpKind.CREATE
        assert op.description == "Ship release 1.2"

    def test_edit_linked_todo_queues_updates(self, service):
        todo = _linked(service)

        updated = service.edit_todo(todo.id, "Pay all invoices", DUE)

        assert updated.description == "Pay all invoices"
        assert updated.due_date == DUE
        assert [op.kind for op in service.queue.all()] == [
            OpKind.UPDATE_DESCRIPTION,
            OpKind.UPDATE_DUE_DATE,
        ]

    def test_due_date_unchanged_by_default(self, service):
        todo = _linked(service)
        service.edit_todo(todo.id, todo.description, DUE)
        service.queue.ack(service.queue.all()[0].id)

        updated = service.edit_todo(todo.id, "New text")

        assert updated.due_date == DUE
        assert [op.kind for op in service.queue.all()] == [OpKind.UPDATE_DESCRIPTION]

    def test_clearing_due_date(self, service):
        todo = _linked(service)
        service.edit_todo(todo.id, todo.description, DUE)

        updated = service.edit_todo(todo.id, todo.description, None)

        assert updated.due_date is None
        (op,) = service.queue.all()
        assert op.kind == OpKind.UPDATE_DUE_DATE
        assert op.due_date is None

    def test_no_change_queues_nothing(self, service):
        todo = _linked(service)
        service.edit_todo(todo.id, "Pay invoices")
        assert service.pending_count() == 0

    def test_unknown_todo(self, service):
        with pytest.raises(TodoNotFoundError):
            service.edit_todo("missing", "text")


class TestSetStatus:
    def test_status_change_is_queued(self, service):
        todo = _linked(service)

        updated = service.set_status(todo.id, TodoStatus.DONE)

        assert updated.status == TodoStatus.DONE
        (op,) = service.queue.all()
        assert op.kind == OpKind.UPDATE_STATUS
        assert op.status == TodoStatus.DONE

    def test_accepts_status_value(self, service):
        todo = _linked(service)
        assert service.set_status(todo.id, "doing").status == TodoStatus.DOING

    def test_unknown_status(self, service):
        todo = _linked(service)
        with pytest.raises(InvalidInputError):
            service.set_status(todo.id, "blocked")

    def test_same_status_queues_nothing(self, service):
        todo = _linked(service)
        service.set_status(todo.id, TodoStatus.PENDING)
        assert service.pending_count() == 0


class TestDeleteTodo:
    def test_delete_linked_todo_queues_card_removal(self, service):
        todo = _linked(service)

        service.delete_todo(todo.id)

        assert service.todos() == []
        (op,) = service.queue.all()
        assert op.kind == OpKind.DELETE
        assert op.card_id == "42"

    def test_delete_unpushed_todo_leaves_queue_empty(self, service):
        todo = service.create_todo("Never synced")
        service.delete_todo(todo.id)
        assert service.pending_count() == 0

    def test_delete_unknown(self, service):
        with pytest.raises(TodoNotFoundError):
            service.delete_todo("missing")


# ============================================================================
# Projects
# ============================================================================


class TestProjects:
    def test_switch_project_wraps(self, service):
        assert service.switch_project(1).id == "8"
        assert service.switch_project(1).id == BOARD_ID
        assert service.switch_project(-1).id == "8"

    def test_switch_project_rejects_other_steps(self, service):
        with pytest.raises(InvalidInputError):
            service.switch_project(2)

    def test_set_active_project(self, service):
        assert service.set_active_project("8").name == "Home"
        assert service.active_project.id == "8"

    def test_set_unknown_project(self, service):
        with pytest.raises(InvalidInputError):
            service.set_active_project("999")

    def test_todos_are_scoped_to_active_project(self, service):
        service.create_todo("Work item")
        service.set_active_project("8")
        assert service.todos() == []

    async def test_create_project_with_main_board(self, service, mock_client, session):
        mock_client.create_project.return_value = "3"
        mock_client.create_board.return_value = RemoteBoard(id="70", name="Main", project_id="3")
        mock_client.create_list.side_effect = [
            RemoteList(id="100", board_id="70", name="Todo", position=65535),
            RemoteList(id="101", board_id="70", name="Doing", position=131070),
            RemoteList(id="102", board_id="70", name="Done", position=196605),
        ]
        mock_client.list_boards.return_value = [
            RemoteBoard(id=BOARD_ID, name="Work"),
            RemoteBoard(id="70", name="Main", project_id="3", project_name="Side"),
        ]

        project = await service.create_project("Side")

        mock_client.create_board.assert_awaited_once_with("3", "Main")
        assert [c.args[1] for c in mock_client.create_list.call_args_list] == ["Todo", "Doing", "Done"]
        assert project.id == "70"
        assert service.active_project.id == "70"
        assert session.board_lists("70").list_for(TodoStatus.DOING) == "101"

    async def test_create_board_requires_name(self, service):
        with pytest.raises(InvalidInputError):
            await service.create_board("3", " ")

    async def test_remote_actions_require_login(self, tmp_path, store, queue):
        service = TodoService(store=store, queue=queue, session=SessionStore(path=tmp_path / "s.json"))
        with pytest.raises(NotLoggedInError):
            await service.create_project("Side")

    async def test_login_requires_password(self, service):
        with pytest.raises(InvalidInputError):
            await service.login("https://planka.example.com", "alice", "")


# ============================================================================
# Card details
# ============================================================================


class TestCardDetails:
    async def test_card_details(self, service, mock_client):
        todo = _linked(service)
        mock_client.get_card.return_value = make_card(description="Quarterly invoices")

        card = await service.card_details(todo.id)

        mock_client.get_card.assert_awaited_once_with("42")
        assert card.description == "Quarterly invoices"

    async def test_unsynced_todo_has_no_details(self, service):
        todo = service.create_todo("Offline idea")
        with pytest.raises(InvalidInputError):
            await service.card_details(todo.id)

    async def test_comments(self, service, mock_client):
        todo = _linked(service)
        mock_client.list_comments.return_value = [RemoteComment(id="1", card_id="42", text="Paid")]

        comments = await service.comments(todo.id)

        assert [c.text for c in comments] == ["Paid"]

    async def test_add_comment(self, service, mock_client):
        todo = _linked(service)
        mock_client.create_comment.return_value = "9"

        assert await service.add_comment(todo.id, " Done! ") == "9"
        mock_client.create_comment.assert_awaited_once_with("42", "Done!")

    async def test_empty_comment_rejected(self, service):
        todo = _linked(service)
        with pytest.raises(InvalidInputError):
            await service.add_comment(todo.id, "")


# ============================================================================
# Readers
# ============================================================================


class TestReaders:
    def test_visible_todos_grouped_by_status(self, service):
        a = service.create_todo("a")
        b = service.create_todo("b")
        c = service.create_todo("c")
        service.set_status(a.id, TodoStatus.DONE)
        service.set_status(c.id, TodoStatus.DOING)

        assert [t.description for t in service.visible_todos()] == ["c", "b", "a"]

    def test_visible_todos_search(self, service):
        service.create_todo("Buy milk")
        service.create_todo("Call bank", datetime(2026, 11, 1, 12, 0))
        service.create_todo("Milkshake recipe")

        assert [t.description for t in service.visible_todos("MILK")] == ["Buy milk", "Milkshake recipe"]
        assert [t.description for t in service.visible_todos("2026-11-01")] == ["Call bank"]

    def test_due_today(self, service):
        now = datetime(2026, 10, 19, 9, 0).astimezone()
        today = service.create_todo("Today", now + timedelta(hours=1))
        finished = service.create_todo("Finished", now + timedelta(hours=2))
        service.create_todo("Tomorrow", now + timedelta(days=1))
        service.create_todo("Undated")
        service.set_status(finished.id, TodoStatus.DONE)

        assert [t.id for t in service.due_today(now)] == [today.id]

    async def test_status_readers(self, service, mock_client):
        mock_client.fetch_board.side_effect = ConnectionError("boom")
        await service.coordinator.sync_once()

        assert "boom" in service.last_sync_error()
        assert service.status().state == SyncState.BACKOFF


# ============================================================================
# End to end
# ============================================================================


class TestEndToEnd:
    async def test_create_sync_and_remote_move(self, service, mock_client):
        todo = service.create_todo("Ship release")
        mock_client.create_card.return_value = make_card(id="42", list_id=DOING_LIST_ID)
        mock_client.fetch_board.return_value = (make_lists(), [make_card(id="42", list_id=DOING_LIST_ID)])

        await service.coordinator.sync_once()

        stored = service.store.get(todo.id)
        assert stored.card_id == "42"
        assert stored.status == TodoStatus.PENDING
        assert service.pending_count() == 0

        moved = make_card(
            id="42", list_id=DOING_LIST_ID, updated_at=datetime(2026, 10, 20, tzinfo=timezone.utc)
        )
        mock_client.fetch_board.return_value = (make_lists(), [moved])

        await service.coordinator.sync_once()

        assert service.store.get(todo.id).status == TodoStatus.DOING
