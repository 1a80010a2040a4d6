"""Sync coordinator: schedules outbound drains and inbound reconciliation."""

import asyncio
import concurrent.futures
import threading
from typing import Any, Coroutine, List, Optional

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from planky.errors import NetworkUnavailable, NotFound, NotLoggedInError, RemoteError, Unauthorized
from planky.logging_setup import get_logger
from planky.mapper import map_board_to_project
from planky.models import Project, ReconcileSummary, SyncNotice, SyncState, SyncStatus
from planky.outbound import OutboundQueue
from planky.planka_client import PlankaClient
from planky.reconciler import InboundReconciler
from planky.session import SessionStore
from planky.settings import settings
from planky.store import LocalStore
from planky.sync_worker import OutboundWorker
from planky.utils import utc_now

logger = get_logger(__name__)


class SyncCoordinator:
    """Single owner of the sync state machine (idle, syncing, backoff).

    Sync cycles run on a private asyncio loop in a daemon thread. The
    interactive layer calls `trigger_sync()` and polls `status()`; neither
    blocks on the network.
    """

    def __init__(
        self,
        store: LocalStore,
        queue: OutboundQueue,
        session: SessionStore,
        client: Optional[PlankaClient] = None,
        poll_interval: Optional[float] = None,
        batch_size: Optional[int] = None,
        backoff_interval: Optional[float] = None,
    ) -> None:
        """
        Initialize the coordinator.

        Args:
            store: Local todo store
            queue: Outbound queue
            session: Session store
            client: Planka client (built from the session when omitted)
            poll_interval: Seconds between scheduled cycles (defaults to settings)
            batch_size: Ops drained per cycle (defaults to settings)
            backoff_interval: Pause after an unexpected error (defaults to settings)
        """
        self.store = store
        self.queue = queue
        self.session = session
        self._client = client
        self.poll_interval = poll_interval if poll_interval is not None else settings.poll_interval
        self.batch_size = batch_size if batch_size is not None else settings.batch_size
        self.backoff_interval = (
            backoff_interval if backoff_interval is not None else settings.backoff_interval
        )

        self._status_lock = threading.Lock()
        self._state = SyncState.IDLE
        self._last_error: Optional[str] = None
        self._auth_required = False
        self._last_sync_at = None
        self._notices: List[SyncNotice] = []

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._tick: Optional[asyncio.TimerHandle] = None
        self._current: Optional[asyncio.Task] = None
        self._tick_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Remote client
    # ------------------------------------------------------------------

    @property
    def client(self) -> Optional[PlankaClient]:
        """Gateway for the current session, or None when not logged in."""
        if self._client is None and self.session.is_configured:
            self._client = PlankaClient(self.session.session.server_url, self.session.session.token)
        return self._client

    def require_client(self) -> PlankaClient:
        client = self.client
        if client is None:
            raise NotLoggedInError()
        return client

    # ------------------------------------------------------------------
    # Status channel
    # ------------------------------------------------------------------

    @property
    def state(self) -> SyncState:
        with self._status_lock:
            return self._state

    @property
    def pending_count(self) -> int:
        return self.queue.pending_count()

    def status(self) -> SyncStatus:
        """Snapshot of the sync status for rendering."""
        persistence_error = (
            self.store.persistence_error
            or self.queue.persistence_error
            or self.session.persistence_error
        )
        with self._status_lock:
            return SyncStatus(
                state=self._state,
                pending_count=self.queue.pending_count(),
                last_error=self._last_error,
                auth_required=self._auth_required,
                last_sync_at=self._last_sync_at,
                persistence_error=persistence_error,
                notices=list(self._notices),
            )

    def take_notices(self) -> List[SyncNotice]:
        """Pop permanent-failure notices so each is shown once."""
        with self._status_lock:
            notices, self._notices = self._notices, []
        return notices

    def _set_idle(self, error: Optional[str] = None, synced: bool = False) -> None:
        with self._status_lock:
            self._state = SyncState.IDLE
            self._last_error = error
            if synced:
                self._last_sync_at = utc_now()

    def _enter_backoff(self, error: str, auth: bool = False) -> None:
        with self._status_lock:
            self._state = SyncState.BACKOFF
            self._last_error = error
            self._auth_required = self._auth_required or auth

        if auth:
            logger.warning("Sync paused until login", extra={"error": error})
            return

        logger.warning("Sync backing off", extra={"error": error, "interval": self.backoff_interval})
        asyncio.get_running_loop().call_later(self.backoff_interval, self._leave_backoff)

    def _leave_backoff(self) -> None:
        with self._status_lock:
            if self._state == SyncState.BACKOFF and not self._auth_required:
                self._state = SyncState.IDLE

    # ------------------------------------------------------------------
    # Sync cycle
    # ------------------------------------------------------------------

    async def _reconcile_all(self, reconciler: InboundReconciler) -> ReconcileSummary:
        """Reconcile the active board first, then every other remote board."""
        active = self.session.active_project
        others = [p for p in self.session.projects if p.id != active.id and not p.local_only]

        total = await reconciler.reconcile(active)
        for project in others:
            try:
                summary = await reconciler.reconcile(project)
            except NotFound:
                logger.warning("Board no longer available", extra={"board_id": project.id})
                continue
            total.created += summary.created
            total.updated += summary.updated
            total.deleted += summary.deleted
            total.skipped += summary.skipped
        return total

    async def sync_once(self) -> bool:
        """
        Run one cycle: drain a batch of outbound ops, then reconcile every board.

        Returns:
            False if the call was coalesced (a cycle is running, or sync is
            backing off), True once a cycle ran
        """
        with self._status_lock:
            if self._state != SyncState.IDLE:
                return False
            self._state = SyncState.SYNCING
        self._current = asyncio.current_task()

        try:
            client = self.client
            if client is None:
                with self._status_lock:
                    self._auth_required = True
                self._set_idle(error=str(NotLoggedInError()))
                return True

            worker = OutboundWorker(client, self.store, self.queue, self.session)
            reconciler = InboundReconciler(client, self.store, self.queue, self.session)

            try:
                drained = await worker.drain(self.batch_size)
                if drained.notices:
                    with self._status_lock:
                        self._notices.extend(drained.notices)
                summary = await self._reconcile_all(reconciler)
            except Unauthorized as e:
                self._enter_backoff(f"Login required: {e}", auth=True)
            except RemoteError as e:
                logger.warning("Sync cycle incomplete", extra={"error": str(e)})
                self._set_idle(error=str(e))
            except Exception as e:
                logger.error("Unexpected sync failure", extra={"error": str(e)}, exc_info=True)
                self._enter_backoff(f"Sync failed: {e}")
            else:
                logger.info(
                    "Sync cycle completed",
                    extra={
                        "boards": len(self.session.projects),
                        "acked": drained.acked,
                        "pending": self.queue.pending_count(),
                        "created": summary.created,
                        "updated": summary.updated,
                        "deleted": summary.deleted,
                    },
                )
                self._set_idle(synced=True)
            return True
        finally:
            self._current = None

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    async def login(self, server_url: str, username: str, password: str) -> List[Project]:
        """
        Log in, store the token and refresh the board list.

        Transient network failures are retried a few times; a rejected
        password raises `Unauthorized` to the caller.

        Returns:
            The projects (boards) now available
        """
        client = PlankaClient(server_url)
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(settings.login_attempts),
            wait=wait_exponential(multiplier=0.5, max=4),
            retry=retry_if_exception_type(NetworkUnavailable),
            reraise=True,
        ):
            with attempt:
                token = await client.login(username, password)

        self.session.set_credentials(server_url, username, token)
        boards = await client.list_boards()
        self.session.set_projects([map_board_to_project(board) for board in boards])

        previous, self._client = self._client, client
        if previous is not None:
            await previous.close()

        with self._status_lock:
            self._auth_required = False
            self._last_error = None
            if self._state == SyncState.BACKOFF:
                self._state = SyncState.IDLE

        logger.info("Logged in", extra={"server_url": server_url, "boards": len(boards)})
        return self.session.projects

    async def close(self) -> None:
        """Close the HTTP client; used when running without the background loop."""
        if self._client is not None:
            await self._client.close()

    async def refresh_projects(self) -> List[Project]:
        """Reload the board list from the server."""
        boards = await self.require_client().list_boards()
        self.session.set_projects([map_board_to_project(board) for board in boards])
        return self.session.projects

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the background loop and the periodic sync timer."""
        if self.running:
            return
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run_loop, name="planky-sync", daemon=True)
        self._thread.start()
        self._loop.call_soon_threadsafe(self._schedule_tick, 0)
        logger.info("Sync coordinator started", extra={"poll_interval": self.poll_interval})

    def _run_loop(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._loop.run_forever()

    def _schedule_tick(self, delay: float) -> None:
        self._tick = self._loop.call_later(delay, self._on_tick)

    def _on_tick(self) -> None:
        if self._tick_task is None or self._tick_task.done():
            self._tick_task = self._loop.create_task(self.sync_once())
        self._schedule_tick(self.poll_interval)

    def trigger_sync(self) -> bool:
        """
        Request a sync cycle from any thread without waiting for it.

        Returns:
            False when coalesced into the cycle already running (or the
            coordinator is not started)
        """
        if self._loop is None or not self.running:
            return False
        if self.state != SyncState.IDLE:
            return False
        asyncio.run_coroutine_threadsafe(self.sync_once(), self._loop)
        return True

    def submit(self, coro: Coroutine[Any, Any, Any]) -> concurrent.futures.Future:
        """Run a coroutine on the sync loop; poll the returned future."""
        if self._loop is None or not self.running:
            coro.close()
            raise RuntimeError("Sync coordinator is not running")
        return asyncio.run_coroutine_threadsafe(coro, self._loop)

    async def _shutdown(self) -> None:
        if self._tick is not None:
            self._tick.cancel()
            self._tick = None
        running = [t for t in (self._current, self._tick_task) if t is not None and not t.done()]
        if running:
            # Let the running phase finish
            await asyncio.wait(running)
        await self.close()

    def stop(self, timeout: float = 10.0) -> None:
        """Stop the timer, wait for the running cycle, then stop the loop."""
        if not self.running or self._loop is None:
            return
        loop = self._loop
        try:
            asyncio.run_coroutine_threadsafe(self._shutdown(), loop).result(timeout)
        except concurrent.futures.TimeoutError:
            logger.warning("Sync cycle still running at shutdown")
        loop.call_soon_threadsafe(loop.stop)
        self._thread.join(timeout)
        loop.close()
        self._loop = None
        self._thread = None
        logger.info("Sync coordinator stopped")
