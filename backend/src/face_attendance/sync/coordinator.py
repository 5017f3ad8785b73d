"""Sync coordinator: decides when to drain the queue.

Drains are triggered by an offline -> online transition and by explicit
requests; there is no polling timer. Only one drain runs at a time: a
request made while a drain is running is coalesced and receives that
drain's SyncSession.

Every delivery attempt runs under a timeout. Timeouts and connectivity
errors are transient (retried in a later drain after backoff); remote
rejections are permanent.
"""

from typing import Any, Dict, Optional, Set
import asyncio
import logging

from ..errors import StorageCorruption, TransientError
from ..time_utils import utcnow
from .network import NetworkMonitor
from .queue import QueueItem, SyncQueue, SyncSession
from .remote import RemotePersistence

logger = logging.getLogger(__name__)


class SyncCoordinator:
    """Schedules non-reentrant drains of the sync queue.

    Usage:
        coordinator = SyncCoordinator(queue, remote, monitor=monitor)

        # Manual request
        session = await coordinator.request_sync()

        # Automatic: monitor.set_online(True) after being offline starts a drain
    """

    def __init__(
        self,
        queue: SyncQueue,
        remote: RemotePersistence,
        monitor: Optional[NetworkMonitor] = None,
        delivery_timeout: float = 10.0
    ):
        """Initialize sync coordinator.

        Args:
            queue: Sync queue to drain
            remote: Remote persistence API
            monitor: Network monitor; online transitions trigger drains
            delivery_timeout: Per-item delivery timeout in seconds
        """
        self.queue = queue
        self.remote = remote
        self.monitor = monitor
        self.delivery_timeout = delivery_timeout

        self._current: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._cancel_requested = False
        self.drain_count = 0

        # Most recent session survives restarts
        self.last_session: Optional[SyncSession] = queue.load_last_session()

        if monitor is not None:
            self._unsubscribe = monitor.subscribe(self._on_network_change)

    @property
    def is_syncing(self) -> bool:
        """Whether a drain is running."""
        return self._current is not None and not self._current.done()

    async def request_sync(self, force: bool = False) -> SyncSession:
        """Drain the queue now, or join the drain already running.

        Args:
            force: Drain even if the monitor reports offline

        Returns:
            SyncSession of the drain that ran (shared by coalesced callers)

        Raises:
            StorageCorruption: If the local queue can't be read; nothing is dropped
        """
        if self.is_syncing:
            logger.debug("Drain already running; joining it")
            return await asyncio.shield(self._current)

        if not force and self.monitor is not None and not self.monitor.online:
            logger.info("Offline; sync request deferred until connectivity returns")
            now = utcnow()
            return SyncSession(started_at=now, finished_at=now, skipped=self.queue.pending_count())

        self._cancel_requested = False
        self._current = asyncio.get_running_loop().create_task(self._run_drain())
        return await asyncio.shield(self._current)

    def cancel(self) -> bool:
        """Ask the running drain to stop at the next item boundary.

        The item being delivered finishes normally.

        Returns:
            True if a drain was running
        """
        if not self.is_syncing:
            return False
        self._cancel_requested = True
        logger.info("Drain cancellation requested")
        return True

    async def abort(self):
        """Cancel the running drain immediately.

        The item being delivered is put back to pending as possibly delivered
        and will be delivered again by a later drain.
        """
        if not self.is_syncing:
            return
        task = self._current
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            logger.warning("Drain aborted")

    async def wait_idle(self):
        """Wait for the running drain and any network-triggered drains."""
        while self.is_syncing or self._background:
            pending = [t for t in (self._current, *self._background) if t is not None and not t.done()]
            if not pending:
                break
            await asyncio.wait(pending)

    def status(self) -> Dict[str, Any]:
        """Get user-visible sync state.

        Returns:
            Dictionary with online flag, syncing flag, queue counts and last session
        """
        return {
            'online': self.monitor.online if self.monitor is not None else None,
            'syncing': self.is_syncing,
            'counts': self.queue.count_by_status(),
            'last_session': self.last_session.to_dict() if self.last_session else None,
        }

    async def _run_drain(self) -> SyncSession:
        self.drain_count += 1
        try:
            session = await self.queue.drain(
                self._deliver,
                should_stop=lambda: self._cancel_requested
            )
        except StorageCorruption:
            logger.critical("Local sync queue is unreadable; drain halted, no items dropped")
            raise

        self.last_session = session
        self.queue.save_session(session)
        return session

    async def _deliver(self, item: QueueItem) -> None:
        """Deliver one item under the per-attempt timeout."""
        try:
            await asyncio.wait_for(self.remote.deliver(item), timeout=self.delivery_timeout)
        except asyncio.TimeoutError as e:
            raise TransientError(f"Delivery timed out after {self.delivery_timeout}s") from e
        except (ConnectionError, OSError) as e:
            raise TransientError(f"Connectivity error: {e}") from e

    def _on_network_change(self, online: bool):
        if not online:
            logger.info("Offline; new mutations stay queued locally")
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("Back online but no event loop is running; sync on next request")
            return

        logger.info("Back online; starting sync")
        task = loop.create_task(self.request_sync())
        self._background.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Task):
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Network-triggered sync failed: {error!r}")

    def close(self):
        """Stop listening to the network monitor."""
        if self.monitor is not None:
            self._unsubscribe()

    def __repr__(self) -> str:
        """String representation."""
        return f"SyncCoordinator(remote={self.remote!r}, syncing={self.is_syncing})"
