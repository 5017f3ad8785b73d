"""Network-state monitor.

Emits discrete online/offline transition events to subscribed listeners.
Whatever observes connectivity (OS hooks, a health check, a UI toggle)
calls set_online(); repeated reports of the same state are not events.
"""

from typing import Callable, List
import asyncio
import logging

logger = logging.getLogger(__name__)

Listener = Callable[[bool], None]


class NetworkMonitor:
    """Tracks connectivity and notifies listeners on transitions.

    Usage:
        monitor = NetworkMonitor(online=False)
        monitor.subscribe(lambda online: print('online' if online else 'offline'))
        monitor.set_online(True)   # listeners called with True
        monitor.set_online(True)   # no transition, nothing emitted
    """

    def __init__(self, online: bool = True):
        self._online = online
        self._listeners: List[Listener] = []

    @property
    def online(self) -> bool:
        """Current connectivity state."""
        return self._online

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener.

        Returns:
            Function that unsubscribes the listener
        """
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def set_online(self, online: bool) -> bool:
        """Report the current connectivity state.

        Returns:
            True if this was a transition (listeners notified)
        """
        online = bool(online)
        if online == self._online:
            return False

        self._online = online
        logger.info(f"Network {'online' if online else 'offline'}")

        for listener in list(self._listeners):
            result = listener(online)
            if asyncio.iscoroutine(result):
                # Async listeners run on the current loop
                asyncio.get_running_loop().create_task(result)
        return True

    def __repr__(self) -> str:
        """String representation."""
        return f"NetworkMonitor(online={self._online}, listeners={len(self._listeners)})"
