"""Offline-first synchronisation of local mutations to the remote store.

This module provides:
- SyncQueue, the durable single write path for all mutations
- SyncCoordinator, which drains the queue on reconnect or on request
- RetryPolicy for exponential backoff of transient failures
- Remote store implementations (in-memory, HTTP)
- NetworkMonitor for online/offline transitions

Usage:
    from face_attendance.sync import SyncQueue, SyncCoordinator, HttpRemoteStore, Operation

    queue = SyncQueue(db)
    queue.enqueue('attendance_records', Operation.INSERT, payload, record_id=record_id)

    coordinator = SyncCoordinator(queue, HttpRemoteStore(base_url), monitor=monitor)
    session = await coordinator.request_sync()
"""

from .retry_policy import BackoffStrategy, RetryPolicy, compute_backoff_delay_seconds, should_retry
from .queue import (
    SyncQueue,
    QueueItem,
    QueueStatus,
    Operation,
    SyncSession,
    TERMINAL_STATUSES,
)
from .remote import RemotePersistence, InMemoryRemoteStore, HttpRemoteStore
from .network import NetworkMonitor
from .coordinator import SyncCoordinator

__all__ = [
    'BackoffStrategy',
    'RetryPolicy',
    'compute_backoff_delay_seconds',
    'should_retry',
    'SyncQueue',
    'QueueItem',
    'QueueStatus',
    'Operation',
    'SyncSession',
    'TERMINAL_STATUSES',
    'RemotePersistence',
    'InMemoryRemoteStore',
    'HttpRemoteStore',
    'NetworkMonitor',
    'SyncCoordinator',
]
