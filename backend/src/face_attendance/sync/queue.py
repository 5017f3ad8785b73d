"""Durable sync queue for locally generated mutations.

Every mutation (enrollment, attendance mark, removal) is written to this
queue first, online or offline; the queue is the single write path to the
remote store. Items move through:

    pending -> in_flight -> synced
                         -> pending (retry, attempt_count + 1, deferred by backoff)
                         -> failed_permanent

synced and failed_permanent are terminal for automatic processing and stay
visible until an operator clears them.

Delivery is at-least-once: an item left in_flight by a crash is put back to
pending when the queue is next opened and will be delivered again, so the
remote upsert must be idempotent.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional
import asyncio
import json
import logging
import uuid

from sqlalchemy import func

from ..errors import PermanentError, StorageCorruption, SyncDeliveryError
from ..storage.database import Database, QueueItemRecord
from ..time_utils import utcnow
from .retry_policy import RetryPolicy

logger = logging.getLogger(__name__)

LAST_SESSION_KEY = 'last_sync_session'


class QueueStatus(str, Enum):
    """Queue item status."""
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SYNCED = "synced"
    FAILED_PERMANENT = "failed_permanent"


class Operation(str, Enum):
    """Mutation kind."""
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


TERMINAL_STATUSES = (QueueStatus.SYNCED, QueueStatus.FAILED_PERMANENT)


@dataclass
class QueueItem:
    """A pending mutation awaiting remote delivery.

    Attributes:
        item_id: Unique ID (uuid4 hex)
        seq: FIFO sequence number
        collection: Target remote collection, e.g. 'attendance_records'
        operation: insert, update or delete
        record_id: ID of the record in the target collection
        payload: Snapshot of the record at enqueue time
        enqueued_at: Enqueue timestamp (UTC)
        attempt_count: Delivery attempts made so far
        status: Current status
        last_error: Message of the last failed attempt
        next_attempt_at: Earliest time of the next attempt (None = now)
        synced_at: Time of successful delivery
    """
    item_id: str
    seq: int
    collection: str
    operation: Operation
    record_id: str
    payload: Dict[str, Any]
    enqueued_at: datetime
    attempt_count: int = 0
    status: QueueStatus = QueueStatus.PENDING
    last_error: Optional[str] = None
    next_attempt_at: Optional[datetime] = None
    synced_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        """Check if the item is out of automatic processing."""
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary format.

        Returns:
            Dictionary representation
        """
        return {
            'id': self.item_id,
            'seq': self.seq,
            'collection': self.collection,
            'operation': self.operation.value,
            'record_id': self.record_id,
            'payload': self.payload,
            'enqueued_at': self.enqueued_at.isoformat(),
            'attempt_count': self.attempt_count,
            'status': self.status.value,
            'last_error': self.last_error,
            'next_attempt_at': self.next_attempt_at.isoformat() if self.next_attempt_at else None,
            'synced_at': self.synced_at.isoformat() if self.synced_at else None,
        }

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"QueueItem(seq={self.seq}, {self.operation.value} "
            f"{self.collection}/{self.record_id}, status={self.status.value}, "
            f"attempts={self.attempt_count})"
        )


@dataclass
class SyncSession:
    """Summary of one drain.

    Attributes:
        started_at: Drain start (UTC)
        finished_at: Drain end (UTC)
        synced: Items delivered
        failed: Items that became failed_permanent
        deferred: Items that failed transiently and wait for a later drain
        skipped: Pending items not yet due because of backoff
        cancelled: Whether the drain stopped early on request
        errors: Error messages, one per failed attempt
    """
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    synced: int = 0
    failed: int = 0
    deferred: int = 0
    skipped: int = 0
    cancelled: bool = False
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        """Check if every attempted item was delivered."""
        return self.failed == 0 and self.deferred == 0 and not self.cancelled

    @property
    def attempted(self) -> int:
        """Number of items attempted."""
        return self.synced + self.failed + self.deferred

    @property
    def duration(self) -> float:
        """Drain duration in seconds."""
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary format.

        Returns:
            Dictionary representation
        """
        return {
            'started_at': self.started_at.isoformat(),
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'synced': self.synced,
            'failed': self.failed,
            'deferred': self.deferred,
            'skipped': self.skipped,
            'cancelled': self.cancelled,
            'success': self.success,
            'errors': list(self.errors),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SyncSession':
        """Create SyncSession from dictionary."""
        return cls(
            started_at=datetime.fromisoformat(data['started_at']),
            finished_at=datetime.fromisoformat(data['finished_at']) if data.get('finished_at') else None,
            synced=int(data.get('synced', 0)),
            failed=int(data.get('failed', 0)),
            deferred=int(data.get('deferred', 0)),
            skipped=int(data.get('skipped', 0)),
            cancelled=bool(data.get('cancelled', False)),
            errors=list(data.get('errors', [])),
        )

    def __repr__(self) -> str:
        """String representation."""
        status = "✓" if self.success else "⚠"
        return (
            f"SyncSession({status} synced={self.synced}, failed={self.failed}, "
            f"deferred={self.deferred}, skipped={self.skipped})"
        )


Deliver = Callable[[QueueItem], Awaitable[None]]


class SyncQueue:
    """Durable, ordered record of pending mutations.

    enqueue() is a plain synchronous insert: it never suspends and may be
    called while a drain is awaiting the remote. Status transitions of
    existing items belong to the running drain.

    Usage:
        queue = SyncQueue(db, retry_policy=RetryPolicy(max_attempts=3))
        queue.enqueue('attendance_records', Operation.INSERT, {...}, record_id='...')

        session = await queue.drain(remote_deliver)
    """

    def __init__(
        self,
        db: Database,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        """Initialize sync queue and recover items interrupted by a crash.

        Args:
            db: Opened Database
            retry_policy: Retry/backoff policy (default: RetryPolicy())
            clock: Source of naive-UTC "now", injectable for tests
        """
        self.db = db
        self.retry_policy = retry_policy or RetryPolicy()
        self.clock = clock

        recovered = self.recover_in_flight()
        logger.info(
            f"SyncQueue ready: {self.pending_count()} pending"
            + (f", {recovered} recovered from in_flight" if recovered else "")
        )

    @property
    def max_attempts(self) -> int:
        return self.retry_policy.max_attempts

    # Writes

    def enqueue(
        self,
        collection: str,
        operation: Operation,
        payload: Dict[str, Any],
        record_id: Optional[str] = None,
        session=None
    ) -> QueueItem:
        """Append a mutation to the queue. Always succeeds locally.

        Args:
            collection: Target remote collection
            operation: insert, update or delete
            payload: Record snapshot (must be JSON-serialisable)
            record_id: Target record ID (default: payload['id'] or the item ID)
            session: Join this session, so the mutation commits together with
                the local write it describes

        Returns:
            The queued item, status pending
        """
        operation = Operation(operation)
        item_id = uuid.uuid4().hex
        record_id = str(record_id or payload.get('id') or item_id)

        with self.db.session_scope(session) as s:
            record = QueueItemRecord(
                item_id=item_id,
                collection=collection,
                operation=operation.value,
                record_id=record_id,
                payload=json.dumps(payload, sort_keys=True, default=str),
                status=QueueStatus.PENDING.value,
                attempt_count=0,
                enqueued_at=self.clock()
            )
            s.add(record)
            s.flush()  # Assign seq
            item = self._to_item(record)

        logger.debug(f"Enqueued {item}")
        return item

    def mark_in_flight(self, item_id: str) -> Optional[QueueItem]:
        """Claim a pending item for delivery and count the attempt.

        Returns:
            The updated item, or None if it is no longer pending
        """
        with self.db.session_scope() as session:
            record = self._get_record(session, item_id)
            if record is None or record.status != QueueStatus.PENDING.value:
                return None
            record.status = QueueStatus.IN_FLIGHT.value
            record.attempt_count += 1
            record.updated_at = self.clock()
            return self._to_item(record)

    def mark_synced(self, item_id: str) -> QueueItem:
        """Record successful delivery."""
        with self.db.session_scope() as session:
            record = self._require_record(session, item_id)
            now = self.clock()
            record.status = QueueStatus.SYNCED.value
            record.synced_at = now
            record.next_attempt_at = None
            record.last_error = None
            record.updated_at = now
            return self._to_item(record)

    def mark_failed(self, item_id: str, error: str, permanent: bool = False) -> QueueItem:
        """Record a failed attempt.

        Permanent failures, and transient failures on the last allowed
        attempt, make the item failed_permanent. Other transient failures put
        it back to pending, deferred by the backoff for its attempt count.
        """
        with self.db.session_scope() as session:
            record = self._require_record(session, item_id)
            now = self.clock()
            record.last_error = error
            record.updated_at = now

            if permanent or not self.retry_policy.should_retry(record.attempt_count):
                record.status = QueueStatus.FAILED_PERMANENT.value
                record.next_attempt_at = None
            else:
                record.status = QueueStatus.PENDING.value
                record.next_attempt_at = self.retry_policy.retry_at(now, record.attempt_count)

            return self._to_item(record)

    def release(self, item_id: str, reason: str) -> Optional[QueueItem]:
        """Return an in_flight item to pending as possibly delivered.

        Used when a drain is interrupted mid-delivery; the attempt still counts
        and the item stays eligible for the next drain.
        """
        with self.db.session_scope() as session:
            record = self._get_record(session, item_id)
            if record is None or record.status != QueueStatus.IN_FLIGHT.value:
                return None
            record.status = QueueStatus.PENDING.value
            record.last_error = reason
            record.next_attempt_at = None
            record.updated_at = self.clock()
            return self._to_item(record)

    def recover_in_flight(self) -> int:
        """Put items left in_flight by a crashed process back to pending.

        Returns:
            Number of items recovered
        """
        with self.db.session_scope() as session:
            records = session.query(QueueItemRecord).filter(
                QueueItemRecord.status == QueueStatus.IN_FLIGHT.value
            ).all()
            for record in records:
                record.status = QueueStatus.PENDING.value
                record.last_error = "interrupted during delivery; possibly delivered"
                record.next_attempt_at = None

        if records:
            logger.warning(f"Recovered {len(records)} in-flight items for redelivery")
        return len(records)

    # Reads

    def get(self, item_id: str) -> Optional[QueueItem]:
        """Get an item by ID."""
        with self.db.session_scope() as session:
            record = self._get_record(session, item_id)
            return self._to_item(record) if record else None

    def items(self, status: Optional[QueueStatus] = None) -> List[QueueItem]:
        """Get items in FIFO order, optionally filtered by status."""
        with self.db.session_scope() as session:
            query = session.query(QueueItemRecord)
            if status is not None:
                query = query.filter(QueueItemRecord.status == QueueStatus(status).value)
            return [self._to_item(r) for r in query.order_by(QueueItemRecord.seq).all()]

    def find_record(self, collection: str, record_id: str) -> Optional[QueueItem]:
        """Get the most recent item targeting a remote record, if still queued."""
        with self.db.session_scope() as session:
            record = session.query(QueueItemRecord).filter(
                QueueItemRecord.collection == collection,
                QueueItemRecord.record_id == record_id
            ).order_by(QueueItemRecord.seq.desc()).first()
            return self._to_item(record) if record else None

    def due_items(self, now: Optional[datetime] = None) -> List[QueueItem]:
        """Get pending items whose backoff has elapsed, in FIFO order."""
        now = now or self.clock()
        return [
            item for item in self.items(QueueStatus.PENDING)
            if item.next_attempt_at is None or item.next_attempt_at <= now
        ]

    def pending_count(self) -> int:
        """Count pending items (due or deferred)."""
        return self.count_by_status()[QueueStatus.PENDING.value]

    def count_by_status(self) -> Dict[str, int]:
        """Count items per status."""
        counts = {status.value: 0 for status in QueueStatus}
        with self.db.session_scope() as session:
            rows = session.query(
                QueueItemRecord.status, func.count(QueueItemRecord.seq)
            ).group_by(QueueItemRecord.status).all()
        for status, count in rows:
            counts[status] = count
        return counts

    # Operator actions

    def clear_synced(self) -> int:
        """Remove synced items. Returns number removed."""
        return self._clear_status(QueueStatus.SYNCED)

    def clear_failed(self) -> int:
        """Remove failed_permanent items. Returns number removed."""
        return self._clear_status(QueueStatus.FAILED_PERMANENT)

    def purge(self, item_id: str) -> bool:
        """Remove one terminal item.

        Returns:
            True if removed, False if missing or not terminal
        """
        with self.db.session_scope() as session:
            record = self._get_record(session, item_id)
            if record is None:
                return False
            if QueueStatus(record.status) not in TERMINAL_STATUSES:
                logger.warning(f"Refusing to purge non-terminal item {item_id} ({record.status})")
                return False
            session.delete(record)

        logger.info(f"Purged queue item {item_id}")
        return True

    def requeue_failed(self) -> int:
        """Reset failed_permanent items to pending with a fresh attempt budget.

        Returns:
            Number of items requeued
        """
        with self.db.session_scope() as session:
            records = session.query(QueueItemRecord).filter(
                QueueItemRecord.status == QueueStatus.FAILED_PERMANENT.value
            ).all()
            for record in records:
                record.status = QueueStatus.PENDING.value
                record.attempt_count = 0
                record.next_attempt_at = None

        logger.info(f"Requeued {len(records)} failed items")
        return len(records)

    # Drain

    async def drain(
        self,
        deliver: Deliver,
        should_stop: Optional[Callable[[], bool]] = None
    ) -> SyncSession:
        """Deliver every due pending item in FIFO order.

        The set of items is fixed when the drain starts; items enqueued during
        the drain wait for the next one. Each item is attempted at most once
        per drain. A failed item never blocks the items behind it.

        Args:
            deliver: Coroutine function delivering one item; raises
                TransientError / PermanentError on failure
            should_stop: Checked before each item; True ends the drain early

        Returns:
            SyncSession summary

        Raises:
            StorageCorruption: If queue records can't be read or updated
            asyncio.CancelledError: If cancelled; the in-flight item is
                released back to pending as possibly delivered
        """
        session = SyncSession(started_at=self.clock())
        now = session.started_at
        pending = self.items(QueueStatus.PENDING)
        due = [i for i in pending if i.next_attempt_at is None or i.next_attempt_at <= now]
        session.skipped = len(pending) - len(due)

        logger.info(f"Drain started: {len(due)} due, {session.skipped} deferred by backoff")

        for queued in due:
            if should_stop is not None and should_stop():
                session.cancelled = True
                logger.info("Drain cancelled at item boundary")
                break

            item = self.mark_in_flight(queued.item_id)
            if item is None:
                # Purged or requeued by an operator since the snapshot
                continue

            try:
                await deliver(item)
            except asyncio.CancelledError:
                self.release(item.item_id, "cancelled during delivery; possibly delivered")
                raise
            except StorageCorruption:
                raise
            except SyncDeliveryError as e:
                self._record_failure(session, item, str(e), permanent=isinstance(e, PermanentError))
                continue
            except Exception as e:
                logger.exception(f"Unexpected delivery error for {item}")
                self._record_failure(session, item, f"{e.__class__.__name__}: {e}", permanent=False)
                continue

            self.mark_synced(item.item_id)
            session.synced += 1
            logger.debug(f"Synced {item.collection}/{item.record_id}")

        session.finished_at = self.clock()
        logger.info(
            f"Drain finished: {session.synced} synced, {session.failed} failed, "
            f"{session.deferred} deferred"
        )
        return session

    def _record_failure(self, session: SyncSession, item: QueueItem, error: str, permanent: bool):
        updated = self.mark_failed(item.item_id, error, permanent=permanent)
        session.errors.append(f"{item.collection}/{item.record_id}: {error}")

        if updated.status is QueueStatus.FAILED_PERMANENT:
            session.failed += 1
            logger.error(
                f"Item {item.item_id} failed permanently after "
                f"{updated.attempt_count} attempt(s): {error}"
            )
        else:
            session.deferred += 1
            logger.warning(
                f"Item {item.item_id} attempt {updated.attempt_count}/{self.max_attempts} "
                f"failed, retry after {updated.next_attempt_at}: {error}"
            )

    # Session summary

    def save_session(self, session: SyncSession):
        """Persist the summary of the most recent drain."""
        self.db.set_meta(LAST_SESSION_KEY, json.dumps(session.to_dict()))

    def load_last_session(self) -> Optional[SyncSession]:
        """Read the summary of the most recent drain, if any.

        Raises:
            StorageCorruption: If the stored summary can't be decoded
        """
        raw = self.db.get_meta(LAST_SESSION_KEY)
        if raw is None:
            return None
        try:
            return SyncSession.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            raise StorageCorruption("Unreadable last sync session") from e

    def stats(self) -> Dict[str, Any]:
        """Get queue statistics.

        Returns:
            Dictionary with counts per status and the last session summary
        """
        last = self.load_last_session()
        return {
            'counts': self.count_by_status(),
            'max_attempts': self.max_attempts,
            'last_session': last.to_dict() if last else None,
        }

    # Internals

    def _clear_status(self, status: QueueStatus) -> int:
        with self.db.session_scope() as session:
            removed = session.query(QueueItemRecord).filter(
                QueueItemRecord.status == status.value
            ).delete()
        logger.info(f"Cleared {removed} {status.value} items")
        return removed

    @staticmethod
    def _get_record(session, item_id: str) -> Optional[QueueItemRecord]:
        return session.query(QueueItemRecord).filter(
            QueueItemRecord.item_id == item_id
        ).first()

    def _require_record(self, session, item_id: str) -> QueueItemRecord:
        record = self._get_record(session, item_id)
        if record is None:
            raise KeyError(f"Queue item {item_id} not found")
        return record

    @staticmethod
    def _to_item(record: QueueItemRecord) -> QueueItem:
        try:
            payload = json.loads(record.payload)
            status = QueueStatus(record.status)
            operation = Operation(record.operation)
        except ValueError as e:
            raise StorageCorruption(f"Unreadable queue item {record.item_id}: {e}") from e

        return QueueItem(
            item_id=record.item_id,
            seq=record.seq,
            collection=record.collection,
            operation=operation,
            record_id=record.record_id,
            payload=payload,
            enqueued_at=record.enqueued_at,
            attempt_count=record.attempt_count,
            status=status,
            last_error=record.last_error,
            next_attempt_at=record.next_attempt_at,
            synced_at=record.synced_at,
        )

    def __len__(self) -> int:
        """Get number of items in the queue."""
        return sum(self.count_by_status().values())

    def __repr__(self) -> str:
        """String representation."""
        counts = self.count_by_status()
        return (
            f"SyncQueue(pending={counts['pending']}, synced={counts['synced']}, "
            f"failed={counts['failed_permanent']})"
        )
