"""Attendance marking.

A recognised identity is marked present by enqueuing an attendance record.
An identity is marked at most once per event and day: the record ID is
derived from identity, event and date, so a second recognition or a
redelivery lands on the same remote key.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Union
import logging
import uuid

from .extraction import ImageInput
from .face import Identity, MatchCandidate, NoFaceDetected
from .matching import MODE_BEST, MatchEngine
from .storage import EmbeddingStore
from .sync import Operation, QueueItem, SyncQueue
from .time_utils import to_naive_utc, utcnow

logger = logging.getLogger(__name__)

ATTENDANCE_COLLECTION = 'attendance_records'

_RECORD_NAMESPACE = uuid.UUID('6f1c3a52-9d1e-4b7a-8f0e-2c5d4e3b1a90')


def attendance_record_id(identity_id: str, event_id: Optional[str], timestamp: datetime) -> str:
    """Derive the remote record ID of an attendance mark.

    Args:
        identity_id: Identity marked present
        event_id: Class/session identifier
        timestamp: Mark time (naive UTC); only its date is used

    Returns:
        uuid5 hex, equal for every mark of the identity at the event that day
    """
    name = f"{identity_id}|{event_id or ''}|{timestamp.date().isoformat()}"
    return uuid.uuid5(_RECORD_NAMESPACE, name).hex


@dataclass
class AttendanceOutcome:
    """Result of recognize_and_mark().

    no_face is set when the capture had no usable face. candidate and item
    are set when attendance was marked, with already_marked telling whether
    the item is an earlier mark for the same event and day. Neither is set
    when nobody cleared the threshold.
    """
    no_face: Optional[NoFaceDetected] = None
    candidate: Optional[MatchCandidate] = None
    item: Optional[QueueItem] = None
    already_marked: bool = False

    @property
    def marked(self) -> bool:
        return self.item is not None

    def to_dict(self) -> Dict[str, Any]:
        if self.no_face is not None:
            status = 'no_face'
        elif self.already_marked:
            status = 'already_marked'
        elif self.marked:
            status = 'marked'
        else:
            status = 'no_match'
        return {
            'status': status,
            'candidate': self.candidate.to_dict() if self.candidate else None,
            'record_id': self.item.record_id if self.item else None,
        }


class AttendanceRecorder:
    """Marks attendance through the sync queue.

    Usage:
        recorder = AttendanceRecorder(queue, store, engine)
        outcome = recorder.recognize_and_mark('capture.jpg', event_id='CSC101-2024-10-01')
    """

    def __init__(self, queue: SyncQueue, store: EmbeddingStore, engine: Optional[MatchEngine] = None):
        self.queue = queue
        self.store = store
        self.engine = engine

    def find_mark(
        self,
        identity: Union[Identity, MatchCandidate],
        event_id: Optional[str] = None,
        timestamp: Optional[datetime] = None
    ) -> Optional[QueueItem]:
        """Get the queued mark of an identity for the event on the given day."""
        timestamp = to_naive_utc(timestamp) if timestamp else utcnow()
        record_id = attendance_record_id(identity.identity_id, event_id, timestamp)
        return self.queue.find_record(ATTENDANCE_COLLECTION, record_id)

    def mark(
        self,
        identity: Union[Identity, MatchCandidate],
        event_id: Optional[str] = None,
        source: str = "face_recognition",
        similarity: Optional[float] = None,
        timestamp: Optional[datetime] = None
    ) -> QueueItem:
        """Enqueue an attendance record for an identity.

        A repeated mark for the same event and day returns the queued item
        of the first one instead of enqueuing again.

        Args:
            identity: Identity or accepted MatchCandidate
            event_id: Class/session identifier
            source: How the identity was established
            similarity: Match similarity (taken from a MatchCandidate if omitted)
            timestamp: Mark time (default: now, UTC)

        Returns:
            The queued item
        """
        timestamp = to_naive_utc(timestamp) if timestamp else utcnow()
        if isinstance(identity, MatchCandidate) and similarity is None:
            similarity = identity.similarity

        existing = self.find_mark(identity, event_id, timestamp)
        if existing is not None:
            logger.warning(
                f"{identity.identity_key} already marked present today "
                f"(event={event_id}, at {existing.payload.get('timestamp')})"
            )
            return existing

        record_id = attendance_record_id(identity.identity_id, event_id, timestamp)
        payload = {
            'id': record_id,
            'identity_id': identity.identity_id,
            'identity_key': identity.identity_key,
            'event_id': event_id,
            'date': timestamp.date().isoformat(),
            'timestamp': timestamp.isoformat(),
            'status': 'present',
            'source': source,
            'similarity': similarity,
        }

        item = self.queue.enqueue(ATTENDANCE_COLLECTION, Operation.INSERT, payload, record_id=record_id)
        logger.info(f"Marked {identity.identity_key} present (event={event_id})")
        return item

    def recognize_and_mark(self, image: ImageInput, event_id: Optional[str] = None) -> AttendanceOutcome:
        """Identify the face in a capture and mark the accepted identity present.

        Raises:
            RuntimeError: If the recorder has no match engine
        """
        if self.engine is None:
            raise RuntimeError("AttendanceRecorder has no match engine")

        result = self.engine.identify(image, self.store, mode=MODE_BEST)
        if isinstance(result, NoFaceDetected):
            return AttendanceOutcome(no_face=result)
        if not result:
            logger.info("No identity cleared the acceptance threshold")
            return AttendanceOutcome()

        candidate = result[0]
        now = utcnow()
        existing = self.find_mark(candidate, event_id, now)
        if existing is not None:
            logger.info(f"{candidate.identity_key} already marked present today (event={event_id})")
            return AttendanceOutcome(candidate=candidate, item=existing, already_marked=True)

        item = self.mark(candidate, event_id=event_id, timestamp=now)
        return AttendanceOutcome(candidate=candidate, item=item)
