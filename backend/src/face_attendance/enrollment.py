"""Enrollment of new identities.

EnrollmentValidator enforces identity-key uniqueness by lookup. The lookup
alone is check-then-insert and therefore racy; the Enroller runs it inside a
per-key lock so that concurrent submissions of the same key are serialised,
with the store's unique constraint as the final backstop.

Every successful enrollment, re-enrollment or removal is written to the
sync queue for delivery to the remote store.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Union
import logging

import numpy as np

from .errors import DuplicateIdentity, InvalidDimension
from .extraction import BaseFeatureExtractor, ImageInput, compute_image_hash
from .face import Embedding, Identity, NoFaceDetected
from .storage import EmbeddingStore, identity_key_lock
from .sync import Operation, QueueItem, SyncQueue

logger = logging.getLogger(__name__)

IDENTITIES_COLLECTION = 'students'
EMBEDDINGS_COLLECTION = 'face_embeddings'


class IdentityDirectory(Protocol):
    """Identity collection the validator looks keys up in."""

    def find_by_key(self, identity_key: str) -> Optional[Identity]:
        ...


@dataclass(frozen=True)
class Accept:
    """The key is free to enroll."""
    identity_key: str


@dataclass(frozen=True)
class Reject:
    """The key is already enrolled."""
    identity_key: str
    error: DuplicateIdentity
    existing_identity_id: Optional[str] = None


class EnrollmentValidator:
    """Checks that an identity key is not already enrolled."""

    def __init__(self, directory: IdentityDirectory):
        self.directory = directory

    def check_unique(self, identity_key: str) -> Union[Accept, Reject]:
        """Look the key up in the identity collection.

        Args:
            identity_key: External key, e.g. 'ABU24001'

        Returns:
            Accept, or Reject carrying DuplicateIdentity
        """
        key = identity_key.strip()
        if not key:
            raise ValueError("identity_key must not be empty")

        existing = self.directory.find_by_key(key)
        if existing is not None:
            logger.info(f"Rejecting duplicate identity key {key}")
            return Reject(key, DuplicateIdentity(key), existing.identity_id)
        return Accept(key)


@dataclass
class EnrollmentResult:
    """Outcome of an enrollment operation.

    Attributes:
        identity_key: Key that was submitted
        identity: Created or updated identity (None on failure)
        embedding: Stored embedding (None if enrolled by photo only)
        queue_items: Mutations queued for the remote store
        error: DuplicateIdentity when the key was rejected
        no_face: NoFaceDetected when the capture had no usable face
    """
    identity_key: str
    identity: Optional[Identity] = None
    embedding: Optional[Embedding] = None
    queue_items: List[QueueItem] = field(default_factory=list)
    error: Optional[DuplicateIdentity] = None
    no_face: Optional[NoFaceDetected] = None

    @property
    def success(self) -> bool:
        """Check if the identity was stored."""
        return self.identity is not None and self.error is None and self.no_face is None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary format.

        Returns:
            Dictionary representation
        """
        return {
            'identity_key': self.identity_key,
            'success': self.success,
            'identity': self.identity.to_dict() if self.identity else None,
            'has_face_embedding': self.embedding is not None,
            'queued': [item.item_id for item in self.queue_items],
            'error': str(self.error) if self.error else None,
            'no_face': self.no_face.reason if self.no_face else None,
        }


class Enroller:
    """Enrolls, re-enrolls and removes identities.

    Usage:
        enroller = Enroller(store, queue, locks_dir=locks_dir, extractor=extractor)
        result = enroller.enroll('ABU24001', name='Ada', image='capture.jpg')
        if not result.success:
            ...
    """

    def __init__(
        self,
        store: EmbeddingStore,
        queue: SyncQueue,
        locks_dir: Union[str, Path],
        extractor: Optional[BaseFeatureExtractor] = None,
        validator: Optional[EnrollmentValidator] = None,
        lock_timeout: float = 10.0
    ):
        """Initialize enroller.

        Args:
            store: Local embedding store
            queue: Sync queue receiving the mutations
            locks_dir: Directory for per-key lock files
            extractor: Feature extractor for image captures
            validator: Uniqueness validator (default: lookup in store)
            lock_timeout: Seconds to wait for a key lock
        """
        self.store = store
        self.queue = queue
        self.locks_dir = Path(locks_dir)
        self.extractor = extractor
        self.validator = validator or EnrollmentValidator(store)
        self.lock_timeout = lock_timeout

        if store.db is not queue.db:
            raise ValueError("Enroller needs the store and the queue on the same Database")

    def enroll(
        self,
        identity_key: str,
        name: str = "",
        vector: Optional[np.ndarray] = None,
        image: Optional[ImageInput] = None,
        quality: float = 1.0,
        attributes: Optional[Dict[str, Any]] = None,
        defer_extraction: bool = False
    ) -> EnrollmentResult:
        """Enroll a new identity.

        Supply either a feature vector, or an image to extract one from. With
        defer_extraction=True an image path is stored as the enrollment photo
        and the match engine extracts and caches its vector on first use.

        The identity, its embedding and the queued mutations are written in
        one transaction: either all of them are stored or none is.

        Args:
            identity_key: Unique external key
            name: Display name
            vector: Precomputed feature vector
            image: Capture path or RGB array
            quality: Capture quality (0-1)
            attributes: Extra fields sent with the identity record
            defer_extraction: Store the photo path instead of extracting now

        Returns:
            EnrollmentResult

        Raises:
            InvalidDimension: If the vector has the wrong length
            LockTimeout: If another enrollment holds the key too long
        """
        key = identity_key.strip()
        result = EnrollmentResult(identity_key=key)

        source_image = None
        image_hash = None
        if vector is None:
            if image is None:
                raise ValueError("enroll() needs a vector or an image")
            if defer_extraction:
                if isinstance(image, np.ndarray):
                    raise ValueError("defer_extraction needs an image path")
                source_image = str(image)
            else:
                vector, image_hash = self._extract(image)
                if isinstance(vector, NoFaceDetected):
                    result.no_face = vector
                    return result

        if vector is not None:
            vector = self._check_dim(vector)

        with identity_key_lock(self.locks_dir, key, timeout=self.lock_timeout):
            decision = self.validator.check_unique(key)
            if isinstance(decision, Reject):
                result.error = decision.error
                return result

            try:
                with self.store.db.session_scope() as session:
                    identity = self.store.add_identity(
                        key,
                        name=name,
                        source_image=source_image,
                        attributes=attributes,
                        session=session
                    )

                    embedding = None
                    if vector is not None:
                        embedding = self.store.add_embedding(Embedding(
                            identity_id=identity.identity_id,
                            vector=vector,
                            quality=quality,
                            source="enrollment",
                            primary=True,
                            image_hash=image_hash
                        ), session=session)

                    queued = [self._enqueue_identity(identity, Operation.INSERT, session)]
                    if embedding is not None:
                        queued.append(self._enqueue_embeddings(identity, Operation.INSERT, session))
            except DuplicateIdentity as e:
                result.error = e
                return result

        result.identity = identity
        result.embedding = embedding
        result.queue_items = queued
        logger.info(f"Enrolled {key} ({identity.identity_id})")
        return result

    def re_enroll(
        self,
        identity_key: str,
        vector: Optional[np.ndarray] = None,
        image: Optional[ImageInput] = None,
        quality: float = 1.0,
        replace: bool = False
    ) -> EnrollmentResult:
        """Add a new primary embedding to an enrolled identity.

        Existing embeddings are kept (and lose the primary flag) unless
        replace=True, in which case they are deleted first.

        Raises:
            KeyError: If the key isn't enrolled
        """
        key = identity_key.strip()
        result = EnrollmentResult(identity_key=key)

        image_hash = None
        if vector is None:
            if image is None:
                raise ValueError("re_enroll() needs a vector or an image")
            vector, image_hash = self._extract(image)
            if isinstance(vector, NoFaceDetected):
                result.no_face = vector
                return result
        vector = self._check_dim(vector)

        with identity_key_lock(self.locks_dir, key, timeout=self.lock_timeout):
            identity = self.store.find_by_key(key)
            if identity is None:
                raise KeyError(f"Identity key not enrolled: {key}")

            with self.store.db.session_scope() as session:
                if replace:
                    self.store.delete_embeddings(identity.identity_id, session=session)

                embedding = self.store.add_embedding(Embedding(
                    identity_id=identity.identity_id,
                    vector=vector,
                    quality=quality,
                    source="re-enrollment",
                    primary=True,
                    image_hash=image_hash
                ), session=session)
                item = self._enqueue_embeddings(identity, Operation.UPDATE, session)

        result.identity = identity
        result.embedding = embedding
        result.queue_items.append(item)
        logger.info(f"Re-enrolled {key}{' (replaced)' if replace else ''}")
        return result

    def remove(self, identity_key: str) -> bool:
        """Delete an identity with its embeddings and queue remote deletes.

        Returns:
            True if removed, False if the key wasn't enrolled
        """
        key = identity_key.strip()
        with identity_key_lock(self.locks_dir, key, timeout=self.lock_timeout):
            identity = self.store.find_by_key(key)
            if identity is None:
                return False

            record_id = identity.identity_id
            with self.store.db.session_scope() as session:
                self.store.remove_identity(record_id, session=session)
                self.queue.enqueue(EMBEDDINGS_COLLECTION, Operation.DELETE, {},
                                   record_id=record_id, session=session)
                self.queue.enqueue(IDENTITIES_COLLECTION, Operation.DELETE, {},
                                   record_id=record_id, session=session)

        logger.info(f"Removed identity {key}")
        return True

    def _check_dim(self, vector) -> np.ndarray:
        vector = np.asarray(vector, dtype=np.float32).reshape(-1)
        if vector.shape[0] != self.store.embedding_dim:
            raise InvalidDimension(self.store.embedding_dim, vector.shape[0], where="enrollment")
        return vector

    def _extract(self, image: ImageInput):
        if self.extractor is None:
            raise RuntimeError("Enroller has no feature extractor")
        image_hash = compute_image_hash(image)
        return self.extractor.extract(image), image_hash

    def _enqueue_identity(self, identity: Identity, operation: Operation, session) -> QueueItem:
        payload = identity.to_dict()
        payload['enrollment_status'] = 'enrolled'
        payload['has_face_embedding'] = bool(
            self.store.get_embeddings(identity.identity_id, session=session)
        )
        return self.queue.enqueue(
            IDENTITIES_COLLECTION, operation, payload,
            record_id=identity.identity_id, session=session
        )

    def _enqueue_embeddings(self, identity: Identity, operation: Operation, session) -> QueueItem:
        # Full snapshot so redelivery and reordering converge on the same state
        embeddings = self.store.get_embeddings(identity.identity_id, session=session)
        payload = {
            'identity_id': identity.identity_id,
            'identity_key': identity.identity_key,
            'embeddings': [e.to_dict() for e in embeddings],
        }
        return self.queue.enqueue(
            EMBEDDINGS_COLLECTION, operation, payload,
            record_id=identity.identity_id, session=session
        )
