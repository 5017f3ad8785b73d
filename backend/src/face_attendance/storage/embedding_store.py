"""Embedding store for enrolled identities.

This module provides the EmbeddingStore, which maps each identity to one or
more immutable embeddings with metadata. It also serves as the identity
directory the enrollment validator looks keys up in.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List, Dict, Any
import json
import logging
import uuid

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
import numpy as np

from ..errors import DuplicateIdentity, InvalidDimension, StorageCorruption
from ..face import Embedding, Identity
from ..time_utils import utcnow
from .database import Database, IdentityRecord, EmbeddingRecord

logger = logging.getLogger(__name__)

VECTOR_DTYPE = np.dtype('<f4')


def encode_vector(vector: np.ndarray) -> bytes:
    """Serialize a vector to little-endian float32 bytes."""
    return np.ascontiguousarray(vector, dtype=VECTOR_DTYPE).tobytes()


def decode_vector(blob: bytes, dim: int) -> np.ndarray:
    """Deserialize a vector written by encode_vector.

    Raises:
        StorageCorruption: If the byte length doesn't match the recorded dimension
    """
    if blob is None or len(blob) != dim * VECTOR_DTYPE.itemsize:
        raise StorageCorruption(
            f"Stored vector has {0 if blob is None else len(blob)} bytes, "
            f"expected {dim * VECTOR_DTYPE.itemsize}"
        )
    return np.frombuffer(blob, dtype=VECTOR_DTYPE).astype(np.float32)


@dataclass
class StoreEntry:
    """One identity with all of its embeddings, as seen by the match engine."""
    identity: Identity
    embeddings: List[Embedding] = field(default_factory=list)

    @property
    def primary(self) -> Optional[Embedding]:
        """Get the primary embedding, if any."""
        for embedding in self.embeddings:
            if embedding.primary:
                return embedding
        return None


class EmbeddingStore:
    """Durable mapping of identity -> embeddings.

    Invariants:
    - Every stored vector has length embedding_dim
    - At most one embedding per identity is primary
    - Embeddings are never updated in place

    Usage:
        store = EmbeddingStore(db, embedding_dim=128)
        identity = store.add_identity('ABU24001', name='Ada')
        store.add_embedding(Embedding(identity.identity_id, vector, quality=0.9, primary=True))
        entries = store.snapshot()
    """

    def __init__(self, db: Database, embedding_dim: int = 128):
        """Initialize embedding store.

        Args:
            db: Opened Database
            embedding_dim: Required vector dimension D
        """
        self.db = db
        self.embedding_dim = embedding_dim

        logger.info(f"EmbeddingStore ready: dim={embedding_dim}, identities={self.count_identities()}")

    # Identities

    def add_identity(
        self,
        identity_key: str,
        name: str = "",
        source_image: Optional[str] = None,
        attributes: Optional[Dict[str, Any]] = None,
        identity_id: Optional[str] = None,
        enrolled_at: Optional[datetime] = None,
        session=None
    ) -> Identity:
        """Create an identity record.

        Args:
            identity_key: External unique key
            name: Display name
            source_image: Enrollment photo path, if no vector is supplied
            attributes: Extra fields
            identity_id: Explicit ID (default: generated uuid4 hex)
            enrolled_at: Enrollment timestamp (default: now)
            session: Join this session instead of committing on its own

        Returns:
            The created Identity

        Raises:
            DuplicateIdentity: If the key is already stored
        """
        identity = Identity(
            identity_id=identity_id or uuid.uuid4().hex,
            identity_key=identity_key.strip(),
            name=name,
            source_image=str(source_image) if source_image else None,
            enrolled_at=enrolled_at or utcnow(),
            attributes=dict(attributes or {}),
        )

        try:
            with self.db.session_scope(session) as s:
                s.add(IdentityRecord(
                    identity_id=identity.identity_id,
                    identity_key=identity.identity_key,
                    name=identity.name,
                    source_image=identity.source_image,
                    attributes=json.dumps(identity.attributes),
                    enrolled_at=identity.enrolled_at,
                    active=True
                ))
                s.flush()
        except IntegrityError as e:
            raise DuplicateIdentity(identity.identity_key) from e

        logger.debug(f"Added identity {identity.identity_key} ({identity.identity_id})")
        return identity

    def find_by_key(self, identity_key: str) -> Optional[Identity]:
        """Get identity by external key.

        Args:
            identity_key: External key (surrounding whitespace ignored)

        Returns:
            Identity or None if not found
        """
        with self.db.session_scope() as session:
            record = session.query(IdentityRecord).filter(
                IdentityRecord.identity_key == identity_key.strip()
            ).first()
            return self._to_identity(record) if record else None

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        """Get identity by ID."""
        with self.db.session_scope() as session:
            record = session.get(IdentityRecord, identity_id)
            return self._to_identity(record) if record else None

    def list_identities(self, active_only: bool = True) -> List[Identity]:
        """Get all identities ordered by enrollment time.

        Args:
            active_only: Whether to skip deactivated identities

        Returns:
            List of Identity records
        """
        with self.db.session_scope() as session:
            query = session.query(IdentityRecord)
            if active_only:
                query = query.filter(IdentityRecord.active == True)  # noqa: E712
            records = query.order_by(IdentityRecord.enrolled_at, IdentityRecord.identity_key).all()
            return [self._to_identity(r) for r in records]

    def set_active(self, identity_id: str, active: bool) -> bool:
        """Activate or deactivate an identity.

        Returns:
            True if successful, False if identity not found
        """
        with self.db.session_scope() as session:
            record = session.get(IdentityRecord, identity_id)
            if record is None:
                return False
            record.active = active
            return True

    def remove_identity(self, identity_id: str, session=None) -> bool:
        """Permanently delete an identity and all of its embeddings.

        Returns:
            True if successful, False if identity not found
        """
        with self.db.session_scope(session) as s:
            record = s.get(IdentityRecord, identity_id)
            if record is None:
                return False
            removed = s.query(EmbeddingRecord).filter(
                EmbeddingRecord.identity_id == identity_id
            ).delete()
            s.delete(record)

        logger.info(f"Removed identity {identity_id} with {removed} embeddings")
        return True

    # Embeddings

    def add_embedding(self, embedding: Embedding, session=None) -> Embedding:
        """Store a new embedding.

        A primary embedding clears the primary flag of the identity's previous
        embeddings in the same transaction. The first embedding of an identity
        is always made primary.

        Args:
            embedding: Embedding to store
            session: Join this session instead of committing on its own

        Returns:
            Stored Embedding with embedding_id set

        Raises:
            InvalidDimension: If the vector length isn't embedding_dim
            KeyError: If the identity doesn't exist
        """
        if embedding.dim != self.embedding_dim:
            raise InvalidDimension(self.embedding_dim, embedding.dim, where="embedding")

        with self.db.session_scope(session) as s:
            if s.get(IdentityRecord, embedding.identity_id) is None:
                raise KeyError(f"Identity {embedding.identity_id} not found")

            existing_primary = s.query(EmbeddingRecord).filter(
                EmbeddingRecord.identity_id == embedding.identity_id,
                EmbeddingRecord.is_primary == True  # noqa: E712
            ).all()

            primary = embedding.primary or not existing_primary
            if primary:
                for record in existing_primary:
                    record.is_primary = False

            record = EmbeddingRecord(
                identity_id=embedding.identity_id,
                vector=encode_vector(embedding.vector),
                dim=embedding.dim,
                quality=float(embedding.quality),
                source=embedding.source,
                is_primary=primary,
                image_hash=embedding.image_hash,
                captured_at=embedding.captured_at
            )
            s.add(record)
            s.flush()  # Get the ID before commit
            stored = self._to_embedding(record)

        logger.debug(f"Added embedding {stored.embedding_id} for identity {embedding.identity_id}")
        return stored

    def get_embeddings(self, identity_id: str, session=None) -> List[Embedding]:
        """Get all embeddings of an identity, oldest first."""
        with self.db.session_scope(session) as s:
            records = s.query(EmbeddingRecord).filter(
                EmbeddingRecord.identity_id == identity_id
            ).order_by(EmbeddingRecord.embedding_id).all()
            return [self._to_embedding(r) for r in records]

    def find_embedding_by_image_hash(self, identity_id: str, image_hash: str) -> Optional[Embedding]:
        """Get the cached embedding extracted from a given source image."""
        with self.db.session_scope() as session:
            record = session.query(EmbeddingRecord).filter(
                EmbeddingRecord.identity_id == identity_id,
                EmbeddingRecord.image_hash == image_hash
            ).order_by(EmbeddingRecord.embedding_id).first()
            return self._to_embedding(record) if record else None

    def delete_embeddings(self, identity_id: str, session=None) -> int:
        """Delete every embedding of an identity (used on re-enrollment).

        Returns:
            Number of embeddings deleted
        """
        with self.db.session_scope(session) as s:
            deleted = s.query(EmbeddingRecord).filter(
                EmbeddingRecord.identity_id == identity_id
            ).delete()

        logger.info(f"Deleted {deleted} embeddings for identity {identity_id}")
        return deleted

    def snapshot(self) -> List[StoreEntry]:
        """Read a consistent snapshot of all active identities and embeddings.

        Returns:
            List of StoreEntry, in enrollment order
        """
        with self.db.session_scope() as session:
            identities = session.query(IdentityRecord).filter(
                IdentityRecord.active == True  # noqa: E712
            ).order_by(IdentityRecord.enrolled_at, IdentityRecord.identity_key).all()

            embeddings = session.query(EmbeddingRecord).join(
                IdentityRecord,
                IdentityRecord.identity_id == EmbeddingRecord.identity_id
            ).filter(
                IdentityRecord.active == True  # noqa: E712
            ).order_by(EmbeddingRecord.embedding_id).all()

            by_identity: Dict[str, List[Embedding]] = {}
            for record in embeddings:
                by_identity.setdefault(record.identity_id, []).append(self._to_embedding(record))

            return [
                StoreEntry(
                    identity=self._to_identity(record),
                    embeddings=by_identity.get(record.identity_id, [])
                )
                for record in identities
            ]

    # Stats

    def count_identities(self) -> int:
        """Count active identities."""
        with self.db.session_scope() as session:
            count = session.query(func.count(IdentityRecord.identity_id)).filter(
                IdentityRecord.active == True  # noqa: E712
            ).scalar()
            return count or 0

    def count_embeddings(self) -> int:
        """Count all stored embeddings."""
        with self.db.session_scope() as session:
            count = session.query(func.count(EmbeddingRecord.embedding_id)).scalar()
            return count or 0

    def get_stats(self) -> Dict[str, Any]:
        """Get store statistics.

        Returns:
            Dictionary with statistics
        """
        return {
            'identities': self.count_identities(),
            'embeddings': self.count_embeddings(),
            'embedding_dim': self.embedding_dim,
            'db_path': str(self.db.db_path),
        }

    # Conversion

    @staticmethod
    def _to_identity(record: IdentityRecord) -> Identity:
        try:
            attributes = json.loads(record.attributes or "{}")
        except json.JSONDecodeError as e:
            raise StorageCorruption(
                f"Unreadable attributes for identity {record.identity_id}"
            ) from e

        return Identity(
            identity_id=record.identity_id,
            identity_key=record.identity_key,
            name=record.name or "",
            source_image=record.source_image,
            enrolled_at=record.enrolled_at,
            active=bool(record.active),
            attributes=attributes,
        )

    @staticmethod
    def _to_embedding(record: EmbeddingRecord) -> Embedding:
        return Embedding(
            identity_id=record.identity_id,
            vector=decode_vector(record.vector, record.dim),
            quality=record.quality,
            captured_at=record.captured_at,
            source=record.source,
            primary=bool(record.is_primary),
            image_hash=record.image_hash,
            embedding_id=record.embedding_id,
        )

    def __len__(self) -> int:
        """Get number of active identities."""
        return self.count_identities()

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"EmbeddingStore(identities={self.count_identities()}, "
            f"embeddings={self.count_embeddings()}, dim={self.embedding_dim})"
        )
