"""Durable local storage for identities, embeddings and the sync queue.

This module provides the SQLite schema (via SQLAlchemy) shared by the
EmbeddingStore and the SyncQueue. The schema carries an explicit version
in the sync_meta table so it can evolve safely; a store written by a newer
schema, or a file that is not a readable database, raises StorageCorruption
instead of being silently reinitialised.
"""

from contextlib import contextmanager
from pathlib import Path
from typing import Optional, Union
import logging

from sqlalchemy import (
    create_engine,
    Column,
    Integer,
    String,
    Float,
    Boolean,
    LargeBinary,
    DateTime,
    Text,
    ForeignKey,
    Index as DBIndex,
)
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.exc import DatabaseError, IntegrityError

from ..errors import StorageCorruption
from ..time_utils import utcnow

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

Base = declarative_base()


class IdentityRecord(Base):
    """Identity table, keyed by a generated id and unique on identity_key."""
    __tablename__ = 'identities'

    identity_id = Column(String(32), primary_key=True)
    identity_key = Column(String(255), nullable=False, unique=True, index=True)
    name = Column(String(255), nullable=False, default="")

    # Enrollment photo for identities enrolled without a stored vector
    source_image = Column(String(1024), nullable=True)

    # JSON blob of extra fields (program, level, gender, ...)
    attributes = Column(Text, nullable=False, default="{}")

    active = Column(Boolean, default=True, nullable=False)
    enrolled_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class EmbeddingRecord(Base):
    """Embedding table.

    Vectors are stored as raw little-endian float32 bytes together with
    their dimension, so they can be decoded without pickle.
    """
    __tablename__ = 'embeddings'

    embedding_id = Column(Integer, primary_key=True, autoincrement=True)
    identity_id = Column(
        String(32),
        ForeignKey('identities.identity_id', ondelete='CASCADE'),
        nullable=False,
        index=True
    )
    vector = Column(LargeBinary, nullable=False)
    dim = Column(Integer, nullable=False)
    quality = Column(Float, nullable=False, default=1.0)
    source = Column(String(64), nullable=False, default="enrollment")
    is_primary = Column(Boolean, default=False, nullable=False)

    # Content hash of the source image (extraction cache key)
    image_hash = Column(String(64), nullable=True, index=True)

    captured_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        DBIndex('idx_embedding_identity_primary', 'identity_id', 'is_primary'),
    )


class QueueItemRecord(Base):
    """Pending mutation awaiting remote delivery.

    seq is the FIFO order; item_id is the public identifier.
    """
    __tablename__ = 'queue_items'

    seq = Column(Integer, primary_key=True, autoincrement=True)
    item_id = Column(String(32), nullable=False, unique=True, index=True)

    collection = Column(String(255), nullable=False)
    operation = Column(String(16), nullable=False)
    record_id = Column(String(255), nullable=False)

    # JSON snapshot of the payload at enqueue time
    payload = Column(Text, nullable=False)

    status = Column(String(32), nullable=False, index=True)
    attempt_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    enqueued_at = Column(DateTime, default=utcnow, nullable=False)
    next_attempt_at = Column(DateTime, nullable=True)
    synced_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        DBIndex('idx_queue_status_seq', 'status', 'seq'),
    )


class SyncMeta(Base):
    """Key/value metadata: schema version and last sync session summary."""
    __tablename__ = 'sync_meta'

    key = Column(String(64), primary_key=True)
    value = Column(Text, nullable=False)


class Database:
    """SQLite database shared by the embedding store and the sync queue.

    Attributes:
        db_path: Path to the SQLite file
        engine: SQLAlchemy engine
    """

    def __init__(self, db_path: Union[str, Path]):
        """Open (or create) the database and verify its schema version.

        Args:
            db_path: Path to SQLite database file

        Raises:
            StorageCorruption: If the file is unreadable or has an unknown schema
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self.engine = create_engine(
            f'sqlite:///{self.db_path}',
            echo=False,
            connect_args={'check_same_thread': False}  # For SQLite
        )
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

        try:
            Base.metadata.create_all(self.engine)
            self._check_schema_version()
        except DatabaseError as e:
            logger.error(f"Local store unreadable: {self.db_path}: {e}")
            raise StorageCorruption(f"Local store unreadable: {self.db_path}") from e

        logger.info(f"Database initialized: {self.db_path}")

    def _check_schema_version(self):
        """Stamp a fresh store, or refuse one written by another schema."""
        with self.session_scope() as session:
            row = session.get(SyncMeta, 'schema_version')
            if row is None:
                session.add(SyncMeta(key='schema_version', value=str(SCHEMA_VERSION)))
                logger.debug(f"Stamped schema version {SCHEMA_VERSION}")
                return

            try:
                version = int(row.value)
            except ValueError:
                raise StorageCorruption(f"Unreadable schema version: {row.value!r}")

            if version != SCHEMA_VERSION:
                raise StorageCorruption(
                    f"Store schema version {version} is not supported "
                    f"(expected {SCHEMA_VERSION})"
                )

    @contextmanager
    def session_scope(self, session=None):
        """Provide a transactional scope for database operations.

        Passing an existing session joins its transaction instead: nothing is
        committed here and the outermost scope commits or rolls back the lot.

        Usage:
            with db.session_scope() as session:
                session.add(record)
                # Commit happens automatically on success
                # Rollback happens automatically on exception

        Raises:
            StorageCorruption: If SQLite reports anything other than a
                constraint violation (malformed image, disk I/O error)
        """
        if session is not None:
            yield session
            return

        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except IntegrityError:
            session.rollback()
            raise
        except DatabaseError as e:
            session.rollback()
            logger.error(f"Local store unreadable: {self.db_path}: {e}")
            raise StorageCorruption(f"Local store unreadable: {self.db_path}") from e
        except Exception as e:
            session.rollback()
            logger.error(f"Database error: {e}")
            raise
        finally:
            session.close()

    def get_meta(self, key: str) -> Optional[str]:
        """Read a sync_meta value."""
        with self.session_scope() as session:
            row = session.get(SyncMeta, key)
            return row.value if row is not None else None

    def set_meta(self, key: str, value: str):
        """Write a sync_meta value."""
        with self.session_scope() as session:
            row = session.get(SyncMeta, key)
            if row is None:
                session.add(SyncMeta(key=key, value=value))
            else:
                row.value = value

    def dispose(self):
        """Close pooled connections."""
        self.engine.dispose()

    def __repr__(self) -> str:
        """String representation."""
        return f"Database({self.db_path}, schema={SCHEMA_VERSION})"
