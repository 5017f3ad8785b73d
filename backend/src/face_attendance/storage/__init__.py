"""Storage layer for the attendance system.

This module provides durable local storage:
- Versioned SQLite database shared by all components
- Embedding store mapping identities to their feature vectors
- Per-identity-key locks for single-writer enrollment

Usage:
    from face_attendance.storage import Database, EmbeddingStore
    from face_attendance.paths import get_database_path

    db = Database(get_database_path())
    store = EmbeddingStore(db, embedding_dim=128)

    identity = store.add_identity('ABU24001', name='Ada')
    store.add_embedding(Embedding(identity.identity_id, vector, quality=0.9))

    entries = store.snapshot()
"""

from .database import Database, SCHEMA_VERSION
from .embedding_store import EmbeddingStore, StoreEntry, encode_vector, decode_vector
from .key_lock import IdentityKeyLock, identity_key_lock, lock_path_for_key

__all__ = [
    'Database',
    'SCHEMA_VERSION',
    'EmbeddingStore',
    'StoreEntry',
    'encode_vector',
    'decode_vector',
    'IdentityKeyLock',
    'identity_key_lock',
    'lock_path_for_key',
]
