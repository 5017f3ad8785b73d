"""Face data classes for the attendance system.

This module defines the core data structures for identities, their stored
embeddings and the candidates produced by a match query.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any
import numpy as np

from .time_utils import utcnow


@dataclass(frozen=True)
class Embedding:
    """A stored biometric feature vector.

    Embeddings are immutable: a re-capture creates a new Embedding and never
    touches an existing one. The vector is copied to float32 and marked
    read-only on construction.

    Attributes:
        identity_id: ID of the owning identity
        vector: 1-dimensional feature vector (length D)
        quality: Capture quality score (0-1)
        captured_at: Capture timestamp (UTC)
        source: Source tag ('enrollment', 'extracted', 'import', ...)
        primary: Whether this is the identity's primary embedding
        image_hash: Content hash of the source image, if known
        embedding_id: Database ID (set once stored)
    """
    identity_id: str
    vector: np.ndarray
    quality: float = 1.0
    captured_at: datetime = field(default_factory=utcnow)
    source: str = "enrollment"
    primary: bool = False
    image_hash: Optional[str] = None
    embedding_id: Optional[int] = None

    def __post_init__(self):
        """Validate and freeze the vector."""
        vector = np.asarray(self.vector, dtype=np.float32)
        if vector.ndim != 1:
            raise ValueError(f"Embedding must be 1-dimensional, got shape {vector.shape}")
        if self.quality < 0 or self.quality > 1:
            raise ValueError(f"Quality must be between 0 and 1, got {self.quality}")

        vector = vector.copy()
        vector.setflags(write=False)
        object.__setattr__(self, 'vector', vector)

    @property
    def dim(self) -> int:
        """Get vector dimension."""
        return int(self.vector.shape[0])

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the persisted layout {vector, quality, timestamp, primary}.

        Returns:
            Dictionary representation
        """
        return {
            'vector': self.vector.tolist(),
            'quality': self.quality,
            'timestamp': self.captured_at.isoformat(),
            'primary': self.primary,
            'source': self.source,
        }

    def __repr__(self) -> str:
        """String representation."""
        primary = " [PRIMARY]" if self.primary else ""
        return (
            f"Embedding(identity={self.identity_id}, dim={self.dim}, "
            f"quality={self.quality:.2f}, source={self.source}{primary})"
        )


@dataclass
class Identity:
    """A uniquely keyed person record.

    Attributes:
        identity_id: Internal ID (uuid4 hex)
        identity_key: External key, e.g. a registration/matric number
        name: Display name
        source_image: Path to an enrollment photo without a stored vector
        enrolled_at: Enrollment timestamp (UTC)
        active: Whether the identity takes part in matching
        attributes: Free-form extra fields (program, level, ...)
    """
    identity_id: str
    identity_key: str
    name: str = ""
    source_image: Optional[str] = None
    enrolled_at: datetime = field(default_factory=utcnow)
    active: bool = True
    attributes: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary format.

        Returns:
            Dictionary representation
        """
        return {
            'id': self.identity_id,
            'identity_key': self.identity_key,
            'name': self.name,
            'source_image': self.source_image,
            'enrolled_at': self.enrolled_at.isoformat(),
            'active': self.active,
            'attributes': dict(self.attributes),
        }


class ConfidenceTier(Enum):
    """Confidence tier of a match candidate."""
    HIGH = "high"      # at or above the acceptance threshold
    MEDIUM = "medium"  # at or above the listing threshold
    LOW = "low"


@dataclass
class MatchCandidate:
    """A ranked identity produced by a match query. Never persisted.

    Attributes:
        identity_id: ID of the matched identity
        identity_key: External key of the matched identity
        similarity: Similarity score (0-1, higher is more similar)
        tier: Confidence tier
        quality: Quality of the embedding that produced the score
        enrolled_at: Enrollment timestamp of the identity
        rank: Rank in results (1-indexed)
    """
    identity_id: str
    identity_key: str
    similarity: float
    tier: ConfidenceTier
    quality: float = 1.0
    enrolled_at: Optional[datetime] = None
    rank: int = 1

    @property
    def accepted(self) -> bool:
        """Whether the candidate clears the acceptance threshold."""
        return self.tier is ConfidenceTier.HIGH

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary format.

        Returns:
            Dictionary representation
        """
        return {
            'rank': self.rank,
            'identity_id': self.identity_id,
            'identity_key': self.identity_key,
            'similarity': self.similarity,
            'tier': self.tier.value,
            'quality': self.quality,
            'enrolled_at': self.enrolled_at.isoformat() if self.enrolled_at else None,
        }

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"MatchCandidate(rank={self.rank}, key={self.identity_key}, "
            f"similarity={self.similarity:.3f}, tier={self.tier.value})"
        )


@dataclass(frozen=True)
class NoFaceDetected:
    """Result returned when an image contains no usable face.

    This is an input-quality outcome: the caller should re-prompt for a new
    capture. It is never folded into an empty match list.
    """
    reason: str = "no face detected"
