"""Match engine ranking enrolled identities against a probe vector.

Similarity is derived from Euclidean distance with a calibrated maximum
meaningful distance of 2.0 for unit-scale descriptor spaces:

    similarity = max(0, 1 - distance / 2)

Identical vectors score exactly 1.0; vectors 2.0 or further apart score 0.0.
"""

from pathlib import Path
from typing import List, Optional, Union
import logging
import threading

import numpy as np

from ..errors import InvalidDimension
from ..extraction import BaseFeatureExtractor, ImageInput, compute_image_hash
from ..face import ConfidenceTier, Embedding, MatchCandidate, NoFaceDetected
from ..storage import EmbeddingStore, StoreEntry

logger = logging.getLogger(__name__)

MAX_MEANINGFUL_DISTANCE = 2.0

# Quality recorded for vectors extracted lazily from an enrollment photo
EXTRACTED_QUALITY = 0.5

MODE_BEST = "best"
MODE_LIST = "list"


def similarity_from_distance(distance: float) -> float:
    """Convert a Euclidean distance to a similarity score in [0, 1]."""
    return max(0.0, 1.0 - float(distance) / MAX_MEANINGFUL_DISTANCE)


def compute_similarity(emb1: np.ndarray, emb2: np.ndarray) -> float:
    """Compute similarity between two embeddings.

    Args:
        emb1: First embedding
        emb2: Second embedding

    Returns:
        Similarity score (0-1, higher is more similar)
    """
    a = np.asarray(emb1, dtype=np.float64)
    b = np.asarray(emb2, dtype=np.float64)
    return similarity_from_distance(np.linalg.norm(a - b))


class MatchEngine:
    """Ranks stored identities against a probe feature vector.

    Two usage modes use separately configured thresholds:
    - best match: accept a single identity (accept_threshold, default 0.65)
    - candidate listing: show several possible identities (list_threshold, default 0.60)

    Usage:
        engine = MatchEngine(extractor=extractor, embedding_dim=128)

        # Rank by vector
        candidates = engine.rank(probe, store, max_matches=5, threshold=0.6)

        # Identify from a capture
        outcome = engine.identify('capture.jpg', store)
        if isinstance(outcome, NoFaceDetected):
            ...  # ask for a new capture
    """

    def __init__(
        self,
        extractor: Optional[BaseFeatureExtractor] = None,
        embedding_dim: int = 128,
        accept_threshold: float = 0.65,
        list_threshold: float = 0.60,
        max_matches: int = 5
    ):
        """Initialize match engine.

        Args:
            extractor: Feature extractor, used for probes given as images and for
                identities enrolled with a photo but no stored vector
            embedding_dim: Required vector dimension D
            accept_threshold: Minimum similarity for best-match acceptance
            list_threshold: Minimum similarity for candidate listing
            max_matches: Default maximum number of listed candidates
        """
        if accept_threshold < list_threshold:
            raise ValueError(
                f"accept_threshold ({accept_threshold}) must not be below list_threshold ({list_threshold})"
            )

        self.extractor = extractor
        self.embedding_dim = embedding_dim
        self.accept_threshold = accept_threshold
        self.list_threshold = list_threshold
        self.max_matches = max_matches
        self._cache_lock = threading.Lock()

        logger.info(
            f"MatchEngine initialized: dim={embedding_dim}, "
            f"accept={accept_threshold}, list={list_threshold}"
        )

    @classmethod
    def from_config(cls, config: dict, extractor: Optional[BaseFeatureExtractor] = None) -> 'MatchEngine':
        """Build an engine from the 'matching' config section."""
        matching = config['matching']
        return cls(
            extractor=extractor,
            embedding_dim=int(matching['embedding_dim']),
            accept_threshold=float(matching['accept_threshold']),
            list_threshold=float(matching['list_threshold']),
            max_matches=int(matching['max_matches'])
        )

    def tier_for(self, similarity: float) -> ConfidenceTier:
        """Map a similarity score to its confidence tier."""
        if similarity >= self.accept_threshold:
            return ConfidenceTier.HIGH
        if similarity >= self.list_threshold:
            return ConfidenceTier.MEDIUM
        return ConfidenceTier.LOW

    def rank(
        self,
        probe: np.ndarray,
        store: EmbeddingStore,
        max_matches: Optional[int] = None,
        threshold: Optional[float] = None
    ) -> List[MatchCandidate]:
        """Rank stored identities against a probe vector.

        Each identity is represented by its best-scoring embedding. Order is
        descending similarity, then higher quality, then earlier enrollment.

        Args:
            probe: Probe vector of length D
            store: Embedding store to search
            max_matches: Maximum number of candidates (default: self.max_matches)
            threshold: Minimum similarity (default: list_threshold)

        Returns:
            Ordered list of MatchCandidate (empty if nothing clears the threshold)

        Raises:
            InvalidDimension: If the probe or a stored vector isn't length D
        """
        probe = self._validate_probe(probe)
        max_matches = self.max_matches if max_matches is None else max_matches
        threshold = self.list_threshold if threshold is None else threshold

        candidates = []
        for entry in store.snapshot():
            embeddings = entry.embeddings or self._ensure_vectors(entry, store)
            if not embeddings:
                continue

            best_similarity, best_embedding = self._best_embedding(probe, embeddings)
            if best_similarity < threshold:
                continue

            candidates.append(MatchCandidate(
                identity_id=entry.identity.identity_id,
                identity_key=entry.identity.identity_key,
                similarity=best_similarity,
                tier=self.tier_for(best_similarity),
                quality=best_embedding.quality,
                enrolled_at=entry.identity.enrolled_at
            ))

        candidates.sort(key=lambda c: (-c.similarity, -c.quality, c.enrolled_at, c.identity_key))
        candidates = candidates[:max_matches]

        for rank, candidate in enumerate(candidates, start=1):
            candidate.rank = rank

        logger.debug(f"Ranked {len(candidates)} candidates above {threshold:.2f}")
        return candidates

    def best_match(self, probe: np.ndarray, store: EmbeddingStore) -> Optional[MatchCandidate]:
        """Return the single accepted identity, or None."""
        candidates = self.rank(probe, store, max_matches=1, threshold=self.accept_threshold)
        return candidates[0] if candidates else None

    def list_candidates(
        self,
        probe: np.ndarray,
        store: EmbeddingStore,
        max_matches: Optional[int] = None
    ) -> List[MatchCandidate]:
        """Return all candidates above the listing threshold."""
        return self.rank(probe, store, max_matches=max_matches, threshold=self.list_threshold)

    def identify(
        self,
        image: ImageInput,
        store: EmbeddingStore,
        mode: str = MODE_BEST,
        max_matches: Optional[int] = None
    ) -> Union[List[MatchCandidate], NoFaceDetected]:
        """Extract a probe from an image and match it.

        Args:
            image: Path to capture, or RGB array
            store: Embedding store to search
            mode: 'best' (at most one accepted candidate) or 'list'
            max_matches: Maximum candidates in list mode

        Returns:
            List of candidates, or NoFaceDetected if the capture has no face

        Raises:
            RuntimeError: If the engine has no extractor
            ValueError: If mode is unknown
        """
        if mode not in (MODE_BEST, MODE_LIST):
            raise ValueError(f"Unknown match mode: {mode}")
        if self.extractor is None:
            raise RuntimeError("MatchEngine has no feature extractor")

        probe = self.extractor.extract(image)
        if isinstance(probe, NoFaceDetected):
            logger.info(f"No face detected in probe: {probe.reason}")
            return probe

        if mode == MODE_BEST:
            best = self.best_match(probe, store)
            return [best] if best else []
        return self.list_candidates(probe, store, max_matches=max_matches)

    def _validate_probe(self, probe: np.ndarray) -> np.ndarray:
        # Same float32 rounding as stored vectors, so an enrolled vector scores 1.0 against itself
        probe = np.asarray(probe, dtype=np.float32).astype(np.float64)
        if probe.ndim != 1 or probe.shape[0] != self.embedding_dim:
            raise InvalidDimension(self.embedding_dim, int(probe.size), where="probe")
        return probe

    def _best_embedding(self, probe: np.ndarray, embeddings: List[Embedding]):
        """Score every embedding of one identity and keep the best."""
        for embedding in embeddings:
            if embedding.dim != self.embedding_dim:
                raise InvalidDimension(self.embedding_dim, embedding.dim, where="stored")

        matrix = np.stack([e.vector for e in embeddings]).astype(np.float64)
        distances = np.linalg.norm(matrix - probe, axis=1)

        scored = [
            (similarity_from_distance(d), e)
            for d, e in zip(distances, embeddings)
        ]
        return max(scored, key=lambda s: (s[0], s[1].quality))

    def _ensure_vectors(self, entry: StoreEntry, store: EmbeddingStore) -> List[Embedding]:
        """Extract and cache a vector for an identity enrolled by photo only.

        The cache is keyed by the photo's content hash, so the same source
        image always yields the same stored vector.
        """
        identity = entry.identity
        if not identity.source_image or self.extractor is None:
            return []

        source = Path(identity.source_image)
        if not source.exists():
            logger.warning(f"Source image missing for {identity.identity_key}: {source}")
            return []

        with self._cache_lock:
            image_hash = compute_image_hash(source)
            cached = store.find_embedding_by_image_hash(identity.identity_id, image_hash)
            if cached is not None:
                return [cached]

            vector = self.extractor.extract(source)
            if isinstance(vector, NoFaceDetected):
                logger.warning(
                    f"No face in enrollment photo of {identity.identity_key}; skipping"
                )
                return []

            stored = store.add_embedding(Embedding(
                identity_id=identity.identity_id,
                vector=vector,
                quality=EXTRACTED_QUALITY,
                source="extracted",
                primary=True,
                image_hash=image_hash
            ))

        logger.info(f"Cached extracted embedding for {identity.identity_key}")
        return [stored]

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"MatchEngine(dim={self.embedding_dim}, "
            f"accept={self.accept_threshold}, list={self.list_threshold})"
        )
