"""Tests for the match engine and result utilities."""

import pytest
import numpy as np
from datetime import datetime, timedelta
from PIL import Image

from face_attendance.errors import InvalidDimension
from face_attendance.extraction import BaseFeatureExtractor, LazyExtractor, compute_image_hash
from face_attendance.face import ConfidenceTier, Embedding, NoFaceDetected
from face_attendance.matching import (
    MatchEngine,
    compute_similarity,
    similarity_from_distance,
    format_candidates_simple,
    filter_candidates,
    compute_candidate_statistics,
    candidates_to_json,
)
from face_attendance.storage import Database, EmbeddingStore

DIM = 8


def unit(index, dim=DIM):
    """Unit vector along one axis."""
    vector = np.zeros(dim, dtype=np.float32)
    vector[index] = 1.0
    return vector


class MockExtractor(BaseFeatureExtractor):
    """Maps an image to a fixed vector; all-black images have no face."""

    embedding_dim = DIM

    def __init__(self, vector=None):
        self.vector = unit(0) if vector is None else vector
        self.calls = 0

    def embed(self, rgb):
        self.calls += 1
        if not rgb.any():
            return None
        return self.vector


@pytest.fixture
def store(tmp_path):
    """Create an empty embedding store."""
    db = Database(tmp_path / "attendance.db")
    yield EmbeddingStore(db, embedding_dim=DIM)
    db.dispose()


@pytest.fixture
def engine():
    return MatchEngine(extractor=MockExtractor(), embedding_dim=DIM)


@pytest.fixture
def face_image(tmp_path):
    """Write a non-black test image."""
    path = tmp_path / "face.png"
    Image.new('RGB', (16, 16), color=(120, 90, 60)).save(path)
    return path


def enroll(store, key, vector, quality=1.0, enrolled_at=None):
    identity = store.add_identity(key, enrolled_at=enrolled_at)
    store.add_embedding(Embedding(identity.identity_id, vector, quality=quality, primary=True))
    return identity


class TestSimilarity:
    """Tests for the distance -> similarity mapping."""

    def test_identical_vectors_score_one(self):
        v = np.random.randn(DIM)
        assert compute_similarity(v, v) == 1.0

    def test_far_vectors_score_zero(self):
        assert similarity_from_distance(2.0) == 0.0
        assert similarity_from_distance(5.0) == 0.0

    def test_midpoint(self):
        assert similarity_from_distance(1.0) == pytest.approx(0.5)

    def test_opposite_unit_vectors(self):
        assert compute_similarity(unit(0), -unit(0)) == 0.0


class TestRank:
    """Tests for MatchEngine.rank()."""

    def test_empty_store(self, engine, store):
        """Test an empty store yields an empty list, not an error."""
        assert engine.rank(unit(0), store) == []

    def test_invalid_probe_dimension(self, engine, store):
        enroll(store, "A", unit(0))
        with pytest.raises(InvalidDimension):
            engine.rank(np.zeros(DIM + 1), store)

    def test_invalid_probe_dimension_on_empty_store(self, engine, store):
        with pytest.raises(InvalidDimension):
            engine.rank(np.zeros(3), store)

    def test_exact_match_first(self, engine, store):
        enroll(store, "A", unit(0))
        enroll(store, "B", unit(1))

        candidates = engine.rank(unit(0), store, threshold=0.0)
        assert candidates[0].identity_key == "A"
        assert candidates[0].similarity == 1.0
        assert candidates[0].rank == 1
        assert candidates[0].tier is ConfidenceTier.HIGH

    def test_enrolled_float64_vector_scores_one(self, engine, store):
        """Test a probe equal to the enrolled vector scores exactly 1.0."""
        rng = np.random.default_rng(11)
        for i in range(5):
            v = rng.normal(size=DIM)
            v /= np.linalg.norm(v)
            enroll(store, f"K{i}", v)

            best = engine.rank(v, store, threshold=0.0)[0]
            assert best.identity_key == f"K{i}"
            assert best.similarity == 1.0

    def test_descending_order(self, engine, store):
        probe = unit(0)
        enroll(store, "far", unit(0) * 0.0 + unit(1))
        enroll(store, "near", unit(0) * 0.9 + unit(1) * 0.1)
        enroll(store, "mid", unit(0) * 0.6 + unit(1) * 0.4)

        candidates = engine.rank(probe, store, threshold=0.0)
        assert [c.identity_key for c in candidates] == ["near", "mid", "far"]
        assert [c.rank for c in candidates] == [1, 2, 3]
        similarities = [c.similarity for c in candidates]
        assert similarities == sorted(similarities, reverse=True)

    def test_threshold_filters(self, engine, store):
        enroll(store, "A", unit(0))
        enroll(store, "B", unit(1))  # distance sqrt(2) -> ~0.29

        candidates = engine.rank(unit(0), store, threshold=0.6)
        assert [c.identity_key for c in candidates] == ["A"]

    def test_max_matches(self, engine, store):
        for i in range(5):
            enroll(store, f"K{i}", unit(0) + unit(1) * 0.01 * i)

        assert len(engine.rank(unit(0), store, max_matches=3, threshold=0.0)) == 3

    def test_tie_broken_by_quality(self, engine, store):
        """Test equal similarity prefers the higher-quality embedding."""
        enroll(store, "low", unit(0), quality=0.4)
        enroll(store, "high", unit(0), quality=0.9)

        candidates = engine.rank(unit(0), store, threshold=0.0)
        assert [c.identity_key for c in candidates] == ["high", "low"]

    def test_tie_broken_by_enrollment_time(self, engine, store):
        """Test equal similarity and quality prefers earlier enrollment."""
        base = datetime(2024, 1, 1)
        enroll(store, "late", unit(0), enrolled_at=base + timedelta(hours=1))
        enroll(store, "early", unit(0), enrolled_at=base)

        candidates = engine.rank(unit(0), store, threshold=0.0)
        assert [c.identity_key for c in candidates] == ["early", "late"]

    def test_best_embedding_per_identity(self, engine, store):
        """Test an identity scores with its closest embedding."""
        identity = enroll(store, "A", unit(1))
        store.add_embedding(Embedding(identity.identity_id, unit(0)))

        candidates = engine.rank(unit(0), store, threshold=0.0)
        assert len(candidates) == 1
        assert candidates[0].similarity == 1.0

    def test_inactive_identity_skipped(self, engine, store):
        identity = enroll(store, "A", unit(0))
        store.set_active(identity.identity_id, False)
        assert engine.rank(unit(0), store, threshold=0.0) == []


class TestModes:
    """Tests for best-match and listing modes."""

    def test_tiers(self):
        engine = MatchEngine(embedding_dim=DIM, accept_threshold=0.65, list_threshold=0.60)
        assert engine.tier_for(0.7) is ConfidenceTier.HIGH
        assert engine.tier_for(0.65) is ConfidenceTier.HIGH
        assert engine.tier_for(0.62) is ConfidenceTier.MEDIUM
        assert engine.tier_for(0.5) is ConfidenceTier.LOW

    def test_accept_below_list_threshold_rejected(self):
        with pytest.raises(ValueError):
            MatchEngine(embedding_dim=DIM, accept_threshold=0.5, list_threshold=0.6)

    def test_best_match_uses_accept_threshold(self, engine, store):
        # distance 0.76 -> similarity 0.62: listed but not accepted
        enroll(store, "A", unit(0) + unit(1) * 0.76)

        assert engine.best_match(unit(0), store) is None
        listed = engine.list_candidates(unit(0), store)
        assert [c.identity_key for c in listed] == ["A"]
        assert listed[0].tier is ConfidenceTier.MEDIUM

    def test_from_config(self):
        config = {'matching': {
            'embedding_dim': 16, 'accept_threshold': 0.7,
            'list_threshold': 0.5, 'max_matches': 3,
        }}
        engine = MatchEngine.from_config(config)
        assert engine.embedding_dim == 16
        assert engine.accept_threshold == 0.7
        assert engine.max_matches == 3


class TestIdentify:
    """Tests for identify() from captures."""

    def test_identify_best(self, engine, store, face_image):
        enroll(store, "A", unit(0))
        enroll(store, "B", unit(1))

        result = engine.identify(face_image, store)
        assert [c.identity_key for c in result] == ["A"]

    def test_no_face(self, engine, store):
        enroll(store, "A", unit(0))
        black = np.zeros((16, 16, 3), dtype=np.uint8)

        result = engine.identify(black, store)
        assert isinstance(result, NoFaceDetected)

    def test_no_match_is_empty_list(self, engine, store, face_image):
        enroll(store, "B", unit(1))
        assert engine.identify(face_image, store) == []

    def test_unknown_mode(self, engine, store, face_image):
        with pytest.raises(ValueError):
            engine.identify(face_image, store, mode="fuzzy")

    def test_no_extractor(self, store, face_image):
        with pytest.raises(RuntimeError):
            MatchEngine(embedding_dim=DIM).identify(face_image, store)


class TestLazyExtraction:
    """Tests for identities enrolled with a photo only."""

    def test_extracts_once_and_caches(self, store, face_image):
        extractor = MockExtractor()
        engine = MatchEngine(extractor=extractor, embedding_dim=DIM)
        identity = store.add_identity("A", source_image=str(face_image))

        first = engine.rank(unit(0), store, threshold=0.0)
        second = engine.rank(unit(0), store, threshold=0.0)

        assert extractor.calls == 1
        assert first[0].similarity == second[0].similarity == 1.0

        embeddings = store.get_embeddings(identity.identity_id)
        assert len(embeddings) == 1
        assert embeddings[0].source == "extracted"
        assert embeddings[0].image_hash == compute_image_hash(face_image)

    def test_no_face_in_photo_is_skipped(self, store, tmp_path):
        black = tmp_path / "black.png"
        Image.new('RGB', (16, 16)).save(black)
        store.add_identity("A", source_image=str(black))

        engine = MatchEngine(extractor=MockExtractor(), embedding_dim=DIM)
        assert engine.rank(unit(0), store, threshold=0.0) == []

    def test_missing_photo_is_skipped(self, engine, store, tmp_path):
        store.add_identity("A", source_image=str(tmp_path / "gone.png"))
        assert engine.rank(unit(0), store, threshold=0.0) == []


class TestLazyExtractor:
    """Tests for the lazily built extractor service."""

    def test_builds_on_first_use(self, face_image):
        built = []

        def factory():
            built.append(1)
            return MockExtractor()

        lazy = LazyExtractor(factory, embedding_dim=DIM)
        assert not lazy.loaded

        lazy.extract(face_image)
        lazy.extract(face_image)
        assert lazy.loaded
        assert built == [1]

    def test_dimension_mismatch(self):
        lazy = LazyExtractor(MockExtractor, embedding_dim=DIM * 2)
        with pytest.raises(InvalidDimension):
            lazy.get()

    def test_wrong_vector_length(self, face_image):
        extractor = MockExtractor(vector=np.ones(DIM - 1))
        with pytest.raises(InvalidDimension):
            extractor.extract(face_image)


class TestResultUtilities:
    """Tests for candidate formatting and statistics."""

    @pytest.fixture
    def candidates(self, engine, store):
        enroll(store, "A", unit(0))
        enroll(store, "B", unit(0) + unit(1) * 0.76)
        return engine.rank(unit(0), store, threshold=0.6)

    def test_format_simple(self, candidates):
        formatted = format_candidates_simple(candidates)
        assert formatted[0]['identity_key'] == "A"
        assert formatted[0]['accepted'] is True
        assert formatted[1]['accepted'] is False
        assert len(format_candidates_simple(candidates, max_results=1)) == 1

    def test_filter(self, candidates):
        assert len(filter_candidates(candidates, tiers=[ConfidenceTier.HIGH])) == 1
        assert len(filter_candidates(candidates, exclude_keys=["A"])) == 1
        assert len(filter_candidates(candidates, min_similarity=0.99)) == 1

    def test_statistics(self, candidates):
        stats = compute_candidate_statistics(candidates)
        assert stats['count'] == 2
        assert stats['tiers']['high'] == 1
        assert stats['tiers']['medium'] == 1
        assert stats['top_margin'] == pytest.approx(1.0 - candidates[1].similarity)

    def test_statistics_empty(self):
        assert compute_candidate_statistics([])['count'] == 0

    def test_json(self, candidates):
        assert '"identity_key": "A"' in candidates_to_json(candidates)
