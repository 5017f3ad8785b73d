"""Unit tests for face data classes."""

import pytest
import numpy as np
from datetime import datetime

from face_attendance.face import (
    Embedding,
    Identity,
    ConfidenceTier,
    MatchCandidate,
    NoFaceDetected,
)
from face_attendance.errors import InvalidDimension, FaceAttendanceError


class TestEmbedding:
    """Tests for Embedding."""

    def test_embedding_creation(self):
        """Test creating an embedding."""
        vector = np.random.randn(128)
        embedding = Embedding(identity_id="abc", vector=vector, quality=0.9)

        assert embedding.dim == 128
        assert embedding.vector.dtype == np.float32
        assert embedding.source == "enrollment"
        assert embedding.primary is False
        assert embedding.embedding_id is None

    def test_vector_is_copied_and_read_only(self):
        """Test the stored vector can't be mutated from outside."""
        vector = np.zeros(4, dtype=np.float32)
        embedding = Embedding(identity_id="abc", vector=vector)

        vector[0] = 5.0
        assert embedding.vector[0] == 0.0

        with pytest.raises(ValueError):
            embedding.vector[0] = 1.0

    def test_embedding_is_frozen(self):
        """Test embeddings can't be reassigned."""
        embedding = Embedding(identity_id="abc", vector=np.zeros(4))
        with pytest.raises(AttributeError):
            embedding.quality = 0.1

    def test_invalid_shape(self):
        """Test 2-D vectors are rejected."""
        with pytest.raises(ValueError):
            Embedding(identity_id="abc", vector=np.zeros((2, 4)))

    def test_invalid_quality(self):
        """Test quality outside [0, 1] is rejected."""
        with pytest.raises(ValueError):
            Embedding(identity_id="abc", vector=np.zeros(4), quality=1.5)

    def test_to_dict_layout(self):
        """Test persisted layout {vector, quality, timestamp, primary}."""
        captured = datetime(2024, 10, 1, 9, 30)
        embedding = Embedding(
            identity_id="abc",
            vector=np.array([0.5, -0.5]),
            quality=0.8,
            captured_at=captured,
            primary=True
        )
        data = embedding.to_dict()

        assert data['vector'] == [0.5, -0.5]
        assert data['quality'] == 0.8
        assert data['timestamp'] == "2024-10-01T09:30:00"
        assert data['primary'] is True


class TestIdentity:
    """Tests for Identity."""

    def test_identity_to_dict(self):
        """Test dictionary conversion."""
        identity = Identity(
            identity_id="id1",
            identity_key="ABU24001",
            name="Ada",
            attributes={'program': 'CSC'}
        )
        data = identity.to_dict()

        assert data['id'] == "id1"
        assert data['identity_key'] == "ABU24001"
        assert data['attributes'] == {'program': 'CSC'}
        assert data['active'] is True


class TestMatchCandidate:
    """Tests for MatchCandidate."""

    def test_accepted_only_for_high_tier(self):
        """Test accepted reflects the acceptance tier."""
        high = MatchCandidate("a", "K1", 0.9, ConfidenceTier.HIGH)
        medium = MatchCandidate("b", "K2", 0.62, ConfidenceTier.MEDIUM)

        assert high.accepted
        assert not medium.accepted

    def test_to_dict(self):
        """Test dictionary conversion."""
        candidate = MatchCandidate("a", "K1", 0.9, ConfidenceTier.HIGH, rank=2)
        data = candidate.to_dict()

        assert data['rank'] == 2
        assert data['tier'] == "high"
        assert data['enrolled_at'] is None


class TestNoFaceDetected:
    """Tests for the no-face outcome."""

    def test_default_reason(self):
        assert NoFaceDetected().reason == "no face detected"

    def test_not_an_empty_list(self):
        """Test no-face is distinguishable from 'no match'."""
        assert NoFaceDetected() != []


class TestErrors:
    """Tests for the error taxonomy."""

    def test_invalid_dimension_is_value_error(self):
        error = InvalidDimension(128, 64)
        assert isinstance(error, ValueError)
        assert isinstance(error, FaceAttendanceError)
        assert error.expected == 128
        assert error.actual == 64
        assert "expected 128, got 64" in str(error)
