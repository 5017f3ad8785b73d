"""Matching module for identifying enrolled people.

This module provides:
- MatchEngine for ranking identities against a probe vector or capture
- Candidate formatting, filtering and statistics

Usage:
    from face_attendance.matching import MatchEngine, format_candidates_simple

    engine = MatchEngine(extractor=extractor, embedding_dim=128)
    candidates = engine.list_candidates(probe, store)
    print(format_candidates_simple(candidates))
"""

from .engine import (
    MatchEngine,
    MAX_MEANINGFUL_DISTANCE,
    MODE_BEST,
    MODE_LIST,
    compute_similarity,
    similarity_from_distance,
)
from .results import (
    format_candidates_simple,
    filter_candidates,
    compute_candidate_statistics,
    candidates_to_json,
)

__all__ = [
    # Engine
    'MatchEngine',
    'MAX_MEANINGFUL_DISTANCE',
    'MODE_BEST',
    'MODE_LIST',
    'compute_similarity',
    'similarity_from_distance',

    # Results
    'format_candidates_simple',
    'filter_candidates',
    'compute_candidate_statistics',
    'candidates_to_json',
]
