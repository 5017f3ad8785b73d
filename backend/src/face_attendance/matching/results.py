"""Candidate formatting and filtering utilities."""

from typing import List, Dict, Any, Optional, Iterable
import json

from ..face import ConfidenceTier, MatchCandidate


def format_candidates_simple(
    candidates: List[MatchCandidate],
    max_results: Optional[int] = None
) -> List[Dict[str, Any]]:
    """Format candidates as plain dictionaries.

    Args:
        candidates: Ranked candidates
        max_results: Maximum candidates to include

    Returns:
        List of dictionaries with rounded scores
    """
    formatted = []

    for candidate in candidates[:max_results] if max_results else candidates:
        formatted.append({
            'rank': candidate.rank,
            'identity_key': candidate.identity_key,
            'identity_id': candidate.identity_id,
            'similarity': round(candidate.similarity, 4),
            'tier': candidate.tier.value,
            'accepted': candidate.accepted,
        })

    return formatted


def filter_candidates(
    candidates: List[MatchCandidate],
    min_similarity: Optional[float] = None,
    tiers: Optional[Iterable[ConfidenceTier]] = None,
    exclude_keys: Optional[List[str]] = None
) -> List[MatchCandidate]:
    """Filter candidates by various criteria.

    Args:
        candidates: Ranked candidates
        min_similarity: Minimum similarity score (0-1)
        tiers: Confidence tiers to keep
        exclude_keys: Identity keys to drop (e.g. already marked present)

    Returns:
        Filtered list, original order preserved
    """
    allowed = set(tiers) if tiers is not None else None
    filtered = []

    for candidate in candidates:
        if min_similarity is not None and candidate.similarity < min_similarity:
            continue
        if allowed is not None and candidate.tier not in allowed:
            continue
        if exclude_keys and candidate.identity_key in exclude_keys:
            continue
        filtered.append(candidate)

    return filtered


def compute_candidate_statistics(candidates: List[MatchCandidate]) -> Dict[str, Any]:
    """Compute statistics about a candidate list.

    Args:
        candidates: Ranked candidates

    Returns:
        Dictionary with statistics
    """
    if not candidates:
        return {
            'count': 0,
            'avg_similarity': 0.0,
            'tiers': {tier.value: 0 for tier in ConfidenceTier},
        }

    similarities = [c.similarity for c in candidates]
    tiers = {tier.value: 0 for tier in ConfidenceTier}
    for candidate in candidates:
        tiers[candidate.tier.value] += 1

    # Margin between the top two candidates; small margins mean ambiguous matches
    margin = similarities[0] - similarities[1] if len(similarities) > 1 else None

    return {
        'count': len(candidates),
        'avg_similarity': sum(similarities) / len(similarities),
        'min_similarity': min(similarities),
        'max_similarity': max(similarities),
        'top_margin': margin,
        'tiers': tiers,
    }


def candidates_to_json(candidates: List[MatchCandidate], indent: int = 2) -> str:
    """Serialize candidates to a JSON string (simple format)."""
    return json.dumps(format_candidates_simple(candidates), indent=indent)
