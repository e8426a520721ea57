from sync.matching_rules.duplicate_rules import (
    DuplicateDetector,
    DuplicateCandidate,
    DuplicateMatch,
    MatchDecision,
    levenshtein_distance,
    string_similarity,
    near_match_confidence,
    triage,
    AUTO_LINK_THRESHOLD,
    REVIEW_THRESHOLD,
)

__all__ = [
    'DuplicateDetector',
    'DuplicateCandidate',
    'DuplicateMatch',
    'MatchDecision',
    'levenshtein_distance',
    'string_similarity',
    'near_match_confidence',
    'triage',
    'AUTO_LINK_THRESHOLD',
    'REVIEW_THRESHOLD',
]
