"""
Matching Rules Module
"""

from .bank_rules import (
    BankMatchingRules,
    MatchingConfig,
    MatchScore,
    MatchCandidate,
    are_types_compatible,
    word_overlap,
    round_half_up,
)

__all__ = [
    "BankMatchingRules",
    "MatchingConfig",
    "MatchScore",
    "MatchCandidate",
    "are_types_compatible",
    "word_overlap",
    "round_half_up",
]
