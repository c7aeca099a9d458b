"""
Shared utilities and models for the election services.

This package contains common code used across all components:
- Data models (Voter, Candidate, BallotEntry, results dataclasses)
- Selection validation
- The error taxonomy
"""

from .errors import (
    BallotError,
    AlreadyVoted,
    NotEligible,
    VotingClosed,
    UnknownVoter,
    InvalidSelection,
    TransientStoreFailure,
    InvariantViolation,
    UnknownCandidate,
    CandidateHasBallots,
    ResultsNotPublished,
)
from .models import (
    Audience,
    Voter,
    Candidate,
    Selection,
    BallotEntry,
    CastReceipt,
    CandidateTally,
    PositionResult,
    PublicationStatus,
    ElectionResults,
    SummaryStats,
    VotingWindow,
    utc_now,
    validate_voter_id_format,
    validate_position_name,
    normalize_selections,
)

__all__ = [
    'BallotError',
    'AlreadyVoted',
    'NotEligible',
    'VotingClosed',
    'UnknownVoter',
    'InvalidSelection',
    'TransientStoreFailure',
    'InvariantViolation',
    'UnknownCandidate',
    'CandidateHasBallots',
    'ResultsNotPublished',
    'Audience',
    'Voter',
    'Candidate',
    'Selection',
    'BallotEntry',
    'CastReceipt',
    'CandidateTally',
    'PositionResult',
    'PublicationStatus',
    'ElectionResults',
    'SummaryStats',
    'VotingWindow',
    'utc_now',
    'validate_voter_id_format',
    'validate_position_name',
    'normalize_selections',
]
