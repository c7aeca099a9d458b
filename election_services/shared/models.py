"""
Shared data models and utilities for the election services.

This module contains:
- Voter, Candidate, BallotEntry: records owned by the registries and the ballot store
- Selection / CastReceipt: input and output of the casting transaction
- CandidateTally, PositionResult, ElectionResults, SummaryStats: aggregator output
- PublicationStatus, VotingWindow: election settings read by the core
- Selection validation helpers
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from .errors import InvalidSelection


MAX_POSITION_LENGTH = 100


class Audience(str, Enum):
    """Who a results view is rendered for."""
    PUBLIC = "public"
    ADMIN = "admin"


@dataclass
class Voter:
    """
    A voter as seen by the casting core.

    Attributes:
        voter_id: Unique identity key issued by the identity layer
        is_verified: True once identity verification (KYC) was approved
        has_voted: Monotonic flag, false -> true exactly once
        full_name: Optional display name
        voted_at: When the casting transaction committed
    """
    voter_id: str
    is_verified: bool = False
    has_voted: bool = False
    full_name: Optional[str] = None
    voted_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


@dataclass
class Candidate:
    """A candidate standing for exactly one position."""
    candidate_id: int
    name: str
    position: str
    gender: Optional[str] = None
    photo_url: Optional[str] = None
    manifesto: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


@dataclass(frozen=True)
class Selection:
    """One (position, candidate) choice on a submitted ballot."""
    position: str
    candidate_id: int


@dataclass(frozen=True)
class BallotEntry:
    """
    Append-only record of one vote.

    The position is stored alongside the candidate so one-entry-per-position
    can be enforced per voter and tallies can be grouped without a join.
    """
    entry_id: int
    voter_id: str
    candidate_id: int
    position: str
    cast_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


@dataclass
class CastReceipt:
    """Result of a committed casting transaction."""
    voter_id: str
    entries: List[BallotEntry]
    cast_at: datetime

    @property
    def entry_count(self) -> int:
        return len(self.entries)


@dataclass
class CandidateTally:
    """Vote count for one candidate."""
    candidate_id: int
    name: str
    position: str
    votes: int
    percentage: float = 0.0
    gender: Optional[str] = None
    photo_url: Optional[str] = None


@dataclass
class PositionResult:
    """
    Ordered results for one position.

    Attributes:
        position: Position name
        candidates: Tallies ordered by votes desc, then registration order
        total_votes: Sum of votes for the position
        leaders: Candidates sharing the top nonzero count
        winner: The unique leader, None when tied or nobody voted
        tied: True when the top two candidates share an equal, nonzero count
    """
    position: str
    candidates: List[CandidateTally]
    total_votes: int
    leaders: List[CandidateTally] = field(default_factory=list)
    winner: Optional[CandidateTally] = None
    tied: bool = False


@dataclass
class PublicationStatus:
    """State of the admin-controlled results publication gate."""
    published: bool = False
    published_at: Optional[datetime] = None


@dataclass
class ElectionResults:
    """Per-position results plus the publication state they were rendered under."""
    positions: List[PositionResult]
    publication: PublicationStatus
    audience: Audience
    computed_at: datetime

    def position(self, name: str) -> Optional[PositionResult]:
        for result in self.positions:
            if result.position == name:
                return result
        return None


@dataclass
class SummaryStats:
    """Admin statistics over the whole election."""
    total_voters: int
    total_eligible_voters: int
    total_candidates: int
    total_votes: int
    unique_voters: int
    turnout_percent: float
    votes_by_position: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


@dataclass
class VotingWindow:
    """Optional start/end bounds of the voting period."""
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @property
    def configured(self) -> bool:
        return self.start is not None or self.end is not None

    def is_open(self, now: datetime) -> bool:
        """
        Check whether the window admits votes at the given time.

        Args:
            now: Timezone-aware current time

        Returns:
            bool: True when no bound excludes now
        """
        if self.start is not None and now < self.start:
            return False
        if self.end is not None and now > self.end:
            return False
        return True


def utc_now() -> datetime:
    """
    Get current UTC time.

    Returns:
        datetime: Timezone-aware UTC timestamp
    """
    return datetime.now(timezone.utc)


def validate_voter_id_format(voter_id: str) -> bool:
    """
    Validate voter id format.

    Args:
        voter_id: Voter identity key to validate

    Returns:
        bool: True if it is a non-blank string of at most 64 characters
    """
    return isinstance(voter_id, str) and 0 < len(voter_id.strip()) <= 64


def validate_position_name(position: str) -> bool:
    """
    Validate position name format.

    Args:
        position: Position name to validate

    Returns:
        bool: True if valid format
    """
    return isinstance(position, str) and 0 < len(position.strip()) <= MAX_POSITION_LENGTH


def normalize_selections(selections: Iterable[Any]) -> List[Selection]:
    """
    Validate the shape of a submitted ballot set.

    Accepts Selection objects, (position, candidate_id) pairs or mappings with
    'position' and 'candidate_id' keys. Candidate existence is not checked
    here; that happens inside the casting unit of work.

    Args:
        selections: Submitted choices

    Returns:
        list: Normalized selections in submission order

    Raises:
        InvalidSelection: If the set is empty, malformed or repeats a position
    """
    if selections is None:
        raise InvalidSelection("No selections submitted")

    normalized = []
    seen_positions = set()
    for raw in selections:
        if isinstance(raw, Selection):
            position, candidate_id = raw.position, raw.candidate_id
        elif isinstance(raw, dict):
            position, candidate_id = raw.get("position"), raw.get("candidate_id")
        elif isinstance(raw, (tuple, list)) and len(raw) == 2:
            position, candidate_id = raw
        else:
            raise InvalidSelection(f"Malformed selection: {raw!r}")

        if not validate_position_name(position):
            raise InvalidSelection(f"Invalid position name: {position!r}")
        if isinstance(candidate_id, bool) or not isinstance(candidate_id, int) or candidate_id <= 0:
            raise InvalidSelection(f"Invalid candidate id: {candidate_id!r}")

        position = position.strip()
        if position in seen_positions:
            raise InvalidSelection(f"More than one selection for position '{position}'")
        seen_positions.add(position)
        normalized.append(Selection(position=position, candidate_id=candidate_id))

    if not normalized:
        raise InvalidSelection("No selections submitted")

    return normalized
