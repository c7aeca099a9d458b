"""
Ballot store contract shared by the PostgreSQL and in-process backends.

A store owns four things: the voter registry's has-voted flag, the candidate
registry, the append-only ballot entries and the election settings
(publication gate, voting window). The casting core only writes through
`unit_of_work()`; the aggregator only reads through `snapshot()`.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import ContextManager, Dict, Iterable, List, Optional

from ..shared.models import (
    BallotEntry,
    Candidate,
    PublicationStatus,
    Selection,
    Voter,
    VotingWindow,
)


class CastingSession(ABC):
    """
    Operations available inside one casting unit of work.

    `get_voter_for_update` must serialize concurrent sessions on the same
    voter id and must not block sessions on other voter ids.
    """

    @abstractmethod
    def get_voter_for_update(self, voter_id: str) -> Optional[Voter]:
        """Lock and return the voter row, or None if it does not exist."""

    @abstractmethod
    def get_candidates(self, candidate_ids: Iterable[int]) -> Dict[int, Candidate]:
        """Return the existing candidates among the given ids."""

    @abstractmethod
    def insert_ballot_entries(
        self,
        voter_id: str,
        selections: List[Selection],
        cast_at: datetime
    ) -> List[BallotEntry]:
        """Record one ballot entry per selection."""

    @abstractmethod
    def mark_voted(self, voter_id: str, voted_at: datetime) -> None:
        """Set the voter's has-voted flag."""


class ReadSnapshot(ABC):
    """A consistent, committed-only read view of the store."""

    @abstractmethod
    def list_candidates(self) -> List[Candidate]:
        """All candidates in registration order."""

    @abstractmethod
    def count_ballots_by_candidate(self) -> Dict[int, int]:
        """Ballot entry count keyed by the candidate id stored on the entry."""

    @abstractmethod
    def count_ballot_entries(self) -> int:
        """Total number of ballot entries."""

    @abstractmethod
    def count_unique_voters(self) -> int:
        """Distinct voters with at least one ballot entry."""

    @abstractmethod
    def count_voters(self) -> int:
        """All registered voters."""

    @abstractmethod
    def count_eligible_voters(self) -> int:
        """Registered voters whose identity is verified."""


class BallotStore(ABC):
    """Storage boundary for the casting and tallying core."""

    # Casting / reading

    @abstractmethod
    def unit_of_work(self) -> ContextManager[CastingSession]:
        """
        Open an atomic unit of work.

        Leaving the block normally commits every staged write at once;
        leaving it by exception rolls everything back and re-raises.
        Driver failures surface as TransientStoreFailure.
        """

    @abstractmethod
    def snapshot(self) -> ContextManager[ReadSnapshot]:
        """Open a consistent read-only view over committed data."""

    @abstractmethod
    def list_ballot_entries(self, voter_id: Optional[str] = None) -> List[BallotEntry]:
        """Audit read of ballot entries, optionally for one voter."""

    # Voter registry boundary

    @abstractmethod
    def register_voter(
        self,
        voter_id: str,
        full_name: Optional[str] = None,
        is_verified: bool = False
    ) -> Voter:
        """Create a voter that has not voted."""

    @abstractmethod
    def set_voter_verified(self, voter_id: str, verified: bool = True) -> Voter:
        """Update the voter's verification state."""

    @abstractmethod
    def get_voter(self, voter_id: str) -> Optional[Voter]:
        """Plain (non-locking) voter read."""

    # Candidate registry boundary

    @abstractmethod
    def add_candidate(
        self,
        name: str,
        position: str,
        gender: Optional[str] = None,
        photo_url: Optional[str] = None,
        manifesto: Optional[str] = None
    ) -> Candidate:
        """Register a candidate; ids increase in registration order."""

    @abstractmethod
    def get_candidate(self, candidate_id: int) -> Optional[Candidate]:
        """Return the candidate or None."""

    @abstractmethod
    def list_candidates_by_position(self) -> Dict[str, List[Candidate]]:
        """Candidates grouped by position, positions sorted by name."""

    @abstractmethod
    def delete_candidate(self, candidate_id: int) -> None:
        """
        Delete a candidate.

        Raises:
            UnknownCandidate: If the candidate does not exist
            CandidateHasBallots: If any ballot entry references it
        """

    # Election settings

    @abstractmethod
    def get_publication_status(self) -> PublicationStatus:
        """Read the results publication gate."""

    @abstractmethod
    def set_published(self, published: bool) -> PublicationStatus:
        """Open or close the publication gate."""

    @abstractmethod
    def get_voting_window(self) -> VotingWindow:
        """Read the configured voting window."""

    @abstractmethod
    def set_voting_window(
        self,
        start: Optional[datetime],
        end: Optional[datetime]
    ) -> VotingWindow:
        """Replace the voting window."""

    @abstractmethod
    def check_health(self) -> bool:
        """Return True if the store is reachable."""

    def close(self) -> None:
        """Release backend resources."""
