"""
In-process ballot store.

Used for single-process deployments and tests. Per-voter exclusivity comes
from one lock per voter id, acquired with a bounded wait. Staged writes are
applied under a short commit latch that is also taken to copy snapshots, so
readers never observe a voter's has-voted flag without its entries.
"""
import itertools
import logging
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple

from ..shared.errors import (
    AlreadyVoted,
    CandidateHasBallots,
    InvalidSelection,
    TransientStoreFailure,
    UnknownCandidate,
    UnknownVoter,
)
from ..shared.models import (
    BallotEntry,
    Candidate,
    PublicationStatus,
    Selection,
    Voter,
    VotingWindow,
    utc_now,
)
from .base import BallotStore, CastingSession, ReadSnapshot

logger = logging.getLogger(__name__)


class _MemoryCastingSession(CastingSession):
    """Staged writes for one unit of work."""

    def __init__(self, store: 'MemoryBallotStore'):
        self._store = store
        self._held: Dict[str, threading.Lock] = {}
        self._entries: List[BallotEntry] = []
        self._voted: Dict[str, datetime] = {}

    def get_voter_for_update(self, voter_id: str) -> Optional[Voter]:
        if voter_id not in self._held:
            lock = self._store._voter_lock(voter_id)
            if lock is None:
                return None
            if not lock.acquire(timeout=self._store.lock_timeout_seconds):
                raise TransientStoreFailure(
                    f"Timed out waiting for the lock on voter {voter_id}"
                )
            self._held[voter_id] = lock

        with self._store._commit_lock:
            voter = self._store._voters.get(voter_id)
            return replace(voter) if voter else None

    def get_candidates(self, candidate_ids: Iterable[int]) -> Dict[int, Candidate]:
        found = {}
        with self._store._commit_lock:
            for candidate_id in candidate_ids:
                candidate = self._store._candidates.get(candidate_id)
                if candidate is not None:
                    found[candidate_id] = replace(candidate)
        return found

    def insert_ballot_entries(
        self,
        voter_id: str,
        selections: List[Selection],
        cast_at: datetime
    ) -> List[BallotEntry]:
        self._require_lock(voter_id)
        entries = [
            BallotEntry(
                entry_id=self._store._allocate_entry_id(),
                voter_id=voter_id,
                candidate_id=selection.candidate_id,
                position=selection.position,
                cast_at=cast_at
            )
            for selection in selections
        ]
        self._entries.extend(entries)
        return entries

    def mark_voted(self, voter_id: str, voted_at: datetime) -> None:
        self._require_lock(voter_id)
        self._voted[voter_id] = voted_at

    def _require_lock(self, voter_id: str) -> None:
        if voter_id not in self._held:
            raise RuntimeError(f"Voter {voter_id} must be locked before it is written")

    def commit(self) -> None:
        """Validate staged writes against committed state and apply them together."""
        store = self._store
        with store._commit_lock:
            keys: Set[Tuple[str, str]] = set()
            for entry in self._entries:
                key = (entry.voter_id, entry.position)
                if key in store._entry_keys or key in keys:
                    raise AlreadyVoted(
                        f"Voter {entry.voter_id} already has a ballot for '{entry.position}'"
                    )
                keys.add(key)

                candidate = store._candidates.get(entry.candidate_id)
                if candidate is None or candidate.position != entry.position:
                    raise InvalidSelection(
                        f"Candidate {entry.candidate_id} does not stand for '{entry.position}'"
                    )

            for voter_id in self._voted:
                voter = store._voters.get(voter_id)
                if voter is None:
                    raise UnknownVoter(f"Voter {voter_id} not found")
                if voter.has_voted:
                    raise AlreadyVoted()

            store._entries.extend(self._entries)
            store._entry_keys.update(keys)
            for voter_id, voted_at in self._voted.items():
                voter = store._voters[voter_id]
                voter.has_voted = True
                voter.voted_at = voted_at

    def release(self) -> None:
        for lock in self._held.values():
            lock.release()
        self._held.clear()
        self._entries = []
        self._voted = {}


class _MemorySnapshot(ReadSnapshot):
    """Frozen copy of committed state."""

    def __init__(
        self,
        voters: List[Voter],
        candidates: List[Candidate],
        entries: List[BallotEntry]
    ):
        self._voters = voters
        self._candidates = candidates
        self._entries = entries

    def list_candidates(self) -> List[Candidate]:
        return list(self._candidates)

    def count_ballots_by_candidate(self) -> Dict[int, int]:
        counts: Dict[int, int] = {}
        for entry in self._entries:
            counts[entry.candidate_id] = counts.get(entry.candidate_id, 0) + 1
        return counts

    def count_ballot_entries(self) -> int:
        return len(self._entries)

    def count_unique_voters(self) -> int:
        return len({entry.voter_id for entry in self._entries})

    def count_voters(self) -> int:
        return len(self._voters)

    def count_eligible_voters(self) -> int:
        return sum(1 for voter in self._voters if voter.is_verified)


class MemoryBallotStore(BallotStore):
    """Thread-safe in-process implementation of the ballot store."""

    def __init__(self, lock_timeout_seconds: float = 5.0):
        self.lock_timeout_seconds = lock_timeout_seconds

        self._commit_lock = threading.RLock()
        self._registry_lock = threading.Lock()
        self._voter_locks: Dict[str, threading.Lock] = {}

        self._voters: Dict[str, Voter] = {}
        self._candidates: Dict[int, Candidate] = {}
        self._entries: List[BallotEntry] = []
        self._entry_keys: Set[Tuple[str, str]] = set()
        self._candidate_ids = itertools.count(1)
        self._entry_ids = itertools.count(1)

        self._publication = PublicationStatus()
        self._window = VotingWindow()

        logger.info("In-memory ballot store initialized")

    def _voter_lock(self, voter_id: str) -> Optional[threading.Lock]:
        """Lock created at registration; None for unregistered ids."""
        with self._registry_lock:
            return self._voter_locks.get(voter_id)

    def _allocate_entry_id(self) -> int:
        with self._registry_lock:
            return next(self._entry_ids)

    @contextmanager
    def unit_of_work(self) -> Iterator[CastingSession]:
        session = _MemoryCastingSession(self)
        try:
            yield session
            session.commit()
        finally:
            session.release()

    @contextmanager
    def snapshot(self) -> Iterator[ReadSnapshot]:
        with self._commit_lock:
            view = _MemorySnapshot(
                voters=[replace(voter) for voter in self._voters.values()],
                candidates=[replace(candidate) for candidate in self._candidates.values()],
                entries=list(self._entries)
            )
        yield view

    def list_ballot_entries(self, voter_id: Optional[str] = None) -> List[BallotEntry]:
        with self._commit_lock:
            return [
                entry for entry in self._entries
                if voter_id is None or entry.voter_id == voter_id
            ]

    def register_voter(
        self,
        voter_id: str,
        full_name: Optional[str] = None,
        is_verified: bool = False
    ) -> Voter:
        with self._commit_lock:
            if voter_id in self._voters:
                raise ValueError(f"Voter {voter_id} is already registered")
            voter = Voter(voter_id=voter_id, is_verified=is_verified, full_name=full_name)
            with self._registry_lock:
                self._voter_locks[voter_id] = threading.Lock()
            self._voters[voter_id] = voter
            return replace(voter)

    def set_voter_verified(self, voter_id: str, verified: bool = True) -> Voter:
        with self._commit_lock:
            voter = self._voters.get(voter_id)
            if voter is None:
                raise UnknownVoter(f"Voter {voter_id} not found")
            voter.is_verified = verified
            return replace(voter)

    def get_voter(self, voter_id: str) -> Optional[Voter]:
        with self._commit_lock:
            voter = self._voters.get(voter_id)
            return replace(voter) if voter else None

    def add_candidate(
        self,
        name: str,
        position: str,
        gender: Optional[str] = None,
        photo_url: Optional[str] = None,
        manifesto: Optional[str] = None
    ) -> Candidate:
        with self._commit_lock:
            candidate = Candidate(
                candidate_id=next(self._candidate_ids),
                name=name,
                position=position.strip(),
                gender=gender,
                photo_url=photo_url,
                manifesto=manifesto
            )
            self._candidates[candidate.candidate_id] = candidate
            return replace(candidate)

    def get_candidate(self, candidate_id: int) -> Optional[Candidate]:
        with self._commit_lock:
            candidate = self._candidates.get(candidate_id)
            return replace(candidate) if candidate else None

    def list_candidates_by_position(self) -> Dict[str, List[Candidate]]:
        with self._commit_lock:
            candidates = [replace(candidate) for candidate in self._candidates.values()]

        grouped: Dict[str, List[Candidate]] = {}
        for candidate in sorted(candidates, key=lambda c: (c.position, c.name, c.candidate_id)):
            grouped.setdefault(candidate.position, []).append(candidate)
        return grouped

    def delete_candidate(self, candidate_id: int) -> None:
        with self._commit_lock:
            if candidate_id not in self._candidates:
                raise UnknownCandidate(f"Candidate {candidate_id} not found")
            if any(entry.candidate_id == candidate_id for entry in self._entries):
                raise CandidateHasBallots(
                    f"Candidate {candidate_id} has recorded ballots and cannot be deleted"
                )
            del self._candidates[candidate_id]

    def get_publication_status(self) -> PublicationStatus:
        with self._commit_lock:
            return replace(self._publication)

    def set_published(self, published: bool) -> PublicationStatus:
        with self._commit_lock:
            self._publication.published = published
            if published:
                self._publication.published_at = utc_now()
            return replace(self._publication)

    def get_voting_window(self) -> VotingWindow:
        with self._commit_lock:
            return replace(self._window)

    def set_voting_window(
        self,
        start: Optional[datetime],
        end: Optional[datetime]
    ) -> VotingWindow:
        with self._commit_lock:
            self._window = VotingWindow(start=start, end=end)
            return replace(self._window)

    def check_health(self) -> bool:
        return True
