"""
Vote casting transaction.

For one voter, atomically: lock the voter row, check eligibility, check every
selected candidate against the candidate registry, record one ballot entry
per selection and set the has-voted flag. Any failure rolls the whole unit of
work back, so a retry always starts from a clean state.
"""
import logging
import time
from typing import Any, Callable, Iterable, Optional

from prometheus_client import Counter, Histogram

from ..config import Settings, settings as default_settings
from ..shared.errors import (
    AlreadyVoted,
    BallotError,
    InvalidSelection,
    NotEligible,
    TransientStoreFailure,
    UnknownVoter,
    VotingClosed,
)
from ..shared.models import CastReceipt, normalize_selections, utc_now, validate_voter_id_format
from ..storage.base import BallotStore

logger = logging.getLogger(__name__)

# Prometheus metrics
ballots_cast_total = Counter(
    'ballots_cast_total',
    'Total number of committed casting transactions'
)

ballot_entries_recorded_total = Counter(
    'ballot_entries_recorded_total',
    'Total number of ballot entries recorded'
)

cast_rejections_total = Counter(
    'cast_rejections_total',
    'Total number of rejected casting attempts',
    ['reason']
)

cast_retries_total = Counter(
    'cast_retries_total',
    'Total number of casting retries after transient store failures'
)

cast_duration = Histogram(
    'cast_duration_seconds',
    'Time spent in the casting transaction',
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0]
)


class BallotCaster:
    """Runs the casting transaction against a ballot store."""

    def __init__(
        self,
        store: BallotStore,
        config: Optional[Settings] = None,
        clock: Callable = utc_now,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.store = store
        self.config = config or default_settings
        self.clock = clock
        self.sleep = sleep

    def cast_ballots(self, voter_id: str, selections: Iterable[Any]) -> CastReceipt:
        """
        Cast one ballot per position for a voter.

        Args:
            voter_id: Identity key of the voter
            selections: (position, candidate_id) choices, at most one per position

        Returns:
            CastReceipt with the recorded entries

        Raises:
            InvalidSelection: Malformed, duplicate-position or unknown-candidate input
            VotingClosed: Outside the configured voting window
            NotEligible: Unknown or unverified voter
            AlreadyVoted: The voter's ballot was already recorded
            TransientStoreFailure: The store failed on every attempt; nothing was recorded
        """
        start_time = time.time()
        try:
            if not validate_voter_id_format(voter_id):
                raise UnknownVoter(f"Invalid voter id: {voter_id!r}")
            normalized = normalize_selections(selections)
            self._check_voting_window()

            receipt = self._cast_with_retry(voter_id, normalized)

        except BallotError as e:
            cast_rejections_total.labels(reason=e.code).inc()
            self._log_rejection(voter_id, e)
            raise
        finally:
            cast_duration.observe(time.time() - start_time)

        ballots_cast_total.inc()
        ballot_entries_recorded_total.inc(receipt.entry_count)
        logger.info(
            f"Ballot recorded: voter={voter_id}, entries={receipt.entry_count}"
        )
        return receipt

    def has_voted(self, voter_id: str) -> bool:
        """
        Check whether a voter's ballot has been recorded.

        Raises:
            UnknownVoter: If the voter is not registered
        """
        voter = self.store.get_voter(voter_id)
        if voter is None:
            raise UnknownVoter(f"Voter {voter_id} not found")
        return voter.has_voted

    def _check_voting_window(self) -> None:
        window = self.store.get_voting_window()
        if not window.configured:
            return

        now = self.clock()
        if window.is_open(now):
            return
        if window.start is not None and now < window.start:
            raise VotingClosed(f"Voting has not started yet. Opens at {window.start.isoformat()}")
        raise VotingClosed(f"Voting has ended. Closed at {window.end.isoformat()}")

    def _cast_with_retry(self, voter_id, selections) -> CastReceipt:
        attempts = max(self.config.MAX_RETRY_ATTEMPTS, 1)
        for attempt in range(1, attempts + 1):
            try:
                return self._cast_once(voter_id, selections)
            except TransientStoreFailure as e:
                if attempt == attempts:
                    raise
                cast_retries_total.inc()
                delay = self.config.RETRY_DELAY_SECONDS * attempt
                logger.warning(
                    f"Transient store failure for voter {voter_id} "
                    f"(attempt {attempt}/{attempts}), retrying in {delay:.2f}s: {e}"
                )
                self.sleep(delay)

    def _cast_once(self, voter_id, selections) -> CastReceipt:
        cast_at = self.clock()

        with self.store.unit_of_work() as uow:
            voter = uow.get_voter_for_update(voter_id)
            if voter is None:
                raise UnknownVoter(f"Voter {voter_id} not found")
            if voter.has_voted:
                raise AlreadyVoted()
            if not voter.is_verified:
                raise NotEligible("Identity verification is required before voting")

            candidates = uow.get_candidates(s.candidate_id for s in selections)
            for selection in selections:
                candidate = candidates.get(selection.candidate_id)
                if candidate is None:
                    raise InvalidSelection(f"Candidate {selection.candidate_id} not found")
                if candidate.position != selection.position:
                    raise InvalidSelection(
                        f"Candidate {selection.candidate_id} does not stand for "
                        f"'{selection.position}'"
                    )

            entries = uow.insert_ballot_entries(voter_id, selections, cast_at)
            uow.mark_voted(voter_id, cast_at)

        return CastReceipt(voter_id=voter_id, entries=entries, cast_at=cast_at)

    @staticmethod
    def _log_rejection(voter_id: str, error: BallotError) -> None:
        if isinstance(error, TransientStoreFailure):
            logger.warning(f"Ballot not recorded for voter {voter_id}: {error.message}")
        elif isinstance(error, (AlreadyVoted, NotEligible)):
            logger.info(f"Ballot rejected for voter {voter_id}: {error.message}")
        else:
            logger.warning(f"Ballot rejected for voter {voter_id}: {error.message}")
