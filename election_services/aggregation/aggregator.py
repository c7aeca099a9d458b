"""
Results aggregation over the ballot store.

Pure read side: every computation runs inside one store snapshot, so counts
reflect exactly the casting transactions committed when the snapshot opened.
"""
import logging
from typing import Dict, List

from prometheus_client import Counter

from ..shared.errors import InvariantViolation, ResultsNotPublished
from ..shared.models import (
    Audience,
    Candidate,
    CandidateTally,
    ElectionResults,
    PositionResult,
    PublicationStatus,
    SummaryStats,
    utc_now,
)
from ..storage.base import BallotStore

logger = logging.getLogger(__name__)

# Prometheus metrics
results_computed_total = Counter(
    'results_computed_total',
    'Total number of results computations',
    ['audience']
)

invariant_violations_total = Counter(
    'invariant_violations_total',
    'Total number of invariant violations detected while tallying'
)


def _percentage(part: int, whole: int) -> float:
    if whole <= 0:
        return 0.0
    return round(part / whole * 100, 2)


def rank_position(position: str, candidates: List[Candidate], counts: Dict[int, int]) -> PositionResult:
    """
    Order one position's candidates and determine leaders.

    Candidates are sorted by votes descending; equal counts keep registration
    order (ascending candidate id). The position is tied when the top two
    candidates share an equal, nonzero count.

    Args:
        position: Position name
        candidates: Candidates standing for the position
        counts: Ballot entry counts keyed by candidate id

    Returns:
        PositionResult
    """
    total = sum(counts.get(c.candidate_id, 0) for c in candidates)
    ordered = sorted(candidates, key=lambda c: (-counts.get(c.candidate_id, 0), c.candidate_id))

    tallies = [
        CandidateTally(
            candidate_id=c.candidate_id,
            name=c.name,
            position=c.position,
            votes=counts.get(c.candidate_id, 0),
            percentage=_percentage(counts.get(c.candidate_id, 0), total),
            gender=c.gender,
            photo_url=c.photo_url
        )
        for c in ordered
    ]

    top_votes = tallies[0].votes if tallies else 0
    leaders = [t for t in tallies if top_votes > 0 and t.votes == top_votes]
    tied = len(tallies) > 1 and top_votes > 0 and tallies[1].votes == top_votes

    return PositionResult(
        position=position,
        candidates=tallies,
        total_votes=total,
        leaders=leaders,
        winner=leaders[0] if len(leaders) == 1 else None,
        tied=tied
    )


class ResultsAggregator:
    """Computes per-position results and summary statistics."""

    def __init__(self, store: BallotStore):
        self.store = store

    def compute_results(self) -> List[PositionResult]:
        """
        Compute live per-position results.

        Returns:
            list: PositionResult per position, positions sorted by name

        Raises:
            InvariantViolation: If a ballot entry references an unknown candidate
        """
        with self.store.snapshot() as snap:
            candidates = snap.list_candidates()
            counts = snap.count_ballots_by_candidate()

        self._check_no_orphans(candidates, counts)

        by_position: Dict[str, List[Candidate]] = {}
        for candidate in candidates:
            by_position.setdefault(candidate.position, []).append(candidate)

        return [
            rank_position(position, by_position[position], counts)
            for position in sorted(by_position)
        ]

    def compute_summary_stats(self) -> SummaryStats:
        """
        Compute election-wide statistics.

        Turnout is unique voters over eligible (verified) voters, as a
        percentage rounded to two decimals, and 0.0 with no eligible voters.
        """
        with self.store.snapshot() as snap:
            candidates = snap.list_candidates()
            counts = snap.count_ballots_by_candidate()
            total_votes = snap.count_ballot_entries()
            unique_voters = snap.count_unique_voters()
            total_voters = snap.count_voters()
            eligible_voters = snap.count_eligible_voters()

        self._check_no_orphans(candidates, counts)

        votes_by_position: Dict[str, int] = {}
        for candidate in candidates:
            votes_by_position[candidate.position] = (
                votes_by_position.get(candidate.position, 0)
                + counts.get(candidate.candidate_id, 0)
            )

        return SummaryStats(
            total_voters=total_voters,
            total_eligible_voters=eligible_voters,
            total_candidates=len(candidates),
            total_votes=total_votes,
            unique_voters=unique_voters,
            turnout_percent=_percentage(unique_voters, eligible_voters),
            votes_by_position=dict(sorted(votes_by_position.items()))
        )

    def admin_results(self) -> ElectionResults:
        """Live results for admin callers, regardless of publication state."""
        return self._render(Audience.ADMIN, self.store.get_publication_status())

    def public_results(self) -> ElectionResults:
        """
        Results for voter-facing callers.

        Raises:
            ResultsNotPublished: While the publication gate is closed
        """
        publication = self.store.get_publication_status()
        if not publication.published:
            raise ResultsNotPublished()
        return self._render(Audience.PUBLIC, publication)

    def publication_status(self) -> PublicationStatus:
        return self.store.get_publication_status()

    def _render(self, audience: Audience, publication: PublicationStatus) -> ElectionResults:
        positions = self.compute_results()
        results_computed_total.labels(audience=audience.value).inc()
        return ElectionResults(
            positions=positions,
            publication=publication,
            audience=audience,
            computed_at=utc_now()
        )

    @staticmethod
    def _check_no_orphans(candidates: List[Candidate], counts: Dict[int, int]) -> None:
        known = {c.candidate_id for c in candidates}
        orphans = sorted(cid for cid in counts if cid not in known)
        if orphans:
            invariant_violations_total.inc()
            logger.error(
                f"Ballot entries reference unknown candidates {orphans}; "
                f"refusing to tally"
            )
            raise InvariantViolation(
                f"Ballot entries reference unknown candidates: {orphans}"
            )
