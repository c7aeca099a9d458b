"""Error taxonomy for the casting and tallying core."""


class BallotError(Exception):
    """Base class for classified casting and tallying failures."""

    code = "ballot_error"
    retryable = False

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__


class AlreadyVoted(BallotError):
    """You have already voted"""
    code = "already_voted"


class NotEligible(BallotError):
    """Voter is not eligible to vote"""
    code = "not_eligible"


class VotingClosed(NotEligible):
    """Voting is not open"""
    code = "voting_closed"


class UnknownVoter(NotEligible):
    """Voter not found"""
    code = "unknown_voter"


class InvalidSelection(BallotError):
    """Invalid ballot selection"""
    code = "invalid_selection"


class TransientStoreFailure(BallotError):
    """The ballot store could not complete the operation, try again"""
    code = "transient_store_failure"
    retryable = True


class InvariantViolation(BallotError):
    """Stored election data violates a core invariant"""
    code = "invariant_violation"


class UnknownCandidate(BallotError):
    """Candidate not found"""
    code = "unknown_candidate"


class CandidateHasBallots(BallotError):
    """Candidate is referenced by ballot entries and cannot be deleted"""
    code = "candidate_has_ballots"


class ResultsNotPublished(BallotError):
    """Results have not been published yet"""
    code = "results_not_published"
