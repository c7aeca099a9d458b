"""Pydantic models for request/response validation."""
from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..shared.models import (
    CandidateTally,
    ElectionResults,
    PositionResult,
    PublicationStatus,
)


class SelectionRequest(BaseModel):
    """One choice on a submitted ballot."""

    position: str = Field(..., description="Elected position, e.g. 'President'")
    candidate_id: int = Field(..., description="Candidate standing for that position")


class CastBallotRequest(BaseModel):
    """Ballot submission request model."""

    voter_id: str = Field(..., description="Voter identity key issued by the identity layer")
    selections: List[SelectionRequest] = Field(..., description="At most one selection per position")

    @field_validator("voter_id")
    @classmethod
    def validate_voter_id(cls, v):
        """Validate voter_id is not empty."""
        if not v or not v.strip():
            raise ValueError("Voter ID cannot be empty")
        return v.strip()

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "voter_id": "VTR-000123",
                "selections": [
                    {"position": "President", "candidate_id": 1},
                    {"position": "Secretary", "candidate_id": 4}
                ]
            }
        }
    )


class BallotEntryResponse(BaseModel):
    """A recorded ballot entry."""

    entry_id: int
    position: str
    candidate_id: int
    cast_at: datetime


class CastBallotResponse(BaseModel):
    """Ballot submission response model."""

    voter_id: str = Field(..., description="Voter whose ballot was recorded")
    status: str = Field(..., description="Status of the submission")
    message: str = Field(default="Votes submitted successfully", description="Response message")
    entries: List[BallotEntryResponse] = Field(default_factory=list)
    cast_at: datetime


class VoterStatusResponse(BaseModel):
    """Has-voted status for a voter."""

    voter_id: str
    has_voted: bool


class CandidateInfo(BaseModel):
    """Candidate information model."""

    candidate_id: int
    name: str
    position: str
    gender: Optional[str] = None
    photo_url: Optional[str] = None
    manifesto: Optional[str] = None


class CandidateTallyResponse(BaseModel):
    """Vote count for one candidate."""

    candidate_id: int
    name: str
    votes: int
    percentage: float
    gender: Optional[str] = None
    photo_url: Optional[str] = None

    @classmethod
    def from_tally(cls, tally: CandidateTally) -> 'CandidateTallyResponse':
        return cls(
            candidate_id=tally.candidate_id,
            name=tally.name,
            votes=tally.votes,
            percentage=tally.percentage,
            gender=tally.gender,
            photo_url=tally.photo_url
        )


class PositionResultResponse(BaseModel):
    """Ordered results for one position."""

    position: str
    total_votes: int
    tied: bool
    winner: Optional[CandidateTallyResponse] = None
    leaders: List[CandidateTallyResponse]
    candidates: List[CandidateTallyResponse]

    @classmethod
    def from_result(cls, result: PositionResult) -> 'PositionResultResponse':
        return cls(
            position=result.position,
            total_votes=result.total_votes,
            tied=result.tied,
            winner=CandidateTallyResponse.from_tally(result.winner) if result.winner else None,
            leaders=[CandidateTallyResponse.from_tally(t) for t in result.leaders],
            candidates=[CandidateTallyResponse.from_tally(t) for t in result.candidates]
        )


class PublicationStatusResponse(BaseModel):
    """Results publication gate state."""

    published: bool
    published_at: Optional[datetime] = None

    @classmethod
    def from_status(cls, status: PublicationStatus) -> 'PublicationStatusResponse':
        return cls(published=status.published, published_at=status.published_at)


class ResultsResponse(BaseModel):
    """Election results response model."""

    audience: Literal["public", "admin"]
    published: bool
    published_at: Optional[datetime] = None
    computed_at: datetime
    positions: List[PositionResultResponse]

    @classmethod
    def from_results(cls, results: ElectionResults) -> 'ResultsResponse':
        return cls(
            audience=results.audience.value,
            published=results.publication.published,
            published_at=results.publication.published_at,
            computed_at=results.computed_at,
            positions=[PositionResultResponse.from_result(p) for p in results.positions]
        )


class SummaryStatsResponse(BaseModel):
    """Admin statistics response model."""

    total_voters: int
    total_eligible_voters: int
    total_candidates: int
    total_votes: int
    unique_voters: int
    turnout_percent: float
    votes_by_position: Dict[str, int]


class VotingWindowRequest(BaseModel):
    """Voting window update; either bound may be omitted."""

    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @field_validator("start", "end")
    @classmethod
    def require_timezone(cls, v):
        """Reject naive timestamps."""
        if v is not None and v.tzinfo is None:
            raise ValueError("Timestamps must include a timezone offset")
        return v


class VotingWindowResponse(BaseModel):
    """Configured voting window."""

    start: Optional[datetime] = None
    end: Optional[datetime] = None
    is_open: bool


class HealthResponse(BaseModel):
    """Health check response model."""

    status: Literal["healthy", "unhealthy"] = Field(..., description="Overall health status")
    services: dict = Field(..., description="Status of individual services")
    timestamp: datetime = Field(..., description="Health check timestamp")


class ErrorResponse(BaseModel):
    """Error response model."""

    detail: str = Field(..., description="Error message")
