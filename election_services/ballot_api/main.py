"""
FastAPI application exposing ballot casting and results.

Voter identity arrives from the upstream identity layer; this service only
runs the casting transaction, the aggregator and the publication gate.
"""
import hmac
import logging
import time
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from ..aggregation import ResultsAggregator
from ..casting import BallotCaster
from ..config import settings
from ..shared.errors import (
    AlreadyVoted,
    BallotError,
    CandidateHasBallots,
    InvalidSelection,
    InvariantViolation,
    NotEligible,
    ResultsNotPublished,
    TransientStoreFailure,
    UnknownCandidate,
    UnknownVoter,
)
from ..shared.models import utc_now
from ..storage import BallotStore, build_store
from .models import (
    BallotEntryResponse,
    CandidateInfo,
    CastBallotRequest,
    CastBallotResponse,
    ErrorResponse,
    HealthResponse,
    PublicationStatusResponse,
    ResultsResponse,
    SummaryStatsResponse,
    VoterStatusResponse,
    VotingWindowRequest,
    VotingWindowResponse,
)

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

API_PREFIX = f"/api/{settings.API_VERSION}"

# Prometheus metrics
request_duration = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint", "status"]
)
api_errors = Counter(
    "api_errors_total",
    "Total number of API error responses",
    ["error_type"]
)

# Most specific class first; lookup walks the exception's MRO
ERROR_STATUS_CODES = {
    InvalidSelection: status.HTTP_400_BAD_REQUEST,
    UnknownVoter: status.HTTP_404_NOT_FOUND,
    UnknownCandidate: status.HTTP_404_NOT_FOUND,
    NotEligible: status.HTTP_403_FORBIDDEN,
    ResultsNotPublished: status.HTTP_403_FORBIDDEN,
    AlreadyVoted: status.HTTP_409_CONFLICT,
    CandidateHasBallots: status.HTTP_409_CONFLICT,
    TransientStoreFailure: status.HTTP_503_SERVICE_UNAVAILABLE,
    InvariantViolation: status.HTTP_500_INTERNAL_SERVER_ERROR,
}

# Rate limiter
limiter = Limiter(key_func=get_remote_address)


def to_http_error(error: BallotError) -> HTTPException:
    """Map a classified core failure to an HTTP error."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for klass in type(error).__mro__:
        if klass in ERROR_STATUS_CODES:
            status_code = ERROR_STATUS_CODES[klass]
            break

    api_errors.labels(error_type=error.code).inc()
    if isinstance(error, TransientStoreFailure):
        return HTTPException(
            status_code=status_code,
            detail="The ballot service is temporarily unavailable, please try again"
        )
    if isinstance(error, InvariantViolation):
        return HTTPException(status_code=status_code, detail="Internal server error")
    return HTTPException(status_code=status_code, detail=error.message)


def internal_error(context: str, error: Exception) -> HTTPException:
    api_errors.labels(error_type="internal_error").inc()
    logger.error(f"Error {context}: {error}", exc_info=True)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Internal server error"
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    logger.info(f"Starting {settings.SERVICE_NAME} service...")

    owns_store = getattr(app.state, "store", None) is None
    if owns_store:
        try:
            app.state.store = build_store(settings)
        except Exception as e:
            logger.error(f"Failed to start {settings.SERVICE_NAME}: {e}")
            raise
    logger.info(f"{settings.SERVICE_NAME} started with {type(app.state.store).__name__}")

    yield

    logger.info(f"Shutting down {settings.SERVICE_NAME} service...")
    if owns_store:
        app.state.store.close()
        app.state.store = None
    logger.info(f"{settings.SERVICE_NAME} shut down successfully")


# Create FastAPI app
app = FastAPI(
    title="Ballot API",
    description="API for casting ballots and retrieving election results",
    version=settings.API_VERSION,
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
    allow_methods=settings.CORS_ALLOW_METHODS,
    allow_headers=settings.CORS_ALLOW_HEADERS,
)

# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.middleware("http")
async def prometheus_middleware(request: Request, call_next):
    """Middleware to track request duration."""
    start_time = time.time()
    response = await call_next(request)

    route = request.scope.get("route")
    request_duration.labels(
        method=request.method,
        endpoint=route.path if route is not None else "unmatched",
        status=response.status_code
    ).observe(time.time() - start_time)

    return response


# Dependencies

def get_store(request: Request) -> BallotStore:
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Ballot store not initialized"
        )
    return store


def get_caster(store: BallotStore = Depends(get_store)) -> BallotCaster:
    return BallotCaster(store)


def get_aggregator(store: BallotStore = Depends(get_store)) -> ResultsAggregator:
    return ResultsAggregator(store)


def require_admin(x_admin_token: Optional[str] = Header(default=None)) -> None:
    """Admin endpoints require the shared admin token."""
    if not x_admin_token or not hmac.compare_digest(x_admin_token, settings.ADMIN_TOKEN):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin token required"
        )


# Voter-facing endpoints

@app.post(
    f"{API_PREFIX}/votes",
    response_model=CastBallotResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid selection"},
        403: {"model": ErrorResponse, "description": "Voter not eligible or voting closed"},
        404: {"model": ErrorResponse, "description": "Voter not found"},
        409: {"model": ErrorResponse, "description": "Already voted"},
        429: {"description": "Rate limit exceeded"},
        503: {"model": ErrorResponse, "description": "Temporary failure, try again"}
    }
)
@limiter.limit(settings.RATE_LIMIT)
def submit_votes(
    request: Request,
    ballot: CastBallotRequest,
    caster: BallotCaster = Depends(get_caster)
) -> CastBallotResponse:
    """
    Cast the voter's ballot.

    - **voter_id**: Voter identity key
    - **selections**: One {position, candidate_id} per position voted on

    All selections are recorded together or not at all.
    """
    try:
        receipt = caster.cast_ballots(
            ballot.voter_id,
            [(s.position, s.candidate_id) for s in ballot.selections]
        )
    except BallotError as e:
        raise to_http_error(e)
    except Exception as e:
        raise internal_error("submitting votes", e)

    return CastBallotResponse(
        voter_id=receipt.voter_id,
        status="accepted",
        message="Votes submitted successfully",
        entries=[
            BallotEntryResponse(
                entry_id=entry.entry_id,
                position=entry.position,
                candidate_id=entry.candidate_id,
                cast_at=entry.cast_at
            )
            for entry in receipt.entries
        ],
        cast_at=receipt.cast_at
    )


@app.get(
    f"{API_PREFIX}/voters/{{voter_id}}/status",
    response_model=VoterStatusResponse,
    responses={404: {"model": ErrorResponse, "description": "Voter not found"}}
)
def get_voter_status(voter_id: str, caster: BallotCaster = Depends(get_caster)) -> VoterStatusResponse:
    """Check whether a voter has already voted."""
    try:
        return VoterStatusResponse(voter_id=voter_id, has_voted=caster.has_voted(voter_id))
    except BallotError as e:
        raise to_http_error(e)
    except Exception as e:
        raise internal_error(f"checking vote status for {voter_id}", e)


@app.get(f"{API_PREFIX}/candidates", response_model=Dict[str, List[CandidateInfo]])
def get_candidates(store: BallotStore = Depends(get_store)):
    """Get all candidates grouped by position."""
    try:
        grouped = store.list_candidates_by_position()
    except BallotError as e:
        raise to_http_error(e)
    except Exception as e:
        raise internal_error("getting candidates", e)

    return {
        position: [CandidateInfo(**candidate.to_dict()) for candidate in candidates]
        for position, candidates in grouped.items()
    }


@app.get(
    f"{API_PREFIX}/candidates/{{position}}",
    response_model=List[CandidateInfo],
    responses={404: {"model": ErrorResponse, "description": "No candidates for position"}}
)
def get_candidates_for_position(position: str, store: BallotStore = Depends(get_store)):
    """Get the candidates standing for one position."""
    try:
        grouped = store.list_candidates_by_position()
    except BallotError as e:
        raise to_http_error(e)
    except Exception as e:
        raise internal_error(f"getting candidates for {position}", e)

    candidates = grouped.get(position.strip())
    if not candidates:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No candidates for position '{position}'"
        )
    return [CandidateInfo(**candidate.to_dict()) for candidate in candidates]


@app.get(
    f"{API_PREFIX}/results",
    response_model=ResultsResponse,
    responses={403: {"model": ErrorResponse, "description": "Results not published"}}
)
def get_public_results(aggregator: ResultsAggregator = Depends(get_aggregator)) -> ResultsResponse:
    """Get official results once the admin has published them."""
    try:
        return ResultsResponse.from_results(aggregator.public_results())
    except BallotError as e:
        raise to_http_error(e)
    except Exception as e:
        raise internal_error("getting public results", e)


@app.get(f"{API_PREFIX}/results/status", response_model=PublicationStatusResponse)
def get_results_status(aggregator: ResultsAggregator = Depends(get_aggregator)) -> PublicationStatusResponse:
    """Get the results publication state."""
    try:
        return PublicationStatusResponse.from_status(aggregator.publication_status())
    except BallotError as e:
        raise to_http_error(e)
    except Exception as e:
        raise internal_error("getting publication status", e)


@app.get(f"{API_PREFIX}/voting-window", response_model=VotingWindowResponse)
def get_voting_window(store: BallotStore = Depends(get_store)) -> VotingWindowResponse:
    """Get the configured voting window."""
    try:
        window = store.get_voting_window()
    except BallotError as e:
        raise to_http_error(e)
    except Exception as e:
        raise internal_error("getting voting window", e)
    return VotingWindowResponse(start=window.start, end=window.end, is_open=window.is_open(utc_now()))


# Admin endpoints

@app.get(
    f"{API_PREFIX}/admin/results",
    response_model=ResultsResponse,
    dependencies=[Depends(require_admin)]
)
def get_admin_results(aggregator: ResultsAggregator = Depends(get_aggregator)) -> ResultsResponse:
    """Get live results regardless of publication state."""
    try:
        return ResultsResponse.from_results(aggregator.admin_results())
    except BallotError as e:
        raise to_http_error(e)
    except Exception as e:
        raise internal_error("getting admin results", e)


@app.get(
    f"{API_PREFIX}/admin/stats",
    response_model=SummaryStatsResponse,
    dependencies=[Depends(require_admin)]
)
def get_admin_stats(aggregator: ResultsAggregator = Depends(get_aggregator)) -> SummaryStatsResponse:
    """Get voter, candidate, ballot and turnout statistics."""
    try:
        stats = aggregator.compute_summary_stats()
    except BallotError as e:
        raise to_http_error(e)
    except Exception as e:
        raise internal_error("getting admin stats", e)
    return SummaryStatsResponse(**stats.to_dict())


@app.post(
    f"{API_PREFIX}/admin/results/publish",
    response_model=PublicationStatusResponse,
    dependencies=[Depends(require_admin)]
)
def publish_results(store: BallotStore = Depends(get_store)) -> PublicationStatusResponse:
    """Open the publication gate."""
    try:
        publication = store.set_published(True)
    except BallotError as e:
        raise to_http_error(e)
    except Exception as e:
        raise internal_error("publishing results", e)
    logger.info(f"Results published at {publication.published_at}")
    return PublicationStatusResponse.from_status(publication)


@app.post(
    f"{API_PREFIX}/admin/results/unpublish",
    response_model=PublicationStatusResponse,
    dependencies=[Depends(require_admin)]
)
def unpublish_results(store: BallotStore = Depends(get_store)) -> PublicationStatusResponse:
    """Close the publication gate."""
    try:
        publication = store.set_published(False)
    except BallotError as e:
        raise to_http_error(e)
    except Exception as e:
        raise internal_error("unpublishing results", e)
    logger.info("Results unpublished")
    return PublicationStatusResponse.from_status(publication)


@app.put(
    f"{API_PREFIX}/admin/voting-window",
    response_model=VotingWindowResponse,
    dependencies=[Depends(require_admin)]
)
def update_voting_window(
    window: VotingWindowRequest,
    store: BallotStore = Depends(get_store)
) -> VotingWindowResponse:
    """Replace the voting window."""
    if window.start and window.end and window.start >= window.end:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Voting start must be before voting end"
        )
    try:
        saved = store.set_voting_window(window.start, window.end)
    except BallotError as e:
        raise to_http_error(e)
    except Exception as e:
        raise internal_error("updating voting window", e)

    logger.info(f"Voting window updated: {saved.start} to {saved.end}")
    return VotingWindowResponse(start=saved.start, end=saved.end, is_open=saved.is_open(utc_now()))


@app.delete(
    f"{API_PREFIX}/admin/candidates/{{candidate_id}}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_admin)],
    responses={
        404: {"model": ErrorResponse, "description": "Candidate not found"},
        409: {"model": ErrorResponse, "description": "Candidate has recorded ballots"}
    }
)
def delete_candidate(candidate_id: int, store: BallotStore = Depends(get_store)) -> Response:
    """Delete a candidate that no ballot references."""
    try:
        store.delete_candidate(candidate_id)
    except BallotError as e:
        raise to_http_error(e)
    except Exception as e:
        raise internal_error(f"deleting candidate {candidate_id}", e)
    logger.info(f"Candidate {candidate_id} deleted")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Operations

@app.get(
    f"{API_PREFIX}/health",
    response_model=HealthResponse,
    responses={
        503: {"model": HealthResponse, "description": "Service unhealthy"}
    }
)
def health_check(request: Request):
    """Check health of the service and its ballot store."""
    services = {}

    store = getattr(request.app.state, "store", None)
    try:
        healthy = store is not None and store.check_health()
        services["ballot_store"] = "connected" if healthy else "disconnected"
    except Exception as e:
        logger.error(f"Ballot store health check error: {e}")
        services["ballot_store"] = "error"

    all_healthy = all(state == "connected" for state in services.values())

    response = HealthResponse(
        status="healthy" if all_healthy else "unhealthy",
        services=services,
        timestamp=utc_now()
    )
    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=response.model_dump(mode="json")
    )


@app.get("/metrics")
def metrics():
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


@app.get("/")
def root():
    """Root endpoint with API information."""
    return {
        "service": settings.SERVICE_NAME,
        "version": settings.API_VERSION,
        "status": "running",
        "endpoints": {
            "submit_votes": f"{API_PREFIX}/votes",
            "voter_status": f"{API_PREFIX}/voters/{{voter_id}}/status",
            "candidates": f"{API_PREFIX}/candidates",
            "candidates_for_position": f"{API_PREFIX}/candidates/{{position}}",
            "results": f"{API_PREFIX}/results",
            "results_status": f"{API_PREFIX}/results/status",
            "voting_window": f"{API_PREFIX}/voting-window",
            "admin_results": f"{API_PREFIX}/admin/results",
            "admin_stats": f"{API_PREFIX}/admin/stats",
            "admin_publish_results": f"{API_PREFIX}/admin/results/publish",
            "admin_unpublish_results": f"{API_PREFIX}/admin/results/unpublish",
            "admin_voting_window": f"{API_PREFIX}/admin/voting-window",
            "admin_delete_candidate": f"{API_PREFIX}/admin/candidates/{{candidate_id}}",
            "health": f"{API_PREFIX}/health",
            "metrics": "/metrics"
        }
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "election_services.ballot_api.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="info"
    )
