"""Pytest fixtures for the ballot casting and tallying tests.

Unit tests run against the in-process ballot store, which gives the same
per-voter locking and all-or-nothing commit semantics as PostgreSQL.
"""

from typing import AsyncGenerator, Dict

import httpx
import pytest

from election_services.aggregation import ResultsAggregator
from election_services.casting import BallotCaster
from election_services.config import Settings
from election_services.shared.models import Candidate
from election_services.storage import MemoryBallotStore

VERIFIED_VOTERS = ["V1", "V2", "V3", "V4", "V5"]
UNVERIFIED_VOTER = "V-UNVERIFIED"


@pytest.fixture
def test_settings() -> Settings:
    """Settings with fast retries for tests."""
    return Settings(
        STORAGE_BACKEND="memory",
        MAX_RETRY_ATTEMPTS=3,
        RETRY_DELAY_SECONDS=0.01,
    )


@pytest.fixture
def store() -> MemoryBallotStore:
    """Empty in-process ballot store."""
    return MemoryBallotStore(lock_timeout_seconds=2.0)


@pytest.fixture
def candidates(store: MemoryBallotStore) -> Dict[str, Candidate]:
    """Register two candidates for President and two for Secretary.

    Registration order fixes the ids: Alice=1, Bob=2, Carol=3, Dave=4.
    """
    return {
        "alice": store.add_candidate("Alice Mensah", "President", gender="F"),
        "bob": store.add_candidate("Bob Osei", "President", gender="M"),
        "carol": store.add_candidate("Carol Adjei", "Secretary", gender="F"),
        "dave": store.add_candidate("Dave Boateng", "Secretary", gender="M"),
    }


@pytest.fixture
def voters(store: MemoryBallotStore):
    """Register five verified voters and one unverified voter."""
    registered = [
        store.register_voter(voter_id, full_name=f"Voter {voter_id}", is_verified=True)
        for voter_id in VERIFIED_VOTERS
    ]
    registered.append(store.register_voter(UNVERIFIED_VOTER, full_name="Pending KYC"))
    return registered


@pytest.fixture
def sleeps():
    """Records back-off delays requested by the caster."""
    return []


@pytest.fixture
def caster(store: MemoryBallotStore, test_settings: Settings, sleeps) -> BallotCaster:
    """Caster that records retry delays instead of sleeping."""
    return BallotCaster(store, config=test_settings, sleep=sleeps.append)


@pytest.fixture
def aggregator(store: MemoryBallotStore) -> ResultsAggregator:
    return ResultsAggregator(store)


@pytest.fixture
def full_ballot(candidates):
    """Helper fixture building a two-position ballot.

    Returns a function taking the President and Secretary candidate keys.
    """
    def _ballot(president: str = "alice", secretary: str = "carol"):
        return [
            ("President", candidates[president].candidate_id),
            ("Secretary", candidates[secretary].candidate_id),
        ]

    return _ballot


@pytest.fixture
async def api_client(store, candidates, voters) -> AsyncGenerator[httpx.AsyncClient, None]:
    """HTTP client bound to the ASGI app with the in-process store installed."""
    from election_services.ballot_api.main import app

    app.state.store = store
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
    app.state.store = None


@pytest.fixture
def admin_headers() -> Dict[str, str]:
    from election_services.config import settings

    return {"X-Admin-Token": settings.ADMIN_TOKEN}


def pytest_configure(config):
    """Register custom pytest markers."""
    config.addinivalue_line(
        "markers",
        "concurrency: mark test as exercising simultaneous submissions"
    )
    config.addinivalue_line(
        "markers",
        "integration: mark test as requiring PostgreSQL or Redis"
    )
    config.addinivalue_line(
        "markers",
        "slow: mark test as slow running"
    )
