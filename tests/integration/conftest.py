"""Pytest fixtures for integration tests.

These tests talk to a real PostgreSQL and Redis, configured through the same
POSTGRES_* / REDIS_* environment variables as the service. Each fixture
skips the test when its service cannot be reached.
"""

import os
from typing import Generator

import pytest
import redis

from election_services.config import Settings
from election_services.shared.errors import TransientStoreFailure
from election_services.storage.postgres import PostgresBallotStore
from election_services.storage.redis_client import VerificationCodeStore


@pytest.fixture(scope="session")
def integration_settings() -> Settings:
    """Settings with short lock waits so contention tests finish quickly."""
    return Settings(
        STORAGE_BACKEND="postgres",
        POSTGRES_POOL_MIN_SIZE=1,
        POSTGRES_POOL_MAX_SIZE=10,
        POSTGRES_CONNECT_TIMEOUT=3,
        CAST_LOCK_TIMEOUT_MS=500,
        MAX_RETRY_ATTEMPTS=2,
        RETRY_DELAY_SECONDS=0.01,
        VERIFICATION_MAX_ATTEMPTS=3,
    )


@pytest.fixture(scope="session")
def postgres_store(integration_settings) -> Generator[PostgresBallotStore, None, None]:
    """PostgreSQL ballot store with the schema created.

    Yields a store shared by the whole session.
    """
    try:
        store = PostgresBallotStore(integration_settings)
        store.initialize_schema()
    except TransientStoreFailure:
        pytest.skip("PostgreSQL not available")

    yield store

    store.close()


@pytest.fixture
def pg_store(postgres_store: PostgresBallotStore) -> PostgresBallotStore:
    """Clear all election data before the test.

    TRUNCATE bypasses the row-level append-only trigger on ballot_entries.
    """
    with postgres_store.database.transaction() as cursor:
        cursor.execute(
            "TRUNCATE ballot_entries, voters, candidates, election_settings RESTART IDENTITY"
        )
    return postgres_store


@pytest.fixture(scope="session")
def redis_client() -> Generator[redis.Redis, None, None]:
    """Redis client for direct database operations.

    Yields a connected Redis client for test assertions and setup.
    """
    client = redis.Redis(
        host=os.getenv("REDIS_HOST", "localhost"),
        port=int(os.getenv("REDIS_PORT", "6379")),
        db=int(os.getenv("REDIS_DB", "0")),
        password=os.getenv("REDIS_PASSWORD") or None,
        decode_responses=True,
        socket_connect_timeout=3
    )

    # Test connection
    try:
        client.ping()
    except redis.ConnectionError:
        pytest.skip("Redis not available")

    yield client

    client.close()


@pytest.fixture
def code_store(redis_client: redis.Redis, integration_settings) -> Generator[VerificationCodeStore, None, None]:
    """Verification code store with test keys removed before and after."""
    def _clear():
        keys = redis_client.keys("verification_code:IT-*")
        if keys:
            redis_client.delete(*keys)

    _clear()
    yield VerificationCodeStore(client=redis_client, config=integration_settings)
    _clear()
